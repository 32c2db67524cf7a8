# buybot/settings_store.py
import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import Callable, List, Optional, Set

from buybot.errors import InvalidUserInput, PersistenceFailure, StartupFailure

logger = logging.getLogger(__name__)

EMOJI_LAYOUTS = {
    "default": ["🟢"],
    "festive": ["🎉", "🎊", "🥳", "🎈"],
    "simple": ["•"],
}
DEFAULT_GLYPH = "🎉"


@dataclass
class Settings:
    tracking_enabled: bool = False
    min_buy_amount: float = 0.0
    buy_step: float = 1.0
    token_supply: int = 100_000_000_000
    custom_emojis: List[str] = field(default_factory=lambda: [DEFAULT_GLYPH])
    selected_emoji_layout: str = "default"
    buy_image_file_id: Optional[str] = None
    dex_screener_url: Optional[str] = None
    subscribed_chats: Set[int] = field(default_factory=set)
    shuffle: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["subscribed_chats"] = sorted(self.subscribed_chats)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Build Settings from a decoded file, replacing bad values with defaults.

        Keys written by older variants of the bot (``holders``,
        ``tempImageFileId``, camelCase names) are tolerated.
        """
        s = cls()

        def pick(snake, camel):
            if snake in data:
                return data[snake]
            return data.get(camel)

        raw = pick("tracking_enabled", "trackingEnabled")
        if isinstance(raw, bool):
            s.tracking_enabled = raw
        elif raw is not None:
            logger.warning(f"Ignoring invalid tracking_enabled in settings file: {raw!r}")

        raw = pick("min_buy_amount", "minBuyAmount")
        if raw is not None:
            try:
                s.min_buy_amount = validate_min_buy(raw)
            except InvalidUserInput:
                logger.warning(f"Ignoring invalid min_buy_amount in settings file: {raw!r}")

        raw = pick("buy_step", "buyStep")
        if raw is not None:
            try:
                s.buy_step = validate_buy_step(raw)
            except InvalidUserInput:
                logger.warning(f"Ignoring invalid buy_step in settings file: {raw!r}")

        raw = pick("token_supply", "tokenSupply")
        if raw is not None:
            try:
                s.token_supply = validate_supply(raw)
            except InvalidUserInput:
                logger.warning(f"Ignoring invalid token_supply in settings file: {raw!r}")

        raw = pick("custom_emojis", "customEmojis")
        if isinstance(raw, list):
            s.custom_emojis = [str(e) for e in raw if str(e).strip()]

        raw = pick("selected_emoji_layout", "selectedEmojiLayout")
        if raw in EMOJI_LAYOUTS:
            s.selected_emoji_layout = raw

        s.buy_image_file_id = pick("buy_image_file_id", "buyImageFileId") or None
        s.dex_screener_url = pick("dex_screener_url", "dexScreenerUrl") or None

        raw = pick("subscribed_chats", "subscribedChats")
        if isinstance(raw, list):
            for cid in raw:
                try:
                    s.subscribed_chats.add(int(cid))
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid chat id in settings file: {cid!r}")

        raw = data.get("shuffle")
        if isinstance(raw, bool):
            s.shuffle = raw
        elif raw is not None:
            logger.warning(f"Ignoring invalid shuffle in settings file: {raw!r}")
        return s


# --- Validation (raise before anything is mutated) ---
def _number(value, what: str) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        raise InvalidUserInput(f"{what} must be a number.")
    if n != n or n in (float("inf"), float("-inf")):
        raise InvalidUserInput(f"{what} must be a finite number.")
    return n

def validate_buy_step(value) -> float:
    n = _number(value, "Buy step")
    if n <= 0:
        raise InvalidUserInput("Buy step must be greater than 0.")
    return n

def validate_min_buy(value) -> float:
    n = _number(value, "Minimum buy")
    if n < 0:
        raise InvalidUserInput("Minimum buy cannot be negative.")
    return n

def validate_supply(value) -> int:
    try:
        n = int(str(value).replace(',', '').replace('_', ''))
    except (TypeError, ValueError):
        raise InvalidUserInput("Token supply must be a whole number.")
    if n <= 0:
        raise InvalidUserInput("Token supply must be greater than 0.")
    return n

def validate_emojis(values) -> List[str]:
    emojis = [str(v).strip() for v in values if str(v).strip()]
    if not emojis:
        raise InvalidUserInput("Send at least one emoji, e.g. /setemojis 🚀 💎")
    return emojis

def validate_layout(name) -> str:
    name = str(name or "").strip().lower()
    if name not in EMOJI_LAYOUTS:
        raise InvalidUserInput(f"Unknown layout. Choose one of: {', '.join(EMOJI_LAYOUTS)}")
    return name

def validate_chart_url(url) -> str:
    url = str(url or "").strip()
    if not url.startswith("https://") or len(url) <= len("https://"):
        raise InvalidUserInput("Invalid URL format. Please enter a valid https:// URL.")
    return url


class SettingsStore:
    """Owns the Settings instance.

    Every mutation goes through a setter which validates, mutates under the
    lock and persists. Setters return True when the write reached disk.
    Readers get copies via snapshot() so they never see a half-applied change.
    """

    def __init__(self, path: str):
        self.path = path
        self._settings = Settings()
        self._lock = asyncio.Lock()

    @property
    def settings(self) -> Settings:
        return self._settings

    def load(self) -> Settings:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.info("No settings file found; starting with defaults.")
            self._settings = Settings()
            return self._settings
        except (OSError, ValueError) as e:
            # Corrupt file is left on disk for the operator to inspect
            raise StartupFailure(f"Cannot read settings file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StartupFailure(f"Settings file {self.path} does not contain an object")
        self._settings = Settings.from_dict(data)
        logger.info(f"Settings loaded: {len(self._settings.subscribed_chats)} subscribed chat(s)")
        return self._settings

    def save(self) -> None:
        tmp = f"{self.path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(self._settings.to_dict(), f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Cannot write settings file {self.path}: {e}") from e

    async def snapshot(self) -> Settings:
        async with self._lock:
            return copy.deepcopy(self._settings)

    async def subscribed_chats(self) -> List[int]:
        async with self._lock:
            return sorted(self._settings.subscribed_chats)

    async def update(self, mutate: Callable[[Settings], None]) -> bool:
        async with self._lock:
            mutate(self._settings)
            try:
                self.save()
            except PersistenceFailure as e:
                logger.warning(f"{e}; keeping in-memory settings")
                return False
        return True

    async def flush(self) -> bool:
        async with self._lock:
            try:
                self.save()
            except PersistenceFailure as e:
                logger.error(f"Final settings flush failed: {e}")
                return False
        logger.info("Settings flushed to disk.")
        return True

    # --- Setters ---
    async def set_tracking(self, enabled: bool) -> bool:
        def apply(s): s.tracking_enabled = bool(enabled)
        return await self.update(apply)

    async def set_buy_step(self, value) -> bool:
        step = validate_buy_step(value)
        def apply(s): s.buy_step = step
        return await self.update(apply)

    async def set_min_buy(self, value) -> bool:
        amount = validate_min_buy(value)
        def apply(s): s.min_buy_amount = amount
        return await self.update(apply)

    async def set_token_supply(self, value) -> bool:
        supply = validate_supply(value)
        def apply(s): s.token_supply = supply
        return await self.update(apply)

    async def set_emojis(self, values) -> bool:
        emojis = validate_emojis(values)
        def apply(s): s.custom_emojis = emojis
        return await self.update(apply)

    async def set_layout(self, name) -> bool:
        layout = validate_layout(name)
        def apply(s): s.selected_emoji_layout = layout
        return await self.update(apply)

    async def set_chart_url(self, url) -> bool:
        url = validate_chart_url(url)
        def apply(s): s.dex_screener_url = url
        return await self.update(apply)

    async def set_buy_image(self, file_id: Optional[str]) -> bool:
        def apply(s): s.buy_image_file_id = file_id or None
        return await self.update(apply)

    async def add_chat(self, chat_id: int) -> bool:
        def apply(s): s.subscribed_chats.add(int(chat_id))
        return await self.update(apply)

    async def remove_chat(self, chat_id: int) -> bool:
        def apply(s): s.subscribed_chats.discard(int(chat_id))
        return await self.update(apply)

    async def toggle_shuffle(self) -> bool:
        def apply(s): s.shuffle = not s.shuffle
        return await self.update(apply)
