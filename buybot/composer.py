# buybot/composer.py
import math
import random
from html import escape as html_escape
from typing import List, Optional

from buybot.config import BUY_URL_TEMPLATE, EXPLORER_ACCOUNT_URL, EXPLORER_TX_URL, MAX_EMOJIS
from buybot.models import BuyEvent, MarketSnapshot, Notification
from buybot.settings_store import DEFAULT_GLYPH, EMOJI_LAYOUTS, Settings

NOT_AVAILABLE = "Not available"


def emoji_count(amount: float, buy_step: float) -> int:
    if buy_step <= 0 or amount <= 0:
        return 0
    return max(0, math.floor(amount / buy_step))


def render_emojis(count: int, settings: Settings, rng: Optional[random.Random] = None,
                  max_emojis: int = MAX_EMOJIS) -> str:
    """Build the emoji bar for ``count`` units, capped at ``max_emojis`` glyphs."""
    if count <= 0:
        return ""
    rng = rng or random
    custom = [e for e in settings.custom_emojis if e]
    if custom:
        glyphs: List[str] = []
        for _ in range(count):
            unit = list(custom)
            if settings.shuffle:
                rng.shuffle(unit)
            glyphs.extend(unit)
            if len(glyphs) >= max_emojis:
                break
        return "".join(glyphs[:max_emojis])
    layout = EMOJI_LAYOUTS.get(settings.selected_emoji_layout) or [DEFAULT_GLYPH]
    n = min(count, max_emojis)
    glyphs = [layout[i % len(layout)] for i in range(n)]
    if settings.shuffle:
        rng.shuffle(glyphs)
    return "".join(glyphs)


def short_addr(a: str, left: int = 4, right: int = 4) -> str:
    if not a:
        return ""
    if len(a) <= left + right + 3:
        return a
    return f"{a[:left]}...{a[-right:]}"


def _usd_int(v: float) -> str:
    return f"${int(v):,}" if v and v > 0 else NOT_AVAILABLE


def compose(event: BuyEvent, market: Optional[MarketSnapshot], settings: Settings, *,
            token_address: str = "", rng: Optional[random.Random] = None) -> Notification:
    """Render one buy event. Missing market data turns into placeholders, never errors."""
    market = market or MarketSnapshot()
    symbol = html_escape((market.token_symbol or "TOKEN").upper())
    name = html_escape(market.token_name or market.token_symbol or "Token")
    price = market.price_usd if market.price_usd and market.price_usd > 0 else 0.0

    if price > 0:
        quantity = f"{event.amount / price:,.3f} {symbol}"
        price_str = f"${price:.8f}"
    else:
        quantity = "unavailable"
        price_str = NOT_AVAILABLE

    market_cap = market.market_cap_usd
    if (not market_cap or market_cap <= 0) and price > 0 and settings.token_supply > 0:
        market_cap = price * settings.token_supply

    emojis = render_emojis(emoji_count(event.amount, settings.buy_step), settings, rng)

    spent = f"${event.amount:,.2f}"
    if event.sol_amount:
        spent += f" ({event.sol_amount:,.3f} {html_escape(market.quote_token_symbol or 'SOL')})"

    tx_url = EXPLORER_TX_URL.format(signature=event.signature)
    chart_url = settings.dex_screener_url or market.pair_url or ""
    buy_url = BUY_URL_TEMPLATE.format(address=token_address) if token_address else ""

    if event.buyer:
        buyer_url = EXPLORER_ACCOUNT_URL.format(address=event.buyer)
        buyer_line = f"👤 Buyer: <a href=\"{buyer_url}\">{html_escape(short_addr(event.buyer))}</a>"
    else:
        buyer_line = f"👤 Buyer: {NOT_AVAILABLE}"

    links = [
        f"<a href=\"{buy_url}\">Buy</a>" if buy_url else f"Buy: {NOT_AVAILABLE}",
        f"<a href=\"{chart_url}\">Chart</a>" if chart_url else f"Chart: {NOT_AVAILABLE}",
        f"<a href=\"{tx_url}\">Txn</a>",
    ]
    status = "🟢 Tracking active" if settings.tracking_enabled else "🔴 Tracking paused"

    lines = [
        f"<b>{name} (${symbol}) Buy!</b>",
        emojis,
        "",
        f"💵 Spent: <b>{spent}</b>",
        f"🪙 Got: <b>{quantity}</b>",
        buyer_line,
        f"🏷 Price: {price_str}",
        f"💰 Market Cap: {_usd_int(market_cap)}",
        f"🌊 Liquidity: {_usd_int(market.liquidity_usd)}",
        f"📊 24h Volume: {_usd_int(market.volume_24h_usd)}",
        "",
        " | ".join(links),
        status,
    ]
    text = "\n".join(l for l in lines if l is not None)

    buttons = tuple((label, url) for label, url in (("💲 Buy", buy_url), ("📊 Chart", chart_url), ("🔗 Txn", tx_url)) if url)
    return Notification(text=text, image=settings.buy_image_file_id or None, buttons=buttons)
