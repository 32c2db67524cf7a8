# buybot/dispatcher.py
import asyncio
import logging

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions
from telegram.constants import ParseMode
from telegram.error import NetworkError, TelegramError

from buybot.config import SEND_TIMEOUT_SECONDS
from buybot.errors import RateLimitExceeded, TransientIO
from buybot.models import DeliveryReport, Notification
from buybot.rate_limiter import TokenBucket
from buybot.settings_store import SettingsStore

logger = logging.getLogger(__name__)


def build_keyboard(notification: Notification) -> InlineKeyboardMarkup | None:
    if not notification.buttons:
        return None
    return InlineKeyboardMarkup([[InlineKeyboardButton(label, url=url) for label, url in notification.buttons]])


class Dispatcher:
    """Sends one notification to every subscribed chat.

    A failure in one chat is logged and recorded; the remaining chats are
    still attempted. Nothing is retried within a dispatch.
    """

    def __init__(self, bot, store: SettingsStore, limiter: TokenBucket, *, send_timeout: float = SEND_TIMEOUT_SECONDS):
        self.bot = bot
        self.store = store
        self.limiter = limiter
        self.send_timeout = send_timeout

    async def _send(self, chat_id: int, notification: Notification) -> None:
        markup = build_keyboard(notification)
        timeouts = {"read_timeout": self.send_timeout, "write_timeout": self.send_timeout,
                    "connect_timeout": self.send_timeout}
        if notification.image:
            await self.bot.send_photo(
                chat_id=chat_id,
                photo=notification.image,
                caption=notification.text,
                parse_mode=ParseMode.HTML,
                reply_markup=markup,
                **timeouts,
            )
        else:
            await self.bot.send_message(
                chat_id=chat_id,
                text=notification.text,
                parse_mode=ParseMode.HTML,
                reply_markup=markup,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
                **timeouts,
            )

    async def dispatch(self, notification: Notification) -> DeliveryReport:
        report = DeliveryReport()
        chats = await self.store.subscribed_chats()
        if not chats:
            logger.warning("No subscribed chats; notification dropped. Use /addgroup in a chat to subscribe it.")
            return report

        for chat_id in chats:
            try:
                await self.limiter.acquire()
                await asyncio.wait_for(self._send(chat_id, notification), timeout=self.send_timeout * 2)
            except RateLimitExceeded as e:
                logger.warning(f"Send to {chat_id} abandoned: {e}")
                report.failed.append((chat_id, e))
            except (NetworkError, asyncio.TimeoutError) as e:
                err = TransientIO(f"send to {chat_id} failed: {e!r}")
                logger.warning(str(err))
                report.failed.append((chat_id, err))
            except TelegramError as e:
                logger.error(f"Telegram rejected message for chat {chat_id}: {e}")
                report.failed.append((chat_id, e))
            except Exception as e:
                logger.error(f"Unexpected error sending to chat {chat_id}: {e}", exc_info=True)
                report.failed.append((chat_id, e))
            else:
                report.sent += 1
        logger.info(f"Buy notification delivered to {report.sent}/{len(chats)} chat(s)")
        return report
