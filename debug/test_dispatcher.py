import asyncio

import pytest
from telegram.error import BadRequest, NetworkError

from buybot.dispatcher import Dispatcher, build_keyboard
from buybot.errors import RateLimitExceeded, TransientIO
from buybot.models import Notification
from buybot.rate_limiter import TokenBucket
from buybot.settings_store import SettingsStore


class DummyBot:
    def __init__(self, failures=None) -> None:
        self.failures = failures or {}
        self.calls: list[tuple] = []

    async def send_message(self, chat_id, text, **kwargs):
        self.calls.append(("message", chat_id, kwargs))
        if chat_id in self.failures:
            raise self.failures[chat_id]

    async def send_photo(self, chat_id, photo, caption=None, **kwargs):
        self.calls.append(("photo", chat_id, {"photo": photo, "caption": caption, **kwargs}))
        if chat_id in self.failures:
            raise self.failures[chat_id]


@pytest.fixture
def store(tmp_path):
    s = SettingsStore(str(tmp_path / "bot_settings.json"))
    s.settings.subscribed_chats.update({1, 2, 3})
    return s


def dispatcher(bot, store, limiter=None):
    return Dispatcher(bot, store, limiter or TokenBucket(100), send_timeout=1)


async def test_one_failing_chat_does_not_stop_the_others(store):
    err = BadRequest("Chat not found")
    bot = DummyBot(failures={2: err})
    report = await dispatcher(bot, store).dispatch(Notification(text="hi"))
    assert report.sent == 2
    assert report.failed == [(2, err)]
    assert [c[1] for c in bot.calls] == [1, 2, 3]


async def test_image_is_sent_as_photo_with_caption(store):
    bot = DummyBot()
    await dispatcher(bot, store).dispatch(Notification(text="caption", image="FILE"))
    kinds = {c[0] for c in bot.calls}
    assert kinds == {"photo"}
    assert bot.calls[0][2]["photo"] == "FILE"
    assert bot.calls[0][2]["caption"] == "caption"


async def test_network_error_is_recorded_as_transient(store):
    bot = DummyBot(failures={1: NetworkError("connection reset")})
    report = await dispatcher(bot, store).dispatch(Notification(text="hi"))
    assert report.sent == 2
    chat_id, err = report.failed[0]
    assert chat_id == 1
    assert isinstance(err, TransientIO)


async def test_slow_chat_times_out(store):
    class SlowBot(DummyBot):
        async def send_message(self, chat_id, text, **kwargs):
            if chat_id == 3:
                await asyncio.sleep(10)
            await super().send_message(chat_id, text, **kwargs)

    d = Dispatcher(SlowBot(), store, TokenBucket(100), send_timeout=0.01)
    report = await d.dispatch(Notification(text="hi"))
    assert report.sent == 2
    assert report.failed[0][0] == 3


async def test_empty_bucket_abandons_remaining_chats(store):
    limiter = TokenBucket(1, 60, blocking=False)
    bot = DummyBot()
    report = await dispatcher(bot, store, limiter).dispatch(Notification(text="hi"))
    assert report.sent == 1
    assert [cid for cid, _ in report.failed] == [2, 3]
    assert all(isinstance(e, RateLimitExceeded) for _, e in report.failed)


async def test_no_chats_sends_nothing(tmp_path):
    bot = DummyBot()
    report = await dispatcher(bot, SettingsStore(str(tmp_path / "s.json"))).dispatch(Notification(text="hi"))
    assert report.sent == 0
    assert report.failed == []
    assert bot.calls == []


def test_keyboard_from_buttons():
    assert build_keyboard(Notification(text="x")) is None
    markup = build_keyboard(Notification(text="x", buttons=(("Txn", "https://solscan.io/tx/abc"),)))
    assert markup.inline_keyboard[0][0].url == "https://solscan.io/tx/abc"
