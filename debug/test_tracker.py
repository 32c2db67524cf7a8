import asyncio

import pytest

from buybot.errors import RateLimitExceeded, TransientIO
from buybot.models import DeliveryReport, MarketSnapshot, TransferRecord
from buybot.settings_store import SettingsStore
from buybot.tracker import BuyTracker

MINT = "Mint1111111111111111111111111111111111111111"


class FakeSource:
    token_address = MINT

    def __init__(self, result=None, delay=0.0) -> None:
        self.result = result or []
        self.delay = delay
        self.polls = 0

    async def poll(self):
        self.polls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return list(self.result)


class FakeMarket:
    def __init__(self, snapshot_error=None, sol_price=100.0) -> None:
        self.snapshot_error = snapshot_error
        self.sol_price = sol_price
        self.snapshot_calls = 0

    async def fetch_snapshot(self):
        self.snapshot_calls += 1
        if self.snapshot_error:
            raise self.snapshot_error
        return MarketSnapshot(price_usd=0.01, token_name="Coon", token_symbol="COON")

    async def fetch_sol_price(self):
        return self.sol_price


class FakeDispatcher:
    def __init__(self, hang=False) -> None:
        self.hang = hang
        self.sent = []

    async def dispatch(self, notification):
        if self.hang:
            await asyncio.sleep(3600)
        self.sent.append(notification)
        return DeliveryReport(sent=1)


def buy(sig, sol=1.0):
    return TransferRecord(signature=sig, kind="buy", sol_amount=sol, token_amount=100.0, buyer="Buyer")


@pytest.fixture
def store(tmp_path):
    s = SettingsStore(str(tmp_path / "bot_settings.json"))
    s.settings.tracking_enabled = True
    s.settings.subscribed_chats.add(1)
    return s


def make_tracker(store, source, market=None, dispatcher=None, **kwargs):
    return BuyTracker(source, store, market or FakeMarket(), dispatcher or FakeDispatcher(), **kwargs)


async def test_cycle_announces_buys_oldest_first(store):
    dispatcher = FakeDispatcher()
    source = FakeSource([buy("s2"), TransferRecord(signature="sx", kind="sell"), buy("s1", sol=2.0)])
    tracker = make_tracker(store, source, dispatcher=dispatcher)
    events = await tracker.run_cycle()
    assert [e.signature for e in events] == ["s1", "s2"]
    assert events[0].amount == pytest.approx(200)
    await tracker.drain(1)
    assert len(dispatcher.sent) == 2
    assert "solscan.io/tx/s1" in dispatcher.sent[0].text
    assert "solscan.io/tx/s2" in dispatcher.sent[1].text


async def test_disabled_tracking_discards_records(store):
    store.settings.tracking_enabled = False
    market = FakeMarket()
    source = FakeSource([buy("s1")])
    tracker = make_tracker(store, source, market=market)
    assert await tracker.run_cycle() == []
    assert source.polls == 1
    assert market.snapshot_calls == 0


async def test_min_buy_filters_cycle(store):
    store.settings.min_buy_amount = 150
    tracker = make_tracker(store, FakeSource([buy("big", sol=2.0), buy("small", sol=1.0)]))
    events = await tracker.run_cycle()
    assert [e.signature for e in events] == ["big"]
    await tracker.drain(1)


@pytest.mark.parametrize("result", [TransientIO("rpc down"), RuntimeError("bug")])
async def test_poll_failure_skips_the_cycle(store, result):
    tracker = make_tracker(store, FakeSource(result))
    assert await tracker.run_cycle() == []


async def test_poll_timeout_skips_the_cycle(store):
    tracker = make_tracker(store, FakeSource([buy("s1")], delay=1), poll_timeout=0.01)
    assert await tracker.run_cycle() == []


async def test_market_rate_limit_abandons_notifications(store):
    dispatcher = FakeDispatcher()
    market = FakeMarket(snapshot_error=RateLimitExceeded("dexscreener"))
    tracker = make_tracker(store, FakeSource([buy("s1")]), market=market, dispatcher=dispatcher)
    assert await tracker.run_cycle() == []
    await tracker.drain(1)
    assert dispatcher.sent == []


async def test_market_outage_renders_placeholders(store):
    dispatcher = FakeDispatcher()
    market = FakeMarket(snapshot_error=TransientIO("dexscreener down"))
    tracker = make_tracker(store, FakeSource([buy("s1")]), market=market, dispatcher=dispatcher)
    events = await tracker.run_cycle()
    await tracker.drain(1)
    assert len(events) == 1
    assert "Liquidity: Not available" in dispatcher.sent[0].text


async def test_manual_buy_respects_minimum(store):
    store.settings.min_buy_amount = 50
    dispatcher = FakeDispatcher()
    tracker = make_tracker(store, FakeSource(), dispatcher=dispatcher)
    assert await tracker.publish_manual(10) is None
    report = await tracker.publish_manual(75)
    assert report.sent == 1
    assert "$75.00" in dispatcher.sent[0].text
    assert "solscan.io/tx/manual-" in dispatcher.sent[0].text


async def test_drain_cancels_stuck_dispatches(store):
    tracker = make_tracker(store, FakeSource([buy("s1")]), dispatcher=FakeDispatcher(hang=True))
    await tracker.run_cycle()
    tasks = tracker.pending
    assert len(tasks) == 1
    await tracker.drain(0.01)
    await asyncio.gather(*tasks, return_exceptions=True)
    assert all(t.cancelled() for t in tasks)
    assert tracker.pending == set()


async def test_job_runs_a_cycle(store):
    source = FakeSource()
    tracker = make_tracker(store, source)
    await tracker.job(context=None)
    assert source.polls == 1
