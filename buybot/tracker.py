# buybot/tracker.py
import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import List, Optional, Set

from telegram.ext import ContextTypes

from buybot.chain_source import ChainEventSource
from buybot.buy_filter import select_buy_events
from buybot.composer import compose
from buybot.config import DEBUG_VERBOSE, POLL_TIMEOUT_SECONDS
from buybot.dispatcher import Dispatcher
from buybot.errors import RateLimitExceeded, TransientIO
from buybot.market_data import MarketDataClient
from buybot.models import BuyEvent, DeliveryReport, MarketSnapshot
from buybot.settings_store import SettingsStore

logger = logging.getLogger(__name__)


def dlog(message: str) -> None:
    if DEBUG_VERBOSE:
        logger.info(f"[DEBUG] {message}")


class BuyTracker:
    """Runs the detect → enrich → render → fan out cycle.

    run_cycle() returns once the poll and market lookups are done; sending
    the cycle's notifications happens in a background task so the next
    tick is not held up by slow chats.
    """

    def __init__(self, source: ChainEventSource, store: SettingsStore, market: MarketDataClient,
                 dispatcher: Dispatcher, *, poll_timeout: float = POLL_TIMEOUT_SECONDS,
                 rng: Optional[random.Random] = None):
        self.source = source
        self.store = store
        self.market = market
        self.dispatcher = dispatcher
        self.poll_timeout = poll_timeout
        self.rng = rng
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> Set[asyncio.Task]:
        return set(self._pending)

    async def _poll(self):
        try:
            return await asyncio.wait_for(self.source.poll(), timeout=self.poll_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Poll timed out after {self.poll_timeout}s; retrying next tick")
        except TransientIO as e:
            logger.warning(f"Poll failed: {e}; retrying next tick")
        except Exception as e:
            logger.error(f"Unexpected error while polling: {e}", exc_info=True)
        return []

    async def _sol_price(self) -> float:
        try:
            return await self.market.fetch_sol_price()
        except (TransientIO, RateLimitExceeded) as e:
            logger.warning(f"SOL price unavailable: {e}")
            return 0.0

    async def _snapshot(self) -> Optional[MarketSnapshot]:
        """Market data for rendering. None means "render with placeholders".

        RateLimitExceeded propagates: the notifications are abandoned.
        """
        try:
            return await self.market.fetch_snapshot()
        except TransientIO as e:
            logger.warning(f"Market data unavailable, rendering without it: {e}")
            return None

    async def run_cycle(self) -> List[BuyEvent]:
        records = await self._poll()
        if not records:
            return []
        settings = await self.store.snapshot()
        if not settings.tracking_enabled:
            # Cursor still advanced above, so nothing piles up while paused
            dlog(f"tracking disabled; discarding {len(records)} record(s)")
            return []
        if not any(r.kind == "buy" for r in records):
            dlog(f"no buys among {len(records)} record(s)")
            return []

        try:
            snapshot = await self._snapshot()
        except RateLimitExceeded as e:
            logger.warning(f"Market data rate limited; notifications for this cycle abandoned: {e}")
            return []
        usd_per_sol = await self._sol_price()
        price = snapshot.price_usd if snapshot else 0.0
        events = select_buy_events(records, settings.min_buy_amount, usd_per_sol, price)
        if events:
            logger.info(f"{len(events)} buy event(s) to announce")
            self._spawn(self.publish_all(events, snapshot))
        return events

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Dispatch task failed", exc_info=task.exception())

    async def publish_all(self, events: List[BuyEvent], snapshot: Optional[MarketSnapshot]) -> List[DeliveryReport]:
        reports = []
        for event in events:  # oldest first
            reports.append(await self.publish(event, snapshot))
        return reports

    async def publish(self, event: BuyEvent, snapshot: Optional[MarketSnapshot]) -> DeliveryReport:
        settings = await self.store.snapshot()
        notification = compose(event, snapshot, settings, token_address=self.source.token_address, rng=self.rng)
        report = await self.dispatcher.dispatch(notification)
        for chat_id, err in report.failed:
            logger.warning(f"Buy {event.signature} not delivered to {chat_id}: {err}")
        return report

    async def publish_manual(self, amount: float) -> Optional[DeliveryReport]:
        """Announce a simulated buy of ``amount`` USD. Returns None when below the minimum."""
        settings = await self.store.snapshot()
        if amount < settings.min_buy_amount:
            return None
        event = BuyEvent(
            signature=f"manual-{int(time.time() * 1000)}",
            amount=amount,
            timestamp=datetime.now(timezone.utc),
        )
        snapshot = await self._snapshot()
        return await self.publish(event, snapshot)

    async def job(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.run_cycle()

    async def drain(self, timeout: float) -> None:
        if not self._pending:
            return
        logger.info(f"Waiting up to {timeout}s for {len(self._pending)} dispatch task(s)")
        done, still_running = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} dispatch task(s) at shutdown")
