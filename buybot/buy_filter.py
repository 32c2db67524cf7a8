# buybot/buy_filter.py
import logging
from datetime import datetime, timezone
from typing import Iterable, List

from buybot.models import BuyEvent, TransferRecord

logger = logging.getLogger(__name__)


def value_in_usd(record: TransferRecord, usd_per_sol: float, price_usd: float) -> float:
    """USD value of a trade: SOL spent at the SOL price, else tokens at the token price."""
    if record.sol_amount > 0 and usd_per_sol > 0:
        return record.sol_amount * usd_per_sol
    if record.token_amount > 0 and price_usd > 0:
        return record.token_amount * price_usd
    return 0.0


def select_buy_events(records: Iterable[TransferRecord], min_buy_amount: float,
                      usd_per_sol: float = 0.0, price_usd: float = 0.0) -> List[BuyEvent]:
    """Turn newest-first records into accepted buy events, oldest first.

    Non-buy records and buys below ``min_buy_amount`` are dropped. A
    signature that shows up twice in one batch is only kept once.
    """
    records = list(records)
    if usd_per_sol <= 0 and price_usd <= 0 and any(r.kind == "buy" for r in records):
        logger.warning("No SOL or token price available; buys in this batch are valued at $0")

    seen = set()
    events = []
    for rec in reversed(records):
        if rec.kind != "buy" or rec.signature in seen:
            continue
        seen.add(rec.signature)
        amount = value_in_usd(rec, usd_per_sol, price_usd)
        if amount < min_buy_amount:
            logger.info(f"Buy {rec.signature} of ${amount:,.2f} below minimum ${min_buy_amount:,.2f}; skipped")
            continue
        events.append(BuyEvent(
            signature=rec.signature,
            amount=amount,
            timestamp=rec.block_time or datetime.now(timezone.utc),
            buyer=rec.buyer,
            token_amount=rec.token_amount or None,
            sol_amount=rec.sol_amount or None,
        ))
    return events
