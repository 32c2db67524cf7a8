import logging

import pytest

from buybot.buy_filter import select_buy_events, value_in_usd
from buybot.models import TransferRecord


def rec(sig, kind="buy", sol=0.0, tokens=0.0):
    return TransferRecord(signature=sig, kind=kind, sol_amount=sol, token_amount=tokens, buyer="Buyer")


def test_only_buys_are_kept_and_come_out_oldest_first():
    records = [rec("s3", sol=1), rec("s2", kind="sell", sol=5), rec("s1", sol=2), rec("s0", kind="transfer")]
    events = select_buy_events(records, 0, usd_per_sol=100)
    assert [e.signature for e in events] == ["s1", "s3"]
    assert [e.amount for e in events] == [pytest.approx(200), pytest.approx(100)]


def test_buys_below_minimum_are_dropped():
    records = [rec("big", sol=1), rec("small", sol=0.1)]
    events = select_buy_events(records, 20, usd_per_sol=100)
    assert [e.signature for e in events] == ["big"]


def test_minimum_is_inclusive():
    events = select_buy_events([rec("edge", sol=0.5)], 50, usd_per_sol=100)
    assert len(events) == 1


def test_duplicate_signature_in_one_batch_is_kept_once():
    records = [rec("s2", sol=1), rec("s1", sol=1), rec("s2", sol=1)]
    events = select_buy_events(records, 0, usd_per_sol=10)
    assert [e.signature for e in events] == ["s2", "s1"]


def test_value_falls_back_to_token_price():
    assert value_in_usd(rec("x", tokens=1000), 0.0, 0.002) == pytest.approx(2.0)
    assert value_in_usd(rec("x", sol=1, tokens=1000), 150.0, 0.002) == pytest.approx(150.0)
    assert value_in_usd(rec("x"), 150.0, 0.002) == 0.0


def test_missing_prices_are_reported(caplog):
    with caplog.at_level(logging.WARNING):
        events = select_buy_events([rec("s1", sol=1)], 1)
    assert events == []
    assert "No SOL or token price" in caplog.text


def test_event_carries_trade_details():
    event = select_buy_events([rec("s1", sol=2, tokens=5000)], 0, usd_per_sol=50)[0]
    assert event.buyer == "Buyer"
    assert event.sol_amount == 2
    assert event.token_amount == 5000
    assert event.timestamp is not None
