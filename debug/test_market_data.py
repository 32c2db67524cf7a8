import httpx
import pytest

from buybot.config import SOL_MINT
from buybot.errors import RateLimitExceeded, TransientIO
from buybot.market_data import MarketDataClient, pick_best_pair
from buybot.rate_limiter import TokenBucket

MINT = "DezXK6uoVkM4sBuxab4ZpAcLRwE6QWhfFVto8Khp5t1G"

PAIRS = {
    "pairs": [
        {
            "priceUsd": "0.00002", "fdv": 1000, "liquidity": {"usd": 500},
            "baseToken": {"address": MINT, "name": "Bonk", "symbol": "BONK"},
            "quoteToken": {"symbol": "USDC"},
        },
        {
            "priceUsd": "0.00003", "priceNative": "0.0000002", "marketCap": 2_000_000, "fdv": 2_500_000,
            "liquidity": {"usd": 90_000}, "volume": {"h24": 12_000},
            "url": "https://dexscreener.com/solana/best",
            "baseToken": {"address": MINT, "name": "Bonk", "symbol": "BONK"},
            "quoteToken": {"symbol": "SOL"},
        },
    ]
}

SOL_PAIRS = {
    "pairs": [
        {"priceUsd": "1.0", "baseToken": {"address": "Other"}, "quoteToken": {"address": SOL_MINT}},
        {"priceUsd": "150.25", "baseToken": {"address": SOL_MINT, "symbol": "SOL"}},
    ]
}


class Handler:
    def __init__(self, status=200, body=None) -> None:
        self.status = status
        self.body = body
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(str(request.url))
        if self.body is not None:
            return httpx.Response(self.status, json=self.body)
        body = SOL_PAIRS if request.url.path.endswith(SOL_MINT) else PAIRS
        return httpx.Response(self.status, json=body)


def client_for(handler, limiter=None, **kwargs) -> MarketDataClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MarketDataClient(MINT, limiter=limiter or TokenBucket(100), client=http, **kwargs)


async def test_snapshot_uses_most_liquid_pair():
    snap = await client_for(Handler()).fetch_snapshot()
    assert snap.price_usd == pytest.approx(0.00003)
    assert snap.market_cap_usd == 2_000_000
    assert snap.liquidity_usd == 90_000
    assert snap.volume_24h_usd == 12_000
    assert snap.token_symbol == "BONK"
    assert snap.quote_token_symbol == "SOL"
    assert snap.pair_url == "https://dexscreener.com/solana/best"


async def test_snapshot_is_cached_and_cache_hits_are_free():
    handler = Handler()
    client = client_for(handler, limiter=TokenBucket(1, 60, blocking=False))
    first = await client.fetch_snapshot()
    second = await client.fetch_snapshot()
    assert first is second
    assert len(handler.calls) == 1


async def test_empty_bucket_raises_rate_limit():
    client = client_for(Handler(), limiter=TokenBucket(1, 60, blocking=False), ttl=0)
    await client.fetch_snapshot()
    with pytest.raises(RateLimitExceeded):
        await client.fetch_snapshot()


async def test_http_error_is_transient():
    with pytest.raises(TransientIO):
        await client_for(Handler(status=503)).fetch_snapshot()


async def test_no_pairs_is_transient():
    with pytest.raises(TransientIO):
        await client_for(Handler(body={"pairs": None})).fetch_snapshot()


async def test_zero_price_is_not_cached():
    handler = Handler(body={"pairs": [{"priceUsd": "0", "liquidity": {"usd": 1}}]})
    client = client_for(handler)
    await client.fetch_snapshot()
    await client.fetch_snapshot()
    assert len(handler.calls) == 2


async def test_sol_price_requires_sol_as_base_token():
    handler = Handler()
    client = client_for(handler)
    assert await client.fetch_sol_price() == pytest.approx(150.25)
    assert await client.fetch_sol_price() == pytest.approx(150.25)
    assert len(handler.calls) == 1


def test_pick_best_pair_handles_empty_and_missing_liquidity():
    assert pick_best_pair([]) is None
    best = pick_best_pair([{"fdv": 10}, {"liquidity": {"usd": "5"}}])
    assert best == {"liquidity": {"usd": "5"}}
