# buybot/market_data.py
import logging
from time import perf_counter
from typing import Optional

import httpx

from buybot.config import DEX_TIMEOUT_SECONDS, DEX_TOKEN_URL, DEX_TTL_SECONDS, SOL_MINT, SOL_PRICE_TTL_SECONDS
from buybot.errors import TransientIO
from buybot.models import MarketSnapshot
from buybot.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"User-Agent": "solana-buybot/1.0", "Accept": "application/json"}


def _f(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def pick_best_pair(pairs: list) -> Optional[dict]:
    if not pairs:
        return None
    def score(p):
        return (_f((p.get('liquidity') or {}).get('usd')), _f(p.get('fdv')))
    return sorted(pairs, key=score, reverse=True)[0]


def snapshot_from_pair(pair: dict) -> MarketSnapshot:
    base = pair.get('baseToken') or {}
    quote = pair.get('quoteToken') or {}
    market_cap = _f(pair.get('marketCap')) or _f(pair.get('fdv'))
    return MarketSnapshot(
        price_usd=_f(pair.get('priceUsd')),
        market_cap_usd=market_cap,
        liquidity_usd=_f((pair.get('liquidity') or {}).get('usd')),
        volume_24h_usd=_f((pair.get('volume') or {}).get('h24')),
        token_name=str(base.get('name') or ''),
        token_symbol=str(base.get('symbol') or ''),
        quote_token_symbol=str(quote.get('symbol') or ''),
        price_native=_f(pair.get('priceNative')),
        pair_url=str(pair.get('url') or ''),
    )


class MarketDataClient:
    """DexScreener lookups behind the market rate limiter.

    Results are cached for a short TTL; a cache hit does not spend a token.
    Network and HTTP failures raise TransientIO, an empty bucket raises
    RateLimitExceeded.
    """

    def __init__(self, token_address: str, *, limiter: TokenBucket, timeout: float = DEX_TIMEOUT_SECONDS,
                 ttl: float = DEX_TTL_SECONDS, sol_ttl: float = SOL_PRICE_TTL_SECONDS,
                 client: httpx.AsyncClient | None = None):
        self.token_address = token_address
        self.limiter = limiter
        self.timeout = timeout
        self.ttl = ttl
        self.sol_ttl = sol_ttl
        self._client = client
        self._snapshot_cache = {"data": None, "ts": 0.0}
        self._sol_price_cache = {"price": 0.0, "ts": 0.0}

    async def _get_json(self, url: str) -> dict:
        await self.limiter.acquire()
        try:
            if self._client is not None:
                resp = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(headers=DEFAULT_HEADERS) as client:
                    resp = await client.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise TransientIO(f"DexScreener request failed: {e!r}") from e
        if resp.status_code != 200:
            raise TransientIO(f"DexScreener returned HTTP {resp.status_code} for {url}")
        try:
            return resp.json() or {}
        except ValueError as e:
            raise TransientIO("DexScreener returned invalid JSON") from e

    async def fetch_snapshot(self) -> MarketSnapshot:
        cached = self._snapshot_cache["data"]
        if cached is not None and (perf_counter() - self._snapshot_cache["ts"]) < self.ttl:
            return cached
        data = await self._get_json(DEX_TOKEN_URL.format(address=self.token_address))
        best = pick_best_pair(data.get('pairs') or [])
        if best is None:
            raise TransientIO(f"DexScreener has no pairs for {self.token_address}")
        snapshot = snapshot_from_pair(best)
        logger.debug(f"snapshot {snapshot.token_symbol} price={snapshot.price_usd} mc={snapshot.market_cap_usd}")
        # Do not cache an empty price
        if snapshot.price_usd > 0:
            self._snapshot_cache.update(data=snapshot, ts=perf_counter())
        return snapshot

    async def fetch_sol_price(self) -> float:
        now = perf_counter()
        if self._sol_price_cache["ts"] and (now - self._sol_price_cache["ts"]) < self.sol_ttl:
            return self._sol_price_cache["price"]
        data = await self._get_json(DEX_TOKEN_URL.format(address=SOL_MINT))
        price = 0.0
        for pair in data.get('pairs') or []:
            # SOL must be the base token for priceUsd to be the SOL price
            if (pair.get('baseToken') or {}).get('address') == SOL_MINT and _f(pair.get('priceUsd')) > 0:
                price = _f(pair.get('priceUsd'))
                break
        if price > 0:
            self._sol_price_cache.update(price=price, ts=now)
        return price
