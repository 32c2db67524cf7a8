# buybot/chain_source.py
import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from buybot.config import (
    DEBUG_VERBOSE,
    RPC_CONCURRENCY,
    RPC_DELAY_SECONDS,
    RPC_TIMEOUT_SECONDS,
    SIGNATURE_FETCH_LIMIT,
    SOL_MINT,
    SOLANA_RPC_ENDPOINT,
)
from buybot.errors import TransientIO
from buybot.models import TransferRecord

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1e9
# Balance moves below this are fees/rent, not trades
MIN_SOL_CHANGE = 0.001
DEFAULT_HEADERS = {"User-Agent": "solana-buybot/1.0", "Accept": "application/json"}


def dlog(message: str) -> None:
    if DEBUG_VERBOSE:
        logger.info(f"[DEBUG] {message}")


def _to_float_token_amount(ui_token_amount: dict | None) -> float:
    if not isinstance(ui_token_amount, dict):
        return 0.0
    for key in ("uiAmountString", "uiAmount"):
        if ui_token_amount.get(key) is not None:
            try:
                return float(ui_token_amount[key])
            except (TypeError, ValueError):
                continue
    try:
        raw = float(ui_token_amount.get("amount") or 0)
        decimals = int(ui_token_amount.get("decimals") or 0)
        return raw / (10 ** max(decimals, 0))
    except (TypeError, ValueError):
        return 0.0


class SolanaRpcClient:
    """Thin JSON-RPC client. Every failure surfaces as TransientIO."""

    def __init__(self, endpoint: str = SOLANA_RPC_ENDPOINT, *, timeout: float = RPC_TIMEOUT_SECONDS,
                 concurrency: int = RPC_CONCURRENCY, delay: float = RPC_DELAY_SECONDS,
                 client: httpx.AsyncClient | None = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.delay = delay
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._client = client

    async def _post(self, payload: dict) -> httpx.Response:
        async with self._semaphore:
            try:
                if self._client is not None:
                    response = await self._client.post(self.endpoint, json=payload, timeout=self.timeout)
                else:
                    async with httpx.AsyncClient(headers=DEFAULT_HEADERS) as client:
                        response = await client.post(self.endpoint, json=payload, timeout=self.timeout)
            except httpx.HTTPError as e:
                raise TransientIO(f"RPC {payload.get('method')} failed: {e!r}") from e
            # small pacing to be nice to public endpoints
            if self.delay > 0:
                await asyncio.sleep(self.delay + random.uniform(0, self.delay / 2))
            return response

    async def call(self, method: str, params: list):
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        response = await self._post(payload)
        if response.status_code == 429:
            raise TransientIO(f"RPC {method} rate limited (429)")
        if response.status_code != 200:
            raise TransientIO(f"RPC {method} returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise TransientIO(f"RPC {method} returned invalid JSON") from e
        error = body.get('error') if isinstance(body, dict) else None
        if error:
            raise TransientIO(f"RPC {method} error: {error}")
        return body.get('result') if isinstance(body, dict) else None

    async def fetch_recent_signatures(self, address: str, limit: int = SIGNATURE_FETCH_LIMIT) -> List[dict]:
        params = [address, {"limit": limit, "commitment": "confirmed"}]
        try:
            result = await self.call("getSignaturesForAddress", params)
        except TransientIO as e:
            if 'method not found' not in str(e).lower():
                raise
            # Older nodes only know the legacy method name
            result = await self.call("getConfirmedSignaturesForAddress2", params)
        return list(result or [])

    async def fetch_transaction(self, signature: str) -> Optional[dict]:
        params = [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0,
                              "commitment": "confirmed"}]
        return await self.call("getTransaction", params)


def parse_transfer(signature: str, tx: Optional[dict], mint: str) -> TransferRecord:
    """Classify one jsonParsed transaction relative to the tracked mint."""
    if not tx:
        return TransferRecord(signature=signature, kind="other")
    meta = tx.get("meta") or {}
    block_time = None
    if tx.get("blockTime"):
        block_time = datetime.fromtimestamp(tx["blockTime"], tz=timezone.utc)
    if meta.get("err") is not None:
        return TransferRecord(signature=signature, kind="other", block_time=block_time)

    # Token deltas per owner, for the tracked mint and for wrapped SOL
    token_delta, wsol_delta = {}, {}
    for sign, key in ((-1, "preTokenBalances"), (1, "postTokenBalances")):
        for balance in meta.get(key) or []:
            owner = balance.get("owner")
            if not owner:
                continue
            amount = _to_float_token_amount(balance.get("uiTokenAmount"))
            if balance.get("mint") == mint:
                token_delta[owner] = token_delta.get(owner, 0.0) + sign * amount
            elif balance.get("mint") == SOL_MINT:
                wsol_delta[owner] = wsol_delta.get(owner, 0.0) + sign * amount

    if not any(abs(d) > 0 for d in token_delta.values()):
        return TransferRecord(signature=signature, kind="other", block_time=block_time)

    account_keys = tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
    pubkeys = [k.get("pubkey") if isinstance(k, dict) else k for k in account_keys]
    pre_lamports = meta.get("preBalances") or []
    post_lamports = meta.get("postBalances") or []

    def sol_change(owner: str) -> float:
        change = wsol_delta.get(owner, 0.0)
        if owner in pubkeys:
            idx = pubkeys.index(owner)
            if idx < len(pre_lamports) and idx < len(post_lamports):
                change += (post_lamports[idx] - pre_lamports[idx]) / LAMPORTS_PER_SOL
        return change

    def reading(owner: str, delta: float) -> Optional[TransferRecord]:
        sol = sol_change(owner)
        if delta > 0 and sol < -MIN_SOL_CHANGE:
            return TransferRecord(signature=signature, kind="buy", token_amount=delta,
                                  sol_amount=-sol, buyer=owner, block_time=block_time)
        if delta < 0 and sol > MIN_SOL_CHANGE:
            return TransferRecord(signature=signature, kind="sell", token_amount=-delta,
                                  sol_amount=sol, buyer=owner, block_time=block_time)
        return None

    # The trader is the owner whose token and SOL balances moved in opposite directions.
    # A pool mirrors the trader, so the signer is tried first.
    signers = [k.get("pubkey") for k in account_keys if isinstance(k, dict) and k.get("signer")]
    if not signers and pubkeys:
        signers = [pubkeys[0]]  # fee payer
    for owner in signers:
        if owner in token_delta:
            record = reading(owner, token_delta[owner])
            if record is not None:
                return record

    # No signer traded: prefer the buy reading over the pool's mirrored sell
    owners = sorted(token_delta.items(), key=lambda kv: abs(kv[1]), reverse=True)
    for wanted in ("buy", "sell"):
        for owner, delta in owners:
            record = reading(owner, delta)
            if record is not None and record.kind == wanted:
                return record

    receiver = max(token_delta.items(), key=lambda kv: kv[1])
    return TransferRecord(signature=signature, kind="transfer", token_amount=max(receiver[1], 0.0),
                          buyer=receiver[0], block_time=block_time)


class ChainEventSource:
    """Polls the token's transaction history and owns the last-seen cursor.

    The signature fetch, the transaction fetch and the cursor update all run
    under one lock, so overlapping polls never share a window and a failed
    poll leaves the cursor where it was.
    """

    def __init__(self, client: SolanaRpcClient, token_address: str, *, limit: int = SIGNATURE_FETCH_LIMIT):
        self.client = client
        self.token_address = token_address
        self.limit = limit
        self._last_seen_signature: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def last_seen_signature(self) -> Optional[str]:
        return self._last_seen_signature

    async def poll(self) -> List[TransferRecord]:
        """Return transfer records newer than the cursor, newest first."""
        async with self._lock:
            rows = await self.client.fetch_recent_signatures(self.token_address, self.limit)
            signatures = [r.get("signature") for r in rows if r.get("signature")]
            if not signatures:
                return []

            if self._last_seen_signature is None:
                # Baseline only; history before startup is not replayed
                self._last_seen_signature = signatures[0]
                logger.info(f"Polling cursor initialised at {signatures[0]}")
                return []

            fresh = []
            for sig in signatures:
                if sig == self._last_seen_signature:
                    break
                fresh.append(sig)
            else:
                logger.warning(
                    f"Cursor {self._last_seen_signature} not in the last {len(signatures)} signatures; "
                    f"treating the whole window as new"
                )

            failed = {r.get("signature") for r in rows if r.get("err") is not None}
            records = []
            for sig in fresh:
                if sig in failed:
                    dlog(f"skip failed tx {sig}")
                    records.append(TransferRecord(signature=sig, kind="other"))
                    continue
                tx = await self.client.fetch_transaction(sig)
                if tx is None:
                    # Listed but not yet served by this node; retry the window next tick
                    raise TransientIO(f"getTransaction returned no data for {sig}; cursor kept at "
                                      f"{self._last_seen_signature}")
                records.append(parse_transfer(sig, tx, self.token_address))

            self._last_seen_signature = signatures[0]
            if records:
                logger.info(f"Found {len(records)} new transaction(s) for {self.token_address}.")
            return records
