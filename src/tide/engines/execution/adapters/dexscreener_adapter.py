"""
dexscreener_adapter.py - Market status oracle (bonding curve vs graduated)

DexScreener lists every pair it knows for a token mint:

    GET {base}/latest/dex/tokens/{mint} -> {"pairs": [ {dexId, pairAddress, fdv, ...}, ... ] | null}

Classification:
- no pairs                          -> on bonding curve, progress 0
- a pair on a graduation venue      -> graduated, progress 100, pair reported
- anything else                     -> on bonding curve,
                                       progress = min(cap / graduation_cap * 100, 99)

Progress never reaches 100 without venue evidence.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Optional

import httpx
from loguru import logger

from tide.errors import TransientOracleError
from tide.ports.oracles import MarketStatus, MarketStatusPort

GRADUATION_MARKET_CAP_USD = 69_000.0
MAX_PRE_GRADUATION_PROGRESS = 99.0


def _to_float(value: Any) -> float:
    """Finite positive float, else 0.0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) and number > 0 else 0.0


def classify_pairs(
    pairs: Optional[list],
    graduation_venues: Iterable[str] = ("raydium",),
    graduation_market_cap: float = GRADUATION_MARKET_CAP_USD,
) -> MarketStatus:
    """Pure classification of a DexScreener `pairs` list."""
    pairs = [p for p in (pairs or []) if isinstance(p, dict)]
    if not pairs:
        return MarketStatus(on_bonding_curve=True, bonding_curve_progress=0.0, market_cap=0.0, graduated=False)

    venues = tuple(v.lower() for v in graduation_venues)
    for pair in pairs:
        dex_id = str(pair.get("dexId") or "").lower()
        if any(v in dex_id for v in venues):
            return MarketStatus(
                on_bonding_curve=False,
                bonding_curve_progress=100.0,
                market_cap=_to_float(pair.get("fdv")) or _to_float(pair.get("marketCap")),
                graduated=True,
                pair_address=pair.get("pairAddress") or None,
                dex_id=dex_id,
            )

    first = pairs[0]
    market_cap = _to_float(first.get("fdv")) or _to_float(first.get("marketCap"))
    progress = min(market_cap / graduation_market_cap * 100, MAX_PRE_GRADUATION_PROGRESS)
    return MarketStatus(
        on_bonding_curve=True,
        bonding_curve_progress=max(progress, 0.0),
        market_cap=market_cap,
        graduated=False,
        dex_id=str(first.get("dexId") or "") or None,
    )


class DexScreenerAdapter(MarketStatusPort):
    """
    Market Status Oracle.

    Fails closed: any HTTP, timeout or schema problem raises
    TransientOracleError so the cycle does nothing this poll.
    """

    def __init__(
        self,
        base_url: str = "https://api.dexscreener.com",
        http_timeout: float = 10.0,
        graduation_venues: Iterable[str] = ("raydium",),
        graduation_market_cap: float = GRADUATION_MARKET_CAP_USD,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.http_timeout = http_timeout
        self.graduation_venues = tuple(graduation_venues)
        self.graduation_market_cap = graduation_market_cap
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.http_timeout, transport=self._transport)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def get_market_status(self, token_mint: str) -> MarketStatus:
        client = await self._get_client()
        url = f"{self.base_url}/latest/dex/tokens/{token_mint}"

        try:
            resp = await client.get(url)
        except httpx.TimeoutException as e:
            logger.warning(f"DEXSCREENER | timeout | mint={token_mint[:8]}...")
            raise TransientOracleError("market", "timeout") from e
        except httpx.HTTPError as e:
            logger.warning(f"DEXSCREENER | error | {type(e).__name__}: {e}")
            raise TransientOracleError("market", f"{type(e).__name__}: {e}") from e

        if resp.status_code == 429:
            logger.warning("DEXSCREENER | rate limited")
            raise TransientOracleError("market", "http 429")
        if resp.status_code != 200:
            logger.warning(f"DEXSCREENER | http {resp.status_code}")
            raise TransientOracleError("market", f"http {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise TransientOracleError("market", "body is not JSON") from e

        if not isinstance(data, dict):
            raise TransientOracleError("market", "response_not_object")
        pairs = data.get("pairs")
        if pairs is not None and not isinstance(pairs, list):
            raise TransientOracleError("market", "pairs_not_list")

        status = classify_pairs(pairs, self.graduation_venues, self.graduation_market_cap)
        logger.debug(f"MARKET_STATUS | mint={token_mint[:8]}... | {status.to_log_fields()}")
        return status


__all__ = ["MarketStatus", "DexScreenerAdapter", "classify_pairs", "GRADUATION_MARKET_CAP_USD"]
