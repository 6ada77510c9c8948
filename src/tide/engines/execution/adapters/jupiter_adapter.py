"""
jupiter_adapter.py - Quote/swap gateway over the Jupiter v6 API

Jupiter picks the route; the engine signs and sends. Every call returns a
typed value or raises a typed error:

    quote = await adapter.get_quote(SOL.mint, token_mint, lamports, slippage_bps)
        -> SwapQuote            | QuoteUnavailable
    signature = await adapter.execute_swap(quote)
        -> confirmed signature  | ExecutionFailed

Quotes are never cached; the caller fetches a fresh one per sub-action.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import math
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from loguru import logger

from tide.engines.execution.solana_client import SolanaClient, TxOutcome
from tide.errors import ExecutionFailed, QuoteUnavailable
from tide.ports.oracles import SwapGatewayPort, SwapQuote


@dataclass(frozen=True)
class JupiterConfig:
    base_url: str = "https://quote-api.jup.ag/v6"
    http_timeout: float = 10.0
    max_quote_retries: int = 3
    retry_delay_base: float = 1.0


class JupiterAdapter(SwapGatewayPort):
    """
    Quote/Swap gateway.

    Policy:
    - Quotes retry up to `max_quote_retries` with exponential backoff on
      429, 5xx and timeouts; anything else fails immediately.
    - Swap builds are not retried: a stale quote must be re-fetched.
    - Responses are schema-checked before use.
    """

    REQUIRED_QUOTE_FIELDS = ("inAmount", "outAmount", "routePlan")
    REQUIRED_SWAP_FIELDS = ("swapTransaction",)

    def __init__(
        self,
        config: JupiterConfig,
        solana_client: Optional[SolanaClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.solana = solana_client
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.config.http_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # =========================================================================
    # QUOTES
    # =========================================================================

    def _validate_quote_response(self, data: Any) -> Optional[str]:
        """Returns the first problem found, or None if the payload is usable."""
        if not isinstance(data, dict):
            return "response_not_object"
        for name in self.REQUIRED_QUOTE_FIELDS:
            if name not in data:
                return f"missing_{name}"
        route = data["routePlan"]
        if not isinstance(route, list) or not route:
            return "empty_route"
        if not all(isinstance(hop, dict) for hop in route):
            return "malformed_route_hop"
        return None

    @staticmethod
    def _route_label(route: list) -> str:
        labels = []
        for hop in route:
            swap_info = hop.get("swapInfo")
            label = swap_info.get("label") if isinstance(swap_info, dict) else None
            if label:
                labels.append(str(label))
        return " > ".join(labels)

    def _parse_quote(self, data: dict, slippage_bps: int) -> SwapQuote:
        try:
            in_amount = int(data["inAmount"])
            out_amount = int(data["outAmount"])
            min_out = int(data.get("otherAmountThreshold") or out_amount)
            impact = float(data.get("priceImpactPct") or 0.0)
            quoted_bps = int(data.get("slippageBps", slippage_bps))
        except (TypeError, ValueError) as e:
            raise QuoteUnavailable(f"unparseable quote: {e}") from e

        if out_amount <= 0:
            raise QuoteUnavailable("quote returned zero output")
        if not math.isfinite(impact) or impact < 0:
            raise QuoteUnavailable(f"unusable price impact {data.get('priceImpactPct')!r}")

        return SwapQuote(
            input_mint=str(data.get("inputMint", "")),
            output_mint=str(data.get("outputMint", "")),
            in_amount=in_amount,
            out_amount=out_amount,
            min_out_amount=min_out,
            price_impact_pct=impact,
            slippage_bps=quoted_bps,
            route_label=self._route_label(data["routePlan"]),
            raw=data,
        )

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        """
        ExactIn quote for `amount` (smallest units of `input_mint`).

        Raises:
            QuoteUnavailable: no route, bad payload, or retries exhausted.
        """
        if amount <= 0:
            raise QuoteUnavailable(f"amount must be positive, got {amount}")

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "swapMode": "ExactIn",
        }
        attempts = self.config.max_quote_retries
        client = await self._get_client()

        for attempt in range(attempts):
            retry_note = f"attempt {attempt + 1}/{attempts}"
            try:
                resp = await client.get(f"{self.config.base_url}/quote", params=params)
            except httpx.TimeoutException as e:
                logger.warning(f"JUPITER_QUOTE | timeout ({retry_note})")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay_base * 2 ** attempt)
                    continue
                raise QuoteUnavailable("quote timed out") from e
            except httpx.HTTPError as e:
                logger.error(f"JUPITER_QUOTE | error: {type(e).__name__}: {e}")
                raise QuoteUnavailable(f"{type(e).__name__}: {e}") from e

            if resp.status_code == 429 or resp.status_code >= 500:
                logger.warning(f"JUPITER_QUOTE | http {resp.status_code} ({retry_note})")
                if attempt < attempts - 1:
                    await asyncio.sleep(self.config.retry_delay_base * 2 ** attempt)
                    continue
                raise QuoteUnavailable(f"http {resp.status_code}", status_code=resp.status_code)

            if resp.status_code >= 400:
                # no route or bad mint: not retryable
                logger.warning(f"JUPITER_QUOTE | rejected | http {resp.status_code} | {resp.text[:200]}")
                raise QuoteUnavailable(f"http {resp.status_code}", status_code=resp.status_code)

            try:
                data = resp.json()
            except ValueError as e:
                raise QuoteUnavailable("quote body is not JSON") from e

            problem = self._validate_quote_response(data)
            if problem:
                logger.error(f"JUPITER_QUOTE | invalid response schema | {problem}")
                raise QuoteUnavailable(f"invalid quote: {problem}")

            quote = self._parse_quote(data, slippage_bps)
            logger.debug(
                f"JUPITER_QUOTE | success | in={quote.in_amount} out={quote.out_amount} | "
                f"impact={quote.price_impact_pct:.4f}% | route={quote.route_label or '-'}"
            )
            return quote

        raise QuoteUnavailable("retries exhausted")

    # =========================================================================
    # SWAPS
    # =========================================================================

    async def get_swap_transaction(self, quote: SwapQuote, user_pubkey: str) -> bytes:
        """
        Build the swap tx for a quote. Returns serialized VersionedTransaction bytes.

        Raises ExecutionFailed on any HTTP or schema problem.
        """
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": user_pubkey,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        client = await self._get_client()

        try:
            resp = await client.post(f"{self.config.base_url}/swap", json=payload)
        except httpx.TimeoutException as e:
            logger.warning("JUPITER_SWAP | timeout")
            raise ExecutionFailed("swap build timed out", reason="swap_timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"JUPITER_SWAP | error: {type(e).__name__}: {e}")
            raise ExecutionFailed(f"swap build failed: {e}", reason="swap_http_error") from e

        if resp.status_code >= 400:
            logger.warning(f"JUPITER_SWAP | http {resp.status_code}")
            raise ExecutionFailed(f"swap build http {resp.status_code}", reason="swap_http_error")

        try:
            data = resp.json()
        except ValueError as e:
            raise ExecutionFailed("swap body is not JSON", reason="swap_invalid") from e

        if not isinstance(data, dict) or any(f not in data for f in self.REQUIRED_SWAP_FIELDS):
            logger.error("JUPITER_SWAP | invalid response schema")
            raise ExecutionFailed("swap response missing swapTransaction", reason="swap_invalid")

        try:
            tx_bytes = base64.b64decode(data["swapTransaction"])
        except (binascii.Error, TypeError) as e:
            raise ExecutionFailed("swapTransaction is not base64", reason="swap_invalid") from e

        logger.debug(f"JUPITER_SWAP | success | tx_size={len(tx_bytes)} bytes")
        return tx_bytes

    async def execute_swap(self, quote: SwapQuote) -> str:
        """
        Build, sign, send and confirm (or reconcile) a swap for `quote`.

        Returns the signature once the swap is known to be on chain.
        Raises ExecutionFailed otherwise; `uncertain=True` when the swap
        timed out and reconciliation could not tell whether it landed.
        """
        if self.solana is None or self.solana.pubkey is None:
            raise ExecutionFailed("no signer configured", reason="no_signer")

        tx_bytes = await self.get_swap_transaction(quote, self.solana.pubkey)
        result = await self.solana.submit_swap(tx_bytes, quote.output_mint, quote.min_out_amount)

        if not result.landed:
            reason = result.failure_reason.value if result.failure_reason else result.outcome.value
            raise ExecutionFailed(
                f"swap {result.outcome.value}: {result.error_message or 'unknown'}",
                signature=result.signature,
                reason=reason,
                uncertain=result.outcome is TxOutcome.UNRESOLVED,
            )
        return result.signature


__all__ = ["JupiterConfig", "SwapQuote", "JupiterAdapter"]
