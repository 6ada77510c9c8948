"""
solana_client.py - RPC access for the engine wallet

Two roles share one AsyncClient:

    balance oracle   get_sol_balance(address) -> SOL        | TransientOracleError
    swap submitter   submit_swap(tx_bytes, mint, min_out)   -> TxResult (never raises)

A swap whose confirmation poll runs out is not treated as failed. The client
re-checks the signature once and then compares the wallet's balance of the
bought token against its pre-send snapshot. Only a swap shown not to have
landed comes back as a failure the caller may retry.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from tide.config.solana_tokens import lamports_to_sol
from tide.errors import TransientOracleError
from tide.ports.oracles import BalanceOraclePort


class TxOutcome(Enum):
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    # timed out, but the bought token showed up in the wallet
    LANDED = "landed"
    REJECTED = "rejected"
    # timed out and nothing could be proven either way
    UNRESOLVED = "unresolved"
    NOT_SENT = "not_sent"


class TxFailureReason(Enum):
    BLOCKHASH_EXPIRED = "blockhash_expired"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SLIPPAGE_EXCEEDED = "slippage_exceeded"
    SIMULATION_FAILED = "simulation_failed"
    PROGRAM_ERROR = "program_error"
    NETWORK_ERROR = "network_error"
    NOT_LANDED = "not_landed"
    CONFIRM_TIMEOUT = "confirm_timeout"
    BAD_TRANSACTION = "bad_transaction"
    NO_SIGNER = "no_signer"
    UNKNOWN = "unknown"


# substring -> reason, first match wins
_ERROR_PATTERNS = (
    (("blockhash",), TxFailureReason.BLOCKHASH_EXPIRED),
    (("insufficient", "not enough"), TxFailureReason.INSUFFICIENT_FUNDS),
    (("slippage", "exceeds"), TxFailureReason.SLIPPAGE_EXCEEDED),
    (("simulation",), TxFailureReason.SIMULATION_FAILED),
    (("program", "instruction"), TxFailureReason.PROGRAM_ERROR),
    (("connection", "network", "timed out"), TxFailureReason.NETWORK_ERROR),
)


def classify_error(message: str) -> TxFailureReason:
    text = message.lower()
    for needles, reason in _ERROR_PATTERNS:
        if any(n in text for n in needles):
            return reason
    return TxFailureReason.UNKNOWN


@dataclass
class TxResult:
    outcome: TxOutcome
    signature: Optional[str] = None
    failure_reason: Optional[TxFailureReason] = None
    error_message: Optional[str] = None
    token_delta_raw: Optional[int] = None

    @property
    def landed(self) -> bool:
        """The swap is on chain, whether confirmed by status or by balance."""
        return self.outcome in (TxOutcome.CONFIRMED, TxOutcome.FINALIZED, TxOutcome.LANDED)


class SolanaClient(BalanceOraclePort):
    """Balance reads for any address; swap submission needs a keypair."""

    POLL_INTERVAL_SECONDS = 0.5
    SETTLE_SECONDS = 3.0
    LANDED_TOLERANCE = 0.10

    def __init__(
        self,
        rpc_url: str,
        keypair: Optional[Keypair] = None,
        rpc_timeout: float = 10.0,
        confirm_timeout: float = 60.0,
    ):
        self.rpc_url = rpc_url
        self.keypair = keypair
        self.rpc_timeout = rpc_timeout
        self.confirm_timeout = confirm_timeout
        self.pubkey = str(keypair.pubkey()) if keypair is not None else None
        self._client: Optional[AsyncClient] = None

        logger.info(
            f"SOLANA_CLIENT | init | wallet={(self.pubkey or 'read-only')[:8]}... | "
            f"confirm_timeout={confirm_timeout}s"
        )

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed, timeout=self.rpc_timeout)
        return self._client

    async def close(self):
        if self._client:
            await self._client.close()
            self._client = None

    # =========================================================================
    # READS
    # =========================================================================

    async def get_sol_balance(self, address: Optional[str] = None) -> float:
        """
        Native balance of `address` (defaults to the signer) in SOL.

        Raises TransientOracleError on RPC failure, malformed address or timeout.
        """
        target = address or self.pubkey
        if not target:
            raise TransientOracleError("balance", "no address to query")
        try:
            owner = Pubkey.from_string(target)
        except ValueError as e:
            raise TransientOracleError("balance", f"invalid address {target!r}") from e

        try:
            client = await self._get_client()
            resp = await asyncio.wait_for(client.get_balance(owner), timeout=self.rpc_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"SOL_BALANCE | timeout | addr={target[:8]}... | after={self.rpc_timeout}s")
            raise TransientOracleError("balance", f"timeout after {self.rpc_timeout}s") from e
        except Exception as e:
            logger.error(f"SOL_BALANCE | error | addr={target[:8]}... | {type(e).__name__}: {e}")
            raise TransientOracleError("balance", f"{type(e).__name__}: {e}") from e

        lamports = getattr(resp, "value", None)
        if not isinstance(lamports, int):
            raise TransientOracleError("balance", f"unexpected response: {resp!r}")

        balance = lamports_to_sol(lamports)
        logger.debug(f"SOL_BALANCE | addr={target[:8]}... | balance={balance:.6f}")
        return balance

    async def get_token_balance_raw(self, mint: str) -> Optional[int]:
        """Signer's balance of `mint` in smallest units, or None if it could not be read."""
        if not self.pubkey:
            return None
        try:
            client = await self._get_client()
            resp = await asyncio.wait_for(
                client.get_token_accounts_by_owner_json_parsed(
                    Pubkey.from_string(self.pubkey),
                    TokenAccountOpts(mint=Pubkey.from_string(mint)),
                ),
                timeout=self.rpc_timeout,
            )
            total = 0
            for keyed in resp.value or []:
                info = keyed.account.data.parsed["info"]
                total += int(info["tokenAmount"]["amount"])
            return total
        except Exception as e:
            logger.warning(f"TOKEN_BALANCE | unavailable | mint={mint[:8]}... | {type(e).__name__}: {e}")
            return None

    async def get_signature_status(self, signature: str) -> Optional[dict]:
        """{confirmed, finalized, error} for a signature, or None while unseen."""
        try:
            client = await self._get_client()
            resp = await client.get_signature_statuses([Signature.from_string(signature)])
        except Exception as e:
            logger.warning(f"SIG_STATUS | error | sig={signature[:16]}... | {e}")
            return None

        status = resp.value[0] if resp.value else None
        if status is None:
            return None
        level = status.confirmation_status
        return {
            "confirmed": level in (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized),
            "finalized": level == TransactionConfirmationStatus.Finalized,
            "error": str(status.err) if status.err else None,
        }

    # =========================================================================
    # SWAP SUBMISSION
    # =========================================================================

    async def submit_swap(self, tx_bytes: bytes, output_mint: str, min_out_raw: int) -> TxResult:
        """
        Sign and send a swap, then confirm it or reconcile it.

        `min_out_raw` is the quote's minimum output; a timed-out swap counts as
        LANDED when the wallet gained at least that much (less tolerance).
        """
        before = await self.get_token_balance_raw(output_mint)
        result = await self.execute(tx_bytes)
        if result.outcome is not TxOutcome.UNRESOLVED:
            return result
        return await self._reconcile(result, output_mint, min_out_raw, before)

    async def execute(self, tx_bytes: bytes) -> TxResult:
        """Sign, send and poll. Never raises; a poll timeout comes back UNRESOLVED."""
        if self.keypair is None:
            return TxResult(TxOutcome.NOT_SENT, failure_reason=TxFailureReason.NO_SIGNER)

        try:
            unsigned = VersionedTransaction.from_bytes(tx_bytes)
            signed = VersionedTransaction(unsigned.message, [self.keypair])
        except Exception as e:
            logger.error(f"TX_BUILD | error | {type(e).__name__}: {e}")
            return TxResult(TxOutcome.NOT_SENT, failure_reason=TxFailureReason.BAD_TRANSACTION, error_message=str(e))

        try:
            client = await self._get_client()
            resp = await client.send_transaction(
                signed, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
        except Exception as e:
            logger.error(f"TX_SEND | rejected | {e}")
            return TxResult(TxOutcome.REJECTED, failure_reason=classify_error(str(e)), error_message=str(e))

        if getattr(resp, "value", None) is None:
            return TxResult(TxOutcome.NOT_SENT, failure_reason=TxFailureReason.UNKNOWN, error_message="no signature returned")

        signature = str(resp.value)
        logger.info(f"TX_SENT | sig={signature}")
        return await self._poll_confirmation(signature)

    async def _poll_confirmation(self, signature: str) -> TxResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirm_timeout

        while loop.time() <= deadline:
            status = await self.get_signature_status(signature)
            if status and status["error"]:
                logger.error(f"TX_FAILED | sig={signature} | error={status['error']}")
                return TxResult(
                    TxOutcome.REJECTED,
                    signature=signature,
                    failure_reason=classify_error(status["error"]),
                    error_message=status["error"],
                )
            if status and status["confirmed"]:
                outcome = TxOutcome.FINALIZED if status["finalized"] else TxOutcome.CONFIRMED
                logger.info(f"TX_{outcome.name} | sig={signature}")
                return TxResult(outcome, signature=signature)
            await asyncio.sleep(self.POLL_INTERVAL_SECONDS)

        logger.warning(f"TX_TIMEOUT | sig={signature} | after={self.confirm_timeout}s")
        return TxResult(
            TxOutcome.UNRESOLVED,
            signature=signature,
            failure_reason=TxFailureReason.CONFIRM_TIMEOUT,
            error_message=f"not confirmed within {self.confirm_timeout}s",
        )

    async def _reconcile(
        self,
        result: TxResult,
        output_mint: str,
        min_out_raw: int,
        before: Optional[int],
    ) -> TxResult:
        """Chain state decides a timed-out swap: late status first, then balances."""
        await asyncio.sleep(self.SETTLE_SECONDS)
        signature = result.signature or ""

        status = await self.get_signature_status(signature)
        if status and status["error"]:
            result.outcome = TxOutcome.REJECTED
            result.failure_reason = classify_error(status["error"])
            result.error_message = status["error"]
            logger.info(f"RECONCILE | rejected late | sig={signature}")
            return result
        if status and status["confirmed"]:
            result.outcome = TxOutcome.LANDED
            logger.warning(f"RECONCILE | confirmed late | sig={signature}")
            return result

        after = await self.get_token_balance_raw(output_mint)
        if before is None or after is None:
            logger.error(f"RECONCILE | unresolved | sig={signature} | token balance unreadable")
            return result

        delta = after - before
        result.token_delta_raw = delta
        if delta > 0 and delta >= min_out_raw * (1 - self.LANDED_TOLERANCE):
            result.outcome = TxOutcome.LANDED
            logger.warning(f"RECONCILE | landed by balance | sig={signature} | delta={delta}")
        else:
            result.outcome = TxOutcome.REJECTED
            result.failure_reason = TxFailureReason.NOT_LANDED
            logger.info(f"RECONCILE | not landed | sig={signature} | delta={delta} | expected>={min_out_raw}")
        return result


__all__ = ["SolanaClient", "TxOutcome", "TxFailureReason", "TxResult", "classify_error"]
