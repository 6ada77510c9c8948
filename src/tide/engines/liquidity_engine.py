"""
TIDE Liquidity Engine

Watches the accumulator wallet and, once it holds the trigger threshold,
buys the token back and tops up liquidity, then cools down.

Core principles:
1. FAIL CLOSED - no market status, no balance, no quote: do nothing this poll.
2. ONE SNAPSHOT - both allocations come from the same balance read.
3. CIRCUIT BREAKER - never swap when quoted price impact exceeds the limit.
4. ABORTS DO NOT MUTATE - only a completed cycle touches runtime state.
5. SINGLE FLIGHT - one cycle at a time, enforced by a lock.

Gate order per cycle (each gate short-circuits):
    market status -> cooldown -> balance -> split -> buyback -> liquidity -> completion
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

from loguru import logger

from tide.config.engine_config import EngineConfig
from tide.config.solana_tokens import SOL, make_token, sol_to_lamports
from tide.errors import ExecutionFailed, QuoteUnavailable, SlippageExceeded, TransientOracleError
from tide.events.event_feed import EventFeed
from tide.events.models import EngineEvent, EngineStatus, EventKind
from tide.ports.oracles import BalanceOraclePort, MarketStatusPort, SwapGatewayPort, SwapQuote

SOLSCAN_TX_URL = "https://solscan.io/tx/"


# =============================================================================
# State
# =============================================================================

class EngineState(Enum):
    """
    Transition rules:
    - IDLE -> ARMED:       all gates passed, allocations computed
    - ARMED -> EXECUTING:  first sub-action starts
    - EXECUTING -> IDLE:   cycle completed or aborted
    """
    IDLE = "idle"
    ARMED = "armed"
    EXECUTING = "executing"


class CycleOutcome(Enum):
    """Why a cycle did (or did not) trade."""
    BONDING_CURVE = "bonding_curve"
    COOLDOWN = "cooldown"
    BELOW_THRESHOLD = "below_threshold"
    ORACLE_ERROR = "oracle_error"
    QUOTE_UNAVAILABLE = "quote_unavailable"
    CIRCUIT_BREAKER = "circuit_breaker"
    EXECUTION_FAILED = "execution_failed"
    COMPLETED = "completed"
    SKIPPED_BUSY = "skipped_busy"


@dataclass
class EngineRuntimeState:
    """
    Mutable engine state. Created fresh per process, never persisted.

    Only a completed cycle writes here (plus first-time pair discovery).
    Totals count intended allocations, not on-chain fills.
    """
    last_trigger_ts: float = 0.0
    last_trigger_tx: str = ""
    total_buybacks_sol: float = 0.0
    total_liquidity_sol: float = 0.0
    cycle_count: int = 0
    discovered_pair: Optional[str] = None
    deferred_liquidity_sol: float = 0.0


@dataclass
class CycleReport:
    outcome: CycleOutcome
    timestamp: float
    details: dict = field(default_factory=dict)
    events: Tuple[EngineEvent, ...] = ()

    def to_log_line(self) -> str:
        ts = datetime.fromtimestamp(self.timestamp, tz=timezone.utc).strftime("%H:%M:%S")
        detail_str = " | ".join(f"{k}={v}" for k, v in self.details.items())
        line = f"CYCLE | {ts} | {self.outcome.value}"
        return f"{line} | {detail_str}" if detail_str else line


# =============================================================================
# Engine
# =============================================================================

class LiquidityEngine:
    """
    Engine controller.

    The three collaborators are ports; production wires SolanaClient,
    DexScreenerAdapter and JupiterAdapter, tests wire fakes.
    """

    def __init__(
        self,
        cfg: EngineConfig,
        balance_oracle: BalanceOraclePort,
        market_oracle: MarketStatusPort,
        gateway: SwapGatewayPort,
        feed: Optional[EventFeed] = None,
        state: Optional[EngineRuntimeState] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.balance_oracle = balance_oracle
        self.market_oracle = market_oracle
        self.gateway = gateway
        self.feed = feed if feed is not None else EventFeed()
        self.state = state if state is not None else EngineRuntimeState()
        self.clock = clock
        self.token = make_token(cfg.token_mint, cfg.token_decimals)

        self.phase = EngineState.IDLE
        self.circuit_breaker_active = False
        self._cycle_lock = asyncio.Lock()
        self._last_balance: Optional[float] = None
        self._balance_samples: Deque[Tuple[float, float]] = deque(maxlen=2)

        logger.info(
            f"ENGINE_INIT | accumulator={cfg.accumulator_wallet} | token={cfg.token_mint} | "
            f"threshold={cfg.trigger_threshold_sol} SOL | split={cfg.buyback_pct:g}/{cfg.lp_add_pct:g} | "
            f"mode={cfg.mode.value}"
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def lp_pair(self) -> Optional[str]:
        return self.cfg.lp_pair or self.state.discovered_pair

    def cooldown_remaining(self, now: Optional[float] = None) -> float:
        if not self.state.last_trigger_ts:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, self.cfg.cooldown_seconds - (now - self.state.last_trigger_ts))

    def fill_percentage(self, balance: float) -> float:
        if self.cfg.trigger_threshold_sol <= 0:
            return 100.0
        return balance / self.cfg.trigger_threshold_sol * 100

    def _next_trigger_estimate(self, now: float) -> Optional[float]:
        """Seconds until a trigger becomes possible, or None if unknown."""
        remaining = self.cooldown_remaining(now)
        if self._last_balance is None:
            return None
        shortfall = self.cfg.trigger_threshold_sol - self._last_balance
        if shortfall <= 0:
            return remaining
        if len(self._balance_samples) < 2:
            return None
        (t0, b0), (t1, b1) = self._balance_samples
        if t1 <= t0 or b1 <= b0:
            return None
        rate = (b1 - b0) / (t1 - t0)
        return max(remaining, shortfall / rate)

    def status(self) -> EngineStatus:
        now = self.clock()
        balance = self._last_balance or 0.0
        return EngineStatus(
            state=self.phase.value,
            mode=self.cfg.mode.value,
            accumulator_balance=balance,
            trigger_threshold=self.cfg.trigger_threshold_sol,
            fill_percentage=min(self.fill_percentage(balance), 100.0),
            cooldown_remaining=math.ceil(self.cooldown_remaining(now)),
            max_slippage_bps=self.cfg.max_slippage_bps,
            circuit_breaker_active=self.circuit_breaker_active,
            last_trigger_time=self.state.last_trigger_ts or None,
            last_trigger_tx=self.state.last_trigger_tx,
            next_trigger_estimate=self._next_trigger_estimate(now),
            total_buybacks=self.state.total_buybacks_sol,
            total_liquidity_added=self.state.total_liquidity_sol,
            total_events_count=len(self.feed),
            cycle_count=self.state.cycle_count,
            deferred_liquidity=self.state.deferred_liquidity_sol,
        )

    async def startup_check(self) -> None:
        """Startup read of balance and market status. Logs only; never trades."""
        try:
            balance = await self.balance_oracle.get_sol_balance(self.cfg.accumulator_wallet)
            self._observe_balance(self.clock(), balance)
            logger.info(
                f"STARTUP_BALANCE | {balance:.4f} SOL | "
                f"fill={self.fill_percentage(balance):.1f}% of {self.cfg.trigger_threshold_sol} SOL"
            )
        except TransientOracleError as e:
            logger.warning(f"STARTUP_BALANCE | unavailable | {e}")

        try:
            market = await self.market_oracle.get_market_status(self.cfg.token_mint)
            logger.info(f"STARTUP_MARKET | {market.to_log_fields()}")
        except TransientOracleError as e:
            logger.warning(f"STARTUP_MARKET | unavailable | {e}")

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def evaluate_cycle(self) -> CycleReport:
        """
        Run one full gate evaluation, executing if every gate passes.

        A call made while another cycle is in flight returns SKIPPED_BUSY
        without touching any state.
        """
        if self._cycle_lock.locked():
            report = CycleReport(CycleOutcome.SKIPPED_BUSY, self.clock())
            logger.debug(report.to_log_line())
            return report

        async with self._cycle_lock:
            try:
                report = await self._run_gates()
            finally:
                self.phase = EngineState.IDLE

            self._log_report(report)
            await self.feed.publish_status(self.status())
            return report

    async def _run_gates(self) -> CycleReport:
        # 1. Market status
        try:
            market = await self.market_oracle.get_market_status(self.cfg.token_mint)
        except TransientOracleError as e:
            return self._report(CycleOutcome.ORACLE_ERROR, source=e.source, error=str(e))

        if not market.graduated:
            return self._report(
                CycleOutcome.BONDING_CURVE,
                progress=f"{market.bonding_curve_progress:.1f}%",
                mcap=f"${market.market_cap:,.0f}",
            )

        if market.pair_address and not self.cfg.lp_pair and not self.state.discovered_pair:
            self.state.discovered_pair = market.pair_address
            logger.success(f"LP_PAIR_DISCOVERED | pair={market.pair_address} | dex={market.dex_id}")

        # 2. Cooldown
        remaining = self.cooldown_remaining()
        if remaining > 0:
            return self._report(CycleOutcome.COOLDOWN, remaining_s=math.ceil(remaining))

        # 3. Balance
        try:
            balance = await self.balance_oracle.get_sol_balance(self.cfg.accumulator_wallet)
        except TransientOracleError as e:
            return self._report(CycleOutcome.ORACLE_ERROR, source=e.source, error=str(e))

        self._observe_balance(self.clock(), balance)
        if balance < self.cfg.trigger_threshold_sol:
            return self._report(
                CycleOutcome.BELOW_THRESHOLD,
                balance=f"{balance:.4f}",
                threshold=self.cfg.trigger_threshold_sol,
                fill=f"{self.fill_percentage(balance):.1f}%",
            )

        # 4. Split from one snapshot
        self.phase = EngineState.ARMED
        buyback_sol = balance * self.cfg.buyback_pct / 100
        liquidity_sol = balance * self.cfg.lp_add_pct / 100
        cycle_no = self.state.cycle_count + 1
        logger.info(
            f"TRIGGER | cycle={cycle_no} | balance={balance:.4f} SOL | "
            f"buyback={buyback_sol:.4f} | liquidity={liquidity_sol:.4f}"
        )

        # 5. Buyback (hard)
        self.phase = EngineState.EXECUTING
        buyback_sig: Optional[str] = None
        buyback_quote: Optional[SwapQuote] = None
        if sol_to_lamports(buyback_sol) > 0:
            try:
                buyback_quote = await self._checked_quote(buyback_sol)
                self.circuit_breaker_active = False
                buyback_sig = await self._submit(buyback_quote, EventKind.BUYBACK, cycle_no)
            except SlippageExceeded as e:
                self.circuit_breaker_active = True
                logger.warning(
                    f"CIRCUIT_BREAKER | impact={e.price_impact_pct:.2f}% > {e.limit_pct:.2f}% | buyback skipped"
                )
                return self._report(
                    CycleOutcome.CIRCUIT_BREAKER,
                    impact=f"{e.price_impact_pct:.2f}%",
                    limit=f"{e.limit_pct:.2f}%",
                )
            except QuoteUnavailable as e:
                return self._report(CycleOutcome.QUOTE_UNAVAILABLE, leg="buyback", error=str(e))
            except ExecutionFailed as e:
                details = dict(leg="buyback", reason=e.reason, sig=e.signature or "-", error=str(e))
                if e.uncertain:
                    logger.error(f"BUYBACK_UNRESOLVED | sig={e.signature} | check the wallet before the next trigger")
                    details["uncertain"] = True
                return self._report(CycleOutcome.EXECUTION_FAILED, **details)

        # 6. Liquidity half-swap (soft)
        lp_half_sol = liquidity_sol / 2
        lp_sig: Optional[str] = None
        lp_quote: Optional[SwapQuote] = None
        if sol_to_lamports(lp_half_sol) > 0:
            try:
                lp_quote = await self._checked_quote(lp_half_sol)
                lp_sig = await self._submit(lp_quote, EventKind.LP_ADD, cycle_no)
                logger.info(
                    f"LP_TOKENS_ACQUIRED | sol_half={lp_half_sol:.4f} | "
                    f"tokens={self.token.to_ui(lp_quote.out_amount):,.2f} | "
                    f"pair={self.lp_pair or 'unknown'} | deposit pending pool integration"
                )
            except (QuoteUnavailable, SlippageExceeded, ExecutionFailed) as e:
                lp_quote = None
                logger.warning(f"LP_ADD_DEFERRED | {type(e).__name__}: {e} | holding {liquidity_sol:.4f} SOL")
            except Exception as e:
                # buyback is already on chain
                lp_sig = None
                lp_quote = None
                logger.exception(f"LP_ADD_DEFERRED | unexpected {type(e).__name__}: {e} | holding {liquidity_sol:.4f} SOL")

        # 7. Completion
        completed_at = self.clock()
        self.state.last_trigger_ts = completed_at
        self.state.last_trigger_tx = buyback_sig or lp_sig or ""
        self.state.cycle_count = cycle_no
        self.state.total_buybacks_sol += buyback_sol if buyback_sig else 0.0
        if lp_sig:
            self.state.total_liquidity_sol += liquidity_sol
        else:
            self.state.deferred_liquidity_sol += liquidity_sol

        events = []
        if buyback_sig and buyback_quote is not None:
            events.append(EngineEvent(
                id=f"evt-{cycle_no}-{EventKind.BUYBACK.value}",
                timestamp=completed_at,
                kind=EventKind.BUYBACK,
                tx_signature=buyback_sig,
                buy_amount_sol=buyback_sol,
                buy_amount_token=self.token.to_ui(buyback_quote.out_amount),
                accumulator_balance_before=balance,
                accumulator_balance_after=balance - buyback_sol,
                simulated=not self.cfg.is_live,
            ))
        if lp_sig and lp_quote is not None:
            events.append(EngineEvent(
                id=f"evt-{cycle_no}-{EventKind.LP_ADD.value}",
                timestamp=completed_at,
                kind=EventKind.LP_ADD,
                tx_signature=lp_sig,
                lp_added_sol=liquidity_sol,
                lp_added_token=self.token.to_ui(lp_quote.out_amount),
                accumulator_balance_before=balance,
                accumulator_balance_after=balance - buyback_sol - lp_half_sol,
                simulated=not self.cfg.is_live,
            ))
        for event in events:
            await self.feed.publish(event)

        return CycleReport(
            outcome=CycleOutcome.COMPLETED,
            timestamp=completed_at,
            details={
                "cycle": cycle_no,
                "buyback": f"{buyback_sol:.4f}" if buyback_sig else "skipped",
                "liquidity": f"{liquidity_sol:.4f}" if lp_sig else "deferred",
                "total_buybacks": f"{self.state.total_buybacks_sol:.4f}",
                "total_liquidity": f"{self.state.total_liquidity_sol:.4f}",
            },
            events=tuple(events),
        )

    # -------------------------------------------------------------------------
    # Sub-actions
    # -------------------------------------------------------------------------

    async def _checked_quote(self, sol_amount: float) -> SwapQuote:
        """Fresh SOL -> token quote; raises SlippageExceeded past the impact limit."""
        quote = await self.gateway.get_quote(
            SOL.mint,
            self.token.mint,
            sol_to_lamports(sol_amount),
            self.cfg.max_slippage_bps,
        )
        limit = self.cfg.max_price_impact_pct
        if not math.isfinite(quote.price_impact_pct) or quote.price_impact_pct > limit:
            raise SlippageExceeded(quote.price_impact_pct, limit)
        return quote

    async def _submit(self, quote: SwapQuote, kind: EventKind, cycle_no: int) -> str:
        """Execute a quoted swap, or fabricate a deterministic signature in simulate mode."""
        if not self.cfg.is_live:
            signature = f"sim-{kind.value}-{cycle_no}"
            logger.info(
                f"[SIMULATE] SWAP | {kind.value} | in={quote.in_amount} lamports | "
                f"out={self.token.to_ui(quote.out_amount):,.2f} | impact={quote.price_impact_pct:.2f}%"
            )
            return signature

        signature = await self.gateway.execute_swap(quote)
        logger.success(f"SWAP_CONFIRMED | {kind.value} | sig={signature} | {SOLSCAN_TX_URL}{signature}")
        return signature

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _observe_balance(self, ts: float, balance: float) -> None:
        self._last_balance = balance
        self._balance_samples.append((ts, balance))

    def _report(self, outcome: CycleOutcome, **details) -> CycleReport:
        return CycleReport(outcome=outcome, timestamp=self.clock(), details=details)

    def _log_report(self, report: CycleReport) -> None:
        line = report.to_log_line()
        if report.outcome is CycleOutcome.COMPLETED:
            logger.success(line)
        elif report.outcome in (
            CycleOutcome.CIRCUIT_BREAKER,
            CycleOutcome.EXECUTION_FAILED,
            CycleOutcome.QUOTE_UNAVAILABLE,
            CycleOutcome.ORACLE_ERROR,
        ):
            logger.warning(line)
        else:
            logger.info(line)


__all__ = [
    "EngineState",
    "CycleOutcome",
    "EngineRuntimeState",
    "CycleReport",
    "LiquidityEngine",
    "SOLSCAN_TX_URL",
]
