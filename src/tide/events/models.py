"""Records the engine publishes: per-sub-action events and status snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EventKind(Enum):
    BUYBACK = "buyback"
    LP_ADD = "lp_add"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class EngineEvent:
    """
    One successful sub-action. Append-only; never edited after publish.

    Balances are the accumulator snapshot that triggered the cycle and the
    expected balance once this sub-action's SOL has left the wallet.
    """
    id: str
    timestamp: float
    kind: EventKind
    tx_signature: str
    buy_amount_sol: float = 0.0
    buy_amount_token: float = 0.0
    lp_added_sol: float = 0.0
    lp_added_token: float = 0.0
    accumulator_balance_before: float = 0.0
    accumulator_balance_after: float = 0.0
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """camelCase keys, as read by the dashboard feed."""
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "type": self.kind.value,
            "txSignature": self.tx_signature,
            "buyAmountSOL": self.buy_amount_sol,
            "buyAmountToken": self.buy_amount_token,
            "lpAddedSOL": self.lp_added_sol,
            "lpAddedToken": self.lp_added_token,
            "accumulatorBalanceBefore": self.accumulator_balance_before,
            "accumulatorBalanceAfter": self.accumulator_balance_after,
            "simulated": self.simulated,
        }


@dataclass(frozen=True)
class EngineStatus:
    state: str
    mode: str
    accumulator_balance: float
    trigger_threshold: float
    fill_percentage: float
    cooldown_remaining: float
    max_slippage_bps: int
    circuit_breaker_active: bool
    last_trigger_time: Optional[float]
    last_trigger_tx: str
    next_trigger_estimate: Optional[float]
    total_buybacks: float
    total_liquidity_added: float
    total_events_count: int
    cycle_count: int
    deferred_liquidity: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "mode": self.mode,
            "accumulatorBalance": self.accumulator_balance,
            "triggerThreshold": self.trigger_threshold,
            "fillPercentage": self.fill_percentage,
            "cooldownRemaining": self.cooldown_remaining,
            "maxSlippageBps": self.max_slippage_bps,
            "circuitBreakerActive": self.circuit_breaker_active,
            "lastTriggerTime": _iso(self.last_trigger_time) if self.last_trigger_time else None,
            "lastTriggerTx": self.last_trigger_tx or None,
            "nextTriggerEstimate": self.next_trigger_estimate,
            "totalBuybacks": self.total_buybacks,
            "totalLiquidityAdded": self.total_liquidity_added,
            "totalEventsCount": self.total_events_count,
            "cycleCount": self.cycle_count,
            "deferredLiquidity": self.deferred_liquidity,
        }


__all__ = ["EventKind", "EngineEvent", "EngineStatus"]
