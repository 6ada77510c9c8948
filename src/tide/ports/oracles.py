from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class MarketStatus:
    on_bonding_curve: bool
    bonding_curve_progress: float
    market_cap: float
    graduated: bool
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None

    def to_log_fields(self) -> str:
        return (
            f"graduated={self.graduated} | progress={self.bonding_curve_progress:.1f}% | "
            f"mcap=${self.market_cap:,.0f} | dex={self.dex_id or '-'}"
        )


@dataclass(frozen=True)
class SwapQuote:
    """
    One fresh quote. Amounts are in smallest units.

    `price_impact_pct` is in percent (0.8 == 0.8%). `raw` is the untouched
    quote payload, which the venue requires back verbatim to build the swap.
    """
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    min_out_amount: int
    price_impact_pct: float
    slippage_bps: int
    route_label: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


class BalanceOraclePort(ABC):
    """Native balance reads. Failures raise TransientOracleError."""

    @abstractmethod
    async def get_sol_balance(self, address: Optional[str] = None) -> float:
        ...


class MarketStatusPort(ABC):
    """Bonding-curve / graduation status. Failures raise TransientOracleError."""

    @abstractmethod
    async def get_market_status(self, token_mint: str) -> MarketStatus:
        ...


class SwapGatewayPort(ABC):
    """Quote and execute swaps.

    get_quote raises QuoteUnavailable; execute_swap raises ExecutionFailed.
    """

    @abstractmethod
    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> SwapQuote:
        ...

    @abstractmethod
    async def execute_swap(self, quote: SwapQuote) -> str:
        ...
