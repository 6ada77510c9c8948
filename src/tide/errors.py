"""
errors.py - Typed failures for the liquidity engine

Classification:
- ConfigurationError:   fatal, raised at boot only (process exits 1)
- CycleAbort family:    the current cycle stops, runtime state untouched
    - QuoteUnavailable    no usable route / quote service down
    - SlippageExceeded    circuit breaker tripped on price impact
    - ExecutionFailed     swap build/sign/send/confirm failed
- TransientOracleError: balance or market read failed, retry next poll
"""

from __future__ import annotations

from typing import Optional


class TideError(Exception):
    """Base class for every engine error."""


class ConfigurationError(TideError):
    """Missing or invalid configuration. Never raised after boot."""


class CycleAbort(TideError):
    """The running cycle must stop without mutating runtime state."""


class QuoteUnavailable(CycleAbort):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SlippageExceeded(CycleAbort):
    """Quoted price impact is above the configured tolerance."""

    def __init__(self, price_impact_pct: float, limit_pct: float):
        super().__init__(
            f"price impact {price_impact_pct:.2f}% exceeds limit {limit_pct:.2f}%"
        )
        self.price_impact_pct = price_impact_pct
        self.limit_pct = limit_pct


class ExecutionFailed(CycleAbort):
    """
    The swap is not known to be on chain.

    `uncertain` is set when it was sent but neither its status nor the
    wallet balance could settle whether it landed.
    """

    def __init__(
        self,
        message: str,
        *,
        signature: Optional[str] = None,
        reason: Optional[str] = None,
        uncertain: bool = False,
    ):
        super().__init__(message)
        self.signature = signature
        self.reason = reason
        self.uncertain = uncertain


class TransientOracleError(TideError):
    """An external read (balance, market status) failed or timed out."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


__all__ = [
    "TideError",
    "ConfigurationError",
    "CycleAbort",
    "QuoteUnavailable",
    "SlippageExceeded",
    "ExecutionFailed",
    "TransientOracleError",
]
