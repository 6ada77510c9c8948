"""
Solana token metadata shared by the engine, adapters and the status feed.

Only native SOL is fixed here. The traded token is configured at boot
(TOKEN_MINT / TOKEN_DECIMALS) and wrapped with `make_token()`.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SolanaToken:
    symbol: str
    mint: str
    decimals: int

    def to_raw(self, ui_amount: float) -> int:
        """UI amount -> smallest unit (nearest, absorbs float noise like 1.7999999e9)."""
        return int(round(ui_amount * (10 ** self.decimals)))

    def to_ui(self, raw_amount: int) -> float:
        return raw_amount / (10 ** self.decimals)


# Wrapped SOL mint, used by Jupiter for native SOL legs.
SOL = SolanaToken(symbol="SOL", mint="So11111111111111111111111111111111111111112", decimals=9)


def make_token(mint: str, decimals: int, symbol: str = "TIDE") -> SolanaToken:
    if decimals < 0:
        raise ValueError(f"decimals must be >= 0, got {decimals}")
    return SolanaToken(symbol=symbol.upper(), mint=mint, decimals=decimals)


def sol_to_lamports(sol: float) -> int:
    return SOL.to_raw(sol)


def lamports_to_sol(lamports: int) -> float:
    return SOL.to_ui(lamports)


__all__ = [
    "SolanaToken",
    "SOL",
    "make_token",
    "sol_to_lamports",
    "lamports_to_sol",
]
