"""TIDE liquidity engine: accumulator-triggered buybacks and LP top-ups on Solana."""

__version__ = "0.1.0"
