"""
Engine configuration (SINGLE SOURCE OF TRUTH)

Core principles:
1. FAIL CLOSED - a missing or malformed value stops the process at boot.
2. NO ENV READS AFTER BOOT - `load_config()` is the only reader of the
   environment; everything else receives the frozen EngineConfig.
3. BASE58 ONLY - the signing key must decode to exactly 64 bytes.
4. SIMULATE BY DEFAULT - live execution must be asked for explicitly.
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

import base58
from dotenv import load_dotenv
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from tide.errors import ConfigurationError

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_JUPITER_URL = "https://quote-api.jup.ag/v6"
DEFAULT_DEXSCREENER_URL = "https://api.dexscreener.com"

_B58_CHARS = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


class ExecutionMode(Enum):
    """SIMULATE replaces every balance-mutating call with a synthetic success."""
    SIMULATE = "simulate"
    LIVE = "live"

    @classmethod
    def parse(cls, raw: str) -> "ExecutionMode":
        value = (raw or "").strip().lower()
        if value in ("simulate", "simulation", "dry-run", "dry_run", "dryrun"):
            return cls.SIMULATE
        if value == "live":
            return cls.LIVE
        raise ConfigurationError(f"ENGINE_MODE must be 'simulate' or 'live', got {raw!r}")


# =============================================================================
# Keypair loading
# =============================================================================

def load_keypair(private_key_b58: str) -> Keypair:
    """
    Decode the engine signing key.

    ACCEPTS: base58 string decoding to exactly 64 bytes.
    REJECTS: everything else, with ConfigurationError.
    NEVER LOGS: the key or its decoded bytes.
    """
    if not private_key_b58 or not isinstance(private_key_b58, str):
        raise ConfigurationError("ENGINE_PRIVATE_KEY is empty or not set")

    private_key_b58 = private_key_b58.strip()
    if not all(c in _B58_CHARS for c in private_key_b58):
        raise ConfigurationError("ENGINE_PRIVATE_KEY contains invalid characters (must be base58)")

    try:
        key_bytes = base58.b58decode(private_key_b58)
    except ValueError as e:
        raise ConfigurationError(f"Failed to decode ENGINE_PRIVATE_KEY as base58: {e}") from e

    if len(key_bytes) != 64:
        raise ConfigurationError(
            f"ENGINE_PRIVATE_KEY decoded to {len(key_bytes)} bytes, expected 64"
        )

    try:
        return Keypair.from_bytes(key_bytes)
    except ValueError as e:
        raise ConfigurationError(f"Failed to create keypair: {e}") from e


# =============================================================================
# Config dataclass
# =============================================================================

@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable config. Built once at boot.

    Percentages are of the accumulator balance observed when the cycle
    triggers; whatever is left over after buyback + LP stays in the wallet.
    """
    wallet_pubkey: str
    token_mint: str
    rpc_url: str = DEFAULT_RPC_URL
    lp_pair: str = ""
    accumulator_wallet: str = ""
    trigger_threshold_sol: float = 2.5
    cooldown_seconds: float = 300.0
    buyback_pct: float = 60.0
    lp_add_pct: float = 40.0
    max_slippage_bps: int = 500
    mode: ExecutionMode = ExecutionMode.SIMULATE
    poll_interval_seconds: float = 15.0

    token_decimals: int = 6
    graduation_market_cap: float = 69_000.0
    graduation_venues: tuple = ("raydium",)
    http_timeout_seconds: float = 10.0
    rpc_timeout_seconds: float = 10.0
    confirm_timeout_seconds: float = 60.0
    quote_retries: int = 3
    jupiter_base_url: str = DEFAULT_JUPITER_URL
    dexscreener_base_url: str = DEFAULT_DEXSCREENER_URL
    feed_dir: str = ""
    log_level: str = "INFO"
    log_dir: str = "logs"

    def __post_init__(self):
        if not self.rpc_url:
            raise ConfigurationError("rpc_url is required")
        if not self.token_mint:
            raise ConfigurationError("TOKEN_MINT is required")
        for name in ("wallet_pubkey", "token_mint"):
            _require_pubkey(name, getattr(self, name))
        if self.lp_pair:
            _require_pubkey("lp_pair", self.lp_pair)
        if self.accumulator_wallet:
            _require_pubkey("accumulator_wallet", self.accumulator_wallet)
        else:
            object.__setattr__(self, "accumulator_wallet", self.wallet_pubkey)

        _require_non_negative("trigger_threshold_sol", self.trigger_threshold_sol)
        _require_non_negative("cooldown_seconds", self.cooldown_seconds)
        for name in ("buyback_pct", "lp_add_pct"):
            value = getattr(self, name)
            _require_non_negative(name, value)
            if value > 100:
                raise ConfigurationError(f"{name} must be <= 100, got {value}")
        if self.buyback_pct + self.lp_add_pct > 100:
            raise ConfigurationError(
                f"buyback_pct + lp_add_pct must be <= 100, got {self.buyback_pct + self.lp_add_pct}"
            )
        if not 0 <= self.max_slippage_bps <= 10_000:
            raise ConfigurationError(f"max_slippage_bps must be in [0, 10000], got {self.max_slippage_bps}")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll interval must be > 0")
        if self.quote_retries < 1:
            raise ConfigurationError("quote_retries must be >= 1")
        if self.graduation_market_cap <= 0:
            raise ConfigurationError("graduation_market_cap must be > 0")
        for name in ("http_timeout_seconds", "rpc_timeout_seconds", "confirm_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")

    @property
    def is_live(self) -> bool:
        return self.mode is ExecutionMode.LIVE

    @property
    def max_price_impact_pct(self) -> float:
        """Circuit-breaker limit: basis points -> percent."""
        return self.max_slippage_bps / 100


def _require_non_negative(name: str, value: float) -> None:
    if not math.isfinite(value) or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative number, got {value}")


def _require_pubkey(name: str, value: str) -> None:
    try:
        Pubkey.from_string(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a valid Solana address: {value!r}") from e


# =============================================================================
# Environment loading
# =============================================================================

def _parse(getenv: Callable[[str, str], str], name: str, default: str, cast: Callable):
    raw = (getenv(name, default) or default).strip()
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} is not a valid {cast.__name__}: {raw!r}") from e


def load_config(
    env: Optional[Mapping[str, str]] = None,
    mode_override: Optional[str] = None,
) -> tuple[EngineConfig, Keypair]:
    """
    THE ONLY FUNCTION THAT READS THE ENVIRONMENT.

    With `env=None` the process environment is used (after loading `.env`);
    tests pass a plain mapping instead.

    Returns: (EngineConfig, Keypair)
    Raises: ConfigurationError on any missing or invalid value.
    """
    if env is None:
        load_dotenv()
        getenv = os.getenv
    else:
        getenv = env.get

    private_key = (getenv("ENGINE_PRIVATE_KEY", "") or "").strip()
    if not private_key:
        raise ConfigurationError("ENGINE_PRIVATE_KEY not set")
    keypair = load_keypair(private_key)

    token_mint = (getenv("TOKEN_MINT", "") or "").strip()
    if not token_mint:
        raise ConfigurationError("TOKEN_MINT not set")

    rpc_url = (getenv("SOLANA_RPC_URL", "") or getenv("SOLANA_RPC", "") or DEFAULT_RPC_URL).strip()
    mode = ExecutionMode.parse(mode_override or getenv("ENGINE_MODE", "simulate") or "simulate")

    venues_raw = getenv("GRADUATION_VENUES", "raydium") or "raydium"
    venues = tuple(v.strip().lower() for v in venues_raw.split(",") if v.strip())

    config = EngineConfig(
        wallet_pubkey=str(keypair.pubkey()),
        token_mint=token_mint,
        rpc_url=rpc_url,
        lp_pair=(getenv("LP_PAIR", "") or "").strip(),
        accumulator_wallet=(getenv("ACCUMULATOR_WALLET", "") or "").strip(),
        trigger_threshold_sol=_parse(getenv, "TRIGGER_THRESHOLD_SOL", "2.5", float),
        cooldown_seconds=_parse(getenv, "COOLDOWN_SECONDS", "300", float),
        buyback_pct=_parse(getenv, "BUYBACK_PCT", "60", float),
        lp_add_pct=_parse(getenv, "LP_ADD_PCT", "40", float),
        max_slippage_bps=_parse(getenv, "MAX_SLIPPAGE_BPS", "500", int),
        mode=mode,
        poll_interval_seconds=_parse(getenv, "POLL_INTERVAL_MS", "15000", int) / 1000,
        token_decimals=_parse(getenv, "TOKEN_DECIMALS", "6", int),
        graduation_market_cap=_parse(getenv, "GRADUATION_MARKET_CAP", "69000", float),
        graduation_venues=venues,
        http_timeout_seconds=_parse(getenv, "HTTP_TIMEOUT", "10", float),
        rpc_timeout_seconds=_parse(getenv, "RPC_TIMEOUT", "10", float),
        confirm_timeout_seconds=_parse(getenv, "CONFIRM_TIMEOUT", "60", float),
        quote_retries=_parse(getenv, "QUOTE_RETRIES", "3", int),
        jupiter_base_url=(getenv("JUPITER_API_URL", "") or DEFAULT_JUPITER_URL).strip().rstrip("/"),
        dexscreener_base_url=(getenv("DEXSCREENER_API_URL", "") or DEFAULT_DEXSCREENER_URL).strip().rstrip("/"),
        feed_dir=(getenv("FEED_DIR", "") or "").strip(),
        log_level=(getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper(),
        log_dir=(getenv("LOG_DIR", "logs") or "logs").strip(),
    )

    return config, keypair


def load_config_or_exit(mode_override: Optional[str] = None) -> tuple[EngineConfig, Keypair]:
    """Boot wrapper: any ConfigurationError prints FATAL and exits with status 1."""
    try:
        return load_config(mode_override=mode_override)
    except ConfigurationError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        sys.exit(1)


__all__ = [
    "ExecutionMode",
    "EngineConfig",
    "load_keypair",
    "load_config",
    "load_config_or_exit",
]
