"""Startup banner and one-line status for the terminal."""

from __future__ import annotations

from datetime import datetime

from tide.config.engine_config import EngineConfig
from tide.events.models import EngineStatus


class TideUI:
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    WHITE = "\033[97m"
    DIM = "\033[90m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

    WIDTH = 63

    @classmethod
    def _row(cls, label: str, value: str, color: str = "") -> str:
        pad = max(0, cls.WIDTH - len(f"  {label:<13}{value}"))
        return (
            f"  {cls.CYAN}║{cls.WHITE}  {label:<13}{cls.RESET}{color}{value}{cls.RESET}"
            f"{' ' * pad}{cls.CYAN}║{cls.RESET}"
        )

    @classmethod
    def header(cls, cfg: EngineConfig) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        mode_color = cls.RED if cfg.is_live else cls.YELLOW
        bar = "═" * cls.WIDTH

        print(f"\n{cls.CYAN}{cls.BOLD}")
        print(f"  ╔{bar}╗")
        print(f"  ║{cls.BLUE}{'T I D E   L I Q U I D I T Y   E N G I N E':^{cls.WIDTH}}{cls.CYAN}║")
        print(f"  ║{cls.DIM}{'buyback + LP on accumulator threshold':^{cls.WIDTH}}{cls.CYAN}║")
        print(f"  ╠{bar}╣{cls.RESET}")
        print(cls._row("Mode:", cfg.mode.value.upper(), mode_color + cls.BOLD))
        print(cls._row("Time:", now, cls.DIM))
        print(cls._row("Token:", cfg.token_mint))
        print(cls._row("Accumulator:", cfg.accumulator_wallet))
        print(cls._row("LP pair:", cfg.lp_pair or "auto-discover"))
        print(cls._row("Threshold:", f"{cfg.trigger_threshold_sol} SOL"))
        print(cls._row("Split:", f"{cfg.buyback_pct:g}% buyback / {cfg.lp_add_pct:g}% LP"))
        print(cls._row("Cooldown:", f"{cfg.cooldown_seconds:g}s"))
        print(cls._row("Max impact:", f"{cfg.max_slippage_bps} bps"))
        print(cls._row("Poll:", f"{cfg.poll_interval_seconds:g}s"))
        print(f"  {cls.CYAN}╚{bar}╝{cls.RESET}\n")

    @classmethod
    def status_line(cls, status: EngineStatus) -> str:
        fill_color = cls.GREEN if status.fill_percentage >= 100 else cls.YELLOW
        breaker = f"{cls.RED}TRIPPED{cls.RESET}" if status.circuit_breaker_active else f"{cls.GREEN}ok{cls.RESET}"
        return (
            f"{cls.WHITE}{status.accumulator_balance:.4f}/{status.trigger_threshold} SOL{cls.RESET} "
            f"{fill_color}{status.fill_percentage:.1f}%{cls.RESET} {cls.DIM}│{cls.RESET} "
            f"cooldown {status.cooldown_remaining:.0f}s {cls.DIM}│{cls.RESET} breaker {breaker} "
            f"{cls.DIM}│{cls.RESET} cycles {status.cycle_count} {cls.DIM}│{cls.RESET} "
            f"bought {status.total_buybacks:.4f} SOL {cls.DIM}│{cls.RESET} lp {status.total_liquidity_added:.4f} SOL"
        )
