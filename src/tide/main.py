"""
TIDE engine CLI

    tide-engine run [--mode simulate|live] [--once]
    tide-engine status

`run` is the default command. Configuration comes from the environment or .env (.env.example lists
every variable); `--mode` overrides ENGINE_MODE.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Optional, Sequence

from loguru import logger
from solders.keypair import Keypair

from tide.config.engine_config import EngineConfig, load_config_or_exit
from tide.engines.execution.adapters.dexscreener_adapter import DexScreenerAdapter
from tide.engines.execution.adapters.jupiter_adapter import JupiterAdapter, JupiterConfig
from tide.engines.execution.solana_client import SolanaClient
from tide.engines.liquidity_engine import LiquidityEngine
from tide.engines.scheduler import Scheduler
from tide.events import EventFeed, FeedWriter
from tide.utils.console import TideUI
from tide.utils.logging_setup import configure_logging
from tide.utils.shutdown import get_stop_event, install_signal_handlers


class EngineRuntime:
    """Owns the adapters for one process so they can be closed together."""

    def __init__(self, cfg: EngineConfig, keypair: Keypair):
        self.cfg = cfg
        self.solana = SolanaClient(
            cfg.rpc_url,
            keypair,
            rpc_timeout=cfg.rpc_timeout_seconds,
            confirm_timeout=cfg.confirm_timeout_seconds,
        )
        self.market = DexScreenerAdapter(
            base_url=cfg.dexscreener_base_url,
            http_timeout=cfg.http_timeout_seconds,
            graduation_venues=cfg.graduation_venues,
            graduation_market_cap=cfg.graduation_market_cap,
        )
        self.jupiter = JupiterAdapter(
            JupiterConfig(
                base_url=cfg.jupiter_base_url,
                http_timeout=cfg.http_timeout_seconds,
                max_quote_retries=cfg.quote_retries,
            ),
            self.solana,
        )
        self.feed = EventFeed()
        if cfg.feed_dir:
            FeedWriter(cfg.feed_dir).attach(self.feed)
        self.engine = LiquidityEngine(cfg, self.solana, self.market, self.jupiter, feed=self.feed)

    async def close(self) -> None:
        await self.jupiter.close()
        await self.market.close()
        await self.solana.close()


async def run_engine(cfg: EngineConfig, keypair: Keypair, once: bool = False) -> int:
    runtime = EngineRuntime(cfg, keypair)
    engine = runtime.engine
    install_signal_handlers(asyncio.get_running_loop())

    async def poll() -> None:
        await engine.evaluate_cycle()
        print(TideUI.status_line(engine.status()))

    try:
        await engine.startup_check()
        scheduler = Scheduler(
            poll,
            cfg.poll_interval_seconds,
            stop_event=get_stop_event(),
            max_ticks=1 if once else None,
        )
        await scheduler.run()
    finally:
        await runtime.close()
        state = engine.state
        logger.info(
            f"ENGINE_SHUTDOWN | cycles={state.cycle_count} | bought={state.total_buybacks_sol:.4f} SOL | "
            f"lp={state.total_liquidity_sol:.4f} SOL | deferred={state.deferred_liquidity_sol:.4f} SOL"
        )
    return 0


async def show_status(cfg: EngineConfig, keypair: Keypair) -> int:
    runtime = EngineRuntime(cfg, keypair)
    try:
        await runtime.engine.startup_check()
        print(json.dumps(runtime.engine.status().to_dict(), indent=2))
    finally:
        await runtime.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tide-engine",
        description="TIDE liquidity engine - accumulator-triggered buyback + LP",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser_run = subparsers.add_parser("run", help="Run the poll loop (default)")
    parser_run.add_argument("--mode", choices=["simulate", "live"], help="Override ENGINE_MODE")
    parser_run.add_argument("--once", action="store_true", help="Evaluate a single cycle and exit")

    subparsers.add_parser("status", help="Read balance + market status and print a status snapshot")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    cfg, keypair = load_config_or_exit(mode_override=getattr(args, "mode", None))
    configure_logging(cfg.log_level, cfg.log_dir)

    if command == "status":
        return asyncio.run(show_status(cfg, keypair))

    TideUI.header(cfg)
    if cfg.is_live:
        logger.warning("LIVE_MODE | swaps will be signed and submitted on mainnet")
    return asyncio.run(run_engine(cfg, keypair, once=getattr(args, "once", False)))


if __name__ == "__main__":
    raise SystemExit(main())
