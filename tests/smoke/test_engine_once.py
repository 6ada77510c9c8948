import json

import pytest

from fakes import SIGNER, FakeBalanceOracle, FakeGateway, FakeMarketOracle, make_config
from tide import main as cli
from tide.engines.liquidity_engine import LiquidityEngine
from tide.events import EventFeed, FeedWriter
from tide.utils.console import TideUI


class FakeRuntime:
    """Stands in for EngineRuntime: same engine wiring, no network."""

    def __init__(self, cfg, keypair):
        self.feed = EventFeed()
        FeedWriter(cfg.feed_dir).attach(self.feed)
        self.gateway = FakeGateway()
        self.engine = LiquidityEngine(
            cfg, FakeBalanceOracle(4.0), FakeMarketOracle(), self.gateway, feed=self.feed
        )
        self.closed = False
        FakeRuntime.last = self

    async def close(self):
        self.closed = True


def test_parser_defaults_to_run():
    args = cli.build_parser().parse_args([])
    assert args.command is None

    args = cli.build_parser().parse_args(["run", "--mode", "live", "--once"])
    assert (args.command, args.mode, args.once) == ("run", "live", True)


@pytest.mark.anyio
async def test_single_simulated_cycle_writes_feed(monkeypatch, tmp_path, capsys):
    cfg = make_config(feed_dir=str(tmp_path))
    monkeypatch.setattr(cli, "EngineRuntime", FakeRuntime)

    assert await cli.run_engine(cfg, SIGNER, once=True) == 0

    runtime = FakeRuntime.last
    assert runtime.closed
    assert runtime.gateway.executed == []
    assert runtime.engine.state.cycle_count == 1

    events = [json.loads(line) for line in (tmp_path / "events.jsonl").read_text().splitlines()]
    assert [e["type"] for e in events] == ["buyback", "lp_add"]
    assert all(e["simulated"] for e in events)
    assert events[0]["txSignature"] == "sim-buyback-1"

    status = json.loads((tmp_path / "status.json").read_text())
    assert status["cycleCount"] == 1
    assert status["mode"] == "simulate"
    assert "cycles 1" in capsys.readouterr().out


def test_status_line_for_fresh_engine():
    engine = LiquidityEngine(make_config(), FakeBalanceOracle(), FakeMarketOracle(), FakeGateway())
    status = engine.status()

    line = TideUI.status_line(status)
    assert "ok" in line
    assert "TRIPPED" not in line
