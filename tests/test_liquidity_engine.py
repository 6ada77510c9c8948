from __future__ import annotations

import asyncio
import base64

import httpx
import pytest

from fakes import (
    ACCUMULATOR,
    SIGNER,
    TOKEN_MINT,
    FakeBalanceOracle,
    FakeClock,
    FakeGateway,
    FakeMarketOracle,
    make_config,
)
from tide.config.engine_config import ExecutionMode
from tide.config.solana_tokens import SOL
from tide.engines.execution.adapters.dexscreener_adapter import classify_pairs
from tide.engines.execution.adapters.jupiter_adapter import JupiterAdapter, JupiterConfig
from tide.engines.execution.solana_client import TxOutcome, TxResult
from tide.engines.liquidity_engine import CycleOutcome, EngineRuntimeState, LiquidityEngine
from tide.errors import ExecutionFailed
from tide.events.models import EventKind
from tide.ports.oracles import MarketStatus


def make_engine(balance=3.0, gateway=None, market=None, clock=None, **cfg):
    cfg.setdefault("mode", ExecutionMode.LIVE)
    balance_oracle = FakeBalanceOracle(balance)
    market = market or FakeMarketOracle()
    gateway = gateway or FakeGateway()
    clock = clock or FakeClock()
    engine = LiquidityEngine(make_config(**cfg), balance_oracle, market, gateway, clock=clock)
    return engine, balance_oracle, market, gateway, clock


@pytest.mark.anyio
async def test_full_cycle_buys_back_and_adds_liquidity():
    engine, balance, _, gateway, clock = make_engine(balance=3.0)

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert balance.calls == [ACCUMULATOR]
    # buyback 60% of 3.0, then half of the 40% LP allocation
    assert gateway.quote_calls == [1_800_000_000, 600_000_000]
    assert len(gateway.executed) == 2

    state = engine.state
    assert state.total_buybacks_sol == pytest.approx(1.8)
    assert state.total_liquidity_sol == pytest.approx(1.2)
    assert state.last_trigger_ts == clock.now
    assert state.last_trigger_tx == "live-sig-1"
    assert state.cycle_count == 1
    assert state.deferred_liquidity_sol == 0

    kinds = [e.kind for e in report.events]
    assert kinds == [EventKind.BUYBACK, EventKind.LP_ADD]
    buyback, lp = report.events
    assert buyback.buy_amount_sol == pytest.approx(1.8)
    assert buyback.accumulator_balance_before == pytest.approx(3.0)
    assert buyback.accumulator_balance_after == pytest.approx(1.2)
    assert lp.lp_added_sol == pytest.approx(1.2)
    assert lp.tx_signature == "live-sig-2"
    assert engine.feed.events == report.events


@pytest.mark.anyio
async def test_circuit_breaker_blocks_swap_and_keeps_cooldown_clear():
    engine, _, _, gateway, _ = make_engine(balance=3.0, gateway=FakeGateway(price_impact_pct=7.2))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.CIRCUIT_BREAKER
    assert len(gateway.quote_calls) == 1
    assert gateway.executed == []
    assert engine.state == EngineRuntimeState()
    assert report.events == ()
    assert engine.circuit_breaker_active
    assert engine.status().circuit_breaker_active


@pytest.mark.anyio
async def test_impact_exactly_at_limit_is_allowed():
    engine, _, _, gateway, _ = make_engine(balance=3.0, gateway=FakeGateway(price_impact_pct=5.0))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert not engine.circuit_breaker_active


@pytest.mark.anyio
async def test_below_threshold_reports_fill_and_never_quotes():
    engine, _, _, gateway, _ = make_engine(balance=1.0)

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.BELOW_THRESHOLD
    assert report.details["fill"] == "40.0%"
    assert gateway.quote_calls == []
    assert engine.state == EngineRuntimeState()
    assert engine.status().fill_percentage == pytest.approx(40.0)


@pytest.mark.anyio
async def test_bonding_curve_suppresses_balance_read():
    status = classify_pairs([{"dexId": "pumpfun", "fdv": 34500}])
    engine, balance, _, gateway, _ = make_engine(balance=10.0, market=FakeMarketOracle(status))

    report = await engine.evaluate_cycle()

    assert status.bonding_curve_progress == pytest.approx(50.0)
    assert report.outcome is CycleOutcome.BONDING_CURVE
    assert report.details["progress"] == "50.0%"
    assert balance.calls == []
    assert gateway.quote_calls == []


@pytest.mark.anyio
async def test_cooldown_blocks_until_window_elapses():
    engine, _, _, gateway, clock = make_engine(balance=3.0)
    await engine.evaluate_cycle()
    quotes_after_first = len(gateway.quote_calls)

    clock.advance(100)
    report = await engine.evaluate_cycle()
    assert report.outcome is CycleOutcome.COOLDOWN
    assert report.details["remaining_s"] == 200
    assert len(gateway.quote_calls) == quotes_after_first

    clock.advance(200)
    report = await engine.evaluate_cycle()
    assert report.outcome is CycleOutcome.COMPLETED
    assert engine.state.cycle_count == 2


@pytest.mark.anyio
async def test_buyback_quote_unavailable_aborts_cleanly():
    engine, _, _, gateway, _ = make_engine(gateway=FakeGateway(quote_failures=(1,)))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.QUOTE_UNAVAILABLE
    assert gateway.executed == []
    assert engine.state == EngineRuntimeState()


@pytest.mark.anyio
async def test_buyback_execution_failure_skips_liquidity():
    engine, _, _, gateway, _ = make_engine(gateway=FakeGateway(execute_failures=(1,)))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.EXECUTION_FAILED
    assert report.details["reason"] == "simulation_failed"
    assert len(gateway.quote_calls) == 1
    assert engine.state == EngineRuntimeState()
    assert len(engine.feed) == 0


@pytest.mark.anyio
async def test_liquidity_failure_is_soft():
    engine, _, _, gateway, clock = make_engine(gateway=FakeGateway(quote_failures=(2,)))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert report.details["liquidity"] == "deferred"
    assert [e.kind for e in report.events] == [EventKind.BUYBACK]
    assert engine.state.total_buybacks_sol == pytest.approx(1.8)
    assert engine.state.total_liquidity_sol == 0
    assert engine.state.deferred_liquidity_sol == pytest.approx(1.2)
    assert engine.state.last_trigger_ts == clock.now


@pytest.mark.anyio
async def test_liquidity_leg_over_impact_limit_is_deferred():
    engine, _, _, gateway, _ = make_engine(gateway=FakeGateway(impacts=[0.5, 9.0]))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert len(gateway.executed) == 1
    assert engine.state.deferred_liquidity_sol == pytest.approx(1.2)
    assert not engine.circuit_breaker_active


@pytest.mark.anyio
async def test_simulate_mode_is_deterministic_and_never_executes():
    runs = []
    for _ in range(2):
        engine, _, _, gateway, _ = make_engine(mode=ExecutionMode.SIMULATE)
        report = await engine.evaluate_cycle()
        assert gateway.executed == []
        runs.append((engine.state, [e.tx_signature for e in report.events]))

    assert runs[0] == runs[1]
    state, signatures = runs[0]
    assert signatures == ["sim-buyback-1", "sim-lp_add-1"]
    assert state.total_buybacks_sol == pytest.approx(1.8)
    assert state.total_liquidity_sol == pytest.approx(1.2)


@pytest.mark.anyio
async def test_oracle_errors_are_transient():
    engine, _, market, gateway, _ = make_engine(market=FakeMarketOracle(fail=True))
    report = await engine.evaluate_cycle()
    assert report.outcome is CycleOutcome.ORACLE_ERROR
    assert report.details["source"] == "market"

    market.fail = False
    engine.balance_oracle.fail = True
    report = await engine.evaluate_cycle()
    assert report.outcome is CycleOutcome.ORACLE_ERROR
    assert report.details["source"] == "balance"
    assert gateway.quote_calls == []
    assert engine.state == EngineRuntimeState()


@pytest.mark.anyio
async def test_graduation_pair_is_discovered_once():
    graduated = MarketStatus(
        on_bonding_curve=False,
        bonding_curve_progress=100.0,
        market_cap=90_000.0,
        graduated=True,
        pair_address="PairAddr111",
        dex_id="raydium",
    )
    engine, *_ = make_engine(balance=0.1, market=FakeMarketOracle(graduated))

    await engine.evaluate_cycle()

    assert engine.state.discovered_pair == "PairAddr111"
    assert engine.lp_pair == "PairAddr111"


@pytest.mark.anyio
async def test_overlapping_cycle_is_skipped():
    release = asyncio.Event()

    class SlowGateway(FakeGateway):
        async def get_quote(self, *args, **kwargs):
            await release.wait()
            return await super().get_quote(*args, **kwargs)

    engine, *_ = make_engine(gateway=SlowGateway())
    first = asyncio.create_task(engine.evaluate_cycle())
    while not engine.busy:
        await asyncio.sleep(0)

    skipped = await engine.evaluate_cycle()
    release.set()
    completed = await first

    assert skipped.outcome is CycleOutcome.SKIPPED_BUSY
    assert completed.outcome is CycleOutcome.COMPLETED
    assert engine.state.cycle_count == 1


@pytest.mark.anyio
async def test_status_snapshot_tracks_cooldown_and_estimate():
    engine, balance, _, _, clock = make_engine(balance=1.0)
    await engine.evaluate_cycle()
    clock.advance(60)
    balance.balance = 1.5
    await engine.evaluate_cycle()

    status = engine.status()
    assert status.accumulator_balance == pytest.approx(1.5)
    # 0.5 SOL per minute inflow, 1.0 SOL short
    assert status.next_trigger_estimate == pytest.approx(120.0)
    assert status.cooldown_remaining == 0

    balance.balance = 3.0
    await engine.evaluate_cycle()
    clock.advance(30)
    status = engine.status()
    assert status.cooldown_remaining == 270
    assert status.total_events_count == 2
    assert status.to_dict()["totalBuybacks"] == pytest.approx(1.8)
    assert engine.feed.latest_status is not None


# -----------------------------------------------------------------------------
# Malformed quotes and unexpected failures
# -----------------------------------------------------------------------------

@pytest.mark.anyio
async def test_non_finite_buyback_impact_trips_breaker():
    engine, _, _, gateway, _ = make_engine(gateway=FakeGateway(impacts=[float("nan")]))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.CIRCUIT_BREAKER
    assert gateway.executed == []
    assert engine.state == EngineRuntimeState()
    assert engine.circuit_breaker_active


@pytest.mark.anyio
async def test_non_finite_liquidity_impact_is_deferred():
    engine, _, _, gateway, clock = make_engine(gateway=FakeGateway(impacts=[0.5, float("inf")]))

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert len(gateway.executed) == 1
    assert engine.state.deferred_liquidity_sol == pytest.approx(1.2)
    assert engine.state.last_trigger_ts == clock.now


@pytest.mark.anyio
async def test_unexpected_liquidity_error_still_records_buyback():
    class BrokenLiquidityGateway(FakeGateway):
        async def get_quote(self, *args, **kwargs):
            if self.quote_calls:
                self.quote_calls.append(args[2])
                raise AttributeError("'str' object has no attribute 'get'")
            return await super().get_quote(*args, **kwargs)

    engine, _, _, gateway, clock = make_engine(gateway=BrokenLiquidityGateway())

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert report.details["liquidity"] == "deferred"
    assert len(gateway.executed) == 1
    assert engine.state.last_trigger_ts == clock.now
    assert engine.state.last_trigger_tx == "live-sig-1"
    assert engine.state.cycle_count == 1
    assert engine.state.total_buybacks_sol == pytest.approx(1.8)
    assert engine.state.deferred_liquidity_sol == pytest.approx(1.2)

    # cooldown now holds the next cycle off
    assert (await engine.evaluate_cycle()).outcome is CycleOutcome.COOLDOWN
    assert len(gateway.executed) == 1


@pytest.mark.anyio
async def test_unresolved_buyback_is_reported_uncertain():
    class TimedOutGateway(FakeGateway):
        async def execute_swap(self, quote):
            self.executed.append(quote)
            raise ExecutionFailed(
                "swap unresolved", signature="lostSig", reason="confirm_timeout", uncertain=True
            )

    engine, _, _, gateway, _ = make_engine(gateway=TimedOutGateway())

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.EXECUTION_FAILED
    assert report.details["uncertain"] is True
    assert report.details["sig"] == "lostSig"
    assert len(gateway.quote_calls) == 1
    assert engine.state == EngineRuntimeState()


# -----------------------------------------------------------------------------
# Cycles through the real Jupiter adapter
# -----------------------------------------------------------------------------

GOOD_QUOTE = {
    "inputMint": SOL.mint,
    "outputMint": TOKEN_MINT,
    "inAmount": "1800000000",
    "outAmount": "5400000000",
    "otherAmountThreshold": "5130000000",
    "priceImpactPct": "0.84",
    "slippageBps": 500,
    "routePlan": [{"swapInfo": {"label": "Raydium"}}],
}

BROKEN_QUOTES = [
    pytest.param(dict(GOOD_QUOTE, slippageBps="abc"), id="slippage-not-int"),
    pytest.param(dict(GOOD_QUOTE, routePlan=["hop"]), id="hop-not-object"),
    pytest.param(dict(GOOD_QUOTE, priceImpactPct="NaN"), id="impact-nan"),
]


class _ConfirmingSolana:
    pubkey = str(SIGNER.pubkey())

    def __init__(self):
        self.sent = []

    async def submit_swap(self, tx_bytes, output_mint, min_out_raw):
        self.sent.append(tx_bytes)
        return TxResult(TxOutcome.CONFIRMED, signature=f"chain-sig-{len(self.sent)}")


def _jupiter(quotes):
    swap_body = {"swapTransaction": base64.b64encode(b"unsigned").decode()}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/quote"):
            return httpx.Response(200, json=quotes.pop(0))
        return httpx.Response(200, json=swap_body)

    solana = _ConfirmingSolana()
    adapter = JupiterAdapter(
        JupiterConfig(base_url="https://jup.test/v6", retry_delay_base=0.0),
        solana_client=solana,
        transport=httpx.MockTransport(handler),
    )
    return adapter, solana


@pytest.mark.anyio
@pytest.mark.parametrize("liquidity_quote", BROKEN_QUOTES)
async def test_broken_liquidity_quote_keeps_buyback_and_cooldown(liquidity_quote):
    adapter, solana = _jupiter([GOOD_QUOTE, liquidity_quote])
    engine, _, _, _, clock = make_engine(balance=3.0, gateway=adapter)

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.COMPLETED
    assert report.details["liquidity"] == "deferred"
    assert len(solana.sent) == 1
    assert engine.state.last_trigger_ts == clock.now
    assert engine.state.last_trigger_tx == "chain-sig-1"
    assert engine.state.cycle_count == 1
    assert [e.kind for e in report.events] == [EventKind.BUYBACK]

    clock.advance(60)
    assert (await engine.evaluate_cycle()).outcome is CycleOutcome.COOLDOWN
    assert len(solana.sent) == 1
    await adapter.close()


@pytest.mark.anyio
@pytest.mark.parametrize("buyback_quote", BROKEN_QUOTES)
async def test_broken_buyback_quote_sends_nothing(buyback_quote):
    adapter, solana = _jupiter([buyback_quote])
    engine, *_ = make_engine(balance=3.0, gateway=adapter)

    report = await engine.evaluate_cycle()

    assert report.outcome is CycleOutcome.QUOTE_UNAVAILABLE
    assert report.details["leg"] == "buyback"
    assert solana.sent == []
    assert engine.state == EngineRuntimeState()
    await adapter.close()
