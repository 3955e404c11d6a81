"""Unit tests for the L1 -> L4 -> execution decision pipeline."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable, Sequence

import pytest

from governance import orchestrator as orchestrator_module
from governance.capital_allocator import ALLOCATION_WEIGHT, DISCOVERY_RISK, FULLY_ADAPTIVE, OBSERVATION
from governance.config import EdgeLearningConfig, GovernanceConfig, GovernanceConfigError
from governance.edge_memory import LEARNING, REVERTING, EdgeMemoryEntry
from governance.execution_safety import OrderTelemetry
from governance.indicators import BULLISH
from governance.numeric import deterministic_uuid
from governance.orchestrator import (
    EXECUTE,
    LAYER_ALLOCATION,
    LAYER_DIRECTION,
    LAYER_EXECUTION,
    LAYER_GOVERNANCE,
    LAYER_PROPOSAL,
    REJECT,
    SKIP,
    MetaOrchestrator,
)
from governance.providers import (
    Candle,
    ClosedTrade,
    FixedDirectionProvider,
    MarketContext,
    StaticCandleSource,
    TradeProposal,
)
from governance.regime_classifier import MarketRegimeSnapshot, classify_regime
from governance.store import GovernanceStore, StoreError
from tests.utils.fake_db import FakeGovernanceDB, trending_candles

NOW = datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc)
ENV_KEY = "ny-overlap|expansion|EUR_USD|LONG|forex-macro"

_BASE_SNAPSHOT = classify_regime(trending_candles(120))


def _snapshot(**overrides: Any) -> MarketRegimeSnapshot:
    values: dict[str, Any] = {
        "label": "expansion",
        "strength": 70,
        "volatility_score": 50,
        "vol_acceleration": 45,
        "accel_level": "stable",
        "regime_direction": BULLISH,
        "family_label": "bullish",
        "hold_bars": 5,
        "family_hold_bars": 5,
        "divergent_bars": 0,
        "regime_confirmed": True,
        "regime_family_confirmed": True,
        "regime_diverging": False,
        "regime_early_warning": False,
        "atr": 0.0010,
    }
    values.update(overrides)
    return replace(_BASE_SNAPSHOT, **values)


class _RecordingDirection:
    def __init__(self, answer: str = "LONG") -> None:
        self.answer = answer
        self.calls: list[tuple[str, dict[str, object]]] = []

    def direction_for(self, proposal: TradeProposal, context: dict[str, object]) -> str:
        self.calls.append((proposal.proposal_id, dict(context)))
        return self.answer


class _OfflineDirection:
    def direction_for(self, proposal: TradeProposal, context: dict[str, object]) -> str:
        raise RuntimeError("engine offline")


class _BrokenCandles:
    def fetch_candles(self, instrument: str, granularity: str, count: int) -> Sequence[Candle]:
        raise ConnectionError("broker down")


def _proposal(proposal_id: str = "p-1", symbol: str = "EUR_USD", agent_id: str = "forex-macro", **extra: Any) -> TradeProposal:
    extra.setdefault("expected_move_pips", 50.0)
    return TradeProposal(
        proposal_id=proposal_id,
        symbol=symbol,
        direction="LONG",
        agent_id=agent_id,
        timestamp=NOW,
        **extra,
    )


def _market(**overrides: Any) -> MarketContext:
    values: dict[str, Any] = {"spread_pips": 0.5, "spread_history": (0.5,) * 10, "slippage_pips": 0.2}
    values.update(overrides)
    return MarketContext(**values)


def _source(count: int = 120) -> StaticCandleSource:
    return StaticCandleSource({"EUR_USD": trending_candles(count), "GBP_JPY": trending_candles(70)})


def _orchestrator(
    direction: Any = None,
    *,
    source: Any = None,
    store: GovernanceStore | None = None,
    config: GovernanceConfig | None = None,
) -> MetaOrchestrator:
    return MetaOrchestrator(
        source or _source(),
        direction or FixedDirectionProvider("LONG"),
        config=config,
        store=store,
    )


@pytest.fixture
def regime(monkeypatch: pytest.MonkeyPatch) -> Callable[..., None]:
    current = {"snapshot": _snapshot()}
    monkeypatch.setattr(orchestrator_module, "classify_regime", lambda candles: current["snapshot"])

    def _set(**overrides: Any) -> None:
        current["snapshot"] = _snapshot(**overrides)

    return _set


def test_edge_environment_executes_at_capped_size(regime: Callable[..., None]) -> None:
    direction = _RecordingDirection()
    orchestrator = _orchestrator(direction)

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.executed
    assert decision.decided_layer == LAYER_EXECUTION
    assert decision.position_multiplier == 1.75
    assert decision.environment_key == ENV_KEY
    assert decision.direction == "LONG"
    assert decision.governance is not None and decision.governance.approved
    assert decision.discovery is not None and decision.discovery.risk_label == "EDGE_BOOST"
    assert decision.agent is not None and decision.agent.capital_multiplier == 1.35
    assert decision.explain is not None
    assert decision.explain.risk_label == "EDGE_BOOST"
    assert decision.explain.top_reasons == ("Matched rule: NY Overlap + Expansion + Long",)
    assert decision.execution_gate is not None and decision.execution_gate.result == "PASS"
    assert direction.calls[0][1]["governance_decision"] == "approved"
    assert direction.calls[0][1]["session"] == "ny-overlap"
    assert len(orchestrator.state.decisions) == 1
    assert len(orchestrator.state.discovery_log) == 1
    json.dumps(decision.as_dict())


def test_short_candle_history_skips_at_proposal_layer() -> None:
    direction = _RecordingDirection()
    decision = _orchestrator(direction, source=_source(30)).evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == SKIP
    assert decision.decided_layer == LAYER_PROPOSAL
    assert decision.reasons == ("Insufficient candle history: 30 < 60 bars",)
    assert direction.calls == []


def test_candle_source_failure_skips() -> None:
    decision = _orchestrator(source=_BrokenCandles()).evaluate(_proposal(), _market(), now=NOW)
    assert decision.status == SKIP
    assert decision.decided_layer == LAYER_PROPOSAL
    assert decision.reasons == ("Candle source unavailable: broker down",)


def test_explicit_candles_bypass_source(regime: Callable[..., None]) -> None:
    decision = _orchestrator(source=_BrokenCandles()).evaluate(
        _proposal(), _market(), candles=trending_candles(120), now=NOW
    )
    assert decision.status == EXECUTE


def test_governance_rejection_never_consults_direction(regime: Callable[..., None]) -> None:
    regime(regime_diverging=True, divergent_bars=3)
    direction = _RecordingDirection()
    market = _market(htf_supports=False, mtf_confirms=False, ltf_clean=False)

    decision = _orchestrator(direction).evaluate(_proposal(), market, now=NOW)

    assert decision.status == REJECT
    assert decision.decided_layer == LAYER_GOVERNANCE
    assert "MTF alignment 0% without HTF support" in decision.reasons
    assert "Regime diverging (3 of 5 bars off-family)" in decision.reasons
    assert direction.calls == []
    assert decision.position_multiplier == 0.0


def test_neutral_direction_skips(regime: Callable[..., None]) -> None:
    decision = _orchestrator(FixedDirectionProvider()).evaluate(_proposal(), _market(), now=NOW)
    assert decision.status == SKIP
    assert decision.decided_layer == LAYER_DIRECTION
    assert decision.direction == "NEUTRAL"
    assert decision.reasons[-1] == "Direction provider returned NEUTRAL"


def test_direction_provider_failure_skips(regime: Callable[..., None]) -> None:
    decision = _orchestrator(_OfflineDirection()).evaluate(_proposal(), _market(), now=NOW)
    assert decision.status == SKIP
    assert decision.decided_layer == LAYER_DIRECTION
    assert decision.reasons[-1] == "Direction provider unavailable: engine offline"


def test_destructive_environment_is_rejected(regime: Callable[..., None]) -> None:
    decision = _orchestrator().evaluate(_proposal(agent_id="sentiment-reactor"), _market(), now=NOW)
    assert decision.status == REJECT
    assert decision.decided_layer == LAYER_ALLOCATION
    assert "Discovery risk blocked: Agent: sentiment-reactor" in decision.reasons
    assert decision.position_multiplier == 0.0
    assert decision.explain is not None and decision.explain.risk_label == "BLOCKED"


def test_blocked_agent_rejected_even_without_discovery_risk(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.update_discovery_config(enabled=False)

    blocked = orchestrator.evaluate(_proposal(agent_id="sentiment-reactor"), _market(), now=NOW)
    normal = orchestrator.evaluate(_proposal("p-2"), _market(), now=NOW)

    assert blocked.status == REJECT
    assert blocked.decided_layer == LAYER_ALLOCATION
    assert blocked.reasons[-1].startswith("Agent sentiment-reactor blocked")
    assert normal.status == EXECUTE
    assert normal.position_multiplier == 1.35
    assert normal.explain is not None and normal.explain.risk_label == "NORMAL"


def test_kill_switch_forces_baseline(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.set_adaptive_edge(False)

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.position_multiplier == 1.0
    assert decision.explain is not None and decision.explain.risk_label == "KILL_SWITCH"
    assert "Adaptive edge inactive: baseline 1.0x" in decision.reasons
    assert decision.discovery is None
    assert len(orchestrator.state.discovery_log) == 0


def test_force_baseline_expires(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.force_baseline(NOW + timedelta(hours=1))

    during = orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)
    after = orchestrator.evaluate(_proposal("p-2"), _market(), now=NOW + timedelta(hours=2))

    assert during.position_multiplier == 1.0
    assert during.explain is not None and during.explain.risk_label == "KILL_SWITCH"
    assert after.position_multiplier == 1.75
    assert orchestrator.status(now=NOW + timedelta(hours=2)).adaptive_edge_active


def test_reverted_environment_uses_baseline(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.state.edge_memory.entries[ENV_KEY] = EdgeMemoryEntry(ENV_KEY, trade_count=40, learning_state=REVERTING)

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.position_multiplier == 1.0
    assert decision.explain is not None
    assert decision.explain.risk_label == "REVERTED"
    assert decision.explain.learning_state == REVERTING
    assert decision.explain.sample_size == 40


def test_allocation_history_tracks_multiplier(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    entry = EdgeMemoryEntry(ENV_KEY)
    orchestrator.state.edge_memory.entries[ENV_KEY] = entry

    orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert entry.allocation_history == [1.0, 1.75]


def test_throttled_governance_halves_size(regime: Callable[..., None]) -> None:
    history = [
        ClosedTrade("USD_CAD", "LONG", "carry-flow", 1.0 if idx % 2 == 0 else -1.0, NOW - timedelta(minutes=idx + 1))
        for idx in range(10)
    ]

    decision = _orchestrator().evaluate(_proposal(), _market(), trade_history=history, now=NOW)

    assert decision.governance is not None and decision.governance.decision == "throttled"
    assert decision.status == EXECUTE
    assert decision.position_multiplier == 0.875
    assert decision.reasons == ("Anti-overtrading governor active",)


def test_execution_friction_gate_rejects(regime: Callable[..., None]) -> None:
    decision = _orchestrator().evaluate(_proposal(expected_move_pips=1.0), _market(), now=NOW)
    assert decision.status == REJECT
    assert decision.decided_layer == LAYER_EXECUTION
    assert decision.execution_gate is not None and decision.execution_gate.result == "REJECT"
    assert decision.reasons[-1].startswith("Friction ratio")


def _fill(slippage: float, quality: float) -> OrderTelemetry:
    return OrderTelemetry(
        status="filled",
        currency_pair="EUR_USD",
        entry_price=1.1,
        slippage_pips=slippage,
        fill_latency_ms=120.0,
        execution_quality_score=quality,
        spread_at_entry=0.6,
    )


def test_execution_kill_switch_rejects(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orders = (
        [_fill(0.1, 30.0)] * 10
        + [_fill(1.0, 30.0)] * 5
        + [OrderTelemetry(status="rejected", currency_pair="EUR_USD")] * 5
    )
    health = orchestrator.update_execution_health(orders)

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert health.kill_switch_active
    assert decision.status == REJECT
    assert decision.decided_layer == LAYER_EXECUTION
    assert decision.reasons[-1] == "Execution kill switch active"
    status = orchestrator.status(now=NOW)
    assert status.execution_kill_switch
    assert status.execution_protection_level == "critical"


def test_execution_protection_scales_density(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.update_execution_health(
        [_fill(0.1, 80.0)] * 3 + [OrderTelemetry(status="rejected", currency_pair="EUR_USD")]
    )

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.position_multiplier == 0.875


def test_batch_isolates_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    snapshot = _snapshot()

    def _classify(candles: Sequence[Candle]) -> MarketRegimeSnapshot:
        if len(candles) == 70:
            raise ValueError("boom")
        return snapshot

    monkeypatch.setattr(orchestrator_module, "classify_regime", _classify)
    orchestrator = _orchestrator()

    decisions = orchestrator.evaluate_batch(
        [(_proposal("bad", symbol="GBP_JPY"), _market()), (_proposal("good"), _market())], now=NOW
    )

    assert [decision.status for decision in decisions] == [SKIP, EXECUTE]
    assert decisions[0].reasons == ("Regime classification failed: boom",)
    assert decisions[0].decided_layer == LAYER_PROPOSAL
    assert orchestrator.status(now=NOW).decisions_logged == 2


def test_decision_log_is_bounded() -> None:
    orchestrator = _orchestrator(source=_source(10))
    for idx in range(2005):
        orchestrator.evaluate(_proposal(f"p-{idx}"), _market(), now=NOW)
    assert len(orchestrator.state.decisions) == 2000
    assert orchestrator.state.decisions.snapshot()[0].proposal_id == "p-5"


def test_reversion_log_is_bounded() -> None:
    orchestrator = _orchestrator()
    for idx in range(105):
        orchestrator.trigger_reversion(f"env-{idx}", "manual", now=NOW)
    log = orchestrator.reversion_log()
    assert len(log) == 100
    assert log[0].environment_signature == "env-5"
    assert all(entry.new_allocation == 1.0 for entry in log)


def test_drift_scan_reverts_critical_environments() -> None:
    orchestrator = _orchestrator()
    entry = EdgeMemoryEntry(
        "env", trade_count=25, expectancy=1.0, edge_confidence=0.4, expectancy_history=[5.0, 4.0, 3.0, 2.0, 1.0]
    )
    entry.allocation_history.append(1.35)
    orchestrator.state.edge_memory.entries["env"] = entry

    scan = orchestrator.run_drift_scan(now=NOW)

    assert orchestrator.active_alerts() == scan.alerts
    assert entry.learning_state == REVERTING
    reversions = orchestrator.reversion_log()
    assert len(reversions) == 1
    assert reversions[0].previous_confidence == 0.4
    assert reversions[0].previous_allocation == 1.35
    assert reversions[0].reason == "Expectancy slope -1.000 indicates declining edge"

    orchestrator.run_drift_scan(now=NOW)
    assert len(orchestrator.reversion_log()) == 1

    orchestrator.state.edge_memory.entries.clear()
    orchestrator.run_drift_scan(now=NOW)
    assert orchestrator.active_alerts() == ()


def test_drift_scan_without_auto_revert() -> None:
    orchestrator = _orchestrator()
    orchestrator.state.edge_memory.entries["env"] = EdgeMemoryEntry(
        "env", trade_count=25, expectancy=1.0, expectancy_history=[5.0, 4.0, 3.0, 2.0, 1.0]
    )
    scan = orchestrator.run_drift_scan(now=NOW, auto_revert=False)
    assert scan.critical_alerts
    assert orchestrator.reversion_log() == []


def test_decisions_are_audited(regime: Callable[..., None], fake_store: GovernanceStore, fake_db: FakeGovernanceDB) -> None:
    orchestrator = _orchestrator(store=fake_store)

    orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)
    neutral = _orchestrator(FixedDirectionProvider(), store=fake_store)
    neutral.evaluate(_proposal("p-2"), _market(), now=NOW)

    rows = fake_db.rows["governance_decision"]
    assert rows[0]["decision_id"] == deterministic_uuid("decision", "p-1", NOW)
    assert rows[0]["status"] == EXECUTE
    assert rows[0]["direction"] == "LONG"
    assert rows[0]["risk_label"] == "EDGE_BOOST"
    assert json.loads(rows[0]["reasons"]) == []
    assert rows[1]["status"] == SKIP
    assert rows[1]["direction"] is None
    assert json.loads(rows[1]["reasons"]) == ["Direction provider returned NEUTRAL"]


def test_audit_failure_downgrades_execute(regime: Callable[..., None]) -> None:
    store = GovernanceStore(FakeGovernanceDB(fail_on="INSERT INTO governance_decision"))
    orchestrator = _orchestrator(store=store)

    executed = orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)
    skipped = _orchestrator(source=_source(10), store=store).evaluate(_proposal("p-2"), _market(), now=NOW)

    assert executed.status == SKIP
    assert executed.position_multiplier == 0.0
    assert executed.reasons[-1].startswith("Decision audit write failed")
    assert skipped.reasons == ("Insufficient candle history: 10 < 60 bars",)
    assert orchestrator.state.decisions.snapshot()[-1].status == SKIP


def test_closed_trades_and_reversions_are_persisted(fake_store: GovernanceStore, fake_db: FakeGovernanceDB) -> None:
    orchestrator = _orchestrator(store=fake_store)
    trade = ClosedTrade("EUR_USD", "LONG", "forex-macro", 3.0, NOW, session="ny-overlap", regime="expansion")

    touched = orchestrator.record_closed_trades([trade], now=NOW)
    orchestrator.trigger_reversion(ENV_KEY, "manual", now=NOW)

    assert touched == [ENV_KEY]
    assert fake_db.rows["closed_trade"][0]["pnl_pips"] == 3.0
    reversion = fake_db.rows["edge_reversion"][0]
    assert reversion["environment_signature"] == ENV_KEY
    assert reversion["new_allocation"] == 1.0
    assert orchestrator.record_closed_trades([]) == []


def test_trade_outcome_feeds_discovery_stats(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)

    orchestrator.record_trade_outcome(
        "p-1",
        ClosedTrade("EUR_USD", "LONG", "forex-macro", 3.0, NOW, session="ny-overlap", regime="expansion"),
        now=NOW,
    )

    status = orchestrator.status(now=NOW)
    assert status.discovery_stats.pnl_by_risk_label["EDGE_BOOST"] == 3.0
    assert status.discovery_stats.edge_candidate_win_rate == 1.0
    assert status.edge_learning.total_environments == 1
    assert status.edge_learning.total_trades_processed == 1


def test_state_round_trip_through_store(fake_store: GovernanceStore) -> None:
    source = _orchestrator(store=fake_store)
    source.record_closed_trades(
        [ClosedTrade("EUR_USD", "LONG", "forex-macro", 3.0, NOW, session="ny-overlap", regime="expansion")], now=NOW
    )
    source.set_adaptive_edge(False)
    source.force_baseline(NOW + timedelta(hours=1))
    source.set_deployment_mode("FULLY_ADAPTIVE")
    source.update_shadow_validation(150, 3.0, 2.0, 5.0, 10.0, 0.02)
    source.state.last_allocations[ENV_KEY] = 1.65
    source.save_state(now=NOW)

    restored = _orchestrator(store=fake_store)
    assert restored.load_state()

    assert restored.state.edge_memory.entries == source.state.edge_memory.entries
    assert not restored.state.adaptive_edge_enabled
    assert restored.state.force_baseline_until == NOW + timedelta(hours=1)
    assert restored.config.learning.deployment_mode == "FULLY_ADAPTIVE"
    assert restored.state.shadow_validation == source.state.shadow_validation
    assert restored.state.shadow_validated
    assert restored.state.last_allocations == {ENV_KEY: 1.65}


def test_load_state_edge_cases(fake_store: GovernanceStore, fake_db: FakeGovernanceDB) -> None:
    assert not _orchestrator(store=fake_store).load_state()

    fake_db.state[("edge_memory", "snapshot")] = json.dumps({"snapshot": "{"})
    with pytest.raises(StoreError, match="Stored edge memory is invalid"):
        _orchestrator(store=fake_store).load_state()

    with pytest.raises(StoreError, match="No governance store"):
        _orchestrator().save_state()

    fake_db.state[("adaptive_edge", "state")] = json.dumps({"enabled": True, "shadow_validation": {"bogus": 1}})
    fake_db.state.pop(("edge_memory", "snapshot"))
    with pytest.raises(StoreError, match="Stored shadow validation is invalid"):
        _orchestrator(store=fake_store).load_state()


def test_status_and_configuration_controls() -> None:
    orchestrator = _orchestrator()

    status = orchestrator.status(now=NOW)
    assert list(status.layers) == [LAYER_PROPOSAL, LAYER_GOVERNANCE, LAYER_DIRECTION, LAYER_ALLOCATION, LAYER_EXECUTION]
    assert status.deployment_mode == "SHADOW_LEARNING"
    assert status.adaptive_edge_active
    assert status.execution_protection_level == "normal"
    assert status.drift.environments_monitored == 0

    orchestrator.update_drift_config(min_trades_for_drift_check=5)
    assert orchestrator.config.drift.min_trades_for_drift_check == 5

    with pytest.raises(GovernanceConfigError):
        orchestrator.set_deployment_mode("YOLO")
    with pytest.raises(GovernanceConfigError):
        orchestrator.update_discovery_config(bogus=1)
    with pytest.raises(GovernanceConfigError):
        orchestrator.update_drift_config(bogus=1)


def _weighted_entry() -> EdgeMemoryEntry:
    return EdgeMemoryEntry(ENV_KEY, trade_count=150, edge_confidence=0.8, sharpe_stability=2.0)


def test_observation_mode_trades_at_baseline(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.set_deployment_mode(OBSERVATION)
    orchestrator.state.edge_memory.entries[ENV_KEY] = _weighted_entry()

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)
    blocked = orchestrator.evaluate(_proposal("p-2", agent_id="sentiment-reactor"), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.position_multiplier == 1.0
    assert "Observation mode: baseline 1.0x" in decision.reasons
    assert decision.allocation is not None and decision.allocation.baseline_multiplier == 1.75
    assert decision.as_dict()["deployment_mode"] == OBSERVATION
    assert blocked.status == REJECT


def test_discovery_and_shadow_modes_keep_discovery_sizing(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.state.edge_memory.entries[ENV_KEY] = _weighted_entry()
    orchestrator.update_shadow_validation(150, 3.0, 2.0, 5.0, 10.0, 0.02)

    shadow = orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)
    orchestrator.set_deployment_mode(DISCOVERY_RISK)
    discovery = orchestrator.evaluate(_proposal("p-2"), _market(), now=NOW)

    assert shadow.position_multiplier == 1.75
    assert shadow.allocation is not None
    assert shadow.allocation.edge_confidence == 0.8
    assert not shadow.allocation.weighted
    assert discovery.position_multiplier == 1.75
    assert orchestrator.state.last_allocations == {}


def test_adaptive_mode_waits_for_shadow_validation(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.set_deployment_mode(FULLY_ADAPTIVE)
    orchestrator.state.edge_memory.entries[ENV_KEY] = _weighted_entry()

    failed = orchestrator.update_shadow_validation(40, 1.0, 2.0, 5.0, 10.0, 0.0)
    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)

    assert not failed.validated
    assert decision.position_multiplier == 1.75
    assert "Shadow validation pending: discovery sizing" in decision.reasons
    assert not orchestrator.status(now=NOW).shadow_validated


def test_allocation_weight_mode_applies_velocity_capped_weight(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.set_deployment_mode(ALLOCATION_WEIGHT)
    entry = _weighted_entry()
    orchestrator.state.edge_memory.entries[ENV_KEY] = entry
    orchestrator.update_shadow_validation(150, 3.0, 2.0, 5.0, 10.0, 0.02)

    first = orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)
    second = orchestrator.evaluate(_proposal("p-2"), _market(), now=NOW)

    assert first.status == EXECUTE
    assert first.position_multiplier == 1.65
    assert "Adaptive weight 1.65x, velocity capped" in first.reasons
    assert first.allocation is not None and first.allocation.weighted
    assert second.position_multiplier == 1.55
    assert entry.allocation_history == [1.0, 1.65, 1.55]
    assert orchestrator.state.last_allocations == {ENV_KEY: 1.55}
    status = orchestrator.status(now=NOW)
    assert status.shadow_validated
    assert status.shadow_validation is not None and status.shadow_validation.expectancy_ratio == 1.5


def test_counter_trend_direction_is_tracked_as_exhaustion(regime: Callable[..., None]) -> None:
    decision = _orchestrator(FixedDirectionProvider("SHORT")).evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.environment_key == "ny-overlap|exhaustion|EUR_USD|SHORT|forex-macro"
    assert decision.discovery is not None and decision.discovery.risk_label == "REDUCED"
    assert decision.position_multiplier == 0.7425


def test_real_classifier_reaches_execute() -> None:
    decision = _orchestrator().evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == EXECUTE
    assert decision.regime is not None and decision.regime.regime_confirmed
    assert decision.position_multiplier > 0


def test_regime_classification_failure_skips(monkeypatch: pytest.MonkeyPatch) -> None:
    def _classify(candles: Sequence[Candle]) -> MarketRegimeSnapshot:
        raise ValueError("bad candles")

    monkeypatch.setattr(orchestrator_module, "classify_regime", _classify)

    decision = _orchestrator().evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == SKIP
    assert decision.decided_layer == LAYER_PROPOSAL
    assert decision.reasons == ("Regime classification failed: bad candles",)


def test_governance_context_failure_skips(regime: Callable[..., None], monkeypatch: pytest.MonkeyPatch) -> None:
    def _context(*args: Any) -> Any:
        raise TypeError("stale history")

    monkeypatch.setattr(orchestrator_module, "build_governance_context", _context)
    direction = _RecordingDirection()

    decision = _orchestrator(direction).evaluate(_proposal(), _market(), now=NOW)

    assert decision.status == SKIP
    assert decision.decided_layer == LAYER_GOVERNANCE
    assert decision.reasons == ("Governance context unavailable: stale history",)
    assert decision.regime is not None
    assert direction.calls == []


def test_naive_timestamps_are_treated_as_utc(regime: Callable[..., None]) -> None:
    history = [ClosedTrade("EUR_USD", "LONG", "forex-macro", 2.0, datetime(2026, 3, 2, 12, 50))]

    decision = _orchestrator().evaluate(_proposal(), _market(), trade_history=history, now=datetime(2026, 3, 2, 13, 0))

    assert history[0].closed_at.tzinfo is timezone.utc
    assert decision.decided_at == NOW
    assert decision.governance is not None
    assert decision.decided_layer != LAYER_PROPOSAL


def test_replayed_decision_is_audited_once(
    regime: Callable[..., None], fake_store: GovernanceStore, fake_db: FakeGovernanceDB
) -> None:
    orchestrator = _orchestrator(store=fake_store)

    first = orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)
    replay = orchestrator.evaluate(_proposal("p-1"), _market(), now=NOW)

    assert first.status == EXECUTE
    assert replay.status == EXECUTE
    assert len(fake_db.rows["governance_decision"]) == 1


def test_replayed_closed_trades_are_learned_once(fake_store: GovernanceStore, fake_db: FakeGovernanceDB) -> None:
    orchestrator = _orchestrator(store=fake_store)
    trade = ClosedTrade("EUR_USD", "LONG", "forex-macro", 3.0, NOW, session="ny-overlap", regime="expansion")

    assert orchestrator.record_closed_trades([trade], now=NOW) == [ENV_KEY]
    assert orchestrator.record_closed_trades([trade], now=NOW) == []

    entry = orchestrator.state.edge_memory.get(ENV_KEY)
    assert entry is not None and entry.trade_count == 1
    assert orchestrator.state.edge_memory.total_trades_processed == 1
    assert len(fake_db.rows["closed_trade"]) == 1


def test_failed_reversion_write_leaves_entry_untouched() -> None:
    store = GovernanceStore(FakeGovernanceDB(fail_on="INSERT INTO edge_reversion"))
    orchestrator = _orchestrator(store=store)
    entry = EdgeMemoryEntry(ENV_KEY, trade_count=40)
    orchestrator.state.edge_memory.entries[ENV_KEY] = entry

    with pytest.raises(StoreError, match="Failed to insert into edge_reversion"):
        orchestrator.trigger_reversion(ENV_KEY, "manual", now=NOW)

    assert entry.learning_state == LEARNING
    assert entry.allocation_history == [1.0]
    assert orchestrator.reversion_log() == []


def test_replayed_reversion_is_logged_once(fake_store: GovernanceStore, fake_db: FakeGovernanceDB) -> None:
    orchestrator = _orchestrator(store=fake_store)
    orchestrator.state.edge_memory.entries[ENV_KEY] = EdgeMemoryEntry(ENV_KEY, trade_count=40)

    orchestrator.trigger_reversion(ENV_KEY, "manual", now=NOW)
    orchestrator.trigger_reversion(ENV_KEY, "manual", now=NOW)

    assert len(orchestrator.reversion_log()) == 1
    assert len(fake_db.rows["edge_reversion"]) == 1


def test_status_leaves_stored_alerts_alone() -> None:
    orchestrator = _orchestrator()
    orchestrator.state.edge_memory.entries["env"] = EdgeMemoryEntry(
        "env", trade_count=25, expectancy=1.0, expectancy_history=[5.0, 4.0, 3.0, 2.0, 1.0]
    )
    scan = orchestrator.run_drift_scan(now=NOW, auto_revert=False)
    orchestrator.state.edge_memory.entries.clear()

    status = orchestrator.status(now=NOW)

    assert status.drift.alerts == ()
    assert orchestrator.active_alerts() == scan.alerts
    assert scan.alerts


def test_reverted_environment_can_be_cleared(regime: Callable[..., None]) -> None:
    orchestrator = _orchestrator()
    orchestrator.state.edge_memory.entries[ENV_KEY] = EdgeMemoryEntry(ENV_KEY, trade_count=40, learning_state=REVERTING)

    assert orchestrator.clear_reversion(ENV_KEY, now=NOW)
    assert not orchestrator.clear_reversion(ENV_KEY, now=NOW)
    assert not orchestrator.clear_reversion("missing", now=NOW)

    decision = orchestrator.evaluate(_proposal(), _market(), now=NOW)
    assert decision.position_multiplier == 1.75
    assert decision.explain is not None and decision.explain.learning_state == LEARNING


def test_recalculation_checkpoint_runs_drift_scan() -> None:
    config = GovernanceConfig(learning=EdgeLearningConfig(recalc_interval=2))
    orchestrator = _orchestrator(config=config)
    drifting = EdgeMemoryEntry("env", trade_count=25, expectancy=1.0, expectancy_history=[5.0, 4.0, 3.0, 2.0, 1.0])
    orchestrator.state.edge_memory.entries["env"] = drifting
    trade = ClosedTrade("EUR_USD", "LONG", "forex-macro", 3.0, NOW, session="ny-overlap", regime="expansion")

    orchestrator.record_closed_trades([trade], now=NOW)
    assert drifting.learning_state == LEARNING

    orchestrator.record_closed_trades([replace(trade, pnl_pips=1.0)], now=NOW)

    memory = orchestrator.state.edge_memory
    assert memory.last_recalc_at == memory.total_trades_processed == 2
    assert drifting.learning_state == REVERTING
    assert [entry.environment_signature for entry in orchestrator.reversion_log()] == ["env"]
    assert orchestrator.active_alerts()
