"""Meta-orchestrator: the single L1 -> L2 -> L3 -> L4 decision pipeline.

L1 prepares the proposal and its candle history, L2 governance decides
whether to trade, L3 the direction provider decides which way, and L4
adaptive allocation decides how much. The execution safety gate runs last
on whatever survives. Layers only read upstream results; none of them
rewrites governance multipliers or gates.

Mutable process state (configuration, bounded logs, alerts, edge memory and
kill switches) lives on ``GovernanceState`` behind one re-entrant lock.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
import logging
import threading
from typing import Any, Mapping, Sequence

from governance.agent_registry import AgentWeight, agent_weight
from governance.capital_allocator import (
    ADAPTIVE_MODES,
    OBSERVATION,
    AdaptiveAllocation,
    ShadowValidation,
    compute_adaptive_allocation,
    compute_shadow_validation,
)
from governance.config import DEPLOYMENT_MODES, GovernanceConfig, GovernanceConfigError
from governance.decision_log import (
    MAX_DECISION_LOG,
    MAX_REVERSION_LOG,
    BoundedLog,
    DiscoveryDecisionLog,
    DiscoveryDecisionRecord,
    DiscoveryRiskStats,
    compute_discovery_stats,
)
from governance.drift_monitor import DriftAlert, DriftScan, ReversionEntry, run_drift_scan
from governance.edge_memory import (
    REVERTING,
    EdgeLearningSummary,
    EdgeMemory,
    clear_reversion,
    deserialize_edge_memory,
    learning_trade_from_closed,
    serialize_edge_memory,
    summarize_edge_memory,
    update_edge_memory,
)
from governance.environment import (
    AdaptiveEdgeExplain,
    build_environment_key,
    build_explainability,
    directional_phase,
    normalize_direction,
    normalize_symbol,
    regime_phase,
)
from governance.execution_safety import (
    REJECT as GATE_REJECT,
    THROTTLE as GATE_THROTTLE,
    ExecutionAutoProtection,
    ExecutionHealthMetrics,
    OrderTelemetry,
    PreTradeGateResult,
    compute_execution_health,
    evaluate_execution_protection,
    run_pre_trade_gate,
)
from governance.governance_context import build_governance_context
from governance.numeric import as_utc, clamp, deterministic_uuid, pip_size, utc_iso
from governance.providers import (
    DIRECTION_NEUTRAL,
    CandleSource,
    ClosedTrade,
    DirectionProvider,
    MarketContext,
    TradeProposal,
)
from governance.regime_classifier import MarketRegimeSnapshot, classify_regime, volatility_level
from governance.risk_allocation import DiscoveryRiskDecision, evaluate_discovery_risk
from governance.store import GovernanceStore, StoreError
from governance.trade_governance import REJECTED, THROTTLED, GovernanceResult, evaluate_trade_proposal

logger = logging.getLogger(__name__)

EXECUTE = "EXECUTE"
SKIP = "SKIP"
REJECT = "REJECT"

LAYER_PROPOSAL = "L1"
LAYER_GOVERNANCE = "L2"
LAYER_DIRECTION = "L3"
LAYER_ALLOCATION = "L4"
LAYER_EXECUTION = "EXECUTION"

EDGE_MEMORY_STATE = ("edge_memory", "snapshot")
ADAPTIVE_EDGE_STATE = ("adaptive_edge", "state")

LAYER_DESCRIPTIONS: dict[str, dict[str, str]] = {
    LAYER_PROPOSAL: {
        "name": "Proposal Layer (Signal Agents)",
        "description": "Agents submit symbol, direction intent and timeframe; candle history is prepared.",
        "owner": "governance.providers",
    },
    LAYER_GOVERNANCE: {
        "name": "Governance Layer (WHEN to trade)",
        "description": (
            "Seven multipliers and the rejection gates produce a composite score and an "
            "approved / throttled / rejected decision."
        ),
        "owner": "governance.trade_governance",
    },
    LAYER_DIRECTION: {
        "name": "Direction Layer (WHICH way to trade)",
        "description": "Consulted only after governance; NEUTRAL or unavailable means SKIP.",
        "owner": "DirectionProvider",
    },
    LAYER_ALLOCATION: {
        "name": "Adaptive Edge Allocation (HOW MUCH)",
        "description": (
            "Environment classification, agent weighting, edge memory and the deployment mode produce the size "
            "multiplier. The kill switch forces 1.0x baseline."
        ),
        "owner": "governance.risk_allocation + governance.agent_registry + governance.capital_allocator",
    },
    LAYER_EXECUTION: {
        "name": "Execution Safety Gate",
        "description": "Friction, spread, session and regime checks on the live order.",
        "owner": "governance.execution_safety",
    },
}


class InsufficientHistoryError(RuntimeError):
    """Raised when fewer candles than the regime window are available."""


@dataclass(frozen=True)
class PipelineDecision:
    """Typed outcome of one pipeline run; the audit trail for a proposal."""

    proposal_id: str
    symbol: str
    agent_id: str
    status: str
    decided_layer: str
    reasons: tuple[str, ...]
    decided_at: datetime
    direction: str | None = None
    position_multiplier: float = 0.0
    environment_key: str | None = None
    regime: MarketRegimeSnapshot | None = None
    governance: GovernanceResult | None = None
    discovery: DiscoveryRiskDecision | None = None
    agent: AgentWeight | None = None
    explain: AdaptiveEdgeExplain | None = None
    execution_gate: PreTradeGateResult | None = None
    allocation: AdaptiveAllocation | None = None

    @property
    def executed(self) -> bool:
        return self.status == EXECUTE

    def as_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "symbol": self.symbol,
            "agent_id": self.agent_id,
            "status": self.status,
            "decided_layer": self.decided_layer,
            "reasons": list(self.reasons),
            "decided_at": utc_iso(self.decided_at),
            "direction": self.direction,
            "position_multiplier": self.position_multiplier,
            "environment_key": self.environment_key,
            "regime": self.regime.label if self.regime else None,
            "governance_decision": self.governance.decision if self.governance else None,
            "composite_score": self.governance.composite if self.governance else None,
            "risk_label": self.explain.risk_label if self.explain else None,
            "execution_gate": self.execution_gate.result if self.execution_gate else None,
            "deployment_mode": self.allocation.deployment_mode if self.allocation else None,
        }


@dataclass
class GovernanceState:
    """Process-wide mutable state owned by one orchestrator."""

    config: GovernanceConfig = field(default_factory=GovernanceConfig)
    decisions: BoundedLog[PipelineDecision] = field(default_factory=lambda: BoundedLog(MAX_DECISION_LOG))
    discovery_log: DiscoveryDecisionLog = field(default_factory=DiscoveryDecisionLog)
    alerts: tuple[DriftAlert, ...] = ()
    reversions: BoundedLog[ReversionEntry] = field(default_factory=lambda: BoundedLog(MAX_REVERSION_LOG))
    edge_memory: EdgeMemory = field(default_factory=EdgeMemory)
    adaptive_edge_enabled: bool = True
    force_baseline_until: datetime | None = None
    execution_health: ExecutionHealthMetrics | None = None
    execution_protection: ExecutionAutoProtection | None = None
    shadow_validation: ShadowValidation | None = None
    last_allocations: dict[str, float] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def adaptive_edge_active(self, now: datetime) -> bool:
        with self.lock:
            if not self.adaptive_edge_enabled:
                return False
            return self.force_baseline_until is None or now >= self.force_baseline_until

    @property
    def shadow_validated(self) -> bool:
        with self.lock:
            return self.shadow_validation is not None and self.shadow_validation.validated


@dataclass(frozen=True)
class OrchestratorStatus:
    adaptive_edge_enabled: bool
    adaptive_edge_active: bool
    force_baseline_until: datetime | None
    deployment_mode: str
    shadow_validated: bool
    shadow_validation: ShadowValidation | None
    discovery_risk_enabled: bool
    drift: DriftScan
    edge_learning: EdgeLearningSummary
    discovery_stats: DiscoveryRiskStats
    reversions: tuple[ReversionEntry, ...]
    decisions_logged: int
    execution_protection_level: str
    execution_kill_switch: bool
    layers: Mapping[str, Mapping[str, str]]


@dataclass(frozen=True)
class _Allocation:
    multiplier: float
    risk_label: str
    reasons: tuple[str, ...]
    discovery: DiscoveryRiskDecision | None
    blocked: bool = False
    adaptive: AdaptiveAllocation | None = None


def _mode_reasons(adaptive: AdaptiveAllocation) -> tuple[str, ...]:
    if adaptive.deployment_mode == OBSERVATION:
        return ("Observation mode: baseline 1.0x",)
    if adaptive.deployment_mode not in ADAPTIVE_MODES:
        return ()
    if adaptive.weighted:
        capped = ", velocity capped" if adaptive.velocity_capped else ""
        return (f"Adaptive weight {adaptive.allocation_multiplier:.2f}x{capped}",)
    if not adaptive.shadow_validated:
        return ("Shadow validation pending: discovery sizing",)
    return ("No edge memory for environment: discovery sizing",)


def _gate_regime(snapshot: MarketRegimeSnapshot) -> str:
    """Collapse the regime snapshot into the execution gate's regime vocabulary."""
    if volatility_level(snapshot.volatility_score) == "high" and snapshot.vol_acceleration > 55:
        return "high-volatility"
    if regime_phase(snapshot.label) in ("expansion", "ignition"):
        return "trending"
    return "ranging"


class MetaOrchestrator:
    """Composes regime, governance, direction, allocation and execution safety."""

    def __init__(
        self,
        candle_source: CandleSource,
        direction_provider: DirectionProvider,
        config: GovernanceConfig | None = None,
        state: GovernanceState | None = None,
        store: GovernanceStore | None = None,
    ) -> None:
        self.candle_source = candle_source
        self.direction_provider = direction_provider
        self.state = state or GovernanceState(config=config or GovernanceConfig())
        self.store = store

    @property
    def config(self) -> GovernanceConfig:
        with self.state.lock:
            return self.state.config

    def evaluate(
        self,
        proposal: TradeProposal,
        market: MarketContext,
        trade_history: Sequence[ClosedTrade] = (),
        candles: Sequence[Any] | None = None,
        now: datetime | None = None,
    ) -> PipelineDecision:
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        decision = self._run_pipeline(proposal, market, trade_history, candles, now)
        return self._record_decision(decision)

    def evaluate_batch(
        self,
        items: Sequence[tuple[TradeProposal, MarketContext]],
        trade_history: Sequence[ClosedTrade] = (),
        now: datetime | None = None,
    ) -> list[PipelineDecision]:
        """Evaluate proposals independently; one failure never blocks the rest."""
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        decisions: list[PipelineDecision] = []
        for proposal, market in items:
            try:
                decisions.append(self.evaluate(proposal, market, trade_history, now=now))
            except Exception as exc:
                logger.exception("Pipeline evaluation failed", extra={"proposal_id": proposal.proposal_id})
                decisions.append(
                    self._record_decision(
                        self._terminal(proposal, SKIP, LAYER_PROPOSAL, [f"Evaluation failed: {exc}"], now)
                    )
                )
        return decisions

    def _terminal(
        self,
        proposal: TradeProposal,
        status: str,
        layer: str,
        reasons: Sequence[str],
        now: datetime,
        **extra: Any,
    ) -> PipelineDecision:
        return PipelineDecision(
            proposal_id=proposal.proposal_id,
            symbol=normalize_symbol(proposal.symbol),
            agent_id=proposal.agent_id,
            status=status,
            decided_layer=layer,
            reasons=tuple(reasons),
            decided_at=now,
            **extra,
        )

    def _prepare_candles(self, proposal: TradeProposal, candles: Sequence[Any] | None) -> Sequence[Any]:
        config = self.config
        if candles is None:
            candles = self.candle_source.fetch_candles(
                normalize_symbol(proposal.symbol), config.candle_granularity, config.candle_count
            )
        if len(candles) < config.min_regime_bars:
            raise InsufficientHistoryError(
                f"Insufficient candle history: {len(candles)} < {config.min_regime_bars} bars"
            )
        return candles

    def _run_pipeline(
        self,
        proposal: TradeProposal,
        market: MarketContext,
        trade_history: Sequence[ClosedTrade],
        candles: Sequence[Any] | None,
        now: datetime,
    ) -> PipelineDecision:
        config = self.config
        symbol = normalize_symbol(proposal.symbol)

        # L1: proposal and market data
        try:
            prepared = self._prepare_candles(proposal, candles)
        except InsufficientHistoryError as exc:
            return self._terminal(proposal, SKIP, LAYER_PROPOSAL, [str(exc)], now)
        except Exception as exc:
            logger.exception("Candle source failed", extra={"symbol": symbol})
            return self._terminal(proposal, SKIP, LAYER_PROPOSAL, [f"Candle source unavailable: {exc}"], now)

        try:
            snapshot = classify_regime(prepared)
        except Exception as exc:
            logger.exception("Regime classification failed", extra={"symbol": symbol})
            return self._terminal(proposal, SKIP, LAYER_PROPOSAL, [f"Regime classification failed: {exc}"], now)

        # L2: governance
        try:
            ctx = build_governance_context(proposal, snapshot, market, trade_history, now)
        except Exception as exc:
            logger.exception("Governance context build failed", extra={"proposal_id": proposal.proposal_id})
            return self._terminal(
                proposal, SKIP, LAYER_GOVERNANCE, [f"Governance context unavailable: {exc}"], now, regime=snapshot
            )
        governance = evaluate_trade_proposal(proposal, ctx)
        if governance.decision == REJECTED:
            return self._terminal(
                proposal, REJECT, LAYER_GOVERNANCE, governance.reasons, now, regime=snapshot, governance=governance
            )
        reasons = list(governance.reasons)

        # L3: direction, advisory only and never upstream of governance
        try:
            direction = normalize_direction(
                self.direction_provider.direction_for(
                    proposal,
                    {
                        "regime": snapshot.label,
                        "regime_direction": snapshot.regime_direction,
                        "session": ctx.current_session,
                        "governance_decision": governance.decision,
                        "composite": governance.composite,
                    },
                )
            )
        except Exception as exc:
            logger.exception("Direction provider failed", extra={"proposal_id": proposal.proposal_id})
            return self._terminal(
                proposal,
                SKIP,
                LAYER_DIRECTION,
                [*reasons, f"Direction provider unavailable: {exc}"],
                now,
                regime=snapshot,
                governance=governance,
            )
        if direction not in ("LONG", "SHORT"):
            return self._terminal(
                proposal,
                SKIP,
                LAYER_DIRECTION,
                [*reasons, f"Direction provider returned {direction or DIRECTION_NEUTRAL}"],
                now,
                direction=direction,
                regime=snapshot,
                governance=governance,
            )

        # L4: adaptive allocation
        phase = directional_phase(snapshot.label, direction)
        session = ctx.current_session
        env_key = build_environment_key(session, phase, symbol, direction, proposal.agent_id)
        weight = agent_weight(proposal.agent_id)
        allocation = self._allocate(
            proposal, symbol, session, phase, direction, governance.composite, market.spread_pips, env_key, weight, now
        )
        explain = self._explain(env_key, allocation)
        common = {
            "direction": direction,
            "environment_key": env_key,
            "regime": snapshot,
            "governance": governance,
            "discovery": allocation.discovery,
            "agent": weight,
            "explain": explain,
            "allocation": allocation.adaptive,
        }
        if allocation.blocked:
            return self._terminal(proposal, REJECT, LAYER_ALLOCATION, [*reasons, *allocation.reasons], now, **common)
        reasons.extend(allocation.reasons)

        multiplier = allocation.multiplier
        if governance.decision == THROTTLED:
            multiplier *= config.throttle_size_factor

        # Execution safety gate
        with self.state.lock:
            protection = self.state.execution_protection
        if protection is not None and protection.kill_switch_active:
            return self._terminal(
                proposal, REJECT, LAYER_EXECUTION, [*reasons, "Execution kill switch active"], now, **common
            )
        expected_move = proposal.expected_move_pips
        if expected_move is None:
            expected_move = snapshot.atr / pip_size(symbol)
        gate = run_pre_trade_gate(
            symbol,
            expected_move,
            _gate_regime(snapshot),
            session=session,
            override_k=protection.friction_k_override if protection else None,
        )
        if gate.result == GATE_REJECT:
            return self._terminal(
                proposal, REJECT, LAYER_EXECUTION, [*reasons, *gate.reasons], now, execution_gate=gate, **common
            )
        if gate.result == GATE_THROTTLE:
            multiplier *= config.throttle_size_factor
            reasons.extend(gate.reasons)
        if protection is not None:
            multiplier *= protection.density_multiplier

        return self._terminal(
            proposal,
            EXECUTE,
            LAYER_EXECUTION,
            reasons,
            now,
            position_multiplier=round(multiplier, 4),
            execution_gate=gate,
            **common,
        )

    def _allocate(
        self,
        proposal: TradeProposal,
        symbol: str,
        session: str,
        phase: str,
        direction: str,
        composite: float,
        spread_pips: float,
        env_key: str,
        weight: AgentWeight,
        now: datetime,
    ) -> _Allocation:
        state = self.state
        with state.lock:
            config = state.config
            if not state.adaptive_edge_active(now):
                return _Allocation(1.0, "KILL_SWITCH", ("Adaptive edge inactive: baseline 1.0x",), None)

            discovery = evaluate_discovery_risk(
                symbol, session, phase, direction, composite, spread_pips, proposal.agent_id, config.discovery
            )
            state.discovery_log.log(DiscoveryDecisionRecord(proposal.proposal_id, now, discovery))

            if discovery.blocked_by_discovery_risk:
                return _Allocation(
                    0.0,
                    discovery.risk_label,
                    (f"Discovery risk blocked: {discovery.matched_rule}",),
                    discovery,
                    blocked=True,
                )
            if weight.capital_multiplier == 0:
                return _Allocation(
                    0.0, "BLOCKED", (f"Agent {weight.agent_id} blocked: {weight.reason}",), discovery, blocked=True
                )

            entry = state.edge_memory.get(env_key)
            if entry is not None and entry.learning_state == REVERTING:
                return _Allocation(1.0, "REVERTED", ("Environment reverted to baseline 1.0x",), discovery)

            baseline = clamp(
                discovery.multiplier_applied * weight.capital_multiplier, 0.0, config.allocation_ceiling
            )
            adaptive = compute_adaptive_allocation(
                config.learning.deployment_mode,
                entry,
                baseline,
                state.shadow_validated,
                config.allocator,
                last_allocation=state.last_allocations.get(env_key),
            )
            if adaptive.weighted:
                state.last_allocations[env_key] = adaptive.allocation_multiplier
            multiplier = clamp(adaptive.allocation_multiplier, 0.0, config.allocation_ceiling)
            if entry is not None:
                entry.allocation_history.append(multiplier)
                del entry.allocation_history[: -config.learning.max_history_snapshots]
            return _Allocation(multiplier, discovery.risk_label, _mode_reasons(adaptive), discovery, adaptive=adaptive)

    def _explain(self, env_key: str, allocation: _Allocation) -> AdaptiveEdgeExplain:
        with self.state.lock:
            entry = self.state.edge_memory.get(env_key)
            reasons = list(allocation.reasons)
            if allocation.discovery is not None and allocation.discovery.matched_rule:
                reasons.append(f"Matched rule: {allocation.discovery.matched_rule}")
            return build_explainability(
                env_key,
                allocation.risk_label,
                allocation.multiplier,
                reasons,
                learning_state=entry.learning_state if entry else "N/A",
                sample_size=entry.trade_count if entry else 0,
                confidence_score=entry.edge_confidence if entry else 0.0,
            )

    def _record_decision(self, decision: PipelineDecision) -> PipelineDecision:
        if self.store is not None:
            decision = self._persist_decision(decision)
        with self.state.lock:
            self.state.decisions.append(decision)
        return decision

    def _persist_decision(self, decision: PipelineDecision) -> PipelineDecision:
        """Write the audit row; an executable decision that cannot be audited is skipped."""
        row = decision.as_dict()
        try:
            inserted = self.store.insert(
                "governance_decision",
                {
                    "decision_id": deterministic_uuid("decision", decision.proposal_id, decision.decided_at),
                    "proposal_id": decision.proposal_id,
                    "symbol": decision.symbol,
                    "direction": decision.direction if decision.direction in ("LONG", "SHORT") else None,
                    "agent_id": decision.agent_id,
                    "status": decision.status,
                    "decided_layer": decision.decided_layer,
                    "governance_decision": row["governance_decision"],
                    "composite_score": row["composite_score"],
                    "risk_label": row["risk_label"],
                    "position_multiplier": decision.position_multiplier,
                    "reasons": list(decision.reasons),
                    "decided_at": decision.decided_at,
                },
            )
        except StoreError as exc:
            if decision.status != EXECUTE:
                return decision
            return replace(
                decision,
                status=SKIP,
                position_multiplier=0.0,
                reasons=(*decision.reasons, f"Decision audit write failed: {exc}"),
            )
        if not inserted:
            logger.info("Decision already audited", extra={"proposal_id": decision.proposal_id})
        return decision

    def record_trade_outcome(self, proposal_id: str, trade: ClosedTrade, now: datetime | None = None) -> None:
        """Attach a realized outcome to its logged decision and learn from it."""
        if not self.record_closed_trades([trade], now=now):
            return
        with self.state.lock:
            record = self.state.discovery_log.find(proposal_id)
            if record is not None:
                self.state.discovery_log.record_outcome(record.decision, trade.pnl_pips, trade.won)

    def record_closed_trades(self, trades: Sequence[ClosedTrade], now: datetime | None = None) -> list[str]:
        """Persist then learn from closed trades; already stored trades are not learned twice.

        Every ``recalc_interval`` processed trades the drift scan is re-run with
        auto-revert so decaying environments are caught between explicit scans.
        """
        if not trades:
            return []
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        if self.store is not None:
            fresh = [trade for trade in trades if self.store.insert("closed_trade", _closed_trade_row(trade))]
        else:
            fresh = list(trades)
        if not fresh:
            return []
        with self.state.lock:
            memory = self.state.edge_memory
            learning = self.state.config.learning
            touched = update_edge_memory(memory, [learning_trade_from_closed(trade) for trade in fresh], learning, now)
            recalculate = memory.should_recalculate(learning)
            if recalculate:
                memory.mark_recalculated()
        if recalculate:
            logger.info(
                "Edge memory recalculation checkpoint", extra={"trades_processed": memory.total_trades_processed}
            )
            self.run_drift_scan(now)
        return touched

    def run_drift_scan(self, now: datetime | None = None, auto_revert: bool = True) -> DriftScan:
        """Scan edge memory, replace stored alerts and revert critically drifting environments."""
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        with self.state.lock:
            scan = run_drift_scan(list(self.state.edge_memory.entries.values()), self.state.config.drift, now)
            self.state.alerts = scan.alerts
            if auto_revert:
                for alert in scan.critical_alerts:
                    entry = self.state.edge_memory.get(alert.environment_signature)
                    if entry is not None and entry.learning_state != REVERTING:
                        self.trigger_reversion(alert.environment_signature, alert.message, now=now)
        return scan

    def active_alerts(self) -> tuple[DriftAlert, ...]:
        with self.state.lock:
            return self.state.alerts

    def reversion_log(self) -> list[ReversionEntry]:
        with self.state.lock:
            return self.state.reversions.snapshot()

    def trigger_reversion(self, environment_signature: str, reason: str, now: datetime | None = None) -> ReversionEntry:
        """Revert an environment to 1.0x; the audit row is written before memory changes."""
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        with self.state.lock:
            entry = self.state.edge_memory.get(environment_signature)
            previous_confidence = entry.edge_confidence if entry else 0.0
            previous_allocation = entry.allocation_history[-1] if entry and entry.allocation_history else 1.0
            reversion = ReversionEntry(
                environment_signature=environment_signature,
                reverted_at=now,
                reason=reason,
                previous_confidence=previous_confidence,
                previous_allocation=previous_allocation,
            )
            recorded = True
            if self.store is not None:
                recorded = self.store.insert(
                    "edge_reversion",
                    {
                        "reversion_id": deterministic_uuid("reversion", environment_signature, now),
                        "environment_signature": environment_signature,
                        "reverted_at": now,
                        "reason": reason,
                        "previous_confidence": previous_confidence,
                        "previous_allocation": previous_allocation,
                        "new_allocation": reversion.new_allocation,
                    },
                )
            if entry is not None:
                entry.learning_state = REVERTING
            if recorded:
                self.state.reversions.append(reversion)
                self.state.last_allocations.pop(environment_signature, None)
                if entry is not None:
                    entry.allocation_history.append(reversion.new_allocation)
        if recorded:
            logger.warning(
                "Environment reverted to baseline",
                extra={"environment": environment_signature, "reason": reason},
            )
        return reversion

    def clear_reversion(self, environment_signature: str, now: datetime | None = None) -> bool:
        """Re-validate a reverted environment so it can learn and be weighted again."""
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        with self.state.lock:
            entry = self.state.edge_memory.get(environment_signature)
            return entry is not None and clear_reversion(entry, now)

    def update_shadow_validation(
        self,
        shadow_trades: int,
        edge_expectancy: float,
        baseline_expectancy: float,
        edge_max_drawdown: float,
        baseline_max_drawdown: float,
        composite_decile_slope: float,
    ) -> ShadowValidation:
        with self.state.lock:
            validation = compute_shadow_validation(
                shadow_trades,
                edge_expectancy,
                baseline_expectancy,
                edge_max_drawdown,
                baseline_max_drawdown,
                composite_decile_slope,
                self.state.config.allocator,
            )
            self.state.shadow_validation = validation
        if validation.validated:
            logger.info("Shadow validation passed", extra={"shadow_trades": shadow_trades})
        else:
            logger.info("Shadow validation failed: %s", "; ".join(validation.fail_reasons))
        return validation

    def update_execution_health(self, orders: Sequence[OrderTelemetry]) -> ExecutionHealthMetrics:
        health = compute_execution_health(orders)
        protection = evaluate_execution_protection(
            health.rolling_slippage,
            health.rolling_quality,
            health.order_rejection_rate,
            health.net_expectancy_after_friction,
        )
        with self.state.lock:
            self.state.execution_health = health
            self.state.execution_protection = protection
        if protection.triggered:
            logger.warning(
                "Execution protection %s: %s", protection.level, "; ".join(protection.actions)
            )
        return health

    def set_adaptive_edge(self, enabled: bool) -> None:
        with self.state.lock:
            self.state.adaptive_edge_enabled = enabled
        logger.warning("Adaptive edge %s", "enabled" if enabled else "disabled (kill switch)")

    def force_baseline(self, until: datetime | None) -> None:
        with self.state.lock:
            self.state.force_baseline_until = until
        if until is None:
            logger.info("Force baseline cleared")
        else:
            logger.warning("Force baseline until %s", utc_iso(until))

    def update_discovery_config(self, **changes: Any) -> None:
        with self.state.lock:
            discovery = self.state.config.discovery.with_updates(**changes)
            self.state.config = replace(self.state.config, discovery=discovery)
        logger.info("Discovery risk config updated", extra={"changes": sorted(changes)})

    def update_drift_config(self, **changes: Any) -> None:
        with self.state.lock:
            drift = self.state.config.drift.with_updates(**changes)
            self.state.config = replace(self.state.config, drift=drift)
        logger.info("Drift monitor config updated", extra={"changes": sorted(changes)})

    def set_deployment_mode(self, mode: str) -> None:
        if mode not in DEPLOYMENT_MODES:
            raise GovernanceConfigError(f"Unknown deployment mode: {mode}")
        with self.state.lock:
            learning = replace(self.state.config.learning, deployment_mode=mode)
            self.state.config = replace(self.state.config, learning=learning)
        logger.info("Deployment mode set to %s", mode)

    def status(self, now: datetime | None = None) -> OrchestratorStatus:
        """Read-only snapshot; drift is recomputed without touching stored alerts."""
        now = as_utc(now) if now is not None else datetime.now(timezone.utc)
        with self.state.lock:
            config = self.state.config
            drift = run_drift_scan(list(self.state.edge_memory.entries.values()), config.drift, now)
            protection = self.state.execution_protection
            return OrchestratorStatus(
                adaptive_edge_enabled=self.state.adaptive_edge_enabled,
                adaptive_edge_active=self.state.adaptive_edge_active(now),
                force_baseline_until=self.state.force_baseline_until,
                deployment_mode=config.learning.deployment_mode,
                shadow_validated=self.state.shadow_validated,
                shadow_validation=self.state.shadow_validation,
                discovery_risk_enabled=config.discovery.enabled,
                drift=drift,
                edge_learning=summarize_edge_memory(self.state.edge_memory, config.learning),
                discovery_stats=compute_discovery_stats(self.state.discovery_log),
                reversions=tuple(self.state.reversions),
                decisions_logged=len(self.state.decisions),
                execution_protection_level=protection.level if protection else "normal",
                execution_kill_switch=protection.kill_switch_active if protection else False,
                layers=LAYER_DESCRIPTIONS,
            )

    def save_state(self, store: GovernanceStore | None = None, now: datetime | None = None) -> None:
        store = store or self.store
        if store is None:
            raise StoreError("No governance store configured")
        with self.state.lock:
            snapshot = serialize_edge_memory(self.state.edge_memory, self.state.config.learning)
            shadow = self.state.shadow_validation
            adaptive = {
                "enabled": self.state.adaptive_edge_enabled,
                "force_baseline_until": (
                    self.state.force_baseline_until.isoformat() if self.state.force_baseline_until else None
                ),
                "shadow_validation": asdict(shadow) if shadow else None,
                "last_allocations": dict(self.state.last_allocations),
            }
        store.upsert(*EDGE_MEMORY_STATE, {"snapshot": snapshot}, now=now)
        store.upsert(*ADAPTIVE_EDGE_STATE, adaptive, now=now)
        logger.info("Governance state saved")

    def load_state(self, store: GovernanceStore | None = None) -> bool:
        """Restore edge memory, kill switch and shadow validation; False when nothing was stored."""
        store = store or self.store
        if store is None:
            raise StoreError("No governance store configured")
        memory_payload = store.get(*EDGE_MEMORY_STATE)
        adaptive_payload = store.get(*ADAPTIVE_EDGE_STATE)
        if memory_payload is None and adaptive_payload is None:
            return False

        with self.state.lock:
            if memory_payload is not None:
                try:
                    memory, mode = deserialize_edge_memory(str(memory_payload.get("snapshot", "")))
                except ValueError as exc:
                    raise StoreError(f"Stored edge memory is invalid: {exc}") from exc
                self.state.edge_memory = memory
                if mode is not None:
                    learning = replace(self.state.config.learning, deployment_mode=mode)
                    self.state.config = replace(self.state.config, learning=learning)
            if adaptive_payload is not None:
                self.state.adaptive_edge_enabled = bool(adaptive_payload.get("enabled", True))
                until = adaptive_payload.get("force_baseline_until")
                self.state.force_baseline_until = datetime.fromisoformat(until) if until else None
                self.state.shadow_validation = _shadow_from_payload(adaptive_payload.get("shadow_validation"))
                allocations = adaptive_payload.get("last_allocations") or {}
                self.state.last_allocations = {str(key): float(value) for key, value in allocations.items()}
        logger.info("Governance state loaded", extra={"environments": len(self.state.edge_memory.entries)})
        return True


def _shadow_from_payload(payload: Any) -> ShadowValidation | None:
    if payload is None:
        return None
    try:
        return ShadowValidation(**{**payload, "fail_reasons": tuple(payload.get("fail_reasons", ()))})
    except (TypeError, AttributeError) as exc:
        raise StoreError(f"Stored shadow validation is invalid: {exc}") from exc


def _closed_trade_row(trade: ClosedTrade) -> dict[str, Any]:
    return {
        "trade_id": deterministic_uuid(
            "closed_trade", trade.symbol, trade.direction, trade.agent_id, trade.closed_at, trade.pnl_pips
        ),
        "symbol": normalize_symbol(trade.symbol),
        "direction": normalize_direction(trade.direction),
        "agent_id": trade.agent_id,
        "pnl_pips": trade.pnl_pips,
        "closed_at": trade.closed_at,
        "session": trade.session,
        "regime": trade.regime,
        "spread_pips": trade.spread_pips,
        "composite_score": trade.composite_score,
    }
