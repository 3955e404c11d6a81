"""Per-environment learning memory.

Each environment signature accumulates trade count, a running expectancy,
a bounded tail of expectancy snapshots, drawdown and an edge confidence in
[0, 1]. Confidence feeds capital allocation only; governance multipliers
and gates never read it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import math
from typing import Any, Iterable, Sequence

from governance.config import DEPLOYMENT_MODES, EdgeLearningConfig
from governance.environment import build_environment_key, directional_phase, normalize_session
from governance.numeric import mean, round_half_up
from governance.providers import ClosedTrade

logger = logging.getLogger(__name__)

LEARNING = "Learning"
STABLE = "Stable"
DECAYING = "Decaying"
REVERTING = "Reverting"
LEARNING_STATES: tuple[str, ...] = (LEARNING, STABLE, DECAYING, REVERTING)

REVERSION_CONFIDENCE = 0.15
SNAPSHOT_VERSION = 1


@dataclass
class EdgeMemoryEntry:
    """Mutable learning record for one environment signature."""

    environment_signature: str
    trade_count: int = 0
    expectancy: float = 0.0
    sharpe_stability: float = 0.0
    drawdown_profile: float = 0.0
    edge_confidence: float = 0.0
    stability_half_life: int = 100
    last_validated_at: datetime | None = None
    learning_state: str = LEARNING
    sessions_covered: set[str] = field(default_factory=set)
    regimes_covered: set[str] = field(default_factory=set)
    expectancy_history: list[float] = field(default_factory=list)
    allocation_history: list[float] = field(default_factory=lambda: [1.0])


@dataclass(frozen=True)
class LearningTrade:
    environment_signature: str
    pnl_pips: float
    session: str
    regime: str
    composite_score: float
    timestamp: datetime


@dataclass
class EdgeMemory:
    """Signature -> entry map plus recalculation bookkeeping."""

    entries: dict[str, EdgeMemoryEntry] = field(default_factory=dict)
    total_trades_processed: int = 0
    last_recalc_at: int = 0

    def get(self, signature: str) -> EdgeMemoryEntry | None:
        return self.entries.get(signature)

    def should_recalculate(self, config: EdgeLearningConfig) -> bool:
        return self.total_trades_processed - self.last_recalc_at >= config.recalc_interval

    def mark_recalculated(self) -> None:
        self.last_recalc_at = self.total_trades_processed


@dataclass(frozen=True)
class EnvironmentConfidence:
    signature: str
    confidence: float
    expectancy: float
    trade_count: int
    learning_state: str


@dataclass(frozen=True)
class EdgeLearningSummary:
    total_environments: int
    learning_count: int
    stable_count: int
    decaying_count: int
    reverting_count: int
    avg_edge_confidence: float
    top_confidence_environments: tuple[EnvironmentConfidence, ...]
    deployment_mode: str
    total_trades_processed: int


def learning_trade_from_closed(trade: ClosedTrade) -> LearningTrade:
    return LearningTrade(
        environment_signature=build_environment_key(
            trade.session,
            directional_phase(trade.regime, trade.direction),
            trade.symbol,
            trade.direction,
            trade.agent_id,
        ),
        pnl_pips=trade.pnl_pips,
        session=normalize_session(trade.session),
        regime=trade.regime,
        composite_score=trade.composite_score,
        timestamp=trade.closed_at,
    )


def max_drawdown(pnls: Iterable[float]) -> float:
    """Peak-to-trough of the cumulative pnl curve, one decimal."""
    peak = 0.0
    worst = 0.0
    cumulative = 0.0
    for pnl in pnls:
        cumulative += pnl
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return round_half_up(worst * 10) / 10


def _variance(values: Sequence[float]) -> float:
    centre = mean(values)
    return sum((value - centre) ** 2 for value in values) / len(values)


def _round2(value: float) -> float:
    return round_half_up(value * 100) / 100


def update_learning_state(entry: EdgeMemoryEntry, config: EdgeLearningConfig) -> EdgeMemoryEntry:
    """Grow confidence on qualified positive edge, decay on negative or dispersing history.

    REVERTING is terminal here; only ``clear_reversion`` moves an entry out of it.
    """
    if entry.learning_state == REVERTING:
        return entry
    if (
        entry.trade_count >= config.min_sample_for_confidence
        and entry.expectancy > 0
        and len(entry.sessions_covered) >= 2
    ):
        growth = (
            config.confidence_growth_rate
            * min(1.0, entry.sharpe_stability / 1.5)
            * min(1.0, entry.trade_count / 150)
        )
        entry.edge_confidence = min(1.0, entry.edge_confidence + growth)
        if entry.edge_confidence >= 0.6 and entry.sharpe_stability >= 0.8:
            entry.learning_state = STABLE
        else:
            entry.learning_state = LEARNING

    history = entry.expectancy_history
    if len(history) >= 3:
        if mean(history[-3:]) < 0:
            entry.edge_confidence = max(0.0, entry.edge_confidence - config.confidence_decay_rate)
            entry.learning_state = DECAYING

        if len(history) >= 5:
            split = len(history) // 2
            if _variance(history[split:]) > _variance(history[:split]) * 1.5:
                entry.edge_confidence = max(0.0, entry.edge_confidence - config.confidence_decay_rate * 0.5)
                entry.learning_state = DECAYING

    if entry.edge_confidence < REVERSION_CONFIDENCE and entry.learning_state == DECAYING:
        entry.learning_state = REVERTING
        logger.info(
            "Edge memory entry reverting",
            extra={"environment": entry.environment_signature, "confidence": entry.edge_confidence},
        )
    return entry


def clear_reversion(entry: EdgeMemoryEntry, now: datetime) -> bool:
    """Re-validate a reverted entry back into LEARNING; False when it was not reverting."""
    if entry.learning_state != REVERTING:
        return False
    entry.learning_state = LEARNING
    entry.last_validated_at = now
    logger.info("Edge memory entry re-validated", extra={"environment": entry.environment_signature})
    return True


def update_edge_memory(
    memory: EdgeMemory,
    trades: Sequence[LearningTrade],
    config: EdgeLearningConfig,
    now: datetime | None = None,
) -> list[str]:
    """Fold closed trades into memory; returns the signatures touched."""
    if not trades:
        return []
    now = now or datetime.now(timezone.utc)

    groups: dict[str, list[LearningTrade]] = {}
    for trade in trades:
        groups.setdefault(trade.environment_signature, []).append(trade)

    for signature, batch in groups.items():
        entry = memory.entries.get(signature)
        if entry is None:
            entry = EdgeMemoryEntry(environment_signature=signature, last_validated_at=now)

        pnls = [trade.pnl_pips for trade in batch]
        previous_count = entry.trade_count
        entry.trade_count += len(batch)
        entry.expectancy = (entry.expectancy * previous_count + sum(pnls)) / entry.trade_count

        for trade in batch:
            entry.sessions_covered.add(trade.session)
            entry.regimes_covered.add(trade.regime)

        entry.drawdown_profile = max(entry.drawdown_profile, max_drawdown(pnls))

        entry.expectancy_history.append(entry.expectancy)
        if len(entry.expectancy_history) > config.max_history_snapshots:
            entry.expectancy_history = entry.expectancy_history[-config.max_history_snapshots:]

        if len(entry.expectancy_history) >= 3:
            centre = mean(entry.expectancy_history)
            sd = math.sqrt(_variance(entry.expectancy_history))
            entry.sharpe_stability = abs(centre) / (sd or 1.0) if centre != 0 else 0.0

        update_learning_state(entry, config)
        entry.last_validated_at = now
        memory.entries[signature] = entry

    memory.total_trades_processed += len(trades)
    return list(groups)


def summarize_edge_memory(memory: EdgeMemory, config: EdgeLearningConfig) -> EdgeLearningSummary:
    entries = list(memory.entries.values())
    counts = {state: 0 for state in LEARNING_STATES}
    for entry in entries:
        counts[entry.learning_state] = counts.get(entry.learning_state, 0) + 1

    top = sorted(entries, key=lambda entry: entry.edge_confidence, reverse=True)[:10]
    return EdgeLearningSummary(
        total_environments=len(entries),
        learning_count=counts[LEARNING],
        stable_count=counts[STABLE],
        decaying_count=counts[DECAYING],
        reverting_count=counts[REVERTING],
        avg_edge_confidence=_round2(mean([entry.edge_confidence for entry in entries])),
        top_confidence_environments=tuple(
            EnvironmentConfidence(
                signature=entry.environment_signature,
                confidence=_round2(entry.edge_confidence),
                expectancy=_round2(entry.expectancy),
                trade_count=entry.trade_count,
                learning_state=entry.learning_state,
            )
            for entry in top
        ),
        deployment_mode=config.deployment_mode,
        total_trades_processed=memory.total_trades_processed,
    )


def _entry_to_payload(entry: EdgeMemoryEntry) -> dict[str, Any]:
    return {
        "environment_signature": entry.environment_signature,
        "trade_count": entry.trade_count,
        "expectancy": entry.expectancy,
        "sharpe_stability": entry.sharpe_stability,
        "drawdown_profile": entry.drawdown_profile,
        "edge_confidence": entry.edge_confidence,
        "stability_half_life": entry.stability_half_life,
        "last_validated_at": entry.last_validated_at.isoformat() if entry.last_validated_at else None,
        "learning_state": entry.learning_state,
        "sessions_covered": sorted(entry.sessions_covered),
        "regimes_covered": sorted(entry.regimes_covered),
        "expectancy_history": list(entry.expectancy_history),
        "allocation_history": list(entry.allocation_history),
    }


def _entry_from_payload(payload: dict[str, Any]) -> EdgeMemoryEntry:
    validated = payload.get("last_validated_at")
    state = payload.get("learning_state", LEARNING)
    if state not in LEARNING_STATES:
        raise ValueError(f"Unknown learning state: {state}")
    return EdgeMemoryEntry(
        environment_signature=str(payload["environment_signature"]),
        trade_count=int(payload.get("trade_count", 0)),
        expectancy=float(payload.get("expectancy", 0.0)),
        sharpe_stability=float(payload.get("sharpe_stability", 0.0)),
        drawdown_profile=float(payload.get("drawdown_profile", 0.0)),
        edge_confidence=float(payload.get("edge_confidence", 0.0)),
        stability_half_life=int(payload.get("stability_half_life", 100)),
        last_validated_at=datetime.fromisoformat(validated) if validated else None,
        learning_state=state,
        sessions_covered=set(payload.get("sessions_covered", [])),
        regimes_covered=set(payload.get("regimes_covered", [])),
        expectancy_history=[float(value) for value in payload.get("expectancy_history", [])],
        allocation_history=[float(value) for value in payload.get("allocation_history", [1.0])],
    )


def serialize_edge_memory(memory: EdgeMemory, config: EdgeLearningConfig) -> str:
    payload = {
        "version": SNAPSHOT_VERSION,
        "entries": [_entry_to_payload(entry) for entry in memory.entries.values()],
        "total_processed": memory.total_trades_processed,
        "last_recalc": memory.last_recalc_at,
        "deployment_mode": config.deployment_mode,
    }
    return json.dumps(payload, sort_keys=True)


def deserialize_edge_memory(raw: str) -> tuple[EdgeMemory, str | None]:
    """Rebuild memory from JSON; returns the stored deployment mode alongside.

    Raises ValueError on malformed snapshots so callers decide whether to keep
    the memory they already hold.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Edge memory snapshot is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Edge memory snapshot must be a JSON object")

    memory = EdgeMemory(
        total_trades_processed=int(data.get("total_processed", 0)),
        last_recalc_at=int(data.get("last_recalc", 0)),
    )
    for payload in data.get("entries", []):
        try:
            entry = _entry_from_payload(payload)
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Edge memory entry is malformed: {exc}") from exc
        memory.entries[entry.environment_signature] = entry

    mode = data.get("deployment_mode")
    if mode is not None and mode not in DEPLOYMENT_MODES:
        raise ValueError(f"Unknown deployment mode in snapshot: {mode}")
    return memory, mode
