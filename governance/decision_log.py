"""Bounded in-memory decision and telemetry logs."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Iterator, TypeVar

from governance.risk_allocation import RISK_LABELS, DiscoveryRiskDecision

T = TypeVar("T")

MAX_DECISION_LOG = 2000
MAX_REVERSION_LOG = 100


class BoundedLog(Generic[T]):
    """FIFO ring buffer; the oldest entry is evicted once capacity is reached."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._items: deque[T] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    def append(self, item: T) -> None:
        self._items.append(item)

    def snapshot(self) -> list[T]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))


@dataclass(frozen=True)
class DiscoveryDecisionRecord:
    proposal_id: str
    logged_at: datetime
    decision: DiscoveryRiskDecision


@dataclass(frozen=True)
class DiscoveryRiskStats:
    total_evaluated: int
    blocked_count: int
    edge_boosted_count: int
    reduced_count: int
    normal_count: int
    blocked_by_environment: dict[str, int]
    pnl_by_risk_label: dict[str, float]
    edge_candidate_win_rate: float
    baseline_win_rate: float
    capital_efficiency_gain: float


class DiscoveryDecisionLog:
    """Discovery-risk decisions plus outcome tallies for dashboard stats.

    Outcome tallies are cumulative and survive ring-buffer eviction.
    """

    def __init__(self, capacity: int = MAX_DECISION_LOG) -> None:
        self.records: BoundedLog[DiscoveryDecisionRecord] = BoundedLog(capacity)
        self.pnl_by_label: dict[str, float] = {label: 0.0 for label in RISK_LABELS}
        self.edge_wins = 0
        self.edge_total = 0
        self.base_wins = 0
        self.base_total = 0

    def log(
        self,
        record: DiscoveryDecisionRecord,
        pnl_pips: float | None = None,
        won: bool | None = None,
    ) -> None:
        self.records.append(record)
        if pnl_pips is not None or won is not None:
            self.record_outcome(record.decision, pnl_pips, won)

    def record_outcome(self, decision: DiscoveryRiskDecision, pnl_pips: float | None, won: bool | None) -> None:
        if pnl_pips is not None:
            self.pnl_by_label[decision.risk_label] = self.pnl_by_label.get(decision.risk_label, 0.0) + pnl_pips
        if won is None:
            return
        if decision.is_edge_candidate:
            self.edge_total += 1
            self.edge_wins += int(won)
        else:
            self.base_total += 1
            self.base_wins += int(won)

    def find(self, proposal_id: str) -> DiscoveryDecisionRecord | None:
        for record in reversed(self.records.snapshot()):
            if record.proposal_id == proposal_id:
                return record
        return None

    def clear(self) -> None:
        self.records.clear()
        self.pnl_by_label = {label: 0.0 for label in RISK_LABELS}
        self.edge_wins = self.edge_total = self.base_wins = self.base_total = 0

    def __len__(self) -> int:
        return len(self.records)


def compute_discovery_stats(log: DiscoveryDecisionLog) -> DiscoveryRiskStats:
    decisions = [record.decision for record in log.records]
    counts = {label: 0 for label in RISK_LABELS}
    blocked_by_environment: dict[str, int] = {}
    for decision in decisions:
        counts[decision.risk_label] = counts.get(decision.risk_label, 0) + 1
        if decision.blocked_by_discovery_risk:
            blocked_by_environment[decision.environment_label] = (
                blocked_by_environment.get(decision.environment_label, 0) + 1
            )

    edge_pnl = log.pnl_by_label.get("EDGE_BOOST", 0.0)
    base_pnl = log.pnl_by_label.get("REDUCED", 0.0) + log.pnl_by_label.get("NORMAL", 0.0)
    if edge_pnl + base_pnl != 0 and base_pnl != 0:
        efficiency = edge_pnl / max(1, counts["EDGE_BOOST"]) - base_pnl / max(1, counts["REDUCED"] + counts["NORMAL"])
    else:
        efficiency = 0.0

    return DiscoveryRiskStats(
        total_evaluated=len(decisions),
        blocked_count=counts["BLOCKED"],
        edge_boosted_count=counts["EDGE_BOOST"],
        reduced_count=counts["REDUCED"],
        normal_count=counts["NORMAL"],
        blocked_by_environment=blocked_by_environment,
        pnl_by_risk_label=dict(log.pnl_by_label),
        edge_candidate_win_rate=log.edge_wins / log.edge_total if log.edge_total else 0.0,
        baseline_win_rate=log.base_wins / log.base_total if log.base_total else 0.0,
        capital_efficiency_gain=efficiency,
    )
