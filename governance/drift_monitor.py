"""Edge drift detection over accumulated edge memory.

Four independent checks run per environment: expectancy slope, session
entropy, drawdown breach and first-half/second-half predictive decay.
Alerts are regenerated on every scan; the caller replaces, never merges.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Iterable, Sequence

from governance.config import DriftMonitorConfig
from governance.edge_memory import DECAYING, REVERTING, EdgeMemoryEntry
from governance.numeric import mean, round_half_up

logger = logging.getLogger(__name__)

ALERT_TYPES: tuple[str, ...] = (
    "expectancy_slope",
    "predictive_decay",
    "session_entropy",
    "pair_drift",
    "regime_shock",
    "dd_breach",
)
WARNING = "warning"
CRITICAL = "critical"

MAX_SESSIONS = 5
BASELINE_ALLOCATION = 1.0


@dataclass(frozen=True)
class DriftAlert:
    alert_id: str
    environment_signature: str
    alert_type: str
    severity: str
    message: str
    metric_value: float
    threshold: float
    timestamp: datetime


@dataclass(frozen=True)
class ReversionEntry:
    """Audit row for an automatic return to baseline allocation."""

    environment_signature: str
    reverted_at: datetime
    reason: str
    previous_confidence: float
    previous_allocation: float
    new_allocation: float = BASELINE_ALLOCATION


@dataclass(frozen=True)
class DriftScan:
    alerts: tuple[DriftAlert, ...]
    environments_monitored: int
    environments_stable: int
    environments_drifting: int
    environments_reverting: int
    overall_drift_score: float

    @property
    def critical_alerts(self) -> tuple[DriftAlert, ...]:
        return tuple(alert for alert in self.alerts if alert.severity == CRITICAL)


def expectancy_slope(history: Sequence[float], window: int = 5) -> float:
    """Least-squares slope of the most recent snapshots; 0 with too little data."""
    if len(history) < 3:
        return 0.0
    recent = list(history[-window:])
    n = len(recent)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2
    y_mean = mean(recent)
    numerator = sum((i - x_mean) * (value - y_mean) for i, value in enumerate(recent))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    return numerator / denominator if denominator else 0.0


def session_entropy(sessions: Iterable[str]) -> float:
    """Share of the five trading sessions an edge has fired in."""
    count = len(set(sessions))
    if count <= 1:
        return 0.0
    return min(1.0, count / MAX_SESSIONS)


def detect_drift(
    entry: EdgeMemoryEntry,
    config: DriftMonitorConfig,
    now: datetime | None = None,
) -> list[DriftAlert]:
    now = now or datetime.now(timezone.utc)
    signature = entry.environment_signature
    alerts: list[DriftAlert] = []

    if entry.trade_count < config.min_trades_for_drift_check:
        return alerts

    slope = expectancy_slope(entry.expectancy_history, config.recent_window_size)
    if slope < config.expectancy_slope_threshold:
        alerts.append(
            DriftAlert(
                alert_id=f"slope_{signature}",
                environment_signature=signature,
                alert_type="expectancy_slope",
                severity=CRITICAL if slope < config.expectancy_slope_threshold * 2 else WARNING,
                message=f"Expectancy slope {slope:.3f} indicates declining edge",
                metric_value=slope,
                threshold=config.expectancy_slope_threshold,
                timestamp=now,
            )
        )

    entropy = session_entropy(entry.sessions_covered)
    if entropy > config.entropy_max_threshold and entry.edge_confidence > 0.3:
        alerts.append(
            DriftAlert(
                alert_id=f"entropy_{signature}",
                environment_signature=signature,
                alert_type="session_entropy",
                severity=WARNING,
                message=f"Session distribution entropy {entropy:.2f}, edge may be too dispersed",
                metric_value=entropy,
                threshold=config.entropy_max_threshold,
                timestamp=now,
            )
        )

    if entry.drawdown_profile > 0:
        baseline_dd = abs(entry.expectancy) * 3 if entry.expectancy > 0 else 10.0
        limit = baseline_dd * config.dd_breach_multiplier
        if entry.drawdown_profile > limit:
            alerts.append(
                DriftAlert(
                    alert_id=f"dd_{signature}",
                    environment_signature=signature,
                    alert_type="dd_breach",
                    severity=CRITICAL,
                    message=(
                        f"Drawdown {entry.drawdown_profile:.1f}p exceeds "
                        f"{config.dd_breach_multiplier * 100:.0f}% of baseline"
                    ),
                    metric_value=entry.drawdown_profile,
                    threshold=limit,
                    timestamp=now,
                )
            )

    history = entry.expectancy_history
    if len(history) >= 5:
        split = len(history) // 2
        first_avg = mean(history[:split])
        second_avg = mean(history[split:])
        if first_avg > 0 and second_avg < first_avg * 0.5:
            alerts.append(
                DriftAlert(
                    alert_id=f"pred_decay_{signature}",
                    environment_signature=signature,
                    alert_type="predictive_decay",
                    severity=CRITICAL if second_avg < 0 else WARNING,
                    message=f"Expectancy degraded from {first_avg:.2f} to {second_avg:.2f}",
                    metric_value=second_avg,
                    threshold=first_avg * 0.5,
                    timestamp=now,
                )
            )

    return alerts


def run_drift_scan(
    entries: Iterable[EdgeMemoryEntry],
    config: DriftMonitorConfig,
    now: datetime | None = None,
) -> DriftScan:
    """Scan every tracked environment and score overall drift in [0, 1]."""
    now = now or datetime.now(timezone.utc)
    alerts: list[DriftAlert] = []
    stable = drifting = reverting = 0
    monitored = 0

    for entry in entries:
        monitored += 1
        entry_alerts = detect_drift(entry, config, now)
        alerts.extend(entry_alerts)
        if entry.learning_state == REVERTING:
            reverting += 1
        elif entry.learning_state == DECAYING or any(alert.severity == CRITICAL for alert in entry_alerts):
            drifting += 1
        else:
            stable += 1

    total = monitored or 1
    score = round_half_up((drifting + reverting * 1.5) / total * 100) / 100
    scan = DriftScan(
        alerts=tuple(alerts),
        environments_monitored=monitored,
        environments_stable=stable,
        environments_drifting=drifting,
        environments_reverting=reverting,
        overall_drift_score=min(1.0, score),
    )
    logger.info(
        "Drift scan completed",
        extra={
            "monitored": monitored,
            "alerts": len(alerts),
            "critical": len(scan.critical_alerts),
            "drift_score": scan.overall_drift_score,
        },
    )
    return scan
