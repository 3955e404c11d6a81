"""Environment-backed configuration for the governance pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

DEPLOYMENT_MODES: tuple[str, ...] = (
    "OBSERVATION",
    "DISCOVERY_RISK",
    "SHADOW_LEARNING",
    "ALLOCATION_WEIGHT",
    "FULLY_ADAPTIVE",
)


class GovernanceConfigError(RuntimeError):
    """Raised when a configuration value is missing or invalid."""


@dataclass(frozen=True)
class DiscoveryRiskConfig:
    """Tunables for environment-based blocking and sizing."""

    enabled: bool = True
    edge_boost_multiplier: float = 1.35
    baseline_reduction_multiplier: float = 0.55
    spread_block_threshold: float = 1.0
    ignition_min_composite: float = 0.75

    def __post_init__(self) -> None:
        for name in ("edge_boost_multiplier", "baseline_reduction_multiplier", "spread_block_threshold"):
            if getattr(self, name) <= 0:
                raise GovernanceConfigError(f"{name} must be positive")
        if not 0 <= self.ignition_min_composite <= 1:
            raise GovernanceConfigError("ignition_min_composite must be within [0, 1]")

    def with_updates(self, **changes: Any) -> DiscoveryRiskConfig:
        known = {item.name for item in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise GovernanceConfigError(f"Unknown discovery risk settings: {unknown}")
        return replace(self, **changes)


@dataclass(frozen=True)
class DriftMonitorConfig:
    """Thresholds for edge drift detection."""

    expectancy_slope_threshold: float = -0.3
    entropy_max_threshold: float = 0.85
    dd_breach_multiplier: float = 1.3
    min_trades_for_drift_check: int = 20
    recent_window_size: int = 5

    def with_updates(self, **changes: Any) -> DriftMonitorConfig:
        known = {item.name for item in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise GovernanceConfigError(f"Unknown drift monitor settings: {unknown}")
        return replace(self, **changes)


@dataclass(frozen=True)
class EdgeLearningConfig:
    """Confidence growth and decay parameters for edge memory."""

    min_sample_for_confidence: int = 75
    confidence_growth_rate: float = 0.08
    confidence_decay_rate: float = 0.12
    recalc_interval: int = 50
    max_history_snapshots: int = 20
    deployment_mode: str = "SHADOW_LEARNING"

    def __post_init__(self) -> None:
        if self.deployment_mode not in DEPLOYMENT_MODES:
            raise GovernanceConfigError(f"Unknown deployment mode: {self.deployment_mode}")


@dataclass(frozen=True)
class AdaptiveAllocatorConfig:
    """Bounds, velocity cap and shadow validation thresholds for adaptive sizing."""

    min_multiplier: float = 0.25
    max_multiplier: float = 1.75
    velocity_max_change: float = 0.10
    shadow_min_trades: int = 100
    shadow_min_expectancy_ratio: float = 1.2
    shadow_max_drawdown_ratio: float = 0.75
    shadow_min_decile_slope: float = 0.015

    def __post_init__(self) -> None:
        if not 0 < self.min_multiplier <= self.max_multiplier:
            raise GovernanceConfigError("min_multiplier must be positive and not exceed max_multiplier")
        if self.velocity_max_change <= 0:
            raise GovernanceConfigError("velocity_max_change must be positive")


@dataclass(frozen=True)
class GovernanceConfig:
    """Canonical configuration surface for the governance runtime."""

    discovery: DiscoveryRiskConfig = field(default_factory=DiscoveryRiskConfig)
    drift: DriftMonitorConfig = field(default_factory=DriftMonitorConfig)
    learning: EdgeLearningConfig = field(default_factory=EdgeLearningConfig)
    allocator: AdaptiveAllocatorConfig = field(default_factory=AdaptiveAllocatorConfig)
    min_regime_bars: int = 60
    candle_granularity: str = "M5"
    candle_count: int = 200
    throttle_size_factor: float = 0.5
    allocation_ceiling: float = 1.75
    database_url: str = ""
    log_level: str = "INFO"


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise GovernanceConfigError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise GovernanceConfigError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise GovernanceConfigError(f"Invalid float value for {name}: {raw}") from exc
    return value


def _read_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def load_governance_config() -> GovernanceConfig:
    """Load and validate governance configuration from environment."""
    discovery = DiscoveryRiskConfig(
        enabled=_read_bool("DISCOVERY_RISK_ENABLED", True),
        edge_boost_multiplier=_read_float("DISCOVERY_EDGE_BOOST_MULTIPLIER", 1.35),
        baseline_reduction_multiplier=_read_float("DISCOVERY_BASELINE_REDUCTION_MULTIPLIER", 0.55),
        spread_block_threshold=_read_float("DISCOVERY_SPREAD_BLOCK_THRESHOLD", 1.0),
        ignition_min_composite=_read_float("DISCOVERY_IGNITION_MIN_COMPOSITE", 0.75),
    )
    drift = DriftMonitorConfig(
        expectancy_slope_threshold=_read_float("DRIFT_EXPECTANCY_SLOPE_THRESHOLD", -0.3),
        entropy_max_threshold=_read_float("DRIFT_ENTROPY_MAX_THRESHOLD", 0.85),
        dd_breach_multiplier=_read_float("DRIFT_DD_BREACH_MULTIPLIER", 1.3),
        min_trades_for_drift_check=_read_int("DRIFT_MIN_TRADES", 20),
        recent_window_size=_read_int("DRIFT_RECENT_WINDOW_SIZE", 5),
    )
    if drift.expectancy_slope_threshold >= 0:
        raise GovernanceConfigError("DRIFT_EXPECTANCY_SLOPE_THRESHOLD must be negative")
    learning = EdgeLearningConfig(
        min_sample_for_confidence=_read_int("EDGE_MIN_SAMPLE_FOR_CONFIDENCE", 75),
        confidence_growth_rate=_read_float("EDGE_CONFIDENCE_GROWTH_RATE", 0.08),
        confidence_decay_rate=_read_float("EDGE_CONFIDENCE_DECAY_RATE", 0.12),
        recalc_interval=_read_int("EDGE_RECALC_INTERVAL", 50),
        max_history_snapshots=_read_int("EDGE_MAX_HISTORY_SNAPSHOTS", 20),
        deployment_mode=_read_str("GOVERNANCE_DEPLOYMENT_MODE", "SHADOW_LEARNING").upper(),
    )
    allocator = AdaptiveAllocatorConfig(
        min_multiplier=_read_float("ALLOCATOR_MIN_MULTIPLIER", 0.25),
        max_multiplier=_read_float("ALLOCATOR_MAX_MULTIPLIER", 1.75),
        velocity_max_change=_read_float("ALLOCATOR_VELOCITY_MAX_CHANGE", 0.10),
        shadow_min_trades=_read_int("ALLOCATOR_SHADOW_MIN_TRADES", 100),
        shadow_min_expectancy_ratio=_read_float("ALLOCATOR_SHADOW_MIN_EXPECTANCY_RATIO", 1.2),
        shadow_max_drawdown_ratio=_read_float("ALLOCATOR_SHADOW_MAX_DRAWDOWN_RATIO", 0.75),
        shadow_min_decile_slope=_read_float("ALLOCATOR_SHADOW_MIN_DECILE_SLOPE", 0.015),
    )
    config = GovernanceConfig(
        discovery=discovery,
        drift=drift,
        learning=learning,
        allocator=allocator,
        min_regime_bars=_read_int("GOVERNANCE_MIN_REGIME_BARS", 60),
        candle_granularity=_read_str("GOVERNANCE_CANDLE_GRANULARITY", "M5"),
        candle_count=_read_int("GOVERNANCE_CANDLE_COUNT", 200),
        throttle_size_factor=_read_float("GOVERNANCE_THROTTLE_SIZE_FACTOR", 0.5),
        allocation_ceiling=_read_float("GOVERNANCE_ALLOCATION_CEILING", 1.75),
        database_url=_read_str("GOVERNANCE_DATABASE_URL", ""),
        log_level=_read_str("GOVERNANCE_LOG_LEVEL", "INFO").upper(),
    )
    if config.candle_count < config.min_regime_bars:
        raise GovernanceConfigError("GOVERNANCE_CANDLE_COUNT must cover GOVERNANCE_MIN_REGIME_BARS")
    if not 0 < config.throttle_size_factor <= 1:
        raise GovernanceConfigError("GOVERNANCE_THROTTLE_SIZE_FACTOR must be within (0, 1]")
    logger.debug("Loaded governance config: deployment_mode=%s", learning.deployment_mode)
    return config
