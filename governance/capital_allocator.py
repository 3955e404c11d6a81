"""Deployment-mode aware capital allocation on top of discovery risk sizing.

OBSERVATION ignores every adjustment and trades at 1.0x. DISCOVERY_RISK and
SHADOW_LEARNING pass the discovery multiplier through unchanged; shadow
learning only reports what the edge memory would have done. ALLOCATION_WEIGHT
and FULLY_ADAPTIVE weight the discovery multiplier by edge confidence,
stability and sample size, but only once shadow validation has passed.
Governance multipliers and gates are never read or changed here.
"""

from __future__ import annotations

from dataclasses import dataclass
import math

from governance.config import AdaptiveAllocatorConfig
from governance.edge_memory import EdgeMemoryEntry
from governance.numeric import clamp, round_half_up

OBSERVATION = "OBSERVATION"
DISCOVERY_RISK = "DISCOVERY_RISK"
SHADOW_LEARNING = "SHADOW_LEARNING"
ALLOCATION_WEIGHT = "ALLOCATION_WEIGHT"
FULLY_ADAPTIVE = "FULLY_ADAPTIVE"
ADAPTIVE_MODES = frozenset({ALLOCATION_WEIGHT, FULLY_ADAPTIVE})

SAMPLE_CONFIDENCE_TRADES = 150
STABILITY_SCALE = 2.0


@dataclass(frozen=True)
class ShadowValidation:
    """Edge-vs-baseline shadow comparison that unlocks adaptive weighting."""

    shadow_trades: int
    edge_expectancy: float
    baseline_expectancy: float
    expectancy_ratio: float
    edge_max_drawdown: float
    baseline_max_drawdown: float
    drawdown_ratio: float
    composite_decile_slope: float
    validated: bool
    fail_reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class AdaptiveAllocation:
    allocation_multiplier: float
    baseline_multiplier: float
    deployment_mode: str
    edge_confidence: float = 0.0
    stability_score: float = 0.0
    sample_confidence: float = 0.0
    velocity_capped: bool = False
    shadow_validated: bool = False
    weighted: bool = False


def _round2(value: float) -> float:
    return round_half_up(value * 100) / 100


def compute_shadow_validation(
    shadow_trades: int,
    edge_expectancy: float,
    baseline_expectancy: float,
    edge_max_drawdown: float,
    baseline_max_drawdown: float,
    composite_decile_slope: float,
    config: AdaptiveAllocatorConfig,
) -> ShadowValidation:
    """Every threshold must hold; each miss is reported as a fail reason."""
    if baseline_expectancy != 0:
        expectancy_ratio = edge_expectancy / baseline_expectancy
    else:
        expectancy_ratio = 99.0 if edge_expectancy > 0 else 0.0
    if baseline_max_drawdown > 0:
        drawdown_ratio = edge_max_drawdown / baseline_max_drawdown
    else:
        drawdown_ratio = 0.0 if edge_max_drawdown == 0 else 1.0

    reasons: list[str] = []
    if shadow_trades < config.shadow_min_trades:
        reasons.append(f"Shadow trades {shadow_trades} < {config.shadow_min_trades} required")
    if expectancy_ratio < config.shadow_min_expectancy_ratio:
        reasons.append(f"Expectancy ratio {expectancy_ratio:.2f} < {config.shadow_min_expectancy_ratio}")
    if drawdown_ratio > config.shadow_max_drawdown_ratio:
        reasons.append(f"DD ratio {drawdown_ratio:.2f} > {config.shadow_max_drawdown_ratio}")
    if composite_decile_slope < config.shadow_min_decile_slope:
        reasons.append(f"Composite decile slope {composite_decile_slope:.3f} < {config.shadow_min_decile_slope}")

    return ShadowValidation(
        shadow_trades=shadow_trades,
        edge_expectancy=edge_expectancy,
        baseline_expectancy=baseline_expectancy,
        expectancy_ratio=_round2(expectancy_ratio),
        edge_max_drawdown=edge_max_drawdown,
        baseline_max_drawdown=baseline_max_drawdown,
        drawdown_ratio=_round2(drawdown_ratio),
        composite_decile_slope=composite_decile_slope,
        validated=not reasons,
        fail_reasons=tuple(reasons),
    )


def compute_adaptive_allocation(
    mode: str,
    entry: EdgeMemoryEntry | None,
    baseline_multiplier: float,
    shadow_validated: bool,
    config: AdaptiveAllocatorConfig,
    last_allocation: float | None = None,
) -> AdaptiveAllocation:
    """Size one environment for the active deployment mode.

    ``last_allocation`` is the previous weighted allocation for the same
    environment; the weighted result moves at most ``velocity_max_change``
    away from it (or from the baseline when there is none).
    """
    if mode == OBSERVATION:
        return AdaptiveAllocation(1.0, baseline_multiplier, mode)
    if mode == DISCOVERY_RISK:
        return AdaptiveAllocation(baseline_multiplier, baseline_multiplier, mode)
    if entry is None:
        return AdaptiveAllocation(baseline_multiplier, baseline_multiplier, mode, shadow_validated=shadow_validated)

    sample_confidence = min(1.0, entry.trade_count / SAMPLE_CONFIDENCE_TRADES)
    if mode not in ADAPTIVE_MODES or not shadow_validated:
        return AdaptiveAllocation(
            baseline_multiplier,
            baseline_multiplier,
            mode,
            edge_confidence=entry.edge_confidence,
            stability_score=entry.sharpe_stability,
            sample_confidence=sample_confidence,
            shadow_validated=shadow_validated,
        )

    stability = min(1.0, entry.sharpe_stability / STABILITY_SCALE)
    raw = baseline_multiplier * entry.edge_confidence * stability * sample_confidence
    raw = clamp(raw, config.min_multiplier, config.max_multiplier)

    anchor = baseline_multiplier if last_allocation is None else last_allocation
    velocity_capped = abs(raw - anchor) > config.velocity_max_change
    if velocity_capped:
        raw = anchor + math.copysign(config.velocity_max_change, raw - anchor)
    raw = clamp(raw, config.min_multiplier, config.max_multiplier)

    return AdaptiveAllocation(
        allocation_multiplier=_round2(raw),
        baseline_multiplier=baseline_multiplier,
        deployment_mode=mode,
        edge_confidence=entry.edge_confidence,
        stability_score=_round2(stability),
        sample_confidence=_round2(sample_confidence),
        velocity_capped=velocity_capped,
        shadow_validated=True,
        weighted=True,
    )
