"""Governance layer: decides whether a proposal may trade at all.

Seven independent multipliers are multiplied into a composite score and a
set of hard gates collects rejection reasons. Two or more gate reasons
reject, a single reason or a weak composite throttles. Downstream layers
read the result but never change multipliers or gates.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import logging
from typing import Sequence

from governance.environment import normalize_symbol
from governance.numeric import clamp, mean
from governance.providers import TradeProposal

logger = logging.getLogger(__name__)

APPROVED = "approved"
THROTTLED = "throttled"
REJECTED = "rejected"

MIN_COMPOSITE = 0.60
MIN_FRICTION_RATIO = 3.0

MAJOR_PAIRS = frozenset({"EUR_USD", "GBP_USD", "USD_JPY", "AUD_USD", "USD_CAD", "EUR_JPY", "GBP_JPY"})

PHASE_MULTIPLIERS: dict[str, float] = {
    "compression": 0.55,
    "ignition": 1.35,
    "expansion": 1.25,
    "exhaustion": 0.65,
}

PHASE_EXIT_MULTIPLIERS: dict[str, float] = {
    "compression": 0.72,
    "ignition": 1.20,
    "expansion": 1.15,
    "exhaustion": 0.78,
}

SESSION_MULTIPLIERS: dict[str, float] = {
    "london-open": 1.18,
    "ny-overlap": 1.12,
    "asian": 0.78,
    "late-ny": 0.68,
    "rollover": 0.50,
}

SEQUENCING_MULTIPLIERS: dict[str, float] = {
    "profit-momentum": 1.12,
    "loss-cluster": 0.70,
    "mixed": 0.85,
    "neutral": 1.0,
}

# Holding windows in minutes.
DURATION_WINDOWS: dict[str, tuple[int, int]] = {
    "compression": (8, 45),
    "ignition": (1, 15),
    "expansion": (2, 25),
    "exhaustion": (1, 12),
}

SESSION_LABELS: dict[str, str] = {
    "asian": "Asian",
    "london-open": "London",
    "ny-overlap": "NY Overlap",
    "late-ny": "Late NY",
    "rollover": "Rollover",
}


@dataclass(frozen=True)
class GovernanceContext:
    """Market and history inputs for one governance evaluation."""

    mtf_alignment_score: float
    htf_supports: bool
    mtf_confirms: bool
    ltf_clean: bool
    volatility_phase: str
    phase_confidence: float
    liquidity_shock_prob: float
    spread_stability_rank: float
    friction_ratio: float
    pair_expectancy: float
    pair_favored: bool
    is_major_pair: bool
    current_session: str
    session_aggressiveness: float
    edge_decaying: bool
    edge_decay_rate: float
    overtrading_throttled: bool
    sequencing_cluster: str
    regime_family_confirmed: bool = True
    regime_diverging: bool = False
    divergent_bars: int = 0


@dataclass(frozen=True)
class GovernanceMultipliers:
    """Named factors of the composite score."""

    mtf_alignment: float
    regime: float
    pair_performance: float
    microstructure: float
    exit_efficiency: float
    session: float
    sequencing: float

    @property
    def composite(self) -> float:
        return (
            self.mtf_alignment
            * self.regime
            * self.pair_performance
            * self.microstructure
            * self.exit_efficiency
            * self.session
            * self.sequencing
        )

    def as_dict(self) -> dict[str, float]:
        return {
            "mtf_alignment": self.mtf_alignment,
            "regime": self.regime,
            "pair_performance": self.pair_performance,
            "microstructure": self.microstructure,
            "exit_efficiency": self.exit_efficiency,
            "session": self.session,
            "sequencing": self.sequencing,
            "composite": self.composite,
        }


@dataclass(frozen=True)
class GovernanceResult:
    """Immutable audit record of one governance evaluation."""

    decision: str
    composite: float
    governance_score: float
    reasons: tuple[str, ...]
    multipliers: GovernanceMultipliers
    adjusted_win_probability: float
    adjusted_win_range: tuple[float, float]
    adjusted_loss_range: tuple[float, float]
    adjusted_duration: tuple[int, int]
    adjusted_drawdown_cap: float
    confidence_boost: int
    capture_ratio: float
    expected_expectancy: float
    friction_cost: float
    exit_latency_grade: str
    mtf_alignment_label: str
    volatility_label: str
    session_label: str
    trade_mode: str

    @property
    def approved(self) -> bool:
        return self.decision == APPROVED


def mtf_multiplier(ctx: GovernanceContext) -> float:
    alignment = ctx.mtf_alignment_score / 100
    if ctx.htf_supports and ctx.mtf_confirms and ctx.ltf_clean:
        return 1.18 + alignment * 0.17
    if ctx.htf_supports and ctx.mtf_confirms:
        return 0.98 + alignment * 0.12
    if ctx.htf_supports:
        return 0.82 + alignment * 0.08
    return 0.55 + alignment * 0.10


def regime_multiplier(ctx: GovernanceContext) -> float:
    return PHASE_MULTIPLIERS[ctx.volatility_phase] * (0.75 + ctx.phase_confidence / 100 * 0.25)


def pair_multiplier(ctx: GovernanceContext) -> float:
    major_bonus = 1.08 if ctx.is_major_pair else 0.92
    expectancy = ctx.pair_expectancy
    if ctx.pair_favored and expectancy > 68:
        return major_bonus * (1.05 + (expectancy - 68) / 100 * 0.25)
    if expectancy > 50:
        return major_bonus * (0.90 + (expectancy - 50) / 100 * 0.18)
    return major_bonus * (0.65 + expectancy / 100 * 0.20)


def microstructure_multiplier(ctx: GovernanceContext) -> float:
    spread_factor = ctx.spread_stability_rank / 100
    friction_factor = min(ctx.friction_ratio / 6, 1.0)
    base = spread_factor * 0.55 + friction_factor * 0.45
    if ctx.liquidity_shock_prob > 55:
        shock_penalty = 0.78
    elif ctx.liquidity_shock_prob > 35:
        shock_penalty = 0.90
    else:
        shock_penalty = 1.0
    return (0.60 + base * 0.55) * shock_penalty


def exit_efficiency_multiplier(ctx: GovernanceContext) -> float:
    return PHASE_EXIT_MULTIPLIERS[ctx.volatility_phase] * (0.88 + ctx.spread_stability_rank / 100 * 0.22)


def session_multiplier(ctx: GovernanceContext) -> float:
    return SESSION_MULTIPLIERS.get(ctx.current_session, 1.0)


def sequencing_multiplier(ctx: GovernanceContext) -> float:
    return SEQUENCING_MULTIPLIERS.get(ctx.sequencing_cluster, 1.0)


def compute_multipliers(ctx: GovernanceContext) -> GovernanceMultipliers:
    return GovernanceMultipliers(
        mtf_alignment=mtf_multiplier(ctx),
        regime=regime_multiplier(ctx),
        pair_performance=pair_multiplier(ctx),
        microstructure=microstructure_multiplier(ctx),
        exit_efficiency=exit_efficiency_multiplier(ctx),
        session=session_multiplier(ctx),
        sequencing=sequencing_multiplier(ctx),
    )


def evaluate_gates(ctx: GovernanceContext) -> list[str]:
    """Hard gates; each failing gate contributes one human-readable reason."""
    reasons: list[str] = []
    if ctx.friction_ratio < MIN_FRICTION_RATIO:
        reasons.append(f"Friction ratio {ctx.friction_ratio:.1f}x < {MIN_FRICTION_RATIO:.0f}x threshold")
    if not ctx.htf_supports and ctx.mtf_alignment_score < 35:
        reasons.append(f"MTF alignment {ctx.mtf_alignment_score:.0f}% without HTF support")
    if ctx.edge_decaying and ctx.edge_decay_rate > 20:
        reasons.append(f"Edge decaying {ctx.edge_decay_rate:.0f}%")
    if ctx.spread_stability_rank < 30:
        reasons.append(f"Spread instability {ctx.spread_stability_rank:.0f}%")
    if ctx.session_aggressiveness < 30 and ctx.volatility_phase == "compression":
        reasons.append("Compression + low-activity session")
    if ctx.overtrading_throttled:
        reasons.append("Anti-overtrading governor active")
    if ctx.sequencing_cluster == "loss-cluster" and ctx.mtf_alignment_score < 55:
        reasons.append(f"Loss cluster + weak alignment {ctx.mtf_alignment_score:.0f}%")
    if ctx.liquidity_shock_prob > 70 and ctx.volatility_phase != "ignition":
        reasons.append(f"High shock risk {ctx.liquidity_shock_prob:.0f}% outside ignition")
    if ctx.current_session == "rollover":
        reasons.append("Rollover session block")
    if ctx.regime_diverging:
        reasons.append(f"Regime diverging ({ctx.divergent_bars} of 5 bars off-family)")
    if not ctx.regime_family_confirmed:
        reasons.append("Regime family not confirmed")
    return reasons


def _mtf_label(ctx: GovernanceContext) -> str:
    if ctx.htf_supports and ctx.mtf_confirms and ctx.ltf_clean:
        return "Full Alignment"
    if ctx.htf_supports and ctx.mtf_confirms:
        return "HTF+MTF Aligned"
    if ctx.htf_supports:
        return "HTF Only"
    return "Misaligned"


def _confidence_boost(composite: float) -> int:
    if composite > 1.1:
        return 18
    if composite > 0.9:
        return 8
    if composite > 0.7:
        return -3
    return -12


def _latency_grade(score: float) -> str:
    if score > 1.2:
        return "A"
    if score > 1.0:
        return "B"
    if score > 0.85:
        return "C"
    return "D"


def evaluate_trade_proposal(proposal: TradeProposal, ctx: GovernanceContext) -> GovernanceResult:
    """Score a proposal and return approved, throttled or rejected with reasons."""
    multipliers = compute_multipliers(ctx)
    composite = multipliers.composite
    gate_reasons = evaluate_gates(ctx)

    if len(gate_reasons) >= 2:
        decision = REJECTED
    elif gate_reasons or composite < MIN_COMPOSITE:
        decision = THROTTLED
    else:
        decision = APPROVED

    reasons = list(gate_reasons)
    if decision != APPROVED and composite < MIN_COMPOSITE:
        reasons.append(f"Composite {composite:.2f} below {MIN_COMPOSITE:.2f}")

    stability = ctx.spread_stability_rank / 100
    win_probability = clamp(proposal.base_win_probability * composite, 0.18, 0.85)
    win_boost = multipliers.exit_efficiency * stability
    loss_reduction = multipliers.microstructure * multipliers.session
    win_range = (
        proposal.base_win_range[0] * (0.85 + win_boost * 0.35),
        proposal.base_win_range[1] * (0.88 + win_boost * 0.30),
    )
    loss_range = (
        proposal.base_loss_range[0] * (0.50 + loss_reduction * 0.40),
        proposal.base_loss_range[1] * (0.75 + loss_reduction * 0.20),
    )

    approved = decision == APPROVED
    expectancy = 0.0
    if approved:
        expectancy = win_probability * mean(win_range) + (1 - win_probability) * mean(loss_range)

    result = GovernanceResult(
        decision=decision,
        composite=composite,
        governance_score=clamp(
            composite * 60 + (25 if not gate_reasons else 0) + (5 if ctx.is_major_pair else 0), 0, 100
        ),
        reasons=tuple(reasons),
        multipliers=multipliers,
        adjusted_win_probability=win_probability,
        adjusted_win_range=win_range,
        adjusted_loss_range=loss_range,
        adjusted_duration=DURATION_WINDOWS[ctx.volatility_phase],
        adjusted_drawdown_cap=max(0.15, 3.8 * (1 - (composite - 0.5) * 0.5)),
        confidence_boost=_confidence_boost(composite),
        capture_ratio=min(0.95, 0.45 + composite * 0.35 + stability * 0.1) if approved else 0.0,
        expected_expectancy=expectancy,
        friction_cost=(1 - stability) * 0.15,
        exit_latency_grade=_latency_grade(multipliers.exit_efficiency * multipliers.session),
        mtf_alignment_label=_mtf_label(ctx),
        volatility_label=ctx.volatility_phase.capitalize(),
        session_label=SESSION_LABELS.get(ctx.current_session, ctx.current_session),
        trade_mode=(
            "continuation"
            if ctx.volatility_phase == "expansion" and ctx.htf_supports and ctx.mtf_confirms
            else "scalp"
        ),
    )
    if not approved:
        logger.info(
            "Governance %s %s %s: %s",
            decision,
            normalize_symbol(proposal.symbol),
            proposal.proposal_id,
            "; ".join(result.reasons),
        )
    return result


@dataclass(frozen=True)
class GovernanceStats:
    """Aggregate view over many governance results."""

    total_proposed: int
    total_approved: int
    total_rejected: int
    total_throttled: int
    rejection_rate: float
    avg_composite_multiplier: float
    avg_governance_score: float
    avg_capture_ratio: float
    avg_expectancy: float
    approved_win_rate: float
    top_rejection_reasons: tuple[tuple[str, int], ...]


def _reason_key(reason: str) -> str:
    return reason.split("(")[0].strip()


def compute_governance_stats(results: Sequence[GovernanceResult]) -> GovernanceStats:
    approved = [result for result in results if result.decision == APPROVED]
    rejected = [result for result in results if result.decision == REJECTED]
    throttled = [result for result in results if result.decision == THROTTLED]
    counts: Counter[str] = Counter(_reason_key(reason) for result in results for reason in result.reasons)
    return GovernanceStats(
        total_proposed=len(results),
        total_approved=len(approved),
        total_rejected=len(rejected),
        total_throttled=len(throttled),
        rejection_rate=len(rejected) / len(results) if results else 0.0,
        avg_composite_multiplier=mean([result.composite for result in results], default=1.0),
        avg_governance_score=mean([result.governance_score for result in results]),
        avg_capture_ratio=mean([result.capture_ratio for result in approved]),
        avg_expectancy=mean([result.expected_expectancy for result in approved]),
        approved_win_rate=mean([result.adjusted_win_probability for result in approved]),
        top_rejection_reasons=tuple(counts.most_common(5)),
    )
