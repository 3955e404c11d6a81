"""Blocking and position sizing from environment classification."""

from __future__ import annotations

from dataclasses import dataclass

from governance.config import DiscoveryRiskConfig
from governance.environment_risk import EnvironmentClassification, classify_environment, environment_label

RISK_LABELS: tuple[str, ...] = ("BLOCKED", "REDUCED", "NORMAL", "EDGE_BOOST")


@dataclass(frozen=True)
class RiskAllocation:
    """Sizing outcome; blocked exactly when the multiplier is zero."""

    blocked: bool
    position_size_multiplier: float
    risk_label: str


@dataclass(frozen=True)
class DiscoveryRiskDecision:
    """Classification and allocation combined for logging."""

    environment_label: str
    is_edge_candidate: bool
    is_historically_destructive: bool
    risk_label: str
    multiplier_applied: float
    blocked_by_discovery_risk: bool
    matched_rule: str | None = None


def allocate(classification: EnvironmentClassification, config: DiscoveryRiskConfig) -> RiskAllocation:
    """Precedence: kill switch, destructive block, edge boost, baseline reduction."""
    if not config.enabled:
        return RiskAllocation(blocked=False, position_size_multiplier=1.0, risk_label="NORMAL")
    if classification.is_historically_destructive:
        return RiskAllocation(blocked=True, position_size_multiplier=0.0, risk_label="BLOCKED")
    if classification.is_edge_candidate:
        return RiskAllocation(
            blocked=False,
            position_size_multiplier=config.edge_boost_multiplier,
            risk_label="EDGE_BOOST",
        )
    return RiskAllocation(
        blocked=False,
        position_size_multiplier=config.baseline_reduction_multiplier,
        risk_label="REDUCED",
    )


def evaluate_discovery_risk(
    pair: str,
    session: str,
    regime: str,
    direction: str,
    composite_score: float,
    spread_pips: float,
    agent_id: str,
    config: DiscoveryRiskConfig,
) -> DiscoveryRiskDecision:
    if not config.enabled:
        return DiscoveryRiskDecision(
            environment_label=environment_label(session, regime, pair, direction),
            is_edge_candidate=False,
            is_historically_destructive=False,
            risk_label="NORMAL",
            multiplier_applied=1.0,
            blocked_by_discovery_risk=False,
        )
    classification = classify_environment(
        pair, session, regime, direction, composite_score, spread_pips, agent_id, config
    )
    allocation = allocate(classification, config)
    return DiscoveryRiskDecision(
        environment_label=classification.environment_label,
        is_edge_candidate=classification.is_edge_candidate,
        is_historically_destructive=classification.is_historically_destructive,
        risk_label=allocation.risk_label,
        multiplier_applied=allocation.position_size_multiplier,
        blocked_by_discovery_risk=allocation.blocked,
        matched_rule=classification.matched_destructive_rule or classification.matched_edge_rule,
    )
