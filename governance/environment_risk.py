"""Rule-table classification of trade environments.

Two ordered rule lists are scanned independently: edge candidates and
historically destructive environments. The first matching rule in each list
wins, so list order is part of the contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from governance.config import DiscoveryRiskConfig
from governance.environment import normalize_direction, normalize_regime, normalize_session, normalize_symbol

AUD_CROSSES = frozenset({"AUD_JPY", "AUD_USD", "AUD_NZD", "AUD_CAD", "AUD_CHF", "EUR_AUD", "GBP_AUD"})


@dataclass(frozen=True)
class EnvironmentInputs:
    """Normalized classifier inputs."""

    symbol: str
    session: str
    regime: str
    direction: str
    composite_score: float
    spread_pips: float
    agent_id: str


@dataclass(frozen=True)
class EnvironmentRule:
    """Named predicate over classifier inputs."""

    rule_id: str
    label: str
    test: Callable[[EnvironmentInputs, DiscoveryRiskConfig], bool]


@dataclass(frozen=True)
class EnvironmentClassification:
    """First-match results of both rule tables for one environment."""

    is_edge_candidate: bool
    is_historically_destructive: bool
    environment_label: str
    matched_edge_rule: str | None
    matched_destructive_rule: str | None


def _expansion(env: EnvironmentInputs) -> bool:
    return env.regime == "expansion"


EDGE_RULES: tuple[EnvironmentRule, ...] = (
    EnvironmentRule(
        "ny_expansion_long",
        "NY Overlap + Expansion + Long",
        lambda env, _: env.session == "ny-overlap" and _expansion(env) and env.direction == "LONG",
    ),
    EnvironmentRule(
        "asian_usdcad_expansion_long",
        "Asian + USD_CAD + Expansion + Long",
        lambda env, _: env.session == "asian"
        and env.symbol == "USD_CAD"
        and _expansion(env)
        and env.direction == "LONG",
    ),
    EnvironmentRule(
        "london_audusd_expansion_long",
        "London Open + AUD_USD + Expansion + Long",
        lambda env, _: env.session == "london-open"
        and env.symbol == "AUD_USD"
        and _expansion(env)
        and env.direction == "LONG",
    ),
    EnvironmentRule(
        "eurgbp_long",
        "EUR_GBP + Long",
        lambda env, _: env.symbol == "EUR_GBP" and env.direction == "LONG",
    ),
    EnvironmentRule(
        "usdjpy_compression",
        "USD_JPY + Compression",
        lambda env, _: env.symbol == "USD_JPY" and env.regime == "compression",
    ),
)

DESTRUCTIVE_RULES: tuple[EnvironmentRule, ...] = (
    EnvironmentRule("aud_cross", "AUD cross pair", lambda env, _: env.symbol in AUD_CROSSES),
    EnvironmentRule("gbp_usd", "GBP_USD", lambda env, _: env.symbol == "GBP_USD"),
    EnvironmentRule("gbp_jpy", "GBP_JPY", lambda env, _: env.symbol == "GBP_JPY"),
    EnvironmentRule(
        "sentiment_reactor",
        "Agent: sentiment-reactor",
        lambda env, _: env.agent_id == "sentiment-reactor",
    ),
    EnvironmentRule(
        "range_navigator",
        "Agent: range-navigator",
        lambda env, _: env.agent_id == "range-navigator",
    ),
    EnvironmentRule(
        "rollover_short",
        "Rollover + Short",
        lambda env, _: env.session == "rollover" and env.direction == "SHORT",
    ),
    EnvironmentRule(
        "high_spread",
        "Spread > threshold",
        lambda env, cfg: env.spread_pips > cfg.spread_block_threshold,
    ),
    EnvironmentRule(
        "ignition_low_composite",
        "Ignition + Low Composite",
        lambda env, cfg: env.regime == "ignition" and env.composite_score < cfg.ignition_min_composite,
    ),
)


def first_match(
    rules: tuple[EnvironmentRule, ...],
    env: EnvironmentInputs,
    config: DiscoveryRiskConfig,
) -> EnvironmentRule | None:
    for rule in rules:
        if rule.test(env, config):
            return rule
    return None


def environment_label(session: str, regime: str, symbol: str, direction: str) -> str:
    return " | ".join((session, regime, symbol.replace("/", "_"), direction))


def classify_environment(
    pair: str,
    session: str,
    regime: str,
    direction: str,
    composite_score: float,
    spread_pips: float,
    agent_id: str,
    config: DiscoveryRiskConfig | None = None,
) -> EnvironmentClassification:
    """Classify one environment against both rule tables. Pure and side-effect free."""
    cfg = config or DiscoveryRiskConfig()
    env = EnvironmentInputs(
        symbol=normalize_symbol(pair),
        session=normalize_session(session),
        regime=normalize_regime(regime),
        direction=normalize_direction(direction),
        composite_score=composite_score,
        spread_pips=spread_pips,
        agent_id=agent_id.lower().strip(),
    )
    edge = first_match(EDGE_RULES, env, cfg)
    destructive = first_match(DESTRUCTIVE_RULES, env, cfg)
    return EnvironmentClassification(
        is_edge_candidate=edge is not None,
        is_historically_destructive=destructive is not None,
        environment_label=environment_label(session, regime, pair, direction),
        matched_edge_rule=edge.label if edge else None,
        matched_destructive_rule=destructive.label if destructive else None,
    )
