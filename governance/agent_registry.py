"""Static agent registry and the capital weighting table derived from it."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AgentProfile:
    """Registered signal agent."""

    agent_id: str
    name: str
    model: str
    base_win_rate: float
    base_sharpe: float
    coordination_score: int
    strategy_focus: str


@dataclass(frozen=True)
class AgentWeight:
    """Capital priority assigned to an agent."""

    agent_id: str
    name: str
    capital_priority: str
    capital_multiplier: float
    reason: str


AGENT_REGISTRY: dict[str, AgentProfile] = {
    profile.agent_id: profile
    for profile in (
        AgentProfile("equities-alpha", "Alpha Engine", "Gemini Pro", 0.61, 1.6, 78, "trend-follow"),
        AgentProfile("forex-macro", "Macro Pulse", "GPT-5", 0.64, 1.55, 78, "momentum"),
        AgentProfile("crypto-momentum", "Momentum Grid", "Gemini Flash", 0.55, 1.3, 68, "trend-follow"),
        AgentProfile("liquidity-radar", "Liquidity Radar", "Claude 3.5", 0.61, 1.50, 76, "breakout"),
        AgentProfile("range-navigator", "Range Navigator", "GPT-4o", 0.62, 1.50, 72, "range-trading"),
        AgentProfile("volatility-architect", "Volatility Architect", "Gemini Ultra", 0.60, 1.55, 74, "volatility-compression"),
        AgentProfile("adaptive-learner", "Adaptive Learning Node", "Gemini 2.0", 0.58, 1.30, 64, "momentum"),
        AgentProfile("sentiment-reactor", "Sentiment Reactor", "GPT-5 Mini", 0.59, 1.40, 68, "mean-reversion"),
        AgentProfile("fractal-intelligence", "Fractal Intelligence", "Claude 4", 0.60, 1.48, 72, "trend-follow"),
        AgentProfile("risk-sentinel", "Risk Sentinel", "Gemini Pro 2", 0.63, 1.60, 80, "macro-overlay"),
    )
}

BLOCKED_AGENTS = frozenset({"sentiment-reactor", "range-navigator"})

HIGH_PRIORITY_REASONS: dict[str, str] = {
    "forex-macro": "Primary scalping engine, proven NY overlap edge with the highest trade volume",
    "session-momentum": "Session-open breakout specialist for London/NY open momentum",
    "risk-sentinel": "Risk guardian with the highest coordination score (80)",
    "spread-microstructure": "Friction optimization that reduces spread-driven losses across pairs",
}

STANDARD_AGENTS = frozenset(
    {
        "equities-alpha",
        "liquidity-radar",
        "volatility-architect",
        "fractal-intelligence",
        "carry-flow",
        "correlation-regime",
        "execution-optimizer",
        "cross-asset-sync",
        "regime-transition",
        "news-event-shield",
    }
)


def agent_weight(agent_id: str) -> AgentWeight:
    key = agent_id.lower().strip()
    profile = AGENT_REGISTRY.get(key)
    name = profile.name if profile else key
    if key in BLOCKED_AGENTS:
        return AgentWeight(key, name, "BLOCKED", 0.0, "Historically destructive, blocked by discovery risk audit")
    if key in HIGH_PRIORITY_REASONS:
        return AgentWeight(key, name, "HIGH", 1.35, HIGH_PRIORITY_REASONS[key])
    if key in STANDARD_AGENTS:
        return AgentWeight(key, name, "STANDARD", 1.0, "Standard allocation, developing or neutral edge evidence")
    return AgentWeight(key, name, "REDUCED", 0.55, "Reduced allocation, insufficient edge evidence or low sample")


def agent_weighting_table() -> list[AgentWeight]:
    """Weights for every registered agent, in registry order."""
    return [agent_weight(agent_id) for agent_id in AGENT_REGISTRY]
