"""Canonical environment signatures shared by risk, learning and drift tracking.

An environment is the (session, regime, symbol, direction, agent) tuple that
serves as the unit of statistical tracking. Every module that keys state by
environment goes through ``build_environment_key`` so keys never diverge.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import math
from typing import Sequence

SESSION_CANONICAL: dict[str, str] = {
    "asian": "asian",
    "asia": "asian",
    "tokyo": "asian",
    "london-open": "london-open",
    "london": "london-open",
    "ny-overlap": "ny-overlap",
    "ny": "ny-overlap",
    "late-ny": "late-ny",
    "lateny": "late-ny",
    "rollover": "rollover",
}

REGIME_CANONICAL: dict[str, str] = {
    "compression": "compression",
    "ranging": "compression",
    "ignition": "ignition",
    "expansion": "expansion",
    "trending": "expansion",
    "exhaustion": "exhaustion",
}

# Nine-label regime output collapsed onto the four volatility phases used for scoring.
REGIME_PHASE: dict[str, str] = {
    "compression": "compression",
    "flat": "compression",
    "transition": "ignition",
    "ignition": "ignition",
    "momentum": "expansion",
    "expansion": "expansion",
    "risk-off": "expansion",
    "breakdown": "expansion",
    "exhaustion": "exhaustion",
}

BULLISH_TREND_LABELS = frozenset({"momentum", "expansion"})
BEARISH_TREND_LABELS = frozenset({"risk-off", "breakdown"})


def normalize_session(session: str) -> str:
    lower = session.lower().strip()
    return SESSION_CANONICAL.get(lower, lower)


def normalize_regime(regime: str) -> str:
    lower = regime.lower().strip()
    return REGIME_CANONICAL.get(lower, lower)


def normalize_direction(direction: str) -> str:
    upper = direction.upper().strip()
    if upper in {"LONG", "BUY"}:
        return "LONG"
    if upper in {"SHORT", "SELL"}:
        return "SHORT"
    if upper in {"NEUTRAL", "SKIP"}:
        return "NEUTRAL"
    return upper


def normalize_symbol(symbol: str) -> str:
    """EUR/USD, eur_usd and EURUSD all become EUR_USD."""
    cleaned = symbol.strip().upper().replace("/", "_")
    if "_" not in cleaned and len(cleaned) == 6:
        cleaned = f"{cleaned[:3]}_{cleaned[3:]}"
    return cleaned


def regime_phase(label: str) -> str:
    lower = label.lower().strip()
    return REGIME_PHASE.get(lower, normalize_regime(lower))


def directional_phase(label: str, direction: str) -> str:
    """Phase as seen from the trade side; a trend running against the trade reads as exhaustion."""
    lower = label.lower().strip()
    side = normalize_direction(direction)
    if (lower in BEARISH_TREND_LABELS and side == "LONG") or (lower in BULLISH_TREND_LABELS and side == "SHORT"):
        return "exhaustion"
    return regime_phase(lower)


def session_from_utc_hour(hour: int) -> str:
    if hour >= 21 or hour < 1:
        return "rollover"
    if hour < 7:
        return "asian"
    if hour < 12:
        return "london-open"
    if hour < 17:
        return "ny-overlap"
    return "late-ny"


def session_at(ts: datetime) -> str:
    return session_from_utc_hour(ts.astimezone(timezone.utc).hour)


def spread_bucket(spread_pips: float) -> str:
    if spread_pips <= 0.5:
        return "<=0.5"
    if spread_pips <= 1.0:
        return "0.5-1.0"
    if spread_pips <= 1.5:
        return "1.0-1.5"
    return ">1.5"


def composite_decile(composite_score: float) -> str:
    clamped = max(0.0, min(1.0, composite_score))
    return f"D{min(math.floor(clamped * 10), 9) + 1}"


@dataclass(frozen=True)
class EnvironmentFeatures:
    """Normalized environment attributes."""

    symbol: str
    session: str
    regime: str
    direction: str
    agent_id: str
    spread_bucket: str
    composite_decile: str

    @property
    def key(self) -> str:
        return "|".join((self.session, self.regime, self.symbol, self.direction, self.agent_id))

    @property
    def short_key(self) -> str:
        return "|".join((self.session, self.regime, self.symbol, self.direction))

    @property
    def extended_key(self) -> str:
        return "|".join((self.key, self.spread_bucket, self.composite_decile))


def build_environment_features(
    symbol: str,
    session: str,
    regime: str,
    direction: str,
    agent_id: str | None = None,
    spread_pips: float = 0.0,
    composite_score: float = 0.0,
) -> EnvironmentFeatures:
    return EnvironmentFeatures(
        symbol=normalize_symbol(symbol),
        session=normalize_session(session),
        regime=normalize_regime(regime),
        direction=normalize_direction(direction),
        agent_id=(agent_id or "unknown").lower().strip(),
        spread_bucket=spread_bucket(spread_pips),
        composite_decile=composite_decile(composite_score),
    )


def build_environment_key(
    session: str,
    regime: str,
    symbol: str,
    direction: str,
    agent_id: str | None = None,
) -> str:
    """Canonical session|regime|symbol|direction|agent key."""
    return build_environment_features(symbol, session, regime, direction, agent_id).key


@dataclass(frozen=True)
class AdaptiveEdgeExplain:
    """Why an environment received its allocation."""

    env_key: str
    risk_label: str
    allocation_multiplier: float
    top_reasons: tuple[str, ...]
    learning_state: str = "N/A"
    sample_size: int = 0
    confidence_score: float = 0.0


def build_explainability(
    env_key: str,
    risk_label: str,
    allocation_multiplier: float,
    reasons: Sequence[str],
    learning_state: str = "N/A",
    sample_size: int = 0,
    confidence_score: float = 0.0,
) -> AdaptiveEdgeExplain:
    return AdaptiveEdgeExplain(
        env_key=env_key,
        risk_label=risk_label,
        allocation_multiplier=allocation_multiplier,
        top_reasons=tuple(reasons[:3]),
        learning_state=learning_state,
        sample_size=sample_size,
        confidence_score=confidence_score,
    )
