"""Execution safety: pre-trade friction gating, fill quality and auto-protection.

The pre-trade gate compares the expected move against a per-pair friction
budget for the active session. Post-trade telemetry feeds a rolling
protection check that escalates normal -> elevated -> critical and trips the
kill switch (density multiplier 0) once three or more conditions co-occur.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import math
from typing import Sequence, TypeVar

from governance.environment import normalize_session, normalize_symbol, session_at
from governance.numeric import mean, round_half_up

logger = logging.getLogger(__name__)

T = TypeVar("T")

PASS = "PASS"
THROTTLE = "THROTTLE"
REJECT = "REJECT"

PROTECTION_NORMAL = "normal"
PROTECTION_ELEVATED = "elevated"
PROTECTION_CRITICAL = "critical"

SESSION_FRICTION_MULT: dict[str, float] = {
    "asian": 1.3,
    "london-open": 0.8,
    "ny-overlap": 0.85,
    "late-ny": 1.2,
    "rollover": 2.0,
}

SESSION_LABELS: dict[str, str] = {
    "asian": "Asian Session",
    "london-open": "London Open",
    "ny-overlap": "NY Overlap",
    "late-ny": "Late NY",
    "rollover": "Rollover (Avoid)",
}

PAIR_BASE_SPREADS: dict[str, float] = {
    "EUR_USD": 0.6,
    "GBP_USD": 0.9,
    "USD_JPY": 0.7,
    "AUD_USD": 0.8,
    "USD_CAD": 1.0,
    "EUR_JPY": 1.1,
    "GBP_JPY": 1.5,
    "EUR_GBP": 0.8,
    "NZD_USD": 1.2,
    "AUD_JPY": 1.3,
    "USD_CHF": 1.0,
    "EUR_CHF": 1.2,
    "EUR_AUD": 1.6,
    "GBP_AUD": 2.0,
    "AUD_NZD": 1.8,
}
DEFAULT_BASE_SPREAD = 1.5

RISKY_EXECUTION_REGIMES = frozenset({"high-volatility", "low-liquidity"})
MIN_SPREAD_STABILITY = 40
ROLLING_WINDOW = 20


class SeededRandom:
    """Sine-hash generator; identical seeds reproduce identical sequences."""

    def __init__(self, seed: int) -> None:
        self._seed = seed

    def next(self) -> float:
        x = math.sin(self._seed) * 10000
        self._seed += 1
        return x - math.floor(x)

    def range(self, low: float, high: float) -> float:
        return low + self.next() * (high - low)

    def integer(self, low: int, high: int) -> int:
        return int(math.floor(self.range(low, high)))

    def pick(self, items: Sequence[T]) -> T:
        return items[int(math.floor(self.next() * len(items)))]

    def chance(self, probability: float = 0.5) -> bool:
        return self.next() < probability


def hash_str(value: str) -> int:
    """32-bit rolling string hash used to seed SeededRandom."""
    h = 0
    for char in value:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


@dataclass(frozen=True)
class FrictionBudget:
    """Per-pair friction components in pips for one session."""

    pair: str
    spread_mean: float
    spread_volatility: float
    slippage_estimate: float
    latency_drift: float
    total_friction: float
    friction_k: float


@dataclass(frozen=True)
class PreTradeGateResult:
    result: str
    friction_score: int
    spread_stability_score: int
    session_label: str
    regime_label: str
    reasons: tuple[str, ...]
    expected_move: float
    total_friction: float
    friction_ratio: float


@dataclass(frozen=True)
class ExecutionAutoProtection:
    """Outcome of the rolling telemetry check."""

    triggered: bool
    level: str
    actions: tuple[str, ...]
    friction_k_override: float | None
    density_multiplier: float
    restricted_pairs: tuple[str, ...]
    reason: str

    @property
    def kill_switch_active(self) -> bool:
        return self.level == PROTECTION_CRITICAL and self.density_multiplier == 0


@dataclass(frozen=True)
class OrderTelemetry:
    """Execution fields of one broker order row."""

    status: str
    currency_pair: str = ""
    entry_price: float | None = None
    slippage_pips: float | None = None
    fill_latency_ms: float | None = None
    friction_score: float | None = None
    execution_quality_score: float | None = None
    spread_at_entry: float | None = None


@dataclass(frozen=True)
class PairExecutionHealth:
    pair: str
    avg_slippage: float
    avg_spread: float
    friction_budget: float
    within_budget: bool
    trade_count: int
    quality_score: int


@dataclass(frozen=True)
class ExecutionHealthMetrics:
    avg_slippage: float
    max_slippage: float
    slippage_drift_alert: bool
    avg_fill_latency: float
    avg_friction_score: float
    avg_execution_quality: float
    order_rejection_rate: float
    partial_fill_rate: float
    net_expectancy_after_friction: float
    kill_switch_active: bool
    protection_level: str
    active_protections: tuple[str, ...]
    rolling_slippage: tuple[float, ...]
    rolling_quality: tuple[float, ...]
    pair_health: dict[str, PairExecutionHealth] = field(default_factory=dict)


def base_spread(pair: str) -> float:
    return PAIR_BASE_SPREADS.get(normalize_symbol(pair), DEFAULT_BASE_SPREAD)


def friction_k_for_session(session: str) -> float:
    """Required move/friction multiple; stricter in thin sessions."""
    session = normalize_session(session)
    if session == "rollover":
        return 5.0
    if session == "asian":
        return 3.5
    return 3.0


def compute_friction_budget(pair: str, session: str, rng: SeededRandom | None = None) -> FrictionBudget:
    pair = normalize_symbol(pair)
    session = normalize_session(session)
    if rng is None:
        rng = SeededRandom(hash_str(f"friction-{pair}-{session}"))
    session_mult = SESSION_FRICTION_MULT.get(session, 1.0)

    spread_mean = base_spread(pair) * session_mult * rng.range(0.9, 1.1)
    spread_vol = spread_mean * rng.range(0.1, 0.4)
    slippage = rng.range(0.05, 0.3)
    latency = rng.range(0.01, 0.1)
    return FrictionBudget(
        pair=pair,
        spread_mean=spread_mean,
        spread_volatility=spread_vol,
        slippage_estimate=slippage,
        latency_drift=latency,
        total_friction=spread_mean + spread_vol + slippage + latency,
        friction_k=friction_k_for_session(session),
    )


def run_pre_trade_gate(
    pair: str,
    expected_move_pips: float,
    regime: str = "trending",
    *,
    session: str | None = None,
    now: datetime | None = None,
    budget: FrictionBudget | None = None,
    override_k: float | None = None,
) -> PreTradeGateResult:
    """Gate a live order on friction ratio, spread stability, session and regime.

    Friction failure or the rollover window rejects; unstable spread or a
    risky execution regime throttles.
    """
    if session is None:
        session = session_at(now or datetime.now(timezone.utc))
    session = normalize_session(session)
    if budget is None:
        budget = compute_friction_budget(pair, session)
    k = override_k if override_k is not None else budget.friction_k
    reasons: list[str] = []

    ratio = expected_move_pips / budget.total_friction if budget.total_friction > 0 else 0.0
    friction_pass = ratio >= k
    if not friction_pass:
        reasons.append(f"Friction ratio {ratio:.1f}x < required {k:.1f}x")

    spread_stability = max(0.0, 100 - budget.spread_volatility * 80)
    spread_stable = spread_stability >= MIN_SPREAD_STABILITY
    if not spread_stable:
        reasons.append(f"Spread volatility {budget.spread_volatility:.2f} exceeds stability threshold")

    session_ok = session != "rollover"
    if not session_ok:
        reasons.append("Rollover window, liquidity insufficient")

    regime_risk = regime in RISKY_EXECUTION_REGIMES
    if regime_risk:
        reasons.append(f"Regime {regime}: elevated execution risk")

    score = (
        (40 if friction_pass else 0)
        + (25 if spread_stable else 0)
        + (20 if session_ok else 0)
        + (15 if not regime_risk else 0)
    )

    if not friction_pass or not session_ok:
        result = REJECT
    elif not spread_stable or regime_risk:
        result = THROTTLE
    else:
        result = PASS

    return PreTradeGateResult(
        result=result,
        friction_score=score,
        spread_stability_score=round_half_up(spread_stability),
        session_label=SESSION_LABELS.get(session, session),
        regime_label=regime,
        reasons=tuple(reasons),
        expected_move=expected_move_pips,
        total_friction=budget.total_friction,
        friction_ratio=ratio,
    )


def idempotency_key(signal_id: str, pair: str, direction: str, timestamp_ms: int) -> str:
    return f"exec-{signal_id}-{pair}-{direction}-{timestamp_ms}"


def score_execution_quality(
    slippage_pips: float,
    fill_latency_ms: float,
    spread_at_entry: float,
    expected_spread: float,
) -> int:
    """0-100 fill quality: slippage 40, latency 25, spread 20, fill bonus 15."""
    slippage_score = max(0.0, 40 - abs(slippage_pips) * 20)
    latency_score = max(0.0, 25 - (fill_latency_ms / 100) * 5)

    spread_ratio = spread_at_entry / max(expected_spread, 0.1)
    if spread_ratio <= 1.2:
        spread_score = 20
    elif spread_ratio <= 1.5:
        spread_score = 12
    elif spread_ratio <= 2.0:
        spread_score = 5
    else:
        spread_score = 0

    if slippage_pips <= 0.1:
        fill_bonus = 15
    elif slippage_pips <= 0.3:
        fill_bonus = 10
    elif slippage_pips <= 0.5:
        fill_bonus = 5
    else:
        fill_bonus = 0

    return round_half_up(min(100.0, slippage_score + latency_score + spread_score + fill_bonus))


def evaluate_execution_protection(
    recent_slippages: Sequence[float],
    recent_qualities: Sequence[float],
    rejection_rate: float,
    net_expectancy: float,
) -> ExecutionAutoProtection:
    actions: list[str] = []
    level = PROTECTION_NORMAL
    friction_k_override: float | None = None
    density = 1.0

    if len(recent_slippages) >= 5:
        overall = mean(recent_slippages)
        recent = mean(recent_slippages[-5:])
        if recent > overall * 1.5:
            actions.append("Slippage drift detected, raising friction K")
            friction_k_override = 4.0
            level = PROTECTION_ELEVATED

    if len(recent_qualities) >= 5 and mean(recent_qualities[-5:]) < 50:
        actions.append("Execution quality below threshold, reducing density")
        density = 0.6
        level = PROTECTION_CRITICAL if level == PROTECTION_ELEVATED else PROTECTION_ELEVATED

    if rejection_rate > 0.2:
        actions.append("High rejection rate, throttling order flow")
        density = min(density, 0.5)
        if level == PROTECTION_NORMAL:
            level = PROTECTION_ELEVATED

    if net_expectancy < 0:
        actions.append("Negative net expectancy, CRITICAL: reduce all positions")
        density = min(density, 0.3)
        level = PROTECTION_CRITICAL

    if level == PROTECTION_CRITICAL and len(actions) >= 3:
        actions.append("KILL SWITCH: suspending live order routing")
        density = 0.0
        logger.warning("Execution kill switch engaged", extra={"actions": len(actions)})

    return ExecutionAutoProtection(
        triggered=bool(actions),
        level=level,
        actions=tuple(actions),
        friction_k_override=friction_k_override,
        density_multiplier=density,
        restricted_pairs=(),
        reason=actions[0] if actions else "All execution metrics within tolerance",
    )


def _present(values: Sequence[float | None]) -> list[float]:
    return [value for value in values if value is not None]


def compute_execution_health(orders: Sequence[OrderTelemetry]) -> ExecutionHealthMetrics:
    """Aggregate order telemetry; only orders with a fill price count as filled."""
    filled = [o for o in orders if o.status in ("filled", "closed") and o.entry_price is not None]
    rejected = [o for o in orders if o.status == "rejected"]
    meaningful = [
        o for o in orders if o.entry_price is not None or o.status in ("rejected", "submitted")
    ]
    total = len(meaningful) or 1

    slippages = _present([o.slippage_pips for o in filled])
    latencies = _present([o.fill_latency_ms for o in filled])
    frictions = _present([o.friction_score for o in filled])
    qualities = _present([o.execution_quality_score for o in filled])

    avg_slip = mean(slippages)
    recent_slip = slippages[-5:]
    slippage_drift = len(recent_slip) >= 3 and mean(recent_slip) > avg_slip * 1.4

    rejection_rate = len(rejected) / total
    avg_quality = mean(qualities)
    if avg_quality > 60:
        net_expectancy = avg_quality * 0.01 - avg_slip * 0.1
    else:
        net_expectancy = -(avg_slip * 0.2)

    protection = evaluate_execution_protection(
        slippages[-ROLLING_WINDOW:],
        qualities[-ROLLING_WINDOW:],
        rejection_rate,
        net_expectancy,
    )

    grouped: dict[str, list[OrderTelemetry]] = {}
    for order in filled:
        grouped.setdefault(order.currency_pair or "UNKNOWN", []).append(order)
    pair_health: dict[str, PairExecutionHealth] = {}
    for pair, pair_orders in grouped.items():
        count = len(pair_orders)
        avg_pair_slip = sum(o.slippage_pips or 0.0 for o in pair_orders) / count
        avg_pair_spread = sum(o.spread_at_entry or 0.0 for o in pair_orders) / count
        budget = PAIR_BASE_SPREADS.get(pair, DEFAULT_BASE_SPREAD)
        pair_health[pair] = PairExecutionHealth(
            pair=pair,
            avg_slippage=avg_pair_slip,
            avg_spread=avg_pair_spread,
            friction_budget=budget,
            within_budget=(avg_pair_slip + avg_pair_spread) <= budget * 2,
            trade_count=count,
            quality_score=round_half_up(sum(o.execution_quality_score or 0.0 for o in pair_orders) / count),
        )

    return ExecutionHealthMetrics(
        avg_slippage=avg_slip,
        max_slippage=max(slippages) if slippages else 0.0,
        slippage_drift_alert=slippage_drift,
        avg_fill_latency=mean(latencies),
        avg_friction_score=mean(frictions),
        avg_execution_quality=avg_quality,
        order_rejection_rate=rejection_rate,
        partial_fill_rate=0.0,
        net_expectancy_after_friction=net_expectancy,
        kill_switch_active=protection.kill_switch_active,
        protection_level=protection.level,
        active_protections=protection.actions,
        rolling_slippage=tuple(slippages[-ROLLING_WINDOW:]),
        rolling_quality=tuple(qualities[-ROLLING_WINDOW:]),
        pair_health=pair_health,
    )


SIMULATED_PAIRS: tuple[str, ...] = (
    "EUR_USD",
    "GBP_USD",
    "USD_JPY",
    "AUD_USD",
    "USD_CAD",
    "EUR_GBP",
    "GBP_JPY",
    "EUR_JPY",
)


def simulate_execution_health(rng: SeededRandom | None = None) -> ExecutionHealthMetrics:
    """Synthetic healthy metrics for display when no live fills exist."""
    if rng is None:
        rng = SeededRandom(hash_str("exec-health-sim"))

    slippages = [rng.range(0.02, 0.45) for _ in range(ROLLING_WINDOW)]
    qualities = [float(rng.integer(55, 98)) for _ in range(ROLLING_WINDOW)]

    pair_health: dict[str, PairExecutionHealth] = {}
    for pair in SIMULATED_PAIRS:
        budget = PAIR_BASE_SPREADS.get(pair, DEFAULT_BASE_SPREAD)
        avg_slip = rng.range(0.03, 0.3)
        avg_spread = budget * rng.range(0.85, 1.25)
        pair_health[pair] = PairExecutionHealth(
            pair=pair,
            avg_slippage=avg_slip,
            avg_spread=avg_spread,
            friction_budget=budget * 2,
            within_budget=(avg_slip + avg_spread) <= budget * 2,
            trade_count=rng.integer(5, 40),
            quality_score=rng.integer(62, 96),
        )

    return ExecutionHealthMetrics(
        avg_slippage=mean(slippages),
        max_slippage=max(slippages),
        slippage_drift_alert=False,
        avg_fill_latency=rng.range(45, 180),
        avg_friction_score=rng.range(68, 92),
        avg_execution_quality=mean(qualities),
        order_rejection_rate=rng.range(0.02, 0.08),
        partial_fill_rate=0.0,
        net_expectancy_after_friction=rng.range(0.15, 0.65),
        kill_switch_active=False,
        protection_level=PROTECTION_NORMAL,
        active_protections=(),
        rolling_slippage=tuple(slippages),
        rolling_quality=tuple(qualities),
        pair_health=pair_health,
    )
