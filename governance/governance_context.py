"""Builds governance inputs from regime output, live market data and trade history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Sequence

from governance.environment import normalize_symbol, regime_phase, session_at
from governance.numeric import clamp, mean, pip_size
from governance.providers import ClosedTrade, MarketContext, TradeProposal
from governance.regime_classifier import MarketRegimeSnapshot
from governance.trade_governance import MAJOR_PAIRS, GovernanceContext

SESSION_AGGRESSIVENESS: dict[str, float] = {
    "asian": 35,
    "london-open": 88,
    "ny-overlap": 78,
    "late-ny": 22,
    "rollover": 10,
}

SESSION_TRADE_LIMITS: dict[str, int] = {
    "london-open": 12,
    "ny-overlap": 10,
    "asian": 6,
    "late-ny": 4,
}

OVERTRADING_WINDOW = timedelta(minutes=30)


@dataclass(frozen=True)
class SequencingState:
    """Win/loss clustering and decay from recent closed trades."""

    cluster: str
    edge_decaying: bool
    edge_decay_rate: float


def spread_stability_rank(spread_history: Sequence[float]) -> float:
    """100 minus twice the coefficient of variation; 60 until two observations exist."""
    if len(spread_history) < 2:
        return 60.0
    avg = mean(spread_history)
    variance = sum((value - avg) ** 2 for value in spread_history) / len(spread_history)
    cv = math.sqrt(variance) / avg if avg > 0 else 0.0
    return clamp(100 - cv * 200, 0, 100)


def friction_ratio(atr_pips: float, spread_pips: float, slippage_pips: float) -> float:
    total = spread_pips + slippage_pips
    return atr_pips / total if total > 0 else 10.0


def liquidity_shock_probability(stability_rank: float, phase: str, session: str) -> float:
    base = 100 - stability_rank
    if phase == "exhaustion":
        base += 15
    if phase == "compression":
        base += 5
    if session == "late-ny":
        base += 10
    if session == "asian":
        base += 5
    return clamp(base, 0, 100)


def sort_recent_first(trades: Sequence[ClosedTrade]) -> list[ClosedTrade]:
    return sorted(trades, key=lambda trade: trade.closed_at, reverse=True)


def compute_sequencing(recent_first: Sequence[ClosedTrade]) -> SequencingState:
    if len(recent_first) < 3:
        return SequencingState("neutral", False, 0.0)

    last5 = recent_first[:5]
    wins = sum(1 for trade in last5 if trade.won)
    losses = len(last5) - wins
    if wins >= 4:
        cluster = "profit-momentum"
    elif losses >= 4:
        cluster = "loss-cluster"
    elif losses >= 3:
        cluster = "mixed"
    else:
        cluster = "neutral"

    recent10 = recent_first[:10]
    older10 = recent_first[10:20]
    if len(recent10) >= 5 and len(older10) >= 5:
        recent_wr = sum(1 for trade in recent10 if trade.won) / len(recent10)
        older_wr = sum(1 for trade in older10 if trade.won) / len(older10)
        if older_wr > 0 and recent_wr < older_wr * 0.85:
            return SequencingState(cluster, True, (older_wr - recent_wr) / older_wr * 100)
    return SequencingState(cluster, False, 0.0)


def pair_performance(symbol: str, trades: Sequence[ClosedTrade]) -> tuple[float, bool]:
    """Return (pair expectancy score 0-100, favored)."""
    pair_trades = [trade for trade in trades if normalize_symbol(trade.symbol) == symbol]
    if len(pair_trades) < 3:
        return 55.0, False
    win_rate = sum(1 for trade in pair_trades if trade.won) / len(pair_trades)
    avg_pnl = mean([trade.pnl_pips for trade in pair_trades])
    expectancy = clamp(50 + win_rate * 30 + min(avg_pnl * 2, 20), 0, 100)
    return expectancy, expectancy > 65


def overtrading_throttled(trades: Sequence[ClosedTrade], session: str, now: datetime) -> bool:
    in_window = [trade for trade in trades if timedelta(0) <= now - trade.closed_at < OVERTRADING_WINDOW]
    return len(in_window) >= SESSION_TRADE_LIMITS.get(session, 8)


def build_governance_context(
    proposal: TradeProposal,
    snapshot: MarketRegimeSnapshot,
    market: MarketContext,
    trade_history: Sequence[ClosedTrade],
    now: datetime,
) -> GovernanceContext:
    """Assemble the context for one proposal; history may arrive in any order."""
    symbol = normalize_symbol(proposal.symbol)
    session = session_at(now)
    phase = regime_phase(snapshot.label)
    stability = spread_stability_rank(market.spread_history)
    atr_pips = snapshot.atr / pip_size(symbol)
    history = sort_recent_first(trade_history)
    sequencing = compute_sequencing(history)
    expectancy, favored = pair_performance(symbol, history)

    alignment = market.mtf_alignment_score
    if alignment is None:
        alignment = (40 if market.htf_supports else 0) + (35 if market.mtf_confirms else 0) + (25 if market.ltf_clean else 0)

    return GovernanceContext(
        mtf_alignment_score=float(alignment),
        htf_supports=market.htf_supports,
        mtf_confirms=market.mtf_confirms,
        ltf_clean=market.ltf_clean,
        volatility_phase=phase,
        phase_confidence=clamp(snapshot.strength, 0, 100),
        liquidity_shock_prob=liquidity_shock_probability(stability, phase, session),
        spread_stability_rank=stability,
        friction_ratio=friction_ratio(atr_pips, market.spread_pips, market.slippage_pips),
        pair_expectancy=expectancy,
        pair_favored=favored,
        is_major_pair=symbol in MAJOR_PAIRS,
        current_session=session,
        session_aggressiveness=SESSION_AGGRESSIVENESS.get(session, 50),
        edge_decaying=sequencing.edge_decaying,
        edge_decay_rate=sequencing.edge_decay_rate,
        overtrading_throttled=overtrading_throttled(history, session, now),
        sequencing_cluster=sequencing.cluster,
        regime_family_confirmed=snapshot.regime_family_confirmed,
        regime_diverging=snapshot.regime_diverging,
        divergent_bars=snapshot.divergent_bars,
    )
