"""Three-axis market regime classification with anti-flicker confirmation.

Volatility, volatility acceleration and directional persistence are each
scored 0-100 from a candle window. A decision table over their levels plus a
price-progress check yields one of nine regime labels. The label is then
re-derived for the previous bars so that entry requires a confirmed regime
(slow) while two divergent bars are enough to flag instability (fast).
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence

import numpy as np
import pandas as pd

from governance import indicators
from governance.indicators import BEARISH, BULLISH
from governance.numeric import mean, percentile_rank, round_half_up, safe_ratio
from governance.providers import Candle, candles_to_frame

logger = logging.getLogger(__name__)

REGIME_LABELS: tuple[str, ...] = (
    "compression",
    "flat",
    "transition",
    "momentum",
    "risk-off",
    "expansion",
    "breakdown",
    "ignition",
    "exhaustion",
)

BULLISH_TRADE_REGIMES = frozenset({"expansion", "momentum"})
BEARISH_TRADE_REGIMES = frozenset({"breakdown", "risk-off"})
NEUTRAL_NO_TRADE_REGIMES = frozenset({"compression", "flat", "exhaustion", "ignition", "transition"})

STABILITY_LOOKBACK = 5
MIN_STABILITY_BARS = 50
CONFIRMATION_BARS = 3
DIVERGENCE_BARS = 2


@dataclass(frozen=True)
class RegimeAxes:
    """Scored axes and momentum vote feeding the regime decision table."""

    volatility_score: int
    vol_acceleration: int
    directional_persistence: int
    direction: str
    bullish_momentum: int
    bearish_momentum: int
    rsi: float = 50.0


@dataclass(frozen=True)
class PriceProgress:
    """Whether price is still making progress in the dominant direction."""

    roc_declining: bool
    efficiency_declining: bool
    structure_intact: bool

    @property
    def stalling(self) -> bool:
        return (self.roc_declining or self.efficiency_declining) and not self.structure_intact


@dataclass(frozen=True)
class MarketRegimeSnapshot:
    """Per-bar regime record; superseded, never mutated, by the next bar's snapshot."""

    label: str
    strength: int
    volatility_score: int
    vol_acceleration: int
    accel_level: str
    directional_persistence: int
    regime_direction: str
    family_label: str
    hold_bars: int
    family_hold_bars: int
    divergent_bars: int
    regime_confirmed: bool
    regime_family_confirmed: bool
    regime_diverging: bool
    regime_early_warning: bool
    price_progress_stalling: bool
    structure_intact: bool
    bullish_momentum: int
    bearish_momentum: int
    atr: float
    atr_ratio: float
    adx: float
    rsi: float
    recent_regimes: tuple[str, ...]

    @property
    def short_friendly(self) -> bool:
        return self.label in BEARISH_TRADE_REGIMES

    @property
    def long_friendly(self) -> bool:
        return self.label in BULLISH_TRADE_REGIMES


def _atr_ratio_score(ratio: float) -> int:
    if ratio < 0.7:
        return round_half_up(ratio / 0.7 * 20)
    if ratio <= 1.3:
        return round_half_up(30 + (ratio - 0.7) / 0.6 * 30)
    return min(100, round_half_up(60 + (ratio - 1.3) / 0.7 * 40))


def _acceleration_score(ratio: float) -> int:
    if ratio < 0.9:
        return round_half_up(ratio / 0.9 * 30)
    if ratio <= 1.1:
        return round_half_up(30 + (ratio - 0.9) / 0.2 * 20)
    return min(100, round_half_up(50 + (ratio - 1.1) / 0.4 * 50))


def volatility_level(score: int) -> str:
    if score < 30:
        return "low"
    return "normal" if score <= 65 else "high"


def persistence_level(score: int) -> str:
    if score < 30:
        return "weak"
    return "moderate" if score <= 60 else "strong"


def acceleration_level(score: int) -> str:
    if score < 35:
        return "decelerating"
    return "stable" if score <= 55 else "accelerating"


def _volatility_score(atr_values: np.ndarray, closes: pd.Series) -> tuple[int, float]:
    current_atr = float(atr_values[-1]) if len(atr_values) else 0.0
    baseline = mean(list(atr_values[-50:]))
    atr_ratio = safe_ratio(current_atr, baseline) if baseline > 0 else 1.0
    widths = indicators.bollinger_widths(closes)
    current_width = widths[-1] if widths else 0.0
    bb_percentile = percentile_rank(widths, current_width)
    atr_percentile = percentile_rank(list(atr_values[-100:]), current_atr)
    score = round_half_up(_atr_ratio_score(atr_ratio) * 0.40 + bb_percentile * 0.30 + atr_percentile * 0.30)
    return score, atr_ratio


def _three_bar_ratio(values: Sequence[float], fallback: float) -> float:
    if len(values) >= 6:
        recent = sum(values[-3:]) / 3
        prior = sum(values[-6:-3]) / 3
    else:
        recent = prior = fallback
    return safe_ratio(recent, prior) if prior > 0 else 1.0


def _acceleration(frame: pd.DataFrame, atr_values: np.ndarray, widths: list[float]) -> int:
    current_atr = float(atr_values[-1]) if len(atr_values) else 0.0
    atr_accel = _three_bar_ratio(list(atr_values), current_atr)
    bb_accel = _three_bar_ratio(widths, widths[-1] if widths else 0.0)
    ranges = list((frame["high"] - frame["low"]).to_numpy(dtype=float))
    range_accel = _three_bar_ratio(ranges, 0.0)
    return round_half_up(
        _acceleration_score(atr_accel) * 0.40
        + _acceleration_score(bb_accel) * 0.30
        + _acceleration_score(range_accel) * 0.30
    )


def _persistence(efficiency: float, adx_value: float, structure_score: int) -> tuple[int, int]:
    adx_normalized = min(100, round_half_up(adx_value * 2))
    score = round_half_up(round_half_up(efficiency * 100) * 0.40 + adx_normalized * 0.35 + structure_score * 0.25)
    return score, adx_normalized


def _path_efficiency(values: Sequence[float]) -> float:
    path = sum(abs(values[idx] - values[idx - 1]) for idx in range(1, len(values)))
    return abs(values[-1] - values[0]) / path if path > 0 else 0.0


def measure_price_progress(frame: pd.DataFrame, direction: str) -> PriceProgress:
    """ROC and path-efficiency decay plus HH/HL or LL/LH structure over the last 8 bars."""
    closes = list(frame["close"].to_numpy(dtype=float))

    roc_recent = roc_prior = 0.0
    roc_slice = closes[-15:]
    if len(roc_slice) >= 14:
        roc_recent = (safe_ratio(roc_slice[-1], roc_slice[-7]) - 1) * 100
        roc_prior = (safe_ratio(roc_slice[-7], roc_slice[-13]) - 1) * 100
    roc_declining = abs(roc_recent) < abs(roc_prior) * 0.7

    eff_recent = eff_prior = 0.0
    eff_slice = closes[-22:]
    if len(eff_slice) >= 22:
        eff_recent = _path_efficiency(eff_slice[-7:])
        eff_prior = _path_efficiency(eff_slice[-14:-7])
    efficiency_declining = eff_prior > 0.1 and eff_recent < eff_prior * 0.6

    tail = frame.iloc[-8:]
    highs = tail["high"].to_numpy(dtype=float)
    lows = tail["low"].to_numpy(dtype=float)
    higher_highs = int((highs[1:] > highs[:-1]).sum())
    higher_lows = int((lows[1:] > lows[:-1]).sum())
    lower_lows = int((lows[1:] < lows[:-1]).sum())
    lower_highs = int((highs[1:] < highs[:-1]).sum())
    if direction == BULLISH:
        intact = higher_highs >= 3 and higher_lows >= 3
    else:
        intact = lower_lows >= 3 and lower_highs >= 3
    return PriceProgress(roc_declining, efficiency_declining, intact)


def label_regime(axes: RegimeAxes, stalling: bool) -> tuple[str, int]:
    """Return (label, strength) from the volatility x persistence decision table."""
    vol = axes.volatility_score
    accel = axes.vol_acceleration
    pers = axes.directional_persistence
    vol_level = volatility_level(vol)
    pers_level = persistence_level(pers)
    decelerating = acceleration_level(accel) == "decelerating"
    bearish = axes.direction == BEARISH

    if vol_level == "low":
        if pers_level == "weak":
            return "compression", max(10, 100 - vol - pers)
        if pers_level == "moderate":
            return "flat", round_half_up(pers * 0.5 + (100 - vol) * 0.3)
        if acceleration_level(accel) == "accelerating":
            return "transition", pers
        return "flat", round_half_up(pers * 0.4)

    if vol_level == "normal":
        if pers_level == "weak":
            return "flat", round_half_up((100 - pers) * 0.4)
        if pers_level == "moderate":
            strength = round_half_up(pers * 0.5 + vol * 0.2 + accel * 0.2)
            if bearish and axes.bearish_momentum >= 4:
                return ("flat" if decelerating else "risk-off"), strength
            if not bearish and axes.bullish_momentum >= 4:
                return ("flat" if decelerating else "momentum"), strength
            return "transition", 40
        strength = round_half_up(pers * 0.4 + vol * 0.2 + accel * 0.3)
        if bearish:
            if decelerating:
                return ("exhaustion" if stalling else "risk-off"), strength
            return ("breakdown" if axes.bearish_momentum >= 5 else "risk-off"), strength
        if decelerating:
            return ("exhaustion" if stalling else "momentum"), strength
        return ("expansion" if axes.bullish_momentum >= 5 else "momentum"), strength

    if pers_level == "weak":
        if decelerating and stalling:
            return "exhaustion", round_half_up(vol * 0.5 + (100 - accel) * 0.3)
        if decelerating:
            return "flat", round_half_up(vol * 0.3)
        return "ignition", round_half_up(vol * 0.4 + accel * 0.3)
    if pers_level == "moderate":
        if decelerating:
            if stalling:
                label = "exhaustion"
            else:
                label = "risk-off" if bearish else "momentum"
            return label, round_half_up(vol * 0.4 + (100 - accel) * 0.3)
        label = "risk-off" if bearish else "expansion"
        return label, round_half_up(vol * 0.3 + pers * 0.3 + accel * 0.3)
    if decelerating:
        if stalling:
            label = "exhaustion"
        elif bearish:
            label = "breakdown" if axes.bearish_momentum >= 5 else "risk-off"
        else:
            label = "expansion" if axes.bullish_momentum >= 5 else "momentum"
        return label, round_half_up(vol * 0.3 + pers * 0.3)
    if bearish:
        label = "breakdown" if axes.bearish_momentum >= 5 else "risk-off"
    else:
        label = "expansion"
    return label, min(100, round_half_up(vol * 0.3 + pers * 0.3 + accel * 0.3))


def simplified_regime_label(axes: RegimeAxes) -> str:
    """Acceleration-free label used when re-deriving previous bars."""
    vol_level = volatility_level(axes.volatility_score)
    pers_level = persistence_level(axes.directional_persistence)
    bearish = axes.direction == BEARISH
    if vol_level == "low":
        return {"weak": "compression", "moderate": "flat", "strong": "transition"}[pers_level]
    if vol_level == "normal":
        if pers_level == "weak":
            return "flat"
        if pers_level == "moderate":
            if bearish and axes.bearish_momentum >= 4:
                return "risk-off"
            if not bearish and axes.bullish_momentum >= 4:
                return "momentum"
            return "transition"
        return "breakdown" if bearish else "expansion"
    if pers_level == "weak":
        return "exhaustion" if axes.rsi > 70 or axes.rsi < 30 else "ignition"
    if pers_level == "moderate":
        return "risk-off" if bearish else "expansion"
    return "breakdown" if bearish else "expansion"


def regime_family(label: str, direction: str) -> str:
    """Direction-aware family; a trade label contradicting the measured direction is neutral."""
    if label in BULLISH_TRADE_REGIMES and direction == BULLISH:
        return "bullish"
    if label in BEARISH_TRADE_REGIMES and direction == BEARISH:
        return "bearish"
    return "neutral"


def _in_family(label: str, family: str) -> bool:
    if family == "bullish":
        return label in BULLISH_TRADE_REGIMES
    if family == "bearish":
        return label in BEARISH_TRADE_REGIMES
    return label in NEUTRAL_NO_TRADE_REGIMES


def _recent_regimes(frame: pd.DataFrame, current: str, axes: RegimeAxes, adx_normalized: int, structure_score: int) -> list[str]:
    recent = [current]
    if len(frame) <= STABILITY_LOOKBACK + MIN_STABILITY_BARS:
        return recent
    for offset in range(1, STABILITY_LOOKBACK):
        sub = frame.iloc[: len(frame) - offset]
        if len(sub) < MIN_STABILITY_BARS:
            break
        sub_atr = indicators.atr_series(sub).to_numpy(dtype=float)
        sub_vol, _ = _volatility_score(sub_atr, sub["close"])
        sub_eff = indicators.trend_efficiency(sub["close"])
        # ADX and structure are smoothed; reuse the current bar's values.
        sub_pers = round_half_up(round_half_up(sub_eff * 100) * 0.40 + adx_normalized * 0.35 + structure_score * 0.25)
        sub_axes = RegimeAxes(
            volatility_score=sub_vol,
            vol_acceleration=axes.vol_acceleration,
            directional_persistence=sub_pers,
            direction=axes.direction,
            bullish_momentum=axes.bullish_momentum,
            bearish_momentum=axes.bearish_momentum,
            rsi=axes.rsi,
        )
        recent.append(simplified_regime_label(sub_axes))
    return recent


def classify_regime(candles: Sequence[Candle] | pd.DataFrame) -> MarketRegimeSnapshot:
    """Classify the latest bar of an ascending candle window.

    Callers must supply enough history (60+ bars) for stable percentiles;
    shorter windows still classify but fall back to neutral percentiles.
    """
    frame = candles if isinstance(candles, pd.DataFrame) else candles_to_frame(candles)
    closes = frame["close"]

    atr_values = indicators.atr_series(frame).to_numpy(dtype=float)
    widths = indicators.bollinger_widths(closes)
    volatility, atr_ratio = _volatility_score(atr_values, closes)
    acceleration = _acceleration(frame, atr_values, widths)

    vote = indicators.momentum_vote(frame)
    structure_score = round_half_up(vote.agreeing / 7 * 100)
    adx_reading = indicators.adx(frame)
    persistence, adx_normalized = _persistence(indicators.trend_efficiency(closes), adx_reading.value, structure_score)
    rsi_value = indicators.rsi(closes)

    axes = RegimeAxes(
        volatility_score=volatility,
        vol_acceleration=acceleration,
        directional_persistence=persistence,
        direction=vote.dominant,
        bullish_momentum=vote.bullish,
        bearish_momentum=vote.bearish,
        rsi=rsi_value,
    )
    progress = measure_price_progress(frame, vote.dominant)
    label, strength = label_regime(axes, progress.stalling)

    recent = _recent_regimes(frame, label, axes, adx_normalized, structure_score)
    family = regime_family(label, vote.dominant)
    hold_bars = sum(1 for regime in recent if regime == label)
    family_hold_bars = sum(1 for regime in recent if _in_family(regime, family))
    divergent_bars = len(recent) - family_hold_bars
    diverging = divergent_bars >= DIVERGENCE_BARS

    snapshot = MarketRegimeSnapshot(
        label=label,
        strength=strength,
        volatility_score=volatility,
        vol_acceleration=acceleration,
        accel_level=acceleration_level(acceleration),
        directional_persistence=persistence,
        regime_direction=vote.dominant,
        family_label=family,
        hold_bars=hold_bars,
        family_hold_bars=family_hold_bars,
        divergent_bars=divergent_bars,
        regime_confirmed=hold_bars >= CONFIRMATION_BARS,
        regime_family_confirmed=family_hold_bars >= CONFIRMATION_BARS,
        regime_diverging=diverging,
        regime_early_warning=divergent_bars >= 1 and not diverging,
        price_progress_stalling=progress.stalling,
        structure_intact=progress.structure_intact,
        bullish_momentum=vote.bullish,
        bearish_momentum=vote.bearish,
        atr=float(atr_values[-1]) if len(atr_values) else 0.0,
        atr_ratio=round(atr_ratio, 2),
        adx=adx_reading.value,
        rsi=rsi_value,
        recent_regimes=tuple(recent),
    )
    logger.debug(
        "Regime %s (%s) vol=%s accel=%s pers=%s family=%s hold=%s divergent=%s",
        label,
        strength,
        volatility,
        acceleration,
        persistence,
        family,
        hold_bars,
        divergent_bars,
    )
    return snapshot
