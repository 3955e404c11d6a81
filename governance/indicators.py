"""Technical indicators computed over an OHLCV candle frame.

Frames carry ``open``, ``high``, ``low``, ``close`` and ``volume`` columns in
ascending time order. Every function reads only the trailing window it needs
and returns plain floats or signal strings so regime scoring stays free of
pandas types.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd

BULLISH = "bullish"
BEARISH = "bearish"
NEUTRAL = "neutral"


def ema(series: pd.Series, period: int) -> pd.Series:
    """EMA seeded with the first observation, k = 2 / (period + 1)."""
    return series.ewm(span=period, adjust=False).mean()


def true_range(frame: pd.DataFrame) -> pd.Series:
    prev_close = frame["close"].shift(1)
    ranges = pd.concat(
        [
            frame["high"] - frame["low"],
            (frame["high"] - prev_close).abs(),
            (frame["low"] - prev_close).abs(),
        ],
        axis=1,
    )
    # First bar has no previous close; max() skips the NaN columns.
    return ranges.max(axis=1)


def atr_series(frame: pd.DataFrame, period: int = 14) -> pd.Series:
    return ema(true_range(frame), period)


def ema_signal(closes: pd.Series, period: int = 50) -> str:
    value = ema(closes, period).iloc[-1]
    return BULLISH if closes.iloc[-1] > value else BEARISH


def rsi(closes: pd.Series, period: int = 14) -> float:
    diffs = closes.diff().iloc[-period:]
    gains = float(diffs[diffs > 0].sum())
    losses = float(-diffs[diffs < 0].sum())
    avg_gain = gains / period
    avg_loss = losses / period
    rs = 100.0 if avg_loss == 0 else avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def stochastic_k(frame: pd.DataFrame, period: int = 14) -> float:
    window = frame.iloc[-period:]
    high = float(window["high"].max())
    low = float(window["low"].min())
    if high == low:
        return 50.0
    return (float(window["close"].iloc[-1]) - low) / (high - low) * 100.0


@dataclass(frozen=True)
class AdxReading:
    """Single-window directional movement reading."""

    value: float
    plus_di: float
    minus_di: float


def adx(frame: pd.DataFrame, period: int = 14) -> AdxReading:
    """DX over the trailing window; zero when fewer than two windows of bars exist."""
    if len(frame) < period * 2:
        return AdxReading(0.0, 0.0, 0.0)
    window = frame.iloc[-(period + 1):]
    high = window["high"].to_numpy(dtype=float)
    low = window["low"].to_numpy(dtype=float)
    close = window["close"].to_numpy(dtype=float)
    up_move = high[1:] - high[:-1]
    down_move = low[:-1] - low[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0).sum()
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0).sum()
    tr = np.maximum.reduce(
        [high[1:] - low[1:], np.abs(high[1:] - close[:-1]), np.abs(low[1:] - close[:-1])]
    ).sum()
    plus_di = plus_dm / tr * 100 if tr > 0 else 0.0
    minus_di = minus_dm / tr * 100 if tr > 0 else 0.0
    di_sum = plus_di + minus_di
    dx = abs(plus_di - minus_di) / di_sum * 100 if di_sum > 0 else 0.0
    return AdxReading(float(dx), float(plus_di), float(minus_di))


def bollinger_widths(closes: pd.Series, period: int = 20, mult: float = 2.0, lookback: int = 100) -> list[float]:
    """Band widths (upper - lower) / mid for every full window in the lookback."""
    tail = closes.iloc[-lookback:].reset_index(drop=True)
    mid = tail.rolling(period).mean()
    # Population standard deviation, matching the band definition.
    sd = tail.rolling(period).std(ddof=0)
    widths = (2 * mult * sd) / mid
    valid = widths[(mid > 0) & widths.notna()]
    return [float(value) for value in valid]


def ichimoku_signal(frame: pd.DataFrame) -> str:
    def midpoint(period: int) -> float:
        window = frame.iloc[-period:]
        return (float(window["high"].max()) + float(window["low"].min())) / 2

    tenkan = midpoint(9)
    kijun = midpoint(26)
    senkou_a = (tenkan + kijun) / 2
    senkou_b = midpoint(52)
    close = float(frame["close"].iloc[-1])
    if close > max(senkou_a, senkou_b):
        return BULLISH
    if close < min(senkou_a, senkou_b):
        return BEARISH
    return NEUTRAL


def supertrend_signal(frame: pd.DataFrame, period: int = 10, mult: float = 3.0) -> str:
    atr_value = float(atr_series(frame, period).iloc[-1])
    last = frame.iloc[-1]
    lower_band = (float(last["high"]) + float(last["low"])) / 2 - mult * atr_value
    return BULLISH if float(last["close"]) > lower_band else BEARISH


def parabolic_sar_signal(frame: pd.DataFrame, step: float = 0.02, max_af: float = 0.2) -> str:
    highs = frame["high"].to_numpy(dtype=float)
    lows = frame["low"].to_numpy(dtype=float)
    af = step
    bullish = True
    sar = lows[0]
    extreme = highs[0]
    for high, low in zip(highs[1:], lows[1:]):
        sar = sar + af * (extreme - sar)
        if bullish:
            if low < sar:
                bullish, sar, extreme, af = False, extreme, low, step
            elif high > extreme:
                extreme = high
                af = min(af + step, max_af)
        else:
            if high > sar:
                bullish, sar, extreme, af = True, extreme, high, step
            elif low < extreme:
                extreme = low
                af = min(af + step, max_af)
    return BULLISH if bullish else BEARISH


def rate_of_change(closes: pd.Series, period: int = 12) -> float:
    prev = float(closes.iloc[-1 - period])
    curr = float(closes.iloc[-1])
    return 0.0 if prev == 0 else (curr - prev) / prev * 100


def elder_force(frame: pd.DataFrame, period: int = 13) -> float:
    forces = (frame["close"].diff() * frame["volume"]).fillna(0.0)
    return float(ema(forces, period).iloc[-1])


def heikin_ashi_signal(frame: pd.DataFrame) -> str:
    ha_close = ((frame["open"] + frame["high"] + frame["low"] + frame["close"]) / 4).to_numpy(dtype=float)
    opens = frame["open"].to_numpy(dtype=float)
    closes = frame["close"].to_numpy(dtype=float)
    ha_open = np.empty_like(ha_close)
    ha_open[0] = (opens[0] + closes[0]) / 2
    for idx in range(1, len(ha_close)):
        ha_open[idx] = (ha_open[idx - 1] + ha_close[idx - 1]) / 2
    bullish_count = int((ha_close[-5:] > ha_open[-5:]).sum())
    if bullish_count >= 4:
        return BULLISH
    if bullish_count <= 1:
        return BEARISH
    return NEUTRAL


def trend_efficiency(closes: pd.Series, period: int = 14) -> float:
    """Net move over path length for the trailing period + 1 closes."""
    window = closes.iloc[-(period + 1):].to_numpy(dtype=float)
    net = abs(window[-1] - window[0])
    path = float(np.abs(np.diff(window)).sum())
    return 0.0 if path == 0 else net / path


@dataclass(frozen=True)
class MomentumVote:
    """Bullish and bearish counts across the seven trend-following indicators."""

    bullish: int
    bearish: int

    @property
    def dominant(self) -> str:
        return BULLISH if self.bullish >= self.bearish else BEARISH

    @property
    def agreeing(self) -> int:
        return self.bullish if self.dominant == BULLISH else self.bearish


def momentum_vote(frame: pd.DataFrame) -> MomentumVote:
    closes = frame["close"]
    signals = (
        BULLISH if rate_of_change(closes) > 0 else BEARISH,
        BULLISH if elder_force(frame) > 0 else BEARISH,
        ema_signal(closes, 50),
        supertrend_signal(frame),
        parabolic_sar_signal(frame),
        ichimoku_signal(frame),
        heikin_ashi_signal(frame),
    )
    return MomentumVote(
        bullish=sum(1 for signal in signals if signal == BULLISH),
        bearish=sum(1 for signal in signals if signal == BEARISH),
    )
