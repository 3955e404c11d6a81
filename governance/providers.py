"""Collaborator contracts and the records exchanged with them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol, Sequence

import pandas as pd

from governance.numeric import as_utc

DIRECTION_LONG = "LONG"
DIRECTION_SHORT = "SHORT"
DIRECTION_NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar; sequences are ordered by strictly increasing time."""

    open: float
    high: float
    low: float
    close: float
    volume: float
    time: datetime


@dataclass(frozen=True)
class TradeProposal:
    """Agent-generated trade idea consumed once by the pipeline."""

    proposal_id: str
    symbol: str
    direction: str
    agent_id: str
    timestamp: datetime
    timeframe: str = "5m"
    base_win_probability: float = 0.55
    base_win_range: tuple[float, float] = (3.0, 9.0)
    base_loss_range: tuple[float, float] = (-6.0, -2.5)
    expected_move_pips: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))


@dataclass(frozen=True)
class ClosedTrade:
    """Realized trade outcome fed back for learning and governance history."""

    symbol: str
    direction: str
    agent_id: str
    pnl_pips: float
    closed_at: datetime
    session: str = ""
    regime: str = ""
    spread_pips: float = 0.0
    composite_score: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "closed_at", as_utc(self.closed_at))

    @property
    def won(self) -> bool:
        return self.pnl_pips > 0


@dataclass(frozen=True)
class MarketContext:
    """Live market inputs supplied alongside a proposal."""

    spread_pips: float
    spread_history: Sequence[float] = field(default_factory=tuple)
    htf_supports: bool = True
    mtf_confirms: bool = True
    ltf_clean: bool = True
    slippage_pips: float = 0.2
    mtf_alignment_score: float | None = None


class CandleSource(Protocol):
    """Price/candle data source (broker or cache)."""

    def fetch_candles(self, instrument: str, granularity: str, count: int) -> Sequence[Candle]:
        """Return ascending candles for the instrument."""


class DirectionProvider(Protocol):
    """External directional engine; advisory only, downstream of governance."""

    def direction_for(self, proposal: TradeProposal, context: dict[str, object]) -> str:
        """Return LONG, SHORT or NEUTRAL."""


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Build the OHLCV frame used by the indicator functions."""
    frame = pd.DataFrame(
        {
            "open": [candle.open for candle in candles],
            "high": [candle.high for candle in candles],
            "low": [candle.low for candle in candles],
            "close": [candle.close for candle in candles],
            "volume": [candle.volume for candle in candles],
        },
        index=pd.DatetimeIndex([candle.time for candle in candles], name="time"),
        dtype=float,
    )
    return frame


def _parse_time(value: object) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if ts.tzinfo is None:
        raise ValueError(f"Candle time must include timezone offset: {value}")
    return ts


def _price(prices: Mapping[str, Any], name: str) -> float:
    value = prices.get(name, prices.get(name[0]))
    if value is None:
        raise ValueError(f"Candle record is missing {name}")
    return float(value)


def candle_from_mapping(row: Mapping[str, Any]) -> Candle:
    """Build a candle from a broker-style record (o/h/l/c or open/high/low/close)."""
    mid = row.get("mid")
    prices = mid if isinstance(mid, Mapping) else row
    return Candle(
        open=_price(prices, "open"),
        high=_price(prices, "high"),
        low=_price(prices, "low"),
        close=_price(prices, "close"),
        volume=float(row.get("volume", 0.0)),
        time=_parse_time(row["time"]),
    )


class StaticCandleSource:
    """Candle source backed by preloaded candles keyed by instrument."""

    def __init__(self, candles: Mapping[str, Sequence[Candle]]) -> None:
        self._candles = {symbol.upper().replace("/", "_"): list(rows) for symbol, rows in candles.items()}

    def fetch_candles(self, instrument: str, granularity: str, count: int) -> Sequence[Candle]:
        rows = self._candles.get(instrument.upper().replace("/", "_"), [])
        return rows[-count:] if count > 0 else []


class FixedDirectionProvider:
    """Direction provider that answers the same direction for every proposal."""

    def __init__(self, direction: str = DIRECTION_NEUTRAL) -> None:
        self.direction = direction.upper()

    def direction_for(self, proposal: TradeProposal, context: dict[str, object]) -> str:
        return self.direction


class ProposalDirectionProvider:
    """Direction provider that trusts the direction carried on the proposal."""

    def direction_for(self, proposal: TradeProposal, context: dict[str, object]) -> str:
        return proposal.direction.upper()
