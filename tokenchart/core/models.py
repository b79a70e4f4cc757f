from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class ChartType(str, Enum):
    CANDLES = "candles"
    LINE = "line"
    HOLDERS = "holders"


class ChartRange(str, Enum):
    D1 = "1D"
    D5 = "5D"
    M1 = "1M"
    M3 = "3M"
    Y1 = "1Y"
    Y5 = "5Y"
    ALL = "ALL"


class IndicatorKind(str, Enum):
    SMA20 = "sma20"
    SMA50 = "sma50"
    EMA20 = "ema20"
    EMA50 = "ema50"
    BB = "bb"
    RSI = "rsi"
    FIB = "fib"
    ATH = "ath"


INTERVALS: Tuple[str, ...] = ("1m", "5m", "15m", "30m", "1h", "4h", "1d")

CURRENCIES: Tuple[str, ...] = ("XRP", "USD", "EUR", "JPY", "CNH")

INDICATOR_LABELS: Dict[IndicatorKind, str] = {
    IndicatorKind.SMA20: "SMA 20",
    IndicatorKind.SMA50: "SMA 50",
    IndicatorKind.EMA20: "EMA 20",
    IndicatorKind.EMA50: "EMA 50",
    IndicatorKind.BB: "Bollinger Bands",
    IndicatorKind.RSI: "RSI (14)",
    IndicatorKind.FIB: "Fibonacci Extensions",
    IndicatorKind.ATH: "All-Time High",
}

RANGE_DEFAULT_INTERVAL: Dict[ChartRange, str] = {
    ChartRange.D1: "5m",
    ChartRange.D5: "15m",
    ChartRange.M1: "1h",
    ChartRange.M3: "4h",
    ChartRange.Y1: "1d",
    ChartRange.Y5: "1d",
    ChartRange.ALL: "1d",
}

VALID_INTERVALS: Dict[ChartRange, Tuple[str, ...]] = {
    ChartRange.D1: ("1m", "5m", "15m", "30m", "1h"),
    ChartRange.D5: ("5m", "15m", "30m", "1h", "4h"),
    ChartRange.M1: ("15m", "30m", "1h", "4h", "1d"),
    ChartRange.M3: ("30m", "1h", "4h", "1d"),
    ChartRange.Y1: ("1h", "4h", "1d"),
    ChartRange.Y5: ("4h", "1d"),
    ChartRange.ALL: ("1d",),
}

# Expected bar count per (range, interval); the upstream caps a single response.
ESTIMATED_CANDLES: Dict[ChartRange, Dict[str, int]] = {
    ChartRange.D1: {"1m": 1440, "5m": 288, "15m": 96, "30m": 48, "1h": 24},
    ChartRange.D5: {"5m": 1440, "15m": 480, "30m": 240, "1h": 120, "4h": 30},
    ChartRange.M1: {"15m": 2880, "30m": 1440, "1h": 720, "4h": 180, "1d": 30},
    ChartRange.M3: {"30m": 4320, "1h": 2160, "4h": 540, "1d": 90},
    ChartRange.Y1: {"1h": 8760, "4h": 2190, "1d": 365},
    ChartRange.Y5: {"4h": 10950, "1d": 1825},
    ChartRange.ALL: {"1d": 10000},
}


def is_valid_interval(chart_range: ChartRange, interval: str) -> bool:
    return interval in VALID_INTERVALS.get(ChartRange(chart_range), ())


def estimated_candles(chart_range: ChartRange, interval: str) -> Optional[int]:
    return ESTIMATED_CANDLES.get(ChartRange(chart_range), {}).get(interval)


@dataclass(frozen=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def value(self) -> float:
        return self.close


@dataclass(frozen=True)
class HolderPoint:
    time: int
    holders: float
    top10: float = 0.0
    top20: float = 0.0
    top50: float = 0.0
    top100: float = 0.0
    active24h: float = 0.0

    @property
    def value(self) -> float:
        return self.holders


@dataclass(frozen=True)
class IndicatorPoint:
    time: int
    value: float


@dataclass(frozen=True)
class BandPoint:
    time: int
    upper: float
    middle: float
    lower: float


@dataclass(frozen=True)
class VisibleRange:
    """Visible window of the time scale; `start`/`end` are the surface's `from`/`to`."""

    start: float
    end: float


@dataclass
class ViewportState:
    visible_range: Optional[VisibleRange] = None
    logical_range: Optional[VisibleRange] = None
    is_user_scrolled_away: bool = False


@dataclass(frozen=True)
class AthInfo:
    price: Optional[float] = None
    percent_from_ath: Optional[float] = None


@dataclass
class ChartSelection:
    chart_type: ChartType = ChartType.CANDLES
    range: ChartRange = ChartRange.D1
    interval: str = "5m"
    currency: str = "XRP"
    indicators: FrozenSet[IndicatorKind] = field(default_factory=frozenset)

    def reload_key(self) -> Tuple[str, str, str, str]:
        # Any change in this key means full reload + fit-to-content.
        return (self.chart_type.value, self.range.value, self.interval, self.currency)

    def copy(self) -> "ChartSelection":
        return ChartSelection(
            chart_type=self.chart_type,
            range=self.range,
            interval=self.interval,
            currency=self.currency,
            indicators=frozenset(self.indicators),
        )
