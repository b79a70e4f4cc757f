from __future__ import annotations

from typing import Any, Dict, List, Sequence

from tokenchart.core.models import AthInfo, BandPoint, IndicatorKind, IndicatorPoint
from tokenchart.core.normalizer import to_fixed

from . import helpers

RSI_OVERLAY_SHARE = 0.3
RSI_GUIDES = (
    ("rsi_overbought", 70.0, "#FF52524D", "dash"),
    ("rsi_oversold", 30.0, "#00E6764D", "dash"),
    ("rsi_middle", 50.0, "#9E9E9E4D", "dot"),
)
FIB_COLORS = (
    "#FF525280",
    "#FF980080",
    "#FFC10780",
    "#4CAF5080",
    "#2196F380",
    "#673AB780",
    "#9C27B080",
)


def _times(series: Sequence[Any]) -> List[int]:
    return [int(helpers.field_of(p, "time")) for p in series]


def _closes(series: Sequence[Any]) -> List[float]:
    return [helpers.price_of(p) for p in series]


def compute_sma(series: Sequence[Any], period: int) -> List[IndicatorPoint]:
    values = helpers.sma(_closes(series), period)
    times = _times(series)
    offset = period - 1
    return [IndicatorPoint(times[i + offset], float(v)) for i, v in enumerate(values.tolist())]


def compute_ema(series: Sequence[Any], period: int) -> List[IndicatorPoint]:
    values = helpers.ema(_closes(series), period)
    times = _times(series)
    offset = period - 1
    return [IndicatorPoint(times[i + offset], float(v)) for i, v in enumerate(values.tolist())]


def compute_bollinger(series: Sequence[Any], period: int = 20, stddev: float = 2.0) -> List[BandPoint]:
    upper, middle, lower = helpers.bb(_closes(series), period, stddev)
    times = _times(series)
    offset = period - 1
    return [
        BandPoint(times[i + offset], u, m, l)
        for i, (u, m, l) in enumerate(zip(upper.tolist(), middle.tolist(), lower.tolist()))
    ]


def compute_rsi(series: Sequence[Any], period: int = 14, zero_delta_as_gain: bool = False) -> List[IndicatorPoint]:
    values = helpers.rsi(_closes(series), period, zero_delta_as_gain=zero_delta_as_gain)
    times = _times(series)
    return [IndicatorPoint(times[i + period], float(v)) for i, v in enumerate(values.tolist())]


def rsi_by_time(series: Sequence[Any], period: int = 14) -> Dict[int, float]:
    """RSI keyed by bar time, for tooltip lookups."""
    return {point.time: point.value for point in compute_rsi(series, period)}


def compute_fibonacci(series: Sequence[Any]) -> List[Dict[str, Any]]:
    if not series:
        return []
    bundle = helpers.series_bundle(series)
    low = helpers.lowest(bundle.low)
    high = helpers.highest(bundle.high)
    first = int(bundle.time[0])
    last = int(bundle.time[-1])
    return [
        {"ratio": ratio, "price": price, "points": [IndicatorPoint(first, price), IndicatorPoint(last, price)]}
        for ratio, price in helpers.fib_levels(low, high)
    ]


def compute_ath(series: Sequence[Any]) -> AthInfo:
    if not series:
        return AthInfo()
    bundle = helpers.series_bundle(series)
    ath = helpers.highest(bundle.high)
    if not ath:
        return AthInfo(price=ath, percent_from_ath=None)
    last_close = float(bundle.close[-1])
    percent = float(to_fixed((last_close - ath) / ath * 100, 2))
    return AthInfo(price=ath, percent_from_ath=percent)


def _line(series_id: str, points: List[IndicatorPoint], color: str, title: str = "", width: int = 2, style: str = "solid") -> Dict[str, Any]:
    return {"type": "line", "id": series_id, "points": points, "color": color, "width": width, "style": style, "title": title}


def _flat(series: Sequence[Any], value: float) -> List[IndicatorPoint]:
    return [IndicatorPoint(int(helpers.field_of(series[0], "time")), value), IndicatorPoint(int(helpers.field_of(series[-1], "time")), value)]


def compute_indicator(kind: IndicatorKind, series: Sequence[Any]) -> Dict[str, Any]:
    """
    Build the unscaled line specs for one overlay indicator.

    Returns `{"kind": ..., "series": [line spec, ...]}`; a line spec carries `id`,
    `points`, `color`, `width`, `style` and `title`. Inputs shorter than the lookback
    yield an empty series list.
    """
    kind = IndicatorKind(kind)
    out: List[Dict[str, Any]] = []
    if not series:
        return {"kind": kind.value, "series": out}

    if kind in (IndicatorKind.SMA20, IndicatorKind.SMA50):
        period = 20 if kind == IndicatorKind.SMA20 else 50
        points = compute_sma(series, period)
        if points:
            color = "#FF6B6B" if period == 20 else "#4ECDC4"
            out.append(_line(kind.value, points, color, title=f"SMA {period}"))
    elif kind in (IndicatorKind.EMA20, IndicatorKind.EMA50):
        period = 20 if kind == IndicatorKind.EMA20 else 50
        points = compute_ema(series, period)
        if points:
            color = "#FFE66D" if period == 20 else "#A8E6CF"
            out.append(_line(kind.value, points, color, title=f"EMA {period}"))
    elif kind == IndicatorKind.BB:
        bands = compute_bollinger(series, 20, 2.0)
        if bands:
            out.append(_line("bb_upper", [IndicatorPoint(b.time, b.upper) for b in bands], "#2196F3CC", title="BB Upper", width=1))
            out.append(_line("bb_middle", [IndicatorPoint(b.time, b.middle) for b in bands], "#2196F399", title="BB Middle", width=1, style="dash"))
            out.append(_line("bb_lower", [IndicatorPoint(b.time, b.lower) for b in bands], "#2196F3CC", title="BB Lower", width=1))
    elif kind == IndicatorKind.RSI:
        rsi_points = compute_rsi(series, 14)
        if rsi_points:
            bundle = helpers.series_bundle(series)
            price_min = helpers.lowest(bundle.low)
            price_range = helpers.highest(bundle.high) - price_min

            def to_price(value: float) -> float:
                return price_min + (value / 100) * price_range * RSI_OVERLAY_SHARE

            mapped = [IndicatorPoint(p.time, to_price(p.value)) for p in rsi_points]
            out.append(_line("rsi", mapped, "#9C27B0B3", title="RSI (14)"))
            for series_id, level, color, style in RSI_GUIDES:
                out.append(_line(series_id, _flat(series, to_price(level)), color, width=1, style=style))
    elif kind == IndicatorKind.FIB:
        for idx, level in enumerate(compute_fibonacci(series)):
            out.append(_line(f"fib_{idx}", level["points"], FIB_COLORS[idx], title=f"Fib {level['ratio']:g}", width=1, style="dot"))
    elif kind == IndicatorKind.ATH:
        ath = compute_ath(series)
        if ath.price:
            out.append(_line("ath", _flat(series, ath.price), "#FFD700", title="ATH", style="dash"))
    return {"kind": kind.value, "series": out}
