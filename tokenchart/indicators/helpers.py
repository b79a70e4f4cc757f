from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Any, Iterable, List, Sequence, Tuple

import numpy as np

FIB_RATIOS: Tuple[float, ...] = (0.0, 0.236, 0.382, 0.5, 0.618, 0.786, 1.0)


@dataclass
class SeriesBundle:
    time: np.ndarray
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray


def field_of(point: Any, name: str, default: float = 0.0) -> float:
    if isinstance(point, dict):
        raw = point.get(name, default)
    else:
        raw = getattr(point, name, default)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def price_of(point: Any) -> float:
    # Candles plot `close`; line and holder points only carry `value`.
    close = field_of(point, "close")
    if close:
        return close
    return field_of(point, "value")


def series_bundle(points: Sequence[Any]) -> SeriesBundle:
    if not points:
        empty = np.empty(0, dtype=np.float64)
        return SeriesBundle(empty, empty, empty, empty, empty, empty)
    time = np.asarray([field_of(p, "time") for p in points], dtype=np.float64)
    close = np.asarray([price_of(p) for p in points], dtype=np.float64)
    high = np.asarray([field_of(p, "high") or price_of(p) for p in points], dtype=np.float64)
    low = np.asarray([field_of(p, "low") or price_of(p) for p in points], dtype=np.float64)
    open_ = np.asarray([field_of(p, "open") or price_of(p) for p in points], dtype=np.float64)
    volume = np.asarray([field_of(p, "volume") for p in points], dtype=np.float64)
    return SeriesBundle(time=time, open=open_, high=high, low=low, close=close, volume=volume)


# The kernels below return only the computed region (no NaN padding): output[k]
# belongs to input index k + lookback. Sums run in a fixed order so results match
# the web chart value-for-value.


def sma(values: Iterable[float], length: int) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).tolist()
    n = len(arr)
    if length <= 0 or n < length:
        return np.empty(0, dtype=np.float64)
    out: List[float] = []
    for i in range(length - 1, n):
        total = 0.0
        for j in range(length):
            total += arr[i - j]
        out.append(total / length)
    return np.asarray(out, dtype=np.float64)


def ema(values: Iterable[float], length: int) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).tolist()
    n = len(arr)
    if length <= 0 or n < length:
        return np.empty(0, dtype=np.float64)
    k = 2.0 / (length + 1)
    total = 0.0
    for i in range(length):
        total += arr[i]
    ema_val = total / length
    out = [ema_val]
    for i in range(length, n):
        ema_val = (arr[i] - ema_val) * k + ema_val
        out.append(ema_val)
    return np.asarray(out, dtype=np.float64)


def stdev(values: Iterable[float], length: int, means: Iterable[float]) -> np.ndarray:
    """Population standard deviation of each trailing window around its precomputed mean."""
    arr = np.asarray(values, dtype=np.float64).tolist()
    mean_list = np.asarray(means, dtype=np.float64).tolist()
    out: List[float] = []
    for idx, mean in enumerate(mean_list):
        end = idx + length - 1
        acc = 0.0
        for j in range(length):
            diff = arr[end - j] - mean
            acc += diff * diff
        out.append(math.sqrt(acc / length))
    return np.asarray(out, dtype=np.float64)


def bb(values: Iterable[float], length: int, mult: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    arr = np.asarray(values, dtype=np.float64)
    basis = sma(arr, length)
    if basis.size == 0:
        empty = np.empty(0, dtype=np.float64)
        return empty, empty, empty
    dev = stdev(arr, length, basis)
    upper = [m + mult * d for m, d in zip(basis.tolist(), dev.tolist())]
    lower = [m - mult * d for m, d in zip(basis.tolist(), dev.tolist())]
    return np.asarray(upper, dtype=np.float64), basis, np.asarray(lower, dtype=np.float64)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def rsi(values: Iterable[float], length: int, zero_delta_as_gain: bool = False) -> np.ndarray:
    """
    Wilder RSI. Output[k] belongs to input index k + length.

    `zero_delta_as_gain` routes a flat bar into the gain bucket instead of neither
    bucket. Either way the bucket receives 0.0, so both settings produce the same
    numbers; the switch exists so both historic call sites share this kernel.
    """
    arr = np.asarray(values, dtype=np.float64).tolist()
    n = len(arr)
    if length <= 0 or n < length + 1:
        return np.empty(0, dtype=np.float64)

    def split(delta: float) -> Tuple[float, float]:
        if delta > 0 or (zero_delta_as_gain and delta == 0):
            return delta, 0.0
        if delta < 0:
            return 0.0, -delta
        return 0.0, 0.0

    gains = 0.0
    losses = 0.0
    for i in range(1, length + 1):
        gain, loss = split(arr[i] - arr[i - 1])
        gains += gain
        losses += loss
    avg_gain = gains / length
    avg_loss = losses / length
    out = [_rsi_value(avg_gain, avg_loss)]
    for i in range(length + 1, n):
        gain, loss = split(arr[i] - arr[i - 1])
        avg_gain = (avg_gain * (length - 1) + gain) / length
        avg_loss = (avg_loss * (length - 1) + loss) / length
        out.append(_rsi_value(avg_gain, avg_loss))
    return np.asarray(out, dtype=np.float64)


def fib_levels(low: float, high: float) -> List[Tuple[float, float]]:
    diff = high - low
    levels: List[Tuple[float, float]] = []
    for ratio in FIB_RATIOS:
        if ratio == 0.0:
            price = low
        elif ratio == 1.0:
            price = high
        else:
            price = low + diff * ratio
        levels.append((ratio, price))
    return levels


def highest(values: Iterable[float]) -> float:
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return float("nan")
    return float(np.max(arr))


def lowest(values: Iterable[float]) -> float:
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return float("nan")
    return float(np.min(arr))
