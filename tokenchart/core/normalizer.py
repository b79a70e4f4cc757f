from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, localcontext
import math
import numbers
import re
from typing import Any, Iterable, Optional

CURRENCY_SYMBOLS = {
    "USD": "$ ",
    "EUR": "€ ",
    "JPY": "¥ ",
    "CNH": "¥ ",
    "XRP": "✕ ",
}

CLAMP_BELOW = 1e-10

# (exclusive upper bound of the series peak, multiplier), smallest magnitudes first.
_SCALE_TIERS = (
    (1e-9, 10 ** 12),
    (1e-8, 10 ** 11),
    (1e-7, 10 ** 10),
    (1e-6, 10 ** 9),
    (1e-5, 10 ** 8),
    (1e-4, 10 ** 7),
    (1e-3, 10 ** 6),
    (1e-2, 10 ** 5),
    (1e-1, 10 ** 4),
    (1.0, 10 ** 3),
)

_LEADING_ZEROS = re.compile(r"0\.0*")
_STRIP_LEADING = re.compile(r"^0\.0+")
_STRIP_TRAILING = re.compile(r"0+$")


def to_fixed(value: float, digits: int) -> str:
    """Fixed-point text with the exact decimal expansion of `value`, ties rounded away from zero."""
    if value == 0:
        value = 0.0
    with localcontext() as ctx:
        ctx.prec = 80
        quantum = Decimal(1).scaleb(-digits)
        rounded = Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    return format(rounded, "f")


def js_round(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize(raw: Any) -> float:
    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return 0.0
    elif isinstance(raw, numbers.Real):
        value = float(raw)
    else:
        return 0.0
    if not math.isfinite(value):
        return 0.0
    if abs(value) < CLAMP_BELOW:
        return 0.0
    text = repr(value)
    if "e" in text:
        exponent = int(text.split("e", 1)[1])
        if exponent < -10:
            precision = min(abs(exponent) + 2, 20)
            return float(to_fixed(value, precision))
    return value


def _field(point: Any, name: str) -> Any:
    if isinstance(point, dict):
        return point.get(name)
    return getattr(point, name, None)


def _scale_probe(point: Any) -> float:
    for name in ("high", "close", "value", "open"):
        raw = _field(point, name)
        if raw:
            try:
                return float(raw)
            except (TypeError, ValueError):
                continue
    return 0.0


def compute_scale_factor(series: Iterable[Any]) -> int:
    peak = max((_scale_probe(point) for point in series), default=0.0)
    if not peak > 0:
        return 1
    for threshold, factor in _SCALE_TIERS:
        if peak < threshold:
            return factor
    return 1


def _leading_zero_count(text: str) -> int:
    match = _LEADING_ZEROS.search(text)
    if match is None:
        return 0
    return len(match.group(0)) - 2


def _compact(text: str, zeros: int, sig_digits: int) -> str:
    significant = _STRIP_TRAILING.sub("", _STRIP_LEADING.sub("", text))
    return f"0.0({zeros}){significant[:sig_digits]}"


def format_price(actual: float, currency: Optional[str] = None, symbol: str = "") -> str:
    """Price-axis label for an unscaled price."""
    if currency == "XRP":
        if actual < 0.000001:
            return symbol + to_fixed(actual, 8)
        if actual < 0.001:
            return symbol + to_fixed(actual, 6)
        if actual < 1:
            return symbol + to_fixed(actual, 4)
        if actual < 100:
            return symbol + to_fixed(actual, 3)
        if actual < 1000:
            return symbol + to_fixed(actual, 2)
        return symbol + to_fixed(actual, 1)

    if actual == 0:
        return symbol + to_fixed(0.0, 8)
    if actual < 0.001:
        text = to_fixed(actual, 20)
        zeros = _leading_zero_count(text)
        if zeros >= 4:
            return symbol + _compact(text, zeros, 4)
        return symbol + to_fixed(actual, 8)
    if actual < 0.01:
        return symbol + to_fixed(actual, 6)
    if actual < 1:
        return symbol + to_fixed(actual, 4)
    if actual < 100:
        return symbol + to_fixed(actual, 3)
    if actual < 1000:
        return symbol + to_fixed(actual, 2)
    if actual < 10000:
        return symbol + to_fixed(actual, 1)
    return symbol + f"{js_round(actual):,}"


def to_locale(value: float) -> str:
    with localcontext() as ctx:
        ctx.prec = 80
        rounded = Decimal(value).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP)
    text = f"{rounded:,.3f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_tooltip_price(actual: float, currency: Optional[str] = None) -> str:
    is_xrp = currency == "XRP"
    if actual and actual < 0.001:
        text = to_fixed(actual, 20)
        zeros = _leading_zero_count(text)
        if zeros >= 3:
            return _compact(text, zeros, 6 if is_xrp else 4)
    if actual < 0.00001:
        return to_fixed(actual, 10 if is_xrp else 8)
    if actual < 0.01:
        return to_fixed(actual, 8 if is_xrp else 6)
    if actual < 1:
        return to_fixed(actual, 6 if is_xrp else 4)
    if actual < 100:
        return to_fixed(actual, 3)
    if actual < 1000:
        return to_fixed(actual, 2)
    return to_locale(actual)


def format_holders(count: float) -> str:
    if count < 1000:
        return str(js_round(count))
    if count < 1_000_000:
        return to_fixed(count / 1000, 1) + "K"
    return to_fixed(count / 1_000_000, 1) + "M"
