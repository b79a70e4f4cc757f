from __future__ import annotations

from dataclasses import dataclass, replace
import os
from typing import Mapping, Optional

from tokenchart.core.models import CURRENCIES

DEFAULT_API_URL = "https://api.xrpl.to/api"


@dataclass(frozen=True)
class ChartConfig:
    api_url: str = DEFAULT_API_URL
    poll_interval_ms: int = 4000
    viewport_debounce_ms: int = 100
    scrolled_away_bars: int = 2
    request_timeout: float = 15.0
    max_poll_attempts: Optional[int] = None
    default_currency: str = "XRP"
    max_candles: int = 10000


def _env_int(env: Mapping[str, str], key: str, default: Optional[int], minimum: int = 0) -> Optional[int]:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except (ValueError, TypeError):
        return default
    if value < minimum:
        return default
    return value


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except (ValueError, TypeError):
        return default
    if value <= 0:
        return default
    return value


def load_config(env: Optional[Mapping[str, str]] = None, **overrides) -> ChartConfig:
    if env is None:
        env = os.environ
    base = ChartConfig()
    api_url = (env.get("TOKENCHART_API_URL") or base.api_url).rstrip("/")
    currency = (env.get("TOKENCHART_CURRENCY") or base.default_currency).upper()
    if currency not in CURRENCIES:
        currency = base.default_currency
    config = ChartConfig(
        api_url=api_url,
        poll_interval_ms=_env_int(env, "TOKENCHART_POLL_MS", base.poll_interval_ms, minimum=1),
        viewport_debounce_ms=_env_int(env, "TOKENCHART_DEBOUNCE_MS", base.viewport_debounce_ms),
        scrolled_away_bars=base.scrolled_away_bars,
        request_timeout=_env_float(env, "TOKENCHART_TIMEOUT", base.request_timeout),
        max_poll_attempts=_env_int(env, "TOKENCHART_MAX_POLLS", base.max_poll_attempts, minimum=1),
        default_currency=currency,
        max_candles=base.max_candles,
    )
    if overrides:
        config = replace(config, **overrides)
    return config
