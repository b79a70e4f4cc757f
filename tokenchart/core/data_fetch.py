import math
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from tokenchart.core.errors import CancelledError, EmptyDataError, NetworkError
from tokenchart.core.models import Candle, ChartRange, HolderPoint
from tokenchart.core.normalizer import normalize


def _ms_to_seconds(raw: Any) -> Optional[int]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return int(math.floor(value / 1000))


def _dedupe_sorted(points: List[Any]) -> List[Any]:
    # Stable sort keeps arrival order among equal times, so the later row wins.
    points.sort(key=lambda p: p.time)
    out: List[Any] = []
    for point in points:
        if out and out[-1].time == point.time:
            out[-1] = point
        else:
            out.append(point)
    return out


def parse_ohlc_payload(payload: Any) -> List[Candle]:
    if not isinstance(payload, dict):
        return []
    rows = payload.get('ohlc') or []
    candles: List[Candle] = []
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 5:
            continue
        ts = _ms_to_seconds(row[0])
        if ts is None:
            continue
        volume = normalize(row[5]) if len(row) > 5 else 0.0
        candles.append(
            Candle(
                time=ts,
                open=normalize(row[1]),
                high=normalize(row[2]),
                low=normalize(row[3]),
                close=normalize(row[4]),
                volume=max(0.0, volume),
            )
        )
    return _dedupe_sorted(candles)


def parse_holder_payload(payload: Any) -> List[HolderPoint]:
    if not isinstance(payload, dict):
        return []
    rows = payload.get('history') or []
    points: List[HolderPoint] = []
    for item in rows:
        if not isinstance(item, dict):
            continue
        ts = _ms_to_seconds(item.get('time'))
        if ts is None:
            continue
        points.append(
            HolderPoint(
                time=ts,
                holders=normalize(item.get('length') or 0),
                top10=normalize(item.get('top10') or 0),
                top20=normalize(item.get('top20') or 0),
                top50=normalize(item.get('top50') or 0),
                top100=normalize(item.get('top100') or 0),
                active24h=normalize(item.get('active24H') or 0),
            )
        )
    return _dedupe_sorted(points)


class ChartApiClient:
    """Blocking REST client for the chart endpoints; meant to run on a worker thread."""

    def __init__(self, base_url: str, timeout: float = 15.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch_ohlc(
        self,
        token_id: str,
        chart_range: ChartRange,
        interval: str,
        currency: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[Candle]:
        params = {
            'range': ChartRange(chart_range).value,
            'interval': interval,
            'vs_currency': currency,
        }
        payload = self._get_json(f'{self.base_url}/graph-ohlc-v2/{token_id}', params, cancel_event)
        candles = parse_ohlc_payload(payload)
        if not candles:
            raise EmptyDataError(f'No OHLC data for {token_id} {params["range"]} {interval}')
        return candles

    def fetch_holders(
        self,
        token_id: str,
        chart_range: ChartRange,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[HolderPoint]:
        params = {'range': ChartRange(chart_range).value}
        payload = self._get_json(f'{self.base_url}/graphrich/{token_id}', params, cancel_event)
        points = parse_holder_payload(payload)
        if not points:
            raise EmptyDataError(f'No holder data for {token_id} {params["range"]}')
        return points

    def close(self) -> None:
        self._session.close()

    def _get_json(self, url: str, params: Dict[str, str], cancel_event: Optional[threading.Event]) -> Any:
        _raise_if_cancelled(cancel_event)
        try:
            resp = self._session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as exc:
            _raise_if_cancelled(cancel_event)
            raise NetworkError(f'Request to {url} failed: {exc}') from exc
        except ValueError as exc:
            _raise_if_cancelled(cancel_event)
            raise NetworkError(f'Invalid JSON from {url}: {exc}') from exc
        # The response may land after the consumer gave up on it.
        _raise_if_cancelled(cancel_event)
        return payload


def _raise_if_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CancelledError('Fetch cancelled')


FetchFn = Callable[[threading.Event], Any]
