from bisect import bisect_left
from contextlib import contextmanager
from datetime import datetime
import time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from tokenchart.core.config import ChartConfig
from tokenchart.core.errors import InvalidSelectionError
from tokenchart.core.fetch_session import FetchKind, FetchSessionManager, FetchSource, RefreshPoller
from tokenchart.core.models import (
    CURRENCIES,
    RANGE_DEFAULT_INTERVAL,
    AthInfo,
    Candle,
    ChartRange,
    ChartSelection,
    ChartType,
    HolderPoint,
    IndicatorKind,
    VisibleRange,
    estimated_candles,
    is_valid_interval,
)
from tokenchart.core.normalizer import (
    CURRENCY_SYMBOLS,
    compute_scale_factor,
    format_holders,
    format_price,
    format_tooltip_price,
    to_fixed,
    to_locale,
)
from tokenchart.core.state import StateHolder
from tokenchart.core.surface import RenderSurface, SeriesHandle, SeriesKind, SurfaceFactory, surface_scope
from tokenchart.core.viewport import ViewportTracker
from tokenchart.indicators.runtime import compute_ath, compute_indicator, rsi_by_time

UP_COLOR = '#00E676'
DOWN_COLOR = '#FF5252'
VOLUME_UP_COLOR = '#00E67680'
VOLUME_DOWN_COLOR = '#FF525280'
LINE_STYLE = {'line_color': '#2962FF', 'top_color': '#2962FF80', 'bottom_color': '#2962FF08', 'width': 2}
HOLDERS_STYLE = {'line_color': '#9C27B0', 'top_color': '#9C27B08F', 'bottom_color': '#9C27B00A', 'width': 2}
CANDLE_STYLE = {'up_color': UP_COLOR, 'down_color': DOWN_COLOR}
VOLUME_STYLE = {'color': '#26A69A', 'band': 0.1}

DATA_LOADING = 'loading'
DATA_READY = 'ready'
DATA_EMPTY = 'empty'


class ChartOrchestrator(QObject):
    """
    Owns the chart selection and every handle on the rendering surface.

    Fetch completions arrive on the UI thread through the session manager. A
    completion after a selection change renders in full and fits the content;
    later refreshes push only the changed tail through `update`, so the user's
    pan and zoom survive background polling.
    """

    loading_changed = pyqtSignal(bool)
    updating_changed = pyqtSignal(bool)
    data_state_changed = pyqtSignal(str)
    ath_changed = pyqtSignal(object)
    scrolled_away_changed = pyqtSignal(bool)
    last_update_changed = pyqtSignal(float)

    def __init__(
        self,
        token_id: str,
        client,
        config: Optional[ChartConfig] = None,
        selection: Optional[ChartSelection] = None,
        error_sink=None,
        debug_sink=None,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.token_id = token_id
        self.client = client
        self.config = config or ChartConfig()
        self.error_sink = error_sink
        self.debug_sink = debug_sink
        if selection is None:
            selection = ChartSelection(currency=self.config.default_currency)
        self._selection: StateHolder[ChartSelection] = StateHolder(selection.copy())
        self._candles: StateHolder[List[Candle]] = StateHolder([])
        self._holders: StateHolder[List[HolderPoint]] = StateHolder([])
        self._series_length: StateHolder[int] = StateHolder(0)
        self._scale_factor: StateHolder[int] = StateHolder(1)
        self._saved_range: StateHolder[Optional[VisibleRange]] = StateHolder(None)
        self._rsi_map: Dict[int, float] = {}
        self.ath = AthInfo()
        self.data_state = DATA_LOADING

        self._surface: Optional[RenderSurface] = None
        self._mounted = False
        self._main_series: Optional[SeriesHandle] = None
        self._volume_series: Optional[SeriesHandle] = None
        self._series_chart_type: Optional[ChartType] = None
        self._indicator_series: Dict[str, SeriesHandle] = {}
        self._needs_fit = True
        self._last_rendered_time: Optional[int] = None
        self._active_kind: Dict[FetchSource, Optional[FetchKind]] = {}
        self._loading = False
        self._updating = False
        self._scrolled_away = False

        self.fetches = FetchSessionManager(self, debug_sink=debug_sink)
        self.fetches.succeeded.connect(self._on_fetch_succeeded)
        self.fetches.empty.connect(self._on_fetch_empty)
        self.fetches.failed.connect(self._on_fetch_failed)
        self.fetches.loading_changed.connect(self._on_fetch_loading)

        self.poller = RefreshPoller(self.config.poll_interval_ms, self.config.max_poll_attempts, self)
        self.poller.tick.connect(self._on_poll_tick)
        self.poller.exhausted.connect(self._on_poll_exhausted)

        self.viewport = ViewportTracker(
            self._series_length,
            debounce_ms=self.config.viewport_debounce_ms,
            edge_bars=self.config.scrolled_away_bars,
            parent=self,
        )
        self.viewport.evaluated.connect(self._on_viewport_evaluated)

    # -- lifecycle -------------------------------------------------------

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def surface(self) -> Optional[RenderSurface]:
        return self._surface

    def mount(self, surface: RenderSurface) -> None:
        if self._mounted:
            self.unmount()
        self._surface = surface
        self._mounted = True
        self._guard('subscribe range', surface.subscribe_visible_range_change, self._on_visible_range_change)
        self._guard('install formatter', surface.set_price_formatter, self.format_axis_price)
        self._reload()
        self.poller.start()

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        self.poller.stop()
        self.viewport.stop()
        self.fetches.cancel_all()
        surface = self._surface
        if surface is not None:
            self._guard('unsubscribe range', surface.unsubscribe_visible_range_change, self._on_visible_range_change)
        # Handles die with the surface; only forget them here.
        self._surface = None
        self._main_series = None
        self._volume_series = None
        self._series_chart_type = None
        self._indicator_series = {}
        self._needs_fit = True
        self._last_rendered_time = None
        self._active_kind.clear()
        self._sync_loading_flags()

    def shutdown(self) -> None:
        self.unmount()
        self.fetches.shutdown()

    @contextmanager
    def session(
        self,
        factory: SurfaceFactory,
        container: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> Iterator[RenderSurface]:
        with surface_scope(factory, container, options, debug_sink=self.debug_sink) as surface:
            self.mount(surface)
            try:
                yield surface
            finally:
                self.unmount()

    # -- selection -------------------------------------------------------

    @property
    def selection(self) -> ChartSelection:
        return self._selection.get().copy()

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles.get())

    @property
    def holders(self) -> List[HolderPoint]:
        return list(self._holders.get())

    @property
    def scale_factor(self) -> int:
        return self._scale_factor.get()

    @property
    def indicator_series_ids(self) -> List[str]:
        return list(self._indicator_series)

    @property
    def is_user_scrolled_away(self) -> bool:
        return self._scrolled_away

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def is_updating(self) -> bool:
        return self._updating

    def set_chart_type(self, chart_type: ChartType) -> None:
        chart_type = ChartType(chart_type)
        selection = self._selection.get().copy()
        if selection.chart_type == chart_type:
            return
        selection.chart_type = chart_type
        self._selection.set(selection)
        self._reload()

    def set_range(self, chart_range: ChartRange) -> None:
        chart_range = ChartRange(chart_range)
        selection = self._selection.get().copy()
        if selection.range == chart_range:
            return
        selection.range = chart_range
        selection.interval = RANGE_DEFAULT_INTERVAL[chart_range]
        self._selection.set(selection)
        self._reload()

    def set_interval(self, interval: str) -> None:
        selection = self._selection.get().copy()
        if not is_valid_interval(selection.range, interval):
            raise InvalidSelectionError(f'Interval {interval} is not available for range {selection.range.value}')
        if selection.interval == interval:
            return
        selection.interval = interval
        self._selection.set(selection)
        self._reload()

    def set_currency(self, currency: str) -> None:
        currency = (currency or '').upper()
        if currency not in CURRENCIES:
            raise InvalidSelectionError(f'Unsupported currency: {currency}')
        selection = self._selection.get().copy()
        if selection.currency == currency:
            return
        selection.currency = currency
        self._selection.set(selection)
        self._reload()

    def toggle_indicator(self, kind: IndicatorKind) -> bool:
        kind = IndicatorKind(kind)
        active = set(self._selection.get().indicators)
        if kind in active:
            active.discard(kind)
        else:
            active.add(kind)
        self.set_indicators(active)
        return kind in active

    def set_indicators(self, kinds: Iterable[IndicatorKind]) -> None:
        selection = self._selection.get().copy()
        selection.indicators = frozenset(IndicatorKind(k) for k in kinds)
        self._selection.set(selection)
        self._render_indicators()

    # -- fetching --------------------------------------------------------

    def _reload(self) -> None:
        self._needs_fit = True
        self._last_rendered_time = None
        self.viewport.reset()
        self._set_scrolled_away(False)
        self._set_data_state(DATA_LOADING)
        if not self._mounted:
            return
        self._start_price_fetch(FetchKind.INITIAL)
        if self._selection.get().chart_type == ChartType.HOLDERS:
            self._start_holder_fetch()

    def _start_price_fetch(self, kind: FetchKind) -> None:
        selection = self._selection.get()
        estimate = estimated_candles(selection.range, selection.interval)
        if estimate is None:
            self._debug(f'Unverified combination {selection.range.value} @ {selection.interval}, requesting anyway')
        elif estimate > self.config.max_candles:
            message = (
                f'Too many candles ({estimate}) for {selection.range.value} @ {selection.interval}; choose a larger interval'
            )
            if kind == FetchKind.REFRESH:
                self._debug(f'Skipped price refresh: {message}')
                return
            self._report_error(message)
            self._active_kind[FetchSource.PRICE] = None
            self._sync_loading_flags()
            self._settle_data_state(FetchSource.PRICE)
            return
        client = self.client
        token_id = self.token_id
        chart_range, interval, currency = selection.range, selection.interval, selection.currency

        def fetch(cancel_event):
            return client.fetch_ohlc(token_id, chart_range, interval, currency, cancel_event=cancel_event)

        self.fetches.start_fetch(FetchSource.PRICE, fetch, kind)

    def _start_holder_fetch(self) -> None:
        client = self.client
        token_id = self.token_id
        chart_range = self._selection.get().range

        def fetch(cancel_event):
            return client.fetch_holders(token_id, chart_range, cancel_event=cancel_event)

        self.fetches.start_fetch(FetchSource.HOLDERS, fetch, FetchKind.INITIAL)

    def _on_poll_tick(self, attempt: int) -> None:
        if not self._mounted:
            return
        # Polling never pauses; scrolled-away only changes how the result is drawn.
        self._start_price_fetch(FetchKind.REFRESH)

    def _on_poll_exhausted(self) -> None:
        self._debug(f'Auto-refresh stopped after {self.poller.attempts} attempts')

    def _on_fetch_loading(self, source: str, kind: str, is_loading: bool) -> None:
        self._active_kind[FetchSource(source)] = FetchKind(kind) if is_loading else None
        self._sync_loading_flags()

    def _sync_loading_flags(self) -> None:
        kinds = [k for k in self._active_kind.values() if k is not None]
        loading = FetchKind.INITIAL in kinds
        updating = FetchKind.REFRESH in kinds
        if loading != self._loading:
            self._loading = loading
            self.loading_changed.emit(loading)
        if updating != self._updating:
            self._updating = updating
            self.updating_changed.emit(updating)

    def _on_fetch_succeeded(self, source: str, kind: str, data: object) -> None:
        if not self._mounted:
            return
        source = FetchSource(source)
        kind = FetchKind(kind)
        if source == FetchSource.PRICE:
            candles = sorted(data, key=lambda c: c.time)
            self._candles.set(candles)
            self._rsi_map = rsi_by_time(candles)
            self.ath = compute_ath(candles)
            self.ath_changed.emit(self.ath)
            self.last_update_changed.emit(time.time())
        else:
            self._holders.set(sorted(data, key=lambda p: p.time))
        if self._displayed_source() != source:
            return
        self._render_main(kind)
        self._render_indicators()
        self._set_data_state(DATA_READY)

    def _on_fetch_empty(self, source: str, kind: str) -> None:
        if not self._mounted:
            return
        source = FetchSource(source)
        if FetchKind(kind) == FetchKind.REFRESH:
            self._debug(f'Refresh returned no {source.value} data, keeping current series')
            return
        if source == FetchSource.PRICE:
            self._candles.set([])
            self._rsi_map = {}
            self.ath = AthInfo()
            self.ath_changed.emit(self.ath)
        else:
            self._holders.set([])
        if self._displayed_source() != source:
            return
        self._clear_rendered()
        self._set_data_state(DATA_EMPTY)

    def _on_fetch_failed(self, source: str, kind: str, message: str) -> None:
        if not self._mounted:
            return
        source = FetchSource(source)
        if FetchKind(kind) == FetchKind.REFRESH:
            self._debug(f'Background {source.value} refresh failed: {message}')
            return
        self._report_error(f'Failed to load {source.value} data: {message}')
        self._settle_data_state(source)

    def _settle_data_state(self, source: FetchSource) -> None:
        # A failed or blocked load leaves whatever is already drawn on screen.
        if self._displayed_source() != source:
            return
        self._set_data_state(DATA_READY if self._displayed_points() else DATA_EMPTY)

    # -- rendering -------------------------------------------------------

    def _displayed_source(self) -> FetchSource:
        if self._selection.get().chart_type == ChartType.HOLDERS:
            return FetchSource.HOLDERS
        return FetchSource.PRICE

    def _displayed_points(self) -> Sequence[Any]:
        if self._selection.get().chart_type == ChartType.HOLDERS:
            return self._holders.get()
        return self._candles.get()

    def _ensure_series(self, chart_type: ChartType) -> None:
        surface = self._surface
        if surface is None or self._series_chart_type == chart_type:
            return
        for handle in (self._main_series, self._volume_series):
            if handle is not None:
                self._guard('remove series', surface.remove_series, handle)
        self._main_series = None
        self._volume_series = None
        if chart_type == ChartType.CANDLES:
            self._main_series = self._guard('create price series', surface.add_series, SeriesKind.CANDLESTICK, dict(CANDLE_STYLE))
        elif chart_type == ChartType.LINE:
            self._main_series = self._guard('create price series', surface.add_series, SeriesKind.AREA, dict(LINE_STYLE))
        else:
            self._main_series = self._guard('create holders series', surface.add_series, SeriesKind.AREA, dict(HOLDERS_STYLE))
        if chart_type != ChartType.HOLDERS:
            self._volume_series = self._guard('create volume series', surface.add_series, SeriesKind.HISTOGRAM, dict(VOLUME_STYLE))
        # A failed creation is retried on the next render.
        self._series_chart_type = chart_type if self._main_series is not None else None

    def _main_points(self, points: Sequence[Any], chart_type: ChartType) -> List[Dict[str, Any]]:
        factor = self._scale_factor.get()
        if chart_type == ChartType.CANDLES:
            return [
                {
                    'time': c.time,
                    'open': c.open * factor,
                    'high': c.high * factor,
                    'low': c.low * factor,
                    'close': c.close * factor,
                }
                for c in points
            ]
        if chart_type == ChartType.LINE:
            return [{'time': c.time, 'value': (c.close or c.value) * factor} for c in points]
        return [{'time': p.time, 'value': p.holders} for p in points]

    @staticmethod
    def _volume_points(candles: Sequence[Candle]) -> List[Dict[str, Any]]:
        return [
            {
                'time': c.time,
                'value': c.volume or 0.0,
                'color': VOLUME_UP_COLOR if c.close >= c.open else VOLUME_DOWN_COLOR,
            }
            for c in candles
        ]

    def _render_main(self, kind: FetchKind) -> None:
        surface = self._surface
        chart_type = self._selection.get().chart_type
        points = self._displayed_points()
        if surface is None or not points:
            return
        self._ensure_series(chart_type)
        if self._main_series is None:
            return
        if self._needs_fit or self._last_rendered_time is None:
            self._render_full(points, chart_type)
        else:
            self._render_incremental(points, chart_type)

    def _render_full(self, points: Sequence[Any], chart_type: ChartType) -> None:
        if chart_type != ChartType.HOLDERS:
            self._scale_factor.set(compute_scale_factor(points))
        self._series_length.set(len(points))
        self._guard('set price data', self._main_series.set_data, self._main_points(points, chart_type))
        if self._volume_series is not None:
            self._guard('set volume data', self._volume_series.set_data, self._volume_points(points))
        self._last_rendered_time = points[-1].time
        self._needs_fit = False
        self._guard('fit content', self._time_scale_call, 'fit_content')

    def _render_incremental(self, points: Sequence[Any], chart_type: ChartType) -> None:
        saved = self._guard('save visible range', self._time_scale_call, 'get_visible_range')
        if saved is not None:
            self._saved_range.set(saved)
        last_time = self._last_rendered_time
        start = bisect_left([p.time for p in points], last_time)
        tail = list(points[start:])
        if tail and tail[0].time == last_time:
            main = self._main_points(tail, chart_type)
            for point in main:
                self._guard('update price bar', self._main_series.update, point)
            if self._volume_series is not None:
                for point in self._volume_points(tail):
                    self._guard('update volume bar', self._volume_series.update, point)
            self._series_length.set(self._series_length.get() + len(tail) - 1)
            restore = self._scrolled_away
        else:
            # The rendered bars are no longer a prefix of the refreshed series.
            self._guard('set price data', self._main_series.set_data, self._main_points(points, chart_type))
            if self._volume_series is not None:
                self._guard('set volume data', self._volume_series.set_data, self._volume_points(points))
            self._series_length.set(len(points))
            restore = True
        self._last_rendered_time = points[-1].time
        if restore and self._saved_range.get() is not None:
            QTimer.singleShot(0, self._restore_visible_range)

    def _restore_visible_range(self) -> None:
        if not self._mounted or self._surface is None:
            return
        saved = self._saved_range.get()
        if saved is None:
            return
        self._guard('restore visible range', self._time_scale_call, 'set_visible_range', saved)

    def _render_indicators(self) -> None:
        surface = self._surface
        if surface is None:
            return
        # Indicator handles are replaced as a whole map, never patched.
        for handle in self._indicator_series.values():
            self._guard('remove indicator', surface.remove_series, handle)
        fresh: Dict[str, SeriesHandle] = {}
        selection = self._selection.get()
        candles = self._candles.get()
        if selection.chart_type == ChartType.HOLDERS or not candles:
            self._indicator_series = fresh
            return
        factor = self._scale_factor.get()
        for kind in IndicatorKind:
            if kind not in selection.indicators:
                continue
            spec = compute_indicator(kind, candles)
            for line in spec['series']:
                style = {k: line[k] for k in ('color', 'width', 'style', 'title')}
                handle = self._guard(f'create {line["id"]}', surface.add_series, SeriesKind.LINE, style)
                if handle is None:
                    continue
                points = [{'time': p.time, 'value': p.value * factor} for p in line['points']]
                self._guard(f'set {line["id"]} data', handle.set_data, points)
                fresh[line['id']] = handle
        self._indicator_series = fresh

    def _clear_rendered(self) -> None:
        for handle in (self._main_series, self._volume_series):
            if handle is not None:
                self._guard('clear series', handle.set_data, [])
        self._render_indicators()
        self._series_length.set(0)
        self._last_rendered_time = None
        self._needs_fit = True

    def _time_scale_call(self, name: str, *args):
        return getattr(self._surface.time_scale(), name)(*args)

    # -- viewport --------------------------------------------------------

    def _on_visible_range_change(self, logical_range: Optional[VisibleRange]) -> None:
        if not self._mounted:
            return
        self.viewport.on_visible_logical_range_changed(logical_range)

    def _on_viewport_evaluated(self, is_away: bool, logical_range: object) -> None:
        if not self._mounted:
            return
        visible = self._guard('read visible range', self._time_scale_call, 'get_visible_range')
        if visible is not None:
            self.viewport.state.visible_range = visible
            self._saved_range.set(visible)
        self._set_scrolled_away(is_away)

    def _set_scrolled_away(self, value: bool) -> None:
        if value != self._scrolled_away:
            self._scrolled_away = value
            self.scrolled_away_changed.emit(value)

    def _set_data_state(self, state: str) -> None:
        if state != self.data_state:
            self.data_state = state
            self.data_state_changed.emit(state)

    # -- labels ----------------------------------------------------------

    def format_axis_price(self, scaled: float) -> str:
        selection = self._selection.get()
        if selection.chart_type == ChartType.HOLDERS:
            return format_holders(scaled)
        actual = scaled / (self._scale_factor.get() or 1)
        return format_price(actual, selection.currency, CURRENCY_SYMBOLS.get(selection.currency, ''))

    def describe_point(self, time_s: Optional[int]) -> Optional[Dict[str, Any]]:
        """Tooltip rows for the bar at `time_s`, or None when nothing is plotted there."""
        if time_s is None:
            return None
        selection = self._selection.get()
        points = self._displayed_points()
        point = _find_by_time(points, int(time_s))
        if point is None:
            return None
        info: Dict[str, Any] = {
            'time': point.time,
            'date': datetime.fromtimestamp(point.time).strftime('%Y-%m-%d %H:%M'),
            'rows': [],
            'up': True,
        }
        rows: List[tuple] = info['rows']
        if selection.chart_type == ChartType.HOLDERS:
            rows.append(('Holders', to_locale(point.holders)))
            for label, value in (('Top 10', point.top10), ('Top 20', point.top20), ('Top 50', point.top50), ('Top 100', point.top100)):
                rows.append((label, f'{to_fixed(value, 2)}%'))
            return info

        symbol = CURRENCY_SYMBOLS.get(selection.currency, '')

        def price(value: float) -> str:
            return symbol + format_tooltip_price(value, selection.currency)

        if selection.chart_type == ChartType.CANDLES:
            change = (point.close - point.open) / point.open * 100 if point.open else 0.0
            rows.extend(
                [
                    ('O', price(point.open)),
                    ('H', price(point.high)),
                    ('L', price(point.low)),
                    ('C', price(point.close)),
                    ('Vol', to_locale(point.volume)),
                    ('Chg', f'{to_fixed(change, 2)}%'),
                ]
            )
            info['up'] = point.close >= point.open
        else:
            rows.append(('Price', price(point.close or point.value)))
            rows.append(('Vol', to_locale(point.volume or 0.0)))
        rsi = self._rsi_map.get(point.time)
        if IndicatorKind.RSI in selection.indicators and rsi:
            rows.append(('RSI', to_fixed(rsi, 2)))
            info['rsi'] = rsi
        return info

    # -- sinks -----------------------------------------------------------

    def _guard(self, action: str, fn: Callable, *args):
        try:
            return fn(*args)
        except Exception as exc:
            self._debug(f'{action} skipped: {exc}')
            return None

    def _report_error(self, message: str) -> None:
        if self.error_sink is not None:
            try:
                self.error_sink.append_error(message)
            except Exception:
                pass

    def _debug(self, message: str) -> None:
        if self.debug_sink is not None:
            try:
                self.debug_sink(message)
            except Exception:
                pass


def _find_by_time(points: Sequence[Any], time_s: int):
    times = [p.time for p in points]
    idx = bisect_left(times, time_s)
    if idx < len(times) and times[idx] == time_s:
        return points[idx]
    return None
