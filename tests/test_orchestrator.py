import os
import threading
import time
import unittest

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from PyQt6.QtCore import QCoreApplication
from PyQt6.QtWidgets import QApplication

from tokenchart.core.config import ChartConfig
from tokenchart.core.errors import EmptyDataError, InvalidSelectionError, NetworkError, RenderSurfaceError
from tokenchart.core.models import Candle, ChartRange, ChartSelection, ChartType, HolderPoint, IndicatorKind, VisibleRange
from tokenchart.core.orchestrator import DATA_EMPTY, DATA_LOADING, DATA_READY, ChartOrchestrator
from tokenchart.core.surface import RenderSurface, SeriesHandle, SeriesKind, TimeScale


def _spin_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        QCoreApplication.processEvents()
        if predicate():
            return True
        time.sleep(0.002)
    QCoreApplication.processEvents()
    return predicate()


def _spin(seconds: float) -> None:
    _spin_until(lambda: False, timeout=seconds)


def _candles(count, base=0.00005, start=0):
    return [
        Candle(start + i * 60, base, base * 1.4, base * 0.8, base * 1.2 if i % 2 else base * 0.9, 10.0 + i)
        for i in range(count)
    ]


class FakeClient:
    def __init__(self, ohlc=None, holders=None):
        self.ohlc = ohlc or []
        self.holders = holders or []
        self.ohlc_error = None
        self.gate = None
        self.calls = []

    def fetch_ohlc(self, token_id, chart_range, interval, currency, cancel_event=None):
        self.calls.append(("ohlc", token_id, chart_range, interval, currency))
        if self.gate is not None:
            self.gate.wait(5)
        if self.ohlc_error is not None:
            raise self.ohlc_error
        if not self.ohlc:
            raise EmptyDataError("no candles")
        return list(self.ohlc)

    def fetch_holders(self, token_id, chart_range, cancel_event=None):
        self.calls.append(("holders", token_id, chart_range))
        if not self.holders:
            raise EmptyDataError("no holders")
        return list(self.holders)


class FakeSeries(SeriesHandle):
    def __init__(self, kind, style):
        self.kind = kind
        self.style = style
        self.points = []
        self.set_calls = 0
        self.updates = []
        self.removed = False

    def set_data(self, points):
        if self.removed:
            raise RenderSurfaceError("series removed")
        self.points = list(points)
        self.set_calls += 1

    def update(self, point):
        if self.removed:
            raise RenderSurfaceError("series removed")
        if self.points and point["time"] < self.points[-1]["time"]:
            raise RenderSurfaceError("older than last bar")
        if self.points and point["time"] == self.points[-1]["time"]:
            self.points[-1] = point
        else:
            self.points.append(point)
        self.updates.append(point)


class FakeTimeScale(TimeScale):
    def __init__(self):
        self.visible = None
        self.restored = []
        self.fit_calls = 0

    def get_visible_range(self):
        return self.visible

    def set_visible_range(self, visible_range):
        self.visible = visible_range
        self.restored.append(visible_range)

    def get_visible_logical_range(self):
        return None

    def fit_content(self):
        self.fit_calls += 1


class FakeSurface(RenderSurface):
    def __init__(self, fail_add=False):
        self.fail_add = fail_add
        self.series = []
        self.removed_series = []
        self.scale = FakeTimeScale()
        self.range_callbacks = []
        self.crosshair_callbacks = []
        self.formatter = None
        self.removed = False

    def add_series(self, kind, style=None):
        if self.fail_add:
            raise RenderSurfaceError("surface busy")
        series = FakeSeries(kind, style or {})
        self.series.append(series)
        return series

    def remove_series(self, handle):
        self.series.remove(handle)
        handle.removed = True
        self.removed_series.append(handle)

    def time_scale(self):
        return self.scale

    def subscribe_visible_range_change(self, callback):
        self.range_callbacks.append(callback)

    def unsubscribe_visible_range_change(self, callback):
        self.range_callbacks.remove(callback)

    def subscribe_crosshair_move(self, callback):
        self.crosshair_callbacks.append(callback)

    def set_price_formatter(self, formatter):
        self.formatter = formatter

    def remove(self):
        self.removed = True

    def of_kind(self, kind):
        return [s for s in self.series if s.kind == kind]

    def fire_range(self, logical_range):
        for callback in list(self.range_callbacks):
            callback(logical_range)


class _Sink:
    def __init__(self):
        self.messages = []

    def append_error(self, message):
        self.messages.append(message)


class ChartOrchestratorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = QApplication.instance() or QApplication([])

    def setUp(self):
        self.client = FakeClient(ohlc=_candles(10))
        self.errors = _Sink()
        self.debug = []
        self.config = ChartConfig(poll_interval_ms=600000, viewport_debounce_ms=10)
        self.surface = FakeSurface()
        self.orch = None

    def tearDown(self):
        if self.client.gate is not None:
            self.client.gate.set()
        if self.orch is not None:
            self.orch.shutdown()
            _spin_until(lambda: self.orch.fetches.pending_workers() == 0)

    def _make(self, selection=None, surface=None):
        self.orch = ChartOrchestrator(
            "token-md5",
            self.client,
            config=self.config,
            selection=selection,
            error_sink=self.errors,
            debug_sink=self.debug.append,
        )
        self.orch.mount(surface or self.surface)
        return self.orch

    def _idle(self):
        self.assertTrue(_spin_until(lambda: self.orch.fetches.pending_workers() == 0))
        _spin(0.02)

    def _refresh(self):
        self.orch.poller.tick.emit(1)
        self._idle()

    def test_initial_load_renders_scaled_series_and_fits(self):
        states = []
        athes = []
        self._make()
        self.orch.data_state_changed.connect(states.append)
        self.orch.ath_changed.connect(athes.append)
        self._idle()
        self.assertEqual(self.client.calls[0], ("ohlc", "token-md5", ChartRange.D1, "5m", "XRP"))
        self.assertEqual(self.orch.scale_factor, 10 ** 7)
        main = self.surface.of_kind(SeriesKind.CANDLESTICK)[0]
        volume = self.surface.of_kind(SeriesKind.HISTOGRAM)[0]
        self.assertEqual(len(main.points), 10)
        self.assertAlmostEqual(main.points[0]["high"], 0.00005 * 1.4 * 10 ** 7)
        self.assertEqual(volume.points[3]["value"], 13.0)
        self.assertEqual(self.surface.scale.fit_calls, 1)
        self.assertEqual(states, [DATA_READY])
        self.assertEqual(len(athes), 1)
        self.assertFalse(self.orch.is_loading)
        self.assertIsNotNone(self.surface.formatter)

    def test_refresh_updates_tail_without_refit(self):
        updating = []
        self._make()
        self._idle()
        self.orch.updating_changed.connect(updating.append)
        refreshed = _candles(10)
        last = refreshed[-1]
        refreshed[-1] = Candle(last.time, last.open, last.high, last.low, last.close * 1.1, last.volume + 5)
        refreshed.append(Candle(600, 0.00006, 0.00007, 0.00005, 0.000065, 1.0))
        self.client.ohlc = refreshed
        self._refresh()
        main = self.surface.of_kind(SeriesKind.CANDLESTICK)[0]
        self.assertEqual(main.set_calls, 1)
        self.assertEqual([p["time"] for p in main.updates], [540, 600])
        self.assertEqual(len(main.points), 11)
        self.assertEqual(self.surface.scale.fit_calls, 1)
        self.assertEqual(updating, [True, False])
        self.assertEqual(self.surface.scale.restored, [])

    def test_scrolled_away_refresh_restores_saved_range(self):
        self._make()
        self._idle()
        self.surface.scale.visible = VisibleRange(120.0, 300.0)
        self.surface.fire_range(VisibleRange(2.0, 5.0))
        self.assertTrue(_spin_until(lambda: self.orch.is_user_scrolled_away))
        self.client.ohlc = _candles(11)
        self._refresh()
        self.assertEqual(self.surface.scale.restored, [VisibleRange(120.0, 300.0)])
        self.assertEqual(self.surface.scale.fit_calls, 1)

    def test_rewritten_history_falls_back_to_set_data(self):
        self._make()
        self._idle()
        self.client.ohlc = _candles(10, start=30)
        self._refresh()
        main = self.surface.of_kind(SeriesKind.CANDLESTICK)[0]
        self.assertEqual(main.set_calls, 2)
        self.assertEqual(main.points[0]["time"], 30)
        self.assertEqual(self.surface.scale.fit_calls, 1)

    def test_range_change_reloads_and_refits(self):
        self._make()
        self._idle()
        self.surface.scale.visible = VisibleRange(0.0, 100.0)
        self.surface.fire_range(VisibleRange(0.0, 1.0))
        self.assertTrue(_spin_until(lambda: self.orch.is_user_scrolled_away))
        self.orch.set_range(ChartRange.M1)
        self.assertFalse(self.orch.is_user_scrolled_away)
        self._idle()
        self.assertEqual(self.orch.selection.interval, "1h")
        self.assertEqual(self.client.calls[-1], ("ohlc", "token-md5", ChartRange.M1, "1h", "XRP"))
        self.assertEqual(self.surface.scale.fit_calls, 2)
        self.assertEqual(len(self.surface.of_kind(SeriesKind.CANDLESTICK)), 1)

    def test_invalid_interval_is_rejected_before_fetching(self):
        self._make()
        self._idle()
        calls = len(self.client.calls)
        with self.assertRaises(InvalidSelectionError):
            self.orch.set_interval("1d")
        with self.assertRaises(InvalidSelectionError):
            self.orch.set_currency("DOGE")
        self.assertEqual(len(self.client.calls), calls)

    def test_oversized_request_is_blocked(self):
        self._make(selection=ChartSelection(range=ChartRange.Y5, interval="4h"))
        self._idle()
        self.assertEqual(self.client.calls, [])
        self.assertTrue(any("Too many candles" in m for m in self.errors.messages))
        self.assertEqual(self.orch.data_state, DATA_EMPTY)
        self.assertFalse(self.orch.is_loading)

    def test_oversized_refresh_is_skipped_silently(self):
        self._make(selection=ChartSelection(range=ChartRange.Y5, interval="4h"))
        self._idle()
        before = list(self.errors.messages)
        self.assertEqual(len(before), 1)
        self._refresh()
        self._refresh()
        self.assertEqual(self.errors.messages, before)
        self.assertEqual(self.client.calls, [])
        self.assertTrue(any("Skipped price refresh" in line for line in self.debug))
        self.assertEqual(self.orch.data_state, DATA_EMPTY)
        self.assertFalse(self.orch.is_updating)

    def test_blocked_reload_keeps_drawn_series_ready(self):
        self._make()
        self._idle()
        self.orch.set_range(ChartRange.Y5)
        self._idle()
        self.orch.set_interval("4h")
        self._idle()
        self.assertTrue(any("Too many candles" in m for m in self.errors.messages))
        self.assertEqual(self.orch.data_state, DATA_READY)
        self.assertFalse(self.orch.is_loading)

    def test_failed_reload_keeps_drawn_series_ready(self):
        states = []
        self._make()
        self._idle()
        self.orch.data_state_changed.connect(states.append)
        self.client.ohlc_error = NetworkError("upstream down")
        self.orch.set_range(ChartRange.M1)
        self._idle()
        self.assertEqual(self.errors.messages, ["Failed to load price data: upstream down"])
        self.assertEqual(states, [DATA_LOADING, DATA_READY])
        self.assertEqual(self.orch.data_state, DATA_READY)

    def test_chart_type_change_recreates_series_and_refits(self):
        self._make()
        self._idle()
        candles_series = self.surface.of_kind(SeriesKind.CANDLESTICK)[0]
        self.surface.scale.visible = VisibleRange(0.0, 100.0)
        self.surface.fire_range(VisibleRange(0.0, 1.0))
        self.assertTrue(_spin_until(lambda: self.orch.is_user_scrolled_away))
        self.orch.set_chart_type(ChartType.LINE)
        self.assertFalse(self.orch.is_user_scrolled_away)
        self._idle()
        self.assertEqual([s.kind for s in self.surface.series], [SeriesKind.AREA, SeriesKind.HISTOGRAM])
        self.assertIn(candles_series, self.surface.removed_series)
        self.assertEqual(len([c for c in self.client.calls if c[0] == "ohlc"]), 2)
        self.assertEqual(self.surface.scale.fit_calls, 2)

    def test_holders_to_candles_restores_price_scale(self):
        self.client.holders = [HolderPoint(0, 1200, 40, 50, 60, 70), HolderPoint(60, 1250, 41, 51, 61, 71)]
        self._make(selection=ChartSelection(chart_type=ChartType.HOLDERS))
        self._idle()
        holder_series = self.surface.series[0]
        self.orch.set_chart_type(ChartType.CANDLES)
        self._idle()
        self.assertEqual([s.kind for s in self.surface.series], [SeriesKind.CANDLESTICK, SeriesKind.HISTOGRAM])
        self.assertIn(holder_series, self.surface.removed_series)
        self.assertEqual(self.orch.scale_factor, 10 ** 7)
        self.assertEqual(self.orch.data_state, DATA_READY)

    def test_currency_change_reloads_and_refits(self):
        self._make()
        self._idle()
        self.surface.scale.visible = VisibleRange(0.0, 100.0)
        self.surface.fire_range(VisibleRange(0.0, 1.0))
        self.assertTrue(_spin_until(lambda: self.orch.is_user_scrolled_away))
        self.orch.set_currency("usd")
        self.assertFalse(self.orch.is_user_scrolled_away)
        self._idle()
        self.assertEqual(self.orch.selection.currency, "USD")
        self.assertEqual(self.client.calls[-1], ("ohlc", "token-md5", ChartRange.D1, "5m", "USD"))
        self.assertEqual(self.surface.scale.fit_calls, 2)
        self.assertEqual(len(self.surface.of_kind(SeriesKind.CANDLESTICK)), 1)

    def test_indicator_toggle_replaces_series_map(self):
        self.client.ohlc = _candles(60)
        self._make()
        self._idle()
        self.assertTrue(self.orch.toggle_indicator(IndicatorKind.SMA20))
        self.assertEqual(self.orch.indicator_series_ids, ["sma20"])
        first = self.surface.of_kind(SeriesKind.LINE)[0]
        self.assertEqual(len(first.points), 41)
        self.assertAlmostEqual(first.points[0]["value"], sum(c.close for c in _candles(20)) / 20 * 10 ** 7)
        self.orch.toggle_indicator(IndicatorKind.BB)
        self.assertEqual(self.orch.indicator_series_ids, ["sma20", "bb_upper", "bb_middle", "bb_lower"])
        self.assertIn(first, self.surface.removed_series)
        self.assertFalse(self.orch.toggle_indicator(IndicatorKind.SMA20))
        self.assertFalse(self.orch.toggle_indicator(IndicatorKind.BB))
        self.assertEqual(self.orch.indicator_series_ids, [])
        self.assertEqual(self.surface.of_kind(SeriesKind.LINE), [])

    def test_holders_mode_renders_unscaled_area_only(self):
        self.client.holders = [HolderPoint(0, 1200, 40, 50, 60, 70), HolderPoint(60, 1250, 41, 51, 61, 71)]
        selection = ChartSelection(chart_type=ChartType.HOLDERS, indicators=frozenset({IndicatorKind.SMA20}))
        self._make(selection=selection)
        self._idle()
        kinds = [s.kind for s in self.surface.series]
        self.assertEqual(kinds, [SeriesKind.AREA])
        self.assertEqual([p["value"] for p in self.surface.series[0].points], [1200, 1250])
        self.assertEqual(self.orch.indicator_series_ids, [])
        self.assertEqual(self.orch.format_axis_price(1500), "1.5K")
        info = self.orch.describe_point(60)
        self.assertEqual([label for label, _ in info["rows"]], ["Holders", "Top 10", "Top 20", "Top 50", "Top 100"])
        self.assertEqual(info["rows"][1][1], "41.00%")

    def test_line_mode_uses_area_series_and_volume(self):
        self._make(selection=ChartSelection(chart_type=ChartType.LINE))
        self._idle()
        self.assertEqual([s.kind for s in self.surface.series], [SeriesKind.AREA, SeriesKind.HISTOGRAM])
        self.assertIn("value", self.surface.series[0].points[0])
        info = self.orch.describe_point(0)
        self.assertEqual([label for label, _ in info["rows"]], ["Price", "Vol"])

    def test_initial_failure_reports_and_shows_empty(self):
        self.client.ohlc_error = NetworkError("upstream down")
        self._make()
        self._idle()
        self.assertEqual(self.errors.messages, ["Failed to load price data: upstream down"])
        self.assertEqual(self.orch.data_state, DATA_EMPTY)
        self.assertFalse(self.orch.is_loading)

    def test_refresh_failure_is_silent_and_keeps_data(self):
        self._make()
        self._idle()
        self.client.ohlc_error = NetworkError("flaky")
        self._refresh()
        self.assertEqual(self.errors.messages, [])
        self.assertTrue(any("refresh failed" in line for line in self.debug))
        self.assertEqual(len(self.orch.candles), 10)
        self.assertEqual(self.orch.data_state, DATA_READY)
        self.assertFalse(self.orch.is_updating)

    def test_empty_initial_load_shows_no_data(self):
        self.client.ohlc = []
        self._make()
        self._idle()
        self.assertEqual(self.orch.data_state, DATA_EMPTY)
        self.assertEqual(self.errors.messages, [])

    def test_empty_refresh_keeps_series(self):
        self._make()
        self._idle()
        self.client.ohlc = []
        self._refresh()
        self.assertEqual(len(self.surface.of_kind(SeriesKind.CANDLESTICK)[0].points), 10)
        self.assertEqual(self.orch.data_state, DATA_READY)

    def test_unmount_suppresses_in_flight_completion(self):
        self.client.gate = threading.Event()
        self._make()
        self.orch.unmount()
        self.client.gate.set()
        self._idle()
        self.assertEqual(self.surface.series, [])
        self.assertEqual(self.orch.candles, [])
        self.assertEqual(self.surface.range_callbacks, [])

    def test_render_failures_are_swallowed(self):
        surface = FakeSurface(fail_add=True)
        self._make(surface=surface)
        self._idle()
        self.assertEqual(surface.series, [])
        self.assertEqual(len(self.orch.candles), 10)
        self.assertTrue(any("skipped" in line for line in self.debug))

    def test_unsorted_input_is_sorted(self):
        self.client.ohlc = list(reversed(_candles(5)))
        self._make()
        self._idle()
        times = [c.time for c in self.orch.candles]
        self.assertEqual(times, sorted(times))

    def test_tooltip_and_axis_labels(self):
        self.client.ohlc = _candles(20)
        self._make(selection=ChartSelection(indicators=frozenset({IndicatorKind.RSI})))
        self._idle()
        self.assertIsNone(self.orch.describe_point(None))
        self.assertIsNone(self.orch.describe_point(31))
        info = self.orch.describe_point(0)
        self.assertEqual([label for label, _ in info["rows"]], ["O", "H", "L", "C", "Vol", "Chg"])
        self.assertTrue(info["rows"][0][1].startswith("✕ "))
        self.assertFalse(info["up"])
        late = self.orch.describe_point(19 * 60)
        self.assertIn("rsi", late)
        self.assertEqual(late["rows"][-1][0], "RSI")
        self.assertEqual(self.orch.format_axis_price(700.0), "✕ 0.000070")


if __name__ == "__main__":
    unittest.main()
