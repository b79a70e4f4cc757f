from bisect import bisect_left
import math
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
import pyqtgraph as pg
from PyQt6.QtCore import Qt
from PyQt6.QtGui import QBrush, QColor, QFont, QLinearGradient
from PyQt6.QtWidgets import QVBoxLayout

from tokenchart.core.errors import RenderSurfaceError
from tokenchart.core.models import VisibleRange
from tokenchart.core.surface import PricePoint, RenderSurface, SeriesHandle, SeriesKind, TimeScale

from .charts.candlestick_chart import CandlestickItem
from .charts.volume_histogram import VolumeHistogramItem
from .theme import parse_color, theme

DEFAULT_BAR_SPACING = 60.0

_PEN_STYLES = {
    'solid': Qt.PenStyle.SolidLine,
    'dash': Qt.PenStyle.DashLine,
    'dot': Qt.PenStyle.DotLine,
}


class TimeScaleViewBox(pg.ViewBox):
    # Wheel zooms the time axis only; price scale follows auto-range.
    def wheelEvent(self, ev, axis=None) -> None:
        if ev is None:
            return
        try:
            delta = ev.angleDelta().y()
        except Exception:
            delta = ev.delta() if hasattr(ev, 'delta') else 0
        if delta == 0:
            return
        scale = 1.06 ** (delta / 120.0)
        self.scaleBy((1.0 / scale, 1.0))
        ev.accept()


class PriceAxis(pg.AxisItem):
    def __init__(self, surface: 'PyQtGraphSurface', *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._surface = surface

    def tickStrings(self, values, scale, spacing):
        formatter = self._surface.price_formatter
        if formatter is None:
            return super().tickStrings(values, scale, spacing)
        out = []
        for v in values:
            try:
                if not np.isfinite(v) or v <= 0:
                    out.append('')
                    continue
                out.append(formatter(float(v)))
            except Exception:
                out.append('')
        return out

    def generateDrawSpecs(self, p):
        axis_spec, tick_specs, text_specs = super().generateDrawSpecs(p)
        if axis_spec is not None:
            axis_spec = (pg.mkPen(QColor(0, 0, 0, 0)), axis_spec[1], axis_spec[2])
        return (axis_spec, tick_specs, text_specs)

    def tickValues(self, minVal, maxVal, size):
        try:
            span = float(maxVal) - float(minVal)
        except (TypeError, ValueError):
            return []
        if span <= 0 or not math.isfinite(span):
            return []
        target_ticks = max(2, int(size / 50))
        raw_step = span / target_ticks
        if raw_step <= 0:
            return []
        base = 10 ** math.floor(math.log10(raw_step))
        for mult in (1, 2, 5, 10):
            step = base * mult
            if step >= raw_step:
                break
        current = math.floor(float(minVal) / step) * step
        values = []
        while current <= float(maxVal):
            values.append(current)
            current += step
        return [(step, values)]

    def mouseDragEvent(self, ev) -> None:
        if ev.button() != Qt.MouseButton.LeftButton:
            ev.ignore()
            return
        ev.accept()
        view = self.linkedView()
        if view is None:
            return
        dy = ev.pos().y() - ev.lastPos().y()
        scale = 1.01 ** dy
        try:
            center = view.mapSceneToView(ev.scenePos())
        except Exception:
            center = None
        if center is not None:
            view.scaleBy((1.0, scale), center=center)
        else:
            view.scaleBy((1.0, scale))


def _area_brush(top: str, bottom: str) -> QBrush:
    gradient = QLinearGradient(0, 0, 0, 1)
    gradient.setCoordinateMode(QLinearGradient.CoordinateMode.ObjectBoundingMode)
    gradient.setColorAt(0.0, parse_color(top))
    gradient.setColorAt(1.0, parse_color(bottom))
    return QBrush(gradient)


class PgSeries(SeriesHandle):
    """A series handle backed by one pyqtgraph item."""

    def __init__(self, surface: 'PyQtGraphSurface', kind: SeriesKind, style: Dict[str, Any]) -> None:
        self._surface = surface
        self.kind = kind
        self.style = dict(style)
        self.removed = False
        self._points: List[PricePoint] = []
        self._times: List[int] = []
        self.item = self._build_item()

    def _build_item(self):
        style = self.style
        if self.kind == SeriesKind.CANDLESTICK:
            item = CandlestickItem(parse_color(style.get('up_color', theme.UP)), parse_color(style.get('down_color', theme.DOWN)))
            item.setZValue(0)
            return item
        if self.kind == SeriesKind.HISTOGRAM:
            item = VolumeHistogramItem(
                parse_color(style.get('color', theme.VOLUME_UP)),
                DEFAULT_BAR_SPACING * 0.8,
                volume_height_ratio=float(style.get('band', 0.1)),
            )
            item.setZValue(-10)
            return item
        if self.kind == SeriesKind.AREA:
            color = style.get('line_color', theme.ACCENT)
            item = pg.PlotDataItem(
                pen=pg.mkPen(parse_color(color), width=style.get('width', 2)),
                fillBrush=_area_brush(style.get('top_color', color), style.get('bottom_color', color)),
            )
            item.setZValue(0)
            return item
        pen = pg.mkPen(
            parse_color(style.get('color', theme.ACCENT)),
            width=style.get('width', 1),
            style=_PEN_STYLES.get(style.get('style', 'solid'), Qt.PenStyle.SolidLine),
        )
        item = pg.PlotDataItem(pen=pen, name=style.get('title'))
        item.setZValue(5)
        return item

    @property
    def times(self) -> List[int]:
        return self._times

    @property
    def points(self) -> List[PricePoint]:
        return list(self._points)

    def _check_alive(self) -> None:
        if self.removed:
            raise RenderSurfaceError(f'{self.kind.value} series has been removed')
        self._surface._check_alive()

    def set_data(self, points: Sequence[PricePoint]) -> None:
        self._check_alive()
        self._points = [dict(p) for p in points]
        self._times = [int(p['time']) for p in self._points]
        self._redraw(None)
        self._surface._series_changed(self)

    def update(self, point: PricePoint) -> None:
        self._check_alive()
        time_s = int(point['time'])
        previous_last = self._times[-1] if self._times else None
        if previous_last is not None and time_s < previous_last:
            raise RenderSurfaceError(f'Cannot update bar at {time_s}: older than last bar {previous_last}')
        if previous_last is not None and time_s == previous_last:
            self._points[-1] = dict(point)
        else:
            self._points.append(dict(point))
            self._times.append(time_s)
        self._redraw(len(self._points) - 1)
        appended = previous_last is not None and time_s > previous_last
        self._surface._series_changed(self, previous_last if appended else None)

    def _redraw(self, from_idx: Optional[int]) -> None:
        points = self._points
        if self.kind == SeriesKind.CANDLESTICK:
            rows = [(p['time'], p['open'], p['high'], p['low'], p['close']) for p in points]
            self.item.set_rows(rows, invalidate_from_idx=from_idx)
            return
        if self.kind == SeriesKind.HISTOGRAM:
            self.item.set_bars([(p['time'], p.get('value', 0.0), p.get('color')) for p in points])
            return
        if not points:
            self.item.setData([], [])
            return
        x = np.asarray(self._times, dtype=np.float64)
        y = np.asarray([p['value'] for p in points], dtype=np.float64)
        if self.kind == SeriesKind.AREA:
            # Fill down to the series low so the y auto-range is not dragged to zero.
            finite = y[np.isfinite(y)]
            self.item.setFillLevel(float(finite.min()) if finite.size else None)
        self.item.setData(x, y)


class PgTimeScale(TimeScale):
    def __init__(self, surface: 'PyQtGraphSurface') -> None:
        self._surface = surface

    def _x_range(self):
        (x_min, x_max), _ = self._surface.view_box.viewRange()
        return float(x_min), float(x_max)

    def get_visible_range(self) -> Optional[VisibleRange]:
        self._surface._check_alive()
        if not self._surface.main_times():
            return None
        x_min, x_max = self._x_range()
        return VisibleRange(x_min, x_max)

    def set_visible_range(self, visible_range: VisibleRange) -> None:
        self._surface._check_alive()
        self._surface.view_box.setXRange(float(visible_range.start), float(visible_range.end), padding=0)

    def get_visible_logical_range(self) -> Optional[VisibleRange]:
        self._surface._check_alive()
        times = self._surface.main_times()
        if not times:
            return None
        x_min, x_max = self._x_range()
        return VisibleRange(self._to_logical(times, x_min), self._to_logical(times, x_max))

    def _to_logical(self, times: Sequence[int], x: float) -> float:
        spacing = self._surface.bar_spacing()
        first, last = float(times[0]), float(times[-1])
        if x <= first:
            return (x - first) / spacing
        if x >= last:
            return (len(times) - 1) + (x - last) / spacing
        arr = np.asarray(times, dtype=np.float64)
        return float(np.interp(x, arr, np.arange(arr.size, dtype=np.float64)))

    def fit_content(self) -> None:
        self._surface._check_alive()
        times = self._surface.main_times()
        if not times:
            return
        spacing = self._surface.bar_spacing()
        view_box = self._surface.view_box
        view_box.setXRange(times[0] - spacing, times[-1] + spacing, padding=0)
        view_box.enableAutoRange(axis=pg.ViewBox.YAxis)
        view_box.setAutoVisible(y=True)


class PyQtGraphSurface(RenderSurface):
    """
    Rendering surface on a pyqtgraph `PlotWidget`.

    Time runs along a date axis in epoch seconds and prices along a right-hand
    axis whose labels come from the installed price formatter. The main series
    is the first candlestick or area series; its bars define the logical
    (bar-index) range, the bar width and the crosshair snap points.
    """

    def __init__(self, container=None, options: Optional[Dict[str, Any]] = None) -> None:
        options = dict(options or {})
        self._removed = False
        self._series: List[PgSeries] = []
        self._range_callbacks: List[Callable] = []
        self._crosshair_callbacks: List[Callable] = []
        self.price_formatter: Optional[Callable[[float], str]] = None
        self._time_scale = PgTimeScale(self)

        self.price_axis = PriceAxis(self, orientation='right')
        self.plot_widget = pg.PlotWidget(
            viewBox=TimeScaleViewBox(),
            axisItems={'bottom': pg.DateAxisItem(orientation='bottom'), 'right': self.price_axis},
        )
        gradient = QLinearGradient(0, 0, 0, 1)
        gradient.setCoordinateMode(QLinearGradient.CoordinateMode.ObjectBoundingMode)
        gradient.setColorAt(0.0, QColor(theme.BG_TOP))
        gradient.setColorAt(1.0, QColor(theme.BG_BOTTOM))
        self.plot_widget.setBackground(QBrush(gradient))
        self.plot_widget.showGrid(x=True, y=True, alpha=float(options.get('grid_alpha', 0.2)))
        self.plot_widget.setStyleSheet('border: 0px;')
        self.plot_widget.showAxis('right')
        self.plot_widget.hideAxis('left')
        self.price_axis.setWidth(int(options.get('price_axis_width', 60)))
        self._apply_axis_style()

        self.view_box = self.plot_widget.getViewBox()
        self.crosshair = pg.InfiniteLine(angle=90, movable=False, pen=pg.mkPen(theme.TEXT, style=Qt.PenStyle.DashLine))
        self.crosshair.hide()
        self.plot_widget.addItem(self.crosshair, ignoreBounds=True)

        self.view_box.sigXRangeChanged.connect(self._on_x_range_changed)
        self.plot_widget.scene().sigMouseMoved.connect(self._on_mouse_moved)

        if container is not None:
            layout = container.layout()
            if layout is None:
                layout = QVBoxLayout(container)
                layout.setContentsMargins(0, 0, 0, 0)
                layout.setSpacing(0)
            layout.addWidget(self.plot_widget)

    def _apply_axis_style(self) -> None:
        axis_pen = pg.mkPen(theme.GRID)
        text_pen = pg.mkPen(theme.TEXT)
        font = QFont()
        font.setPointSize(8)
        for axis_name in ('bottom', 'right'):
            axis = self.plot_widget.getAxis(axis_name)
            axis.setPen(axis_pen)
            axis.setTextPen(text_pen)
            axis.setTickFont(font)

    # -- capability ------------------------------------------------------

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def series(self) -> List[PgSeries]:
        return list(self._series)

    def _check_alive(self) -> None:
        if self._removed:
            raise RenderSurfaceError('Surface has been removed')

    def add_series(self, kind: SeriesKind, style: Optional[Dict[str, Any]] = None) -> PgSeries:
        self._check_alive()
        series = PgSeries(self, SeriesKind(kind), style or {})
        if series.kind == SeriesKind.HISTOGRAM:
            self.view_box.addItem(series.item, ignoreBounds=True)
        else:
            self.plot_widget.addItem(series.item)
        self._series.append(series)
        return series

    def remove_series(self, handle: SeriesHandle) -> None:
        self._check_alive()
        if handle not in self._series:
            raise RenderSurfaceError('Series does not belong to this surface')
        self._series.remove(handle)
        handle.removed = True
        if handle.kind == SeriesKind.HISTOGRAM:
            self.view_box.removeItem(handle.item)
        else:
            self.plot_widget.removeItem(handle.item)
        self._sync_bar_width()

    def time_scale(self) -> PgTimeScale:
        self._check_alive()
        return self._time_scale

    def subscribe_visible_range_change(self, callback) -> None:
        self._check_alive()
        if callback not in self._range_callbacks:
            self._range_callbacks.append(callback)

    def unsubscribe_visible_range_change(self, callback) -> None:
        if callback in self._range_callbacks:
            self._range_callbacks.remove(callback)

    def subscribe_crosshair_move(self, callback) -> None:
        self._check_alive()
        if callback not in self._crosshair_callbacks:
            self._crosshair_callbacks.append(callback)

    def set_price_formatter(self, formatter) -> None:
        self._check_alive()
        self.price_formatter = formatter
        self.price_axis.picture = None
        self.price_axis.update()

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        try:
            self.view_box.sigXRangeChanged.disconnect(self._on_x_range_changed)
        except (TypeError, RuntimeError):
            pass
        try:
            self.plot_widget.scene().sigMouseMoved.disconnect(self._on_mouse_moved)
        except (TypeError, RuntimeError):
            pass
        for series in self._series:
            series.removed = True
        self._series = []
        self._range_callbacks = []
        self._crosshair_callbacks = []
        self.plot_widget.setParent(None)
        self.plot_widget.deleteLater()

    # -- main series geometry --------------------------------------------

    def main_series(self) -> Optional[PgSeries]:
        for series in self._series:
            if series.kind in (SeriesKind.CANDLESTICK, SeriesKind.AREA):
                return series
        return None

    def main_times(self) -> List[int]:
        main = self.main_series()
        return main.times if main is not None else []

    def bar_spacing(self) -> float:
        times = self.main_times()
        if len(times) < 2:
            return DEFAULT_BAR_SPACING
        diffs = np.diff(np.asarray(times, dtype=np.float64))
        diffs = diffs[diffs > 0]
        if diffs.size == 0:
            return DEFAULT_BAR_SPACING
        return float(np.median(diffs))

    def _sync_bar_width(self) -> None:
        width = self.bar_spacing() * 0.8
        for series in self._series:
            if series.kind == SeriesKind.CANDLESTICK:
                series.item.set_candle_width(width)
            elif series.kind == SeriesKind.HISTOGRAM:
                series.item.set_bar_width(width)

    def _series_changed(self, series: PgSeries, appended_after: Optional[int] = None) -> None:
        if series is not self.main_series():
            return
        self._sync_bar_width()
        if appended_after is None:
            return
        # A view parked on the live edge slides along with a new bar.
        (x_min, x_max), _ = self.view_box.viewRange()
        if x_max >= appended_after:
            delta = series.times[-1] - appended_after
            self.view_box.setXRange(x_min + delta, x_max + delta, padding=0)

    def nearest_time(self, x: float) -> Optional[int]:
        times = self.main_times()
        if not times:
            return None
        spacing = self.bar_spacing()
        if x < times[0] - spacing or x > times[-1] + spacing:
            return None
        idx = bisect_left(times, x)
        candidates = [i for i in (idx - 1, idx) if 0 <= i < len(times)]
        best = min(candidates, key=lambda i: abs(times[i] - x))
        return times[best]

    # -- signal handlers -------------------------------------------------

    def _on_x_range_changed(self, *args) -> None:
        if self._removed:
            return
        logical = self._time_scale.get_visible_logical_range()
        for callback in list(self._range_callbacks):
            callback(logical)

    def _on_mouse_moved(self, pos) -> None:
        if self._removed:
            return
        time_s = None
        if self.view_box.sceneBoundingRect().contains(pos):
            point = self.view_box.mapSceneToView(pos)
            time_s = self.nearest_time(point.x())
        if time_s is None:
            self.crosshair.hide()
        else:
            self.crosshair.setPos(time_s)
            self.crosshair.show()
        for callback in list(self._crosshair_callbacks):
            callback(time_s)


def create_surface(container, options: Optional[Dict[str, Any]] = None) -> PyQtGraphSurface:
    return PyQtGraphSurface(container, options)
