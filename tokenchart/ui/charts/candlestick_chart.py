from bisect import bisect_left, bisect_right
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pyqtgraph as pg
from PyQt6.QtCore import QPointF, QRectF
from PyQt6.QtGui import QColor, QPainter, QPicture

# Past this many visible bars candles collapse to high-low strokes.
LINE_MODE_BARS = 750


class CandlestickItem(pg.GraphicsObject):
    """Chunked candlestick renderer over `(time, open, high, low, close)` rows in epoch seconds."""

    def __init__(self, up_color: QColor, down_color: QColor, chunk_size: int = 300) -> None:
        super().__init__()
        self.up_color = QColor(up_color)
        self.down_color = QColor(down_color)
        self.candle_width = 60 * 0.8
        self._chunk_size = int(chunk_size)
        self._chunk_cache: Dict[int, QPicture] = {}
        self._line_chunk_cache: Dict[int, QPicture] = {}
        self._ts_cache: List[float] = []
        self._cached_bounds: Optional[QRectF] = None
        self._bounds_dirty = True
        self._x: Optional[np.ndarray] = None
        self._open: Optional[np.ndarray] = None
        self._high: Optional[np.ndarray] = None
        self._low: Optional[np.ndarray] = None
        self._close: Optional[np.ndarray] = None
        self._pen_up = pg.mkPen(self.up_color, width=1)
        self._pen_down = pg.mkPen(self.down_color, width=1)
        self._brush_up = pg.mkBrush(self.up_color)
        self._brush_down = pg.mkBrush(self.down_color)

    def __len__(self) -> int:
        return len(self._ts_cache)

    def set_candle_width(self, width: float) -> None:
        if width <= 0 or abs(width - self.candle_width) < 1e-9:
            return
        self.candle_width = width
        self._chunk_cache = {}
        self._line_chunk_cache = {}
        self._bounds_dirty = True
        try:
            self.update()
        except RuntimeError:
            pass

    def set_rows(self, rows: Sequence[Tuple[float, float, float, float, float]], invalidate_from_idx: Optional[int] = None) -> None:
        previous_len = len(self._ts_cache)
        if rows:
            arr = np.asarray(rows, dtype=np.float64).reshape(-1, 5)
            self._x = arr[:, 0]
            self._open = arr[:, 1]
            self._high = arr[:, 2]
            self._low = arr[:, 3]
            self._close = arr[:, 4]
            self._ts_cache = self._x.tolist()
        else:
            self._x = self._open = self._high = self._low = self._close = None
            self._ts_cache = []
        if invalidate_from_idx is None or len(self._ts_cache) < previous_len:
            self._chunk_cache = {}
            self._line_chunk_cache = {}
        else:
            # Appending or replacing the tail only invalidates the chunks it touches.
            start_chunk = max(0, int(invalidate_from_idx) // self._chunk_size)
            self._chunk_cache = {k: v for k, v in self._chunk_cache.items() if k < start_chunk}
            self._line_chunk_cache = {k: v for k, v in self._line_chunk_cache.items() if k < start_chunk}
        self._bounds_dirty = True
        self._update_bounds()
        try:
            self.prepareGeometryChange()
            self.informViewBoundsChanged()
            self.update()
        except RuntimeError:
            pass

    def _update_bounds(self) -> None:
        if not self._bounds_dirty:
            return
        self._bounds_dirty = False
        if self._x is None or self._x.size == 0:
            self._cached_bounds = QRectF(0, 0, 1, 1)
            return
        mask = np.isfinite(self._low) & np.isfinite(self._high)
        if not np.any(mask):
            self._cached_bounds = QRectF(0, 0, 1, 1)
            return
        w = self.candle_width / 2.0
        y_min = float(np.nanmin(self._low[mask]))
        y_max = float(np.nanmax(self._high[mask]))
        x_min = float(np.nanmin(self._x[mask])) - w
        x_max = float(np.nanmax(self._x[mask])) + w
        self._cached_bounds = QRectF(x_min, y_min, x_max - x_min, max(y_max - y_min, 1e-12))

    def boundingRect(self) -> QRectF:
        self._update_bounds()
        if self._cached_bounds is not None and self._cached_bounds.isValid():
            return self._cached_bounds
        return QRectF(0, 0, 1, 1)

    def dataBounds(self, axis: int, frac: float = 1.0, orthoRange=None):
        if self._x is None or self._x.size == 0:
            return (None, None)
        if axis == 0:
            return (float(self._x[0]), float(self._x[-1]))
        lows, highs = self._low, self._high
        if orthoRange is not None:
            lo_idx = bisect_left(self._ts_cache, orthoRange[0])
            hi_idx = bisect_right(self._ts_cache, orthoRange[1])
            lows, highs = lows[lo_idx:hi_idx], highs[lo_idx:hi_idx]
        if lows.size == 0:
            return (None, None)
        return (float(np.nanmin(lows)), float(np.nanmax(highs)))

    def pixelPadding(self) -> int:
        return 0

    def paint(self, painter: QPainter, option, widget) -> None:
        if self._x is None or not self._ts_cache:
            return
        try:
            w = self.candle_width / 2.0
            start_idx, end_idx = 0, len(self._ts_cache)
            view_box = self.getViewBox()
            if view_box is not None:
                (x_min_view, x_max_view), _ = view_box.viewRange()
                start_idx = max(0, bisect_left(self._ts_cache, x_min_view) - 10)
                end_idx = min(len(self._ts_cache), bisect_right(self._ts_cache, x_max_view) + 10)
            if end_idx <= start_idx:
                return
            line_mode = (end_idx - start_idx) > LINE_MODE_BARS
            cache = self._line_chunk_cache if line_mode else self._chunk_cache
            chunk_start = start_idx // self._chunk_size
            chunk_end = (end_idx - 1) // self._chunk_size
            for chunk_idx in range(chunk_start, chunk_end + 1):
                picture = cache.get(chunk_idx)
                if picture is None:
                    picture = self._render_chunk(chunk_idx, w, line_mode)
                    cache[chunk_idx] = picture
                painter.drawPicture(0, 0, picture)
        except RuntimeError:
            pass

    def _render_chunk(self, chunk_idx: int, w: float, line_mode: bool) -> QPicture:
        picture = QPicture()
        painter = QPainter(picture)
        try:
            start_idx = chunk_idx * self._chunk_size
            end_idx = min(len(self._ts_cache), start_idx + self._chunk_size)
            for idx in range(start_idx, end_idx):
                x_val = float(self._x[idx])
                open_price = float(self._open[idx])
                high = float(self._high[idx])
                low = float(self._low[idx])
                close = float(self._close[idx])
                if not (np.isfinite(low) and np.isfinite(high) and np.isfinite(open_price) and np.isfinite(close)):
                    continue
                if high < low:
                    high, low = low, high
                is_bear = close < open_price
                pen = self._pen_down if is_bear else self._pen_up
                painter.setPen(pen)
                if line_mode:
                    painter.drawLine(QPointF(x_val, low), QPointF(x_val, high))
                    continue
                painter.setBrush(self._brush_down if is_bear else self._brush_up)
                if high != low:
                    painter.drawLine(QPointF(x_val, low), QPointF(x_val, high))
                body_top = max(open_price, close)
                body_bottom = min(open_price, close)
                if body_top > body_bottom:
                    painter.drawRect(QRectF(x_val - w, body_bottom, w * 2, body_top - body_bottom))
                else:
                    painter.drawLine(QPointF(x_val - w, close), QPointF(x_val + w, close))
        finally:
            painter.end()
        return picture
