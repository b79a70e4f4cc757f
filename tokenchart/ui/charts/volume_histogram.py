from bisect import bisect_left, bisect_right
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pyqtgraph as pg
from PyQt6.QtCore import QRectF
from PyQt6.QtGui import QColor, QPainter, QPicture

from ..theme import parse_color

MAX_VISIBLE_BARS_DENSE = 1500


def calculate_lod_step(visible_count: int, max_bars: int = MAX_VISIBLE_BARS_DENSE) -> int:
    if visible_count <= max_bars or max_bars <= 0:
        return 1
    return int(np.ceil(visible_count / max_bars))


class VolumeHistogramItem(pg.GraphicsObject):
    """
    Volume bars painted into the bottom band of the price view.

    Heights are relative to the tallest visible bar and to the current y-range,
    so the band keeps its share of the pane at any zoom. Add it to the view box
    with `ignoreBounds=True`; it must not steer auto-ranging.
    """

    def __init__(self, base_color: QColor, bar_width: float, volume_height_ratio: float = 0.1, chunk_size: int = 300) -> None:
        super().__init__()
        self._base_color = QColor(base_color)
        self._bar_width = float(bar_width)
        self._volume_height_ratio = float(volume_height_ratio)
        self._chunk_size = int(chunk_size)
        self._x: Optional[np.ndarray] = None
        self._vol: Optional[np.ndarray] = None
        self._colors: List[QColor] = []
        self._ts_cache: List[float] = []
        self._chunk_cache: Dict[int, QPicture] = {}
        self._render_key: Optional[Tuple[int, float, float, float]] = None
        self._cached_bounds = QRectF(0, 0, 1, 1)
        self._color_cache: Dict[str, QColor] = {}

    def __len__(self) -> int:
        return len(self._ts_cache)

    def set_bar_width(self, width: float) -> None:
        if width > 0 and abs(width - self._bar_width) > 1e-9:
            self._bar_width = float(width)
            self._chunk_cache = {}
            self.update()

    def set_bars(self, bars: Sequence[Tuple[float, float, Optional[str]]]) -> None:
        if not bars:
            self._x = None
            self._vol = None
            self._colors = []
            self._ts_cache = []
            self._cached_bounds = QRectF(0, 0, 1, 1)
        else:
            self._x = np.asarray([b[0] for b in bars], dtype=np.float64)
            self._vol = np.asarray([b[1] for b in bars], dtype=np.float64)
            self._colors = [self._color(b[2]) for b in bars]
            self._ts_cache = self._x.tolist()
            x_min = float(self._x[0])
            x_max = float(self._x[-1])
            self._cached_bounds = QRectF(x_min, 0, max(x_max - x_min, 1.0), 1)
        self._chunk_cache = {}
        self._render_key = None
        try:
            self.prepareGeometryChange()
            self.update()
        except RuntimeError:
            pass

    def _color(self, value: Optional[str]) -> QColor:
        if not value:
            return self._base_color
        color = self._color_cache.get(value)
        if color is None:
            color = parse_color(value)
            self._color_cache[value] = color
        return color

    def boundingRect(self) -> QRectF:
        return self._cached_bounds

    def paint(self, painter: QPainter, option, widget) -> None:
        if self._x is None or self._vol is None or self._x.size == 0:
            return
        view_box = self.getViewBox()
        if view_box is None:
            return
        (x_min, x_max), (y_min, y_max) = view_box.viewRange()
        if x_max <= x_min:
            return
        start_idx = max(0, bisect_left(self._ts_cache, x_min) - 10)
        end_idx = min(self._x.size, bisect_right(self._ts_cache, x_max) + 10)
        visible_count = end_idx - start_idx
        if visible_count <= 0:
            return
        step = calculate_lod_step(visible_count)
        visible_slice = self._vol[start_idx:end_idx:step]
        volume_max = float(np.nanmax(visible_slice)) if visible_slice.size else 0.0
        if not np.isfinite(volume_max) or volume_max <= 0:
            return
        visible_range = max(1e-12, float(y_max - y_min))
        band_height = visible_range * self._volume_height_ratio
        render_key = (step, float(y_min), volume_max, band_height)
        if render_key != self._render_key:
            self._chunk_cache = {}
            self._render_key = render_key
        chunk_start = start_idx // self._chunk_size
        chunk_end = (end_idx - 1) // self._chunk_size
        for chunk_idx in range(chunk_start, chunk_end + 1):
            picture = self._chunk_cache.get(chunk_idx)
            if picture is None:
                picture = self._render_chunk(chunk_idx, step, float(y_min), volume_max, band_height)
                self._chunk_cache[chunk_idx] = picture
            painter.drawPicture(0, 0, picture)

    def _render_chunk(self, chunk_idx: int, step: int, bottom: float, volume_max: float, band_height: float) -> QPicture:
        picture = QPicture()
        qp = QPainter(picture)
        try:
            qp.setPen(pg.mkPen(QColor(0, 0, 0, 0)))
            c_start = chunk_idx * self._chunk_size
            c_end = min(self._x.size, c_start + self._chunk_size)
            half = self._bar_width / 2.0
            for idx in range(c_start, c_end):
                if step > 1 and (idx % step) != 0:
                    continue
                vol = float(self._vol[idx])
                if not np.isfinite(vol) or vol <= 0:
                    continue
                height = (vol / volume_max) * band_height
                qp.setBrush(self._colors[idx])
                x_val = float(self._x[idx])
                qp.drawRect(QRectF(x_val - half, bottom, self._bar_width, height))
        finally:
            qp.end()
        return picture
