from typing import Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from tokenchart.core.models import ViewportState, VisibleRange
from tokenchart.core.state import StateHolder


def is_scrolled_away(visible_to: Optional[float], series_length: int, edge_bars: int = 2) -> bool:
    # Only the right edge matters; zoom level and how far back the left edge sits do not.
    if visible_to is None or series_length <= 0:
        return False
    return visible_to < series_length - edge_bars


class ViewportTracker(QObject):
    """
    Debounced classifier for logical-range changes.

    A burst of range events restarts one single-shot timer, so the burst costs a
    single evaluation. The series length is read when the timer fires, not when
    the event arrives.
    """

    evaluated = pyqtSignal(bool, object)

    def __init__(
        self,
        series_length: StateHolder,
        debounce_ms: int = 100,
        edge_bars: int = 2,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._series_length = series_length
        self.edge_bars = edge_bars
        self.state = ViewportState()
        self.evaluations = 0
        self._pending: Optional[VisibleRange] = None
        self._timer = QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.setInterval(debounce_ms)
        self._timer.timeout.connect(self._evaluate)

    @property
    def is_user_scrolled_away(self) -> bool:
        return self.state.is_user_scrolled_away

    def has_pending(self) -> bool:
        return self._timer.isActive()

    def on_visible_logical_range_changed(self, logical_range: Optional[VisibleRange]) -> None:
        if logical_range is None:
            return
        self._pending = logical_range
        self._timer.start()

    def reset(self) -> None:
        self._timer.stop()
        self._pending = None
        self.state.logical_range = None
        self.state.is_user_scrolled_away = False

    def stop(self) -> None:
        self._timer.stop()
        self._pending = None

    def _evaluate(self) -> None:
        logical_range = self._pending
        self._pending = None
        if logical_range is None:
            return
        self.evaluations += 1
        away = is_scrolled_away(logical_range.end, int(self._series_length.get() or 0), self.edge_bars)
        self.state.logical_range = logical_range
        self.state.is_user_scrolled_away = away
        self.evaluated.emit(away, logical_range)
