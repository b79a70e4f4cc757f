"""Rendering capability the chart orchestrator draws through."""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Sequence

from tokenchart.core.models import VisibleRange

PricePoint = Dict[str, Any]


class SeriesKind(str, Enum):
    CANDLESTICK = 'candlestick'
    AREA = 'area'
    LINE = 'line'
    HISTOGRAM = 'histogram'


class SeriesHandle(ABC):
    """One drawn series.

    Points are dicts keyed by `time` (epoch seconds) plus `open/high/low/close`
    for candlesticks, `value` for area/line and `value`/`color` for histograms.
    """

    @abstractmethod
    def set_data(self, points: Sequence[PricePoint]) -> None:
        pass

    @abstractmethod
    def update(self, point: PricePoint) -> None:
        """Replace the last point when times match, append when newer.

        Raises:
            RenderSurfaceError: If the point is older than the last one or the
                series has been removed.
        """
        pass


class TimeScale(ABC):
    @abstractmethod
    def get_visible_range(self) -> Optional[VisibleRange]:
        """Visible window in epoch seconds, or None before any data."""
        pass

    @abstractmethod
    def set_visible_range(self, visible_range: VisibleRange) -> None:
        pass

    @abstractmethod
    def get_visible_logical_range(self) -> Optional[VisibleRange]:
        """Visible window in bar indexes of the main series."""
        pass

    @abstractmethod
    def fit_content(self) -> None:
        pass


class RenderSurface(ABC):
    @abstractmethod
    def add_series(self, kind: SeriesKind, style: Optional[Dict[str, Any]] = None) -> SeriesHandle:
        pass

    @abstractmethod
    def remove_series(self, handle: SeriesHandle) -> None:
        pass

    @abstractmethod
    def time_scale(self) -> TimeScale:
        pass

    @abstractmethod
    def subscribe_visible_range_change(self, callback: Callable[[Optional[VisibleRange]], None]) -> None:
        """Register for logical-range changes; the callback receives the new logical range."""
        pass

    @abstractmethod
    def unsubscribe_visible_range_change(self, callback: Callable[[Optional[VisibleRange]], None]) -> None:
        pass

    @abstractmethod
    def subscribe_crosshair_move(self, callback: Callable[[Optional[int]], None]) -> None:
        """Register for crosshair moves; the callback receives the hovered bar time or None."""
        pass

    @abstractmethod
    def set_price_formatter(self, formatter: Optional[Callable[[float], str]]) -> None:
        pass

    @abstractmethod
    def remove(self) -> None:
        pass


SurfaceFactory = Callable[[Any, Dict[str, Any]], RenderSurface]


@contextmanager
def surface_scope(
    factory: SurfaceFactory,
    container: Any,
    options: Optional[Dict[str, Any]] = None,
    debug_sink=None,
) -> Iterator[RenderSurface]:
    surface = factory(container, dict(options or {}))
    try:
        yield surface
    finally:
        try:
            surface.remove()
        except Exception as exc:
            if debug_sink is not None:
                try:
                    debug_sink(f'Surface release failed: {exc}')
                except Exception:
                    pass
