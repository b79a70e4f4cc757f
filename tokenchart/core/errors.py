class ChartError(Exception):
    pass


class NetworkError(ChartError):
    """Fetch failed, timed out, or returned an unusable response."""


class CancelledError(ChartError):
    """A superseded or torn-down fetch; never surfaced to the user."""


class EmptyDataError(ChartError):
    """Valid response without a single point."""


class RenderSurfaceError(ChartError):
    """The rendering surface rejected an operation (removed series, disposed surface, ...)."""


class InvalidSelectionError(ChartError, ValueError):
    pass
