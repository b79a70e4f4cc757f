"""Live token price chart: OHLC ingestion, indicators and a viewport-preserving renderer."""

__version__ = "0.1.0"
