"""balbot - keeps a tracked token balanced across two chains via a bridge aggregator."""

__version__ = "0.1.0"
