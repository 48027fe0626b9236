"""Frame extraction worker: job orchestration, sampling and archive streaming."""

__version__ = "0.1.0"
