"""Audio clip capture, streaming compression and resumable upload."""

__version__ = "0.1.0"
