"""Phase-gated multi-worker task orchestration."""

__version__ = "0.1.0"
