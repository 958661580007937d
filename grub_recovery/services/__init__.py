"""Supporting services shared by the CLI and the repair state machine."""

from .metrics import MetricsStore


__all__ = ["MetricsStore"]
