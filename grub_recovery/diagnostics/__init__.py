"""Health probes and the parallel diagnostic engine."""

from .engine import run_diagnostics
from .probes import PROBES


__all__ = ["PROBES", "run_diagnostics"]
