"""Observability helpers."""

from sage_agent.observability.metrics import MetricsStore

__all__ = ["MetricsStore"]
