"""Telemetry helpers (Prometheus)."""

from .metrics import MetricsPublisher

__all__ = ["MetricsPublisher"]
