"""
Prometheus metrics helper utilities.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import PrometheusConfig

LOGGER = logging.getLogger(__name__)


class MetricsPublisher:
    """Expose job, inference and live feed metrics via an HTTP endpoint."""

    def __init__(self, config: PrometheusConfig):
        self.config = config
        self._registry = None
        self._submitted_counter = None
        self._jobs_counter = None
        self._job_duration_histogram = None
        self._frames_counter = None
        self._detections_counter = None
        self._inference_histogram = None
        self._models_loaded_gauge = None
        self._live_frames_counter = None
        self._active_feeds_gauge = None
        self._serving = False

    @property
    def active(self) -> bool:
        return self.config.enabled and self._registry is not None

    def _lazy_init(self) -> None:
        if self._registry is not None:
            return
        try:
            from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
        except Exception as exc:  # noqa: BLE001
            raise RuntimeError(
                "Prometheus metrics enabled but prometheus_client is not installed. "
                "Install it with `pip install prometheus-client`."
            ) from exc

        self._registry = CollectorRegistry()
        self._submitted_counter = Counter(
            "video_jobs_submitted_total",
            "Processing jobs accepted by the pipeline",
            registry=self._registry,
        )
        self._jobs_counter = Counter(
            "video_jobs_total",
            "Processing jobs by terminal status",
            ["status"],
            registry=self._registry,
        )
        self._job_duration_histogram = Histogram(
            "video_job_duration_seconds",
            "Wall clock duration of processing jobs",
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
            registry=self._registry,
        )
        self._frames_counter = Counter(
            "analyzed_frames_total",
            "Frames run through the detection engine",
            ["source"],
            registry=self._registry,
        )
        self._detections_counter = Counter(
            "detections_total",
            "Detections emitted per threat level",
            ["source", "threat_level"],
            registry=self._registry,
        )
        self._inference_histogram = Histogram(
            "model_inference_duration_seconds",
            "Backend inference duration in seconds",
            ["model", "backend"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
            registry=self._registry,
        )
        self._models_loaded_gauge = Gauge(
            "models_loaded",
            "Number of models currently loaded",
            registry=self._registry,
        )
        self._live_frames_counter = Counter(
            "live_feed_frames_total",
            "Frames delivered to live feed subscribers",
            ["camera"],
            registry=self._registry,
        )
        self._active_feeds_gauge = Gauge(
            "live_feeds_active",
            "Number of active live feeds",
            registry=self._registry,
        )

    def start(self, serve: bool = True) -> None:
        if not self.config.enabled:
            return
        self._lazy_init()
        if serve and not self._serving:
            from prometheus_client import start_http_server

            start_http_server(port=self.config.port, addr=self.config.host, registry=self._registry)
            self._serving = True
            LOGGER.info(
                "Prometheus endpoint available at http://%s:%d/metrics",
                self.config.host,
                self.config.port,
            )

    def sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Read back a single sample value (used by health endpoints and tests)."""
        if self._registry is None:
            return None
        return self._registry.get_sample_value(name, labels or {})

    def job_submitted(self) -> None:
        if not self.active:
            return
        self._submitted_counter.inc()

    def job_finished(self, status: str, duration: float) -> None:
        if not self.active:
            return
        self._jobs_counter.labels(status=status).inc()
        self._job_duration_histogram.observe(duration)

    def frames_analyzed(self, source: str, count: int = 1) -> None:
        if not self.active or not count:
            return
        self._frames_counter.labels(source=source).inc(count)

    def detections_emitted(self, source: str, threat_level: str, count: int = 1) -> None:
        if not self.active or not count:
            return
        self._detections_counter.labels(source=source, threat_level=threat_level).inc(count)

    def observe_inference(self, model_id: str, backend_kind: str, duration: float) -> None:
        if not self.active:
            return
        self._inference_histogram.labels(model=model_id, backend=backend_kind).observe(duration)

    def set_models_loaded(self, count: int) -> None:
        if not self.active:
            return
        self._models_loaded_gauge.set(count)

    def live_frame(self, camera_id: str) -> None:
        if not self.active:
            return
        self._live_frames_counter.labels(camera=camera_id).inc()

    def set_active_feeds(self, count: int) -> None:
        if not self.active:
            return
        self._active_feeds_gauge.set(count)
