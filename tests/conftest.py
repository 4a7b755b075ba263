from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import numpy as np
import pytest

from sentinel_vision.backends import InferenceBackend, SyntheticBackend
from sentinel_vision.config import (
    DetectorConfig,
    LiveFeedConfig,
    ModelDescriptor,
    ProcessingConfig,
    PrometheusConfig,
    RegistryConfig,
    ServiceConfig,
)
from sentinel_vision.detector import COCO_CLASSES, ThreatDetector
from sentinel_vision.errors import ProcessingError
from sentinel_vision.media import VideoMetadata, sample_count
from sentinel_vision.registry import ModelRegistry

FIXTURE = "fixture"


def make_jpeg(width: int = 640, height: int = 480, value: int = 128) -> bytes:
    image = np.full((height, width, 3), value, dtype=np.uint8)
    success, buffer = cv2.imencode(".jpg", image)
    assert success
    return buffer.tobytes()


class FakeMediaToolkit:
    """In-memory media toolkit describing a clip of ``duration`` seconds."""

    def __init__(
        self,
        duration: float = 10.0,
        width: int = 1280,
        height: int = 720,
        probe_failures: int = 0,
        extract_failures: int = 0,
        delay: float = 0.0,
        probe_delay: float = 0.0,
    ):
        self.duration = duration
        self.width = width
        self.height = height
        self.probe_failures = probe_failures
        self.extract_failures = extract_failures
        self.delay = delay
        self.probe_delay = probe_delay
        self.frame = make_jpeg(width // 4, height // 4)
        self.calls: List[tuple] = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def probe(self, path: str) -> VideoMetadata:
        with self._lock:
            self.calls.append(("probe", path))
            if self.probe_failures:
                self.probe_failures -= 1
                raise ProcessingError(f"cannot probe {path}")
        if self.probe_delay:
            time.sleep(self.probe_delay)
        return VideoMetadata(duration=self.duration, width=self.width, height=self.height, fps=25.0, codec="h264")

    def extract_frames(self, path: str, rate: float) -> List[bytes]:
        with self._lock:
            self.calls.append(("extract_frames", path, rate))
            if self.extract_failures:
                self.extract_failures -= 1
                raise ProcessingError(f"cannot decode {path}")
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
        finally:
            with self._lock:
                self.active -= 1
        return [self.frame] * sample_count(self.duration, rate)

    def extract_frame(self, path: str, timestamp: float) -> bytes:
        with self._lock:
            self.calls.append(("extract_frame", path, timestamp))
        return self.frame

    def timestamps(self) -> List[float]:
        return [call[2] for call in self.calls if call[0] == "extract_frame"]


class FixedOutputBackend(InferenceBackend):
    """Backend returning the same output for every prediction."""

    kind = FIXTURE

    def __init__(self, descriptor: ModelDescriptor, output: np.ndarray, delay: float = 0.0):
        super().__init__(descriptor)
        self.output = np.asarray(output, dtype=np.float32)
        self.delay = delay
        self.calls = 0
        self.disposed = False

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return self.output

    def dispose(self) -> None:
        self.disposed = True


class FailingBackend(InferenceBackend):
    kind = FIXTURE

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        raise RuntimeError("inference exploded")


class RandomDetectionBackend(InferenceBackend):
    """Seeded random object detections in input-pixel coordinates."""

    kind = FIXTURE

    def __init__(self, descriptor: ModelDescriptor, seed: int = 7, max_detections: int = 4):
        super().__init__(descriptor)
        self.rng = np.random.default_rng(seed)
        self.max_detections = max_detections

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        height, width = inputs.shape[:2]
        count = int(self.rng.integers(0, self.max_detections + 1))
        rows = []
        for _ in range(count):
            box_w = float(self.rng.uniform(10, width / 2))
            box_h = float(self.rng.uniform(10, height / 2))
            rows.append(
                [
                    float(self.rng.uniform(0.3, 0.99)),
                    float(self.rng.uniform(0, width - box_w)),
                    float(self.rng.uniform(0, height - box_h)),
                    box_w,
                    box_h,
                    float(self.rng.integers(0, len(COCO_CLASSES))),
                ]
            )
        return np.asarray(rows, dtype=np.float32).reshape(-1, 6)


class FixtureFactory:
    """Backend factory serving fixture backends per model id, synthetic otherwise."""

    def __init__(self, backends: Optional[Dict[str, object]] = None, delay: float = 0.0):
        self.backends = backends or {}
        self.delay = delay
        self.created: List[str] = []
        self.instances: Dict[str, InferenceBackend] = {}

    def create(self, descriptor: ModelDescriptor) -> InferenceBackend:
        if self.delay:
            time.sleep(self.delay)
        self.created.append(descriptor.id)
        builder = self.backends.get(descriptor.id)
        if builder is None:
            backend: InferenceBackend = SyntheticBackend(descriptor)
        elif callable(builder):
            backend = builder(descriptor)
        else:
            backend = FixedOutputBackend(descriptor, builder)
        self.instances[descriptor.id] = backend
        return backend


def object_rows(*rows) -> np.ndarray:
    """Detection rows [confidence, x, y, w, h, class_id] from (class, conf, x, y, w, h) tuples."""
    return np.asarray(
        [[conf, x, y, w, h, COCO_CLASSES.index(name)] for name, conf, x, y, w, h in rows],
        dtype=np.float32,
    ).reshape(-1, 6)


@pytest.fixture
def fake_media() -> FakeMediaToolkit:
    return FakeMediaToolkit()


@pytest.fixture
def processing_config(tmp_path: Path) -> ProcessingConfig:
    return ProcessingConfig(output_dir=str(tmp_path / "output"), media_retry_backoff=0.0)


@pytest.fixture
def service_config(tmp_path: Path) -> ServiceConfig:
    return ServiceConfig(
        registry=RegistryConfig(backend_mode="synthetic"),
        detector=DetectorConfig(),
        processing=ProcessingConfig(output_dir=str(tmp_path / "output"), media_retry_backoff=0.0),
        live_feed=LiveFeedConfig(source="synthetic", target_fps=50.0),
        prometheus=PrometheusConfig(enabled=False),
    )


def build_engine(factory: Optional[FixtureFactory] = None, config: Optional[RegistryConfig] = None) -> ThreatDetector:
    registry = ModelRegistry(config or RegistryConfig(backend_mode="synthetic"), backend_factory=factory)
    return ThreatDetector(registry, DetectorConfig())
