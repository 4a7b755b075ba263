"""
Configuration models and loading utilities for the video analysis service.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

import yaml


class ConfigError(RuntimeError):
    """Raised when the supplied configuration is invalid."""


MODEL_TYPES = {"object_detection", "face_recognition", "anomaly_detection", "weapon_detection"}
BACKEND_MODES = {"auto", "real", "synthetic"}


@dataclass(slots=True)
class ModelDescriptor:
    """
    Static description of an inference model.

    Supported model types:
    - object_detection: COCO style detector, rows of [conf, x, y, w, h, class_id]
    - face_recognition: face detector + embedding head
    - anomaly_detection: sequence scorer
    - weapon_detection: binary weapon classifier
    """

    id: str
    type: str
    name: str = ""
    version: str = "1.0.0"
    path: str = ""
    accuracy: float = 0.0
    speed: str = "medium"  # fast | medium | slow
    input_shape: List[int] = field(default_factory=lambda: [416, 416, 3])  # H,W,C
    supported_detections: List[str] = field(default_factory=list)
    output_classes: Optional[int] = None
    output_dimensions: Optional[int] = None
    confidence_threshold: float = 0.5
    nms_threshold: float = 0.4
    is_default: bool = False

    def validate(self) -> None:
        if not self.id:
            raise ConfigError("Model id must not be empty")
        if self.type not in MODEL_TYPES:
            raise ConfigError(f"Model '{self.id}' type must be one of {MODEL_TYPES}")
        if len(self.input_shape) != 3 or any(dim <= 0 for dim in self.input_shape):
            raise ConfigError(f"Model '{self.id}' input_shape must be [height, width, channels]")
        if not (0.0 <= self.accuracy <= 100.0):
            raise ConfigError(f"Model '{self.id}' accuracy must be a percentage")
        if not (0.0 < self.confidence_threshold <= 1.0):
            raise ConfigError(f"Model '{self.id}' confidence_threshold must be in (0, 1]")
        if not (0.0 < self.nms_threshold <= 1.0):
            raise ConfigError(f"Model '{self.id}' nms_threshold must be in (0, 1]")
        if self.type == "face_recognition" and not self.output_dimensions:
            raise ConfigError(f"Face model '{self.id}' must declare output_dimensions")

    @property
    def memory_estimate_mb(self) -> int:
        """Rough resident size of the model's input buffers, in MiB."""
        input_size = math.prod(self.input_shape)
        return int(input_size * 4 * 2 / 1024 / 1024)


def default_model_catalog() -> List[ModelDescriptor]:
    return [
        ModelDescriptor(
            id="object_detection_v1",
            type="object_detection",
            name="Object Detection Model v1",
            path="models/object_detection_v1/model.onnx",
            accuracy=94.7,
            speed="fast",
            input_shape=[416, 416, 3],
            supported_detections=["person", "vehicle", "bag", "weapon"],
            output_classes=80,
            confidence_threshold=0.5,
            nms_threshold=0.4,
            is_default=True,
        ),
        ModelDescriptor(
            id="face_recognition_v1",
            type="face_recognition",
            name="Face Recognition Model v1",
            path="models/face_recognition_v1/model.onnx",
            accuracy=96.2,
            speed="medium",
            input_shape=[160, 160, 3],
            supported_detections=["face", "face_landmarks"],
            output_dimensions=128,
            is_default=True,
        ),
        ModelDescriptor(
            id="anomaly_detection_v1",
            type="anomaly_detection",
            name="Anomaly Detection Model v1",
            path="models/anomaly_detection_v1/model.onnx",
            accuracy=89.3,
            speed="slow",
            input_shape=[224, 224, 3],
            supported_detections=["unusual_behavior", "crowd_anomaly", "abandoned_object"],
        ),
        ModelDescriptor(
            id="weapon_detection_v1",
            type="weapon_detection",
            name="Weapon Detection Model v1",
            path="models/weapon_detection_v1/model.onnx",
            accuracy=91.8,
            speed="fast",
            input_shape=[320, 320, 3],
            supported_detections=["knife", "gun", "weapon"],
            output_classes=10,
        ),
    ]


@dataclass(slots=True)
class RegistryConfig:
    """
    Model registry configuration.

    backend_mode:
    - auto: ONNX Runtime when the model artifact exists, synthetic otherwise
    - real: ONNX Runtime only, loading fails when the artifact is missing
    - synthetic: deterministic synthetic backends only
    """

    backend_mode: str = "auto"
    models_dir: str = "."
    device: str = "cpu"
    warmup: bool = False
    idle_threshold_seconds: float = 30 * 60.0
    optimize_interval_seconds: float = 5 * 60.0
    models: List[ModelDescriptor] = field(default_factory=default_model_catalog)

    def __post_init__(self) -> None:
        self.models = [
            ModelDescriptor(**item) if isinstance(item, dict) else item for item in self.models
        ]

    def validate(self) -> None:
        if self.backend_mode not in BACKEND_MODES:
            raise ConfigError(f"Registry backend_mode must be one of {BACKEND_MODES}")
        if self.idle_threshold_seconds <= 0:
            raise ConfigError("Registry idle_threshold_seconds must be > 0")
        if self.optimize_interval_seconds <= 0:
            raise ConfigError("Registry optimize_interval_seconds must be > 0")
        seen = set()
        for model in self.models:
            model.validate()
            if model.id in seen:
                raise ConfigError(f"Duplicate model id '{model.id}'")
            seen.add(model.id)


@dataclass(slots=True)
class DetectorConfig:
    """Detection engine configuration."""

    object_model_id: str = "object_detection_v1"
    face_model_id: str = "face_recognition_v1"
    input_size: List[int] = field(default_factory=lambda: [416, 416])  # H,W
    confidence_threshold: float = 0.25
    face_match_threshold: float = 0.6
    anomaly_threshold: float = 0.5
    anomaly_high_cutoff: float = 0.8

    def validate(self) -> None:
        if not self.object_model_id:
            raise ConfigError("Detector object_model_id must not be empty")
        if not self.face_model_id:
            raise ConfigError("Detector face_model_id must not be empty")
        if len(self.input_size) != 2 or any(dim <= 0 for dim in self.input_size):
            raise ConfigError("input_size must be [height, width]")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise ConfigError("confidence_threshold must be in [0, 1]")
        if self.face_match_threshold <= 0:
            raise ConfigError("face_match_threshold must be > 0")
        if not (0.0 < self.anomaly_threshold <= 1.0):
            raise ConfigError("anomaly_threshold must be in (0, 1]")
        if not (0.0 < self.anomaly_high_cutoff <= 1.0):
            raise ConfigError("anomaly_high_cutoff must be in (0, 1]")


@dataclass(slots=True)
class TrackerConfig:
    """Default association parameters for multi-frame tracking requests."""

    max_distance: float = 50.0
    min_confidence: float = 0.5

    def validate(self) -> None:
        if self.max_distance <= 0:
            raise ConfigError("Tracker max_distance must be > 0")
        if not (0.0 <= self.min_confidence <= 1.0):
            raise ConfigError("Tracker min_confidence must be in [0, 1]")


@dataclass(slots=True)
class ProcessingConfig:
    """Video processing pipeline configuration."""

    output_dir: str = "output"
    max_concurrent_jobs: int = 4
    detection_workers: int = 4
    thumbnail_count: int = 10
    media_retries: int = 2
    media_retry_backoff: float = 0.5

    def validate(self) -> None:
        if not self.output_dir:
            raise ConfigError("Processing output_dir must not be empty")
        if self.max_concurrent_jobs < 1:
            raise ConfigError("max_concurrent_jobs must be >= 1")
        if self.detection_workers < 1:
            raise ConfigError("detection_workers must be >= 1")
        if self.thumbnail_count < 1:
            raise ConfigError("thumbnail_count must be >= 1")
        if self.media_retries < 0:
            raise ConfigError("media_retries must be >= 0")
        if self.media_retry_backoff < 0:
            raise ConfigError("media_retry_backoff must be >= 0")


@dataclass(slots=True)
class LiveFeedConfig:
    """Configuration for simulated camera feeds."""

    source: str = "synthetic"  # synthetic | ffmpeg
    sample_video: str = ""
    target_fps: float = 5.0
    frame_width: int = 640
    frame_height: int = 480
    jpeg_quality: int = 80
    log_level: str = "warning"

    def validate(self) -> None:
        if self.source not in {"synthetic", "ffmpeg"}:
            raise ConfigError("live_feed.source must be 'synthetic' or 'ffmpeg'")
        if self.source == "ffmpeg" and not self.sample_video:
            raise ConfigError("live_feed.sample_video must be set when source is 'ffmpeg'")
        if self.target_fps <= 0:
            raise ConfigError("live_feed.target_fps must be > 0")
        if self.frame_width <= 0 or self.frame_height <= 0:
            raise ConfigError("live_feed frame dimensions must be > 0")
        if not (1 <= self.jpeg_quality <= 100):
            raise ConfigError("live_feed.jpeg_quality must be between 1 and 100")


@dataclass(slots=True)
class PrometheusConfig:
    """Prometheus endpoint configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 9000

    def validate(self) -> None:
        if not (0 < self.port < 65536):
            raise ConfigError("Prometheus port must be between 1 and 65535")


@dataclass(slots=True)
class ServiceConfig:
    """Top level configuration for the analysis service."""

    registry: RegistryConfig = field(default_factory=RegistryConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    live_feed: LiveFeedConfig = field(default_factory=LiveFeedConfig)
    prometheus: PrometheusConfig = field(default_factory=PrometheusConfig)

    def validate(self) -> None:
        model_ids = {model.id for model in self.registry.models}
        for model_id in (self.detector.object_model_id, self.detector.face_model_id):
            if model_id not in model_ids:
                raise ConfigError(f"Detector references unknown model id '{model_id}'")
        _validate_all(
            self.registry,
            self.detector,
            self.tracker,
            self.processing,
            self.live_feed,
            self.prometheus,
        )


def _validate_all(*items: Iterable[object]) -> None:
    for item in items:
        if isinstance(item, Iterable) and not isinstance(item, (str, bytes)):
            for sub in item:
                _validate_all(sub)
        else:
            validator = getattr(item, "validate", None)
            if callable(validator):
                validator()


def _object_from_dict(cls, data: dict):
    if not isinstance(data, dict):
        raise ConfigError(f"Section for {cls.__name__} must be a mapping")
    allowed_keys = {field.name for field in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    kwargs = {key: value for key, value in data.items() if key in allowed_keys}
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigError(f"Invalid {cls.__name__} section: {exc}") from exc


def load_config(path: Path | str) -> ServiceConfig:
    """Load a service configuration from a YAML file."""

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Top level configuration must be a mapping/dictionary")

    registry_raw = dict(raw.get("registry", {}) or {})
    models_raw = registry_raw.pop("models", None)
    registry = _object_from_dict(RegistryConfig, registry_raw)
    if models_raw is not None:
        if not isinstance(models_raw, list):
            raise ConfigError("'registry.models' must be a list")
        registry.models = [_object_from_dict(ModelDescriptor, item) for item in models_raw]

    service = ServiceConfig(
        registry=registry,
        detector=_object_from_dict(DetectorConfig, raw.get("detector", {}) or {}),
        tracker=_object_from_dict(TrackerConfig, raw.get("tracker", {}) or {}),
        processing=_object_from_dict(ProcessingConfig, raw.get("processing", {}) or {}),
        live_feed=_object_from_dict(LiveFeedConfig, raw.get("live_feed", {}) or {}),
        prometheus=_object_from_dict(PrometheusConfig, raw.get("prometheus", {}) or {}),
    )
    service.validate()
    return service
