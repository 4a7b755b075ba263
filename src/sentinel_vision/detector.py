"""
Detection engine: frame preprocessing, object/face/anomaly detection, threat
classification and multi-frame tracking.

Model outputs are obtained through the model registry, so the engine works the
same way whether the registry holds real or synthetic backends.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .config import DetectorConfig, TrackerConfig
from .errors import ValidationError
from .registry import ModelRegistry

if TYPE_CHECKING:
    from .tracker import Track, TrackingFrame, TrackingOptions

LOGGER = logging.getLogger(__name__)

COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck", "boat",
    "traffic_light", "fire_hydrant", "stop_sign", "parking_meter", "bench", "bird", "cat",
    "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra", "giraffe", "backpack",
    "umbrella", "handbag", "tie", "suitcase", "frisbee", "skis", "snowboard", "sports_ball",
    "kite", "baseball_bat", "baseball_glove", "skateboard", "surfboard", "tennis_racket",
    "bottle", "wine_glass", "cup", "fork", "knife", "spoon", "bowl", "banana", "apple",
    "sandwich", "orange", "broccoli", "carrot", "hot_dog", "pizza", "donut", "cake", "chair",
    "couch", "potted_plant", "bed", "dining_table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell_phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy_bear", "hair_drier",
    "toothbrush",
)

VEHICLE_CLASSES = frozenset({"bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck", "boat"})

THREAT_LEVELS = ("low", "medium", "high", "critical")
THREAT_CATEGORIES: Dict[str, frozenset] = {
    "high": frozenset({"knife", "scissors", "baseball_bat"}),
    "medium": frozenset({"backpack", "suitcase", "handbag"}),
    "low": frozenset({"person", "car", "bicycle"}),
}
RISK_RANGES: Dict[str, Tuple[float, float]] = {
    "critical": (0.9, 1.0),
    "high": (0.8, 1.0),
    "medium": (0.4, 0.7),
    "low": (0.1, 0.3),
}

ANOMALY_DESCRIPTIONS: Dict[str, str] = {
    "abandoned_object": "Unattended object detected for extended period",
    "unusual_behavior": "Person loitering in restricted area",
    "crowd_anomaly": "Crowd density above expected level",
}
ANOMALY_RECOMMENDATIONS: Dict[str, Tuple[str, ...]] = {
    "abandoned_object": (
        "Investigate unattended object immediately",
        "Alert security personnel to the location",
    ),
    "unusual_behavior": (
        "Monitor individual closely",
        "Consider approaching for identification",
    ),
}
DEFAULT_RECOMMENDATIONS: Tuple[str, ...] = ("Continue monitoring the situation",)

RawImage = Union[bytes, bytearray, memoryview, np.ndarray]


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """Axis aligned box in source-image pixels (top-left corner + size)."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True, slots=True)
class Detection:
    """Single classified detection."""

    class_name: str
    confidence: float
    bbox: BoundingBox
    threat_level: str = "low"
    risk_score: float = 0.0
    detection_id: str = ""
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return {
            "id": self.detection_id,
            "class": self.class_name,
            "confidence": self.confidence,
            "bbox": {
                "x": self.bbox.x,
                "y": self.bbox.y,
                "width": self.bbox.width,
                "height": self.bbox.height,
            },
            "threat_level": self.threat_level,
            "risk_score": self.risk_score,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class CategoryFlags:
    """Which object families a detect() call should report."""

    persons: bool = True
    vehicles: bool = True
    objects: bool = True

    def allows(self, class_name: str) -> bool:
        if class_name == "person":
            return self.persons
        if class_name in VEHICLE_CLASSES:
            return self.vehicles
        return self.objects


@dataclass(slots=True)
class NormalizedFrame:
    """RGB uint8 tensor resized to the model input plus the source dimensions."""

    data: np.ndarray
    width: int
    height: int
    channels: int
    original_width: int
    original_height: int


@dataclass(slots=True)
class FrameAnalysis:
    detections: List[Detection]
    overall_confidence: float
    processing_time: float
    timestamp: float
    frame_info: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class KnownFace:
    face_id: str
    embedding: np.ndarray
    name: str = ""


@dataclass(slots=True)
class Face:
    face_id: str
    bbox: BoundingBox
    confidence: float
    embedding: np.ndarray


@dataclass(slots=True)
class FaceMatch:
    face: Face
    match: KnownFace
    distance: float
    confidence: float


@dataclass(slots=True)
class FaceRecognitionResult:
    faces: List[Face]
    matches: List[FaceMatch]
    unknown_faces: List[Face]
    average_confidence: float


@dataclass(slots=True)
class ActivitySample:
    """Scene measurements (e.g. dwell seconds, loiter seconds, people count) at a timestamp."""

    timestamp: float
    measurements: Dict[str, float]
    location: Optional[BoundingBox] = None


@dataclass(slots=True)
class Anomaly:
    type: str
    confidence: float
    timestamp: float
    description: str
    location: Optional[BoundingBox] = None


@dataclass(slots=True)
class AnomalyReport:
    detections: List[Anomaly]
    risk_level: str
    recommendations: List[str]


class ThreatDetector:
    """Detection engine bound to a model registry."""

    def __init__(
        self,
        registry: ModelRegistry,
        config: Optional[DetectorConfig] = None,
        tracker_config: Optional[TrackerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.config = config or DetectorConfig()
        self.tracker_config = tracker_config or TrackerConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Object detection
    # ------------------------------------------------------------------
    def preprocess(self, raw: RawImage, size: Optional[Sequence[int]] = None) -> NormalizedFrame:
        """Decode and resize to the exact model input (aspect ratio is not kept)."""
        image = _decode(raw)
        orig_h, orig_w = image.shape[:2]
        target_h, target_w = (int(size[0]), int(size[1])) if size else self.config.input_size
        resized = cv2.resize(image, (target_w, target_h), interpolation=cv2.INTER_LINEAR)
        rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
        return NormalizedFrame(
            data=np.ascontiguousarray(rgb),
            width=target_w,
            height=target_h,
            channels=3,
            original_width=orig_w,
            original_height=orig_h,
        )

    async def detect(self, frame: NormalizedFrame, categories: Optional[CategoryFlags] = None) -> List[Detection]:
        categories = categories or CategoryFlags()
        result = await self.registry.predict(self.config.object_model_id, frame.data)
        rows = np.asarray(result.output, dtype=np.float32)
        if rows.size == 0:
            return []
        rows = np.atleast_2d(rows)
        if rows.shape[1] < 6:
            raise ValidationError(f"Object detection output must have 6 columns, got {rows.shape}")

        scale_x = frame.original_width / float(frame.width)
        scale_y = frame.original_height / float(frame.height)
        now = self._clock()
        detections: List[Detection] = []
        for confidence, x, y, width, height, class_id in rows[:, :6].tolist():
            confidence = min(max(confidence, 0.0), 1.0)
            if confidence < self.config.confidence_threshold:
                continue
            class_name = _class_name(int(class_id))
            if not categories.allows(class_name):
                continue
            detections.append(
                Detection(
                    class_name=class_name,
                    confidence=confidence,
                    bbox=_clip_box(
                        x * scale_x,
                        y * scale_y,
                        width * scale_x,
                        height * scale_y,
                        frame.original_width,
                        frame.original_height,
                    ),
                    detection_id=_detection_id(now),
                    timestamp=now,
                )
            )
        return detections

    def classify(self, detections: Iterable[Detection]) -> List[Detection]:
        """Attach threat level and risk score from the static category table."""
        classified = []
        for detection in detections:
            level = threat_level_for(detection.class_name)
            classified.append(
                replace(
                    detection,
                    threat_level=level,
                    risk_score=risk_score_for(level, detection.confidence),
                )
            )
        return classified

    async def analyze_frame(
        self,
        raw: RawImage,
        categories: Optional[CategoryFlags] = None,
        timestamp: Optional[float] = None,
    ) -> FrameAnalysis:
        start = time.perf_counter()
        frame = await asyncio.to_thread(self.preprocess, raw)
        detections = self.classify(await self.detect(frame, categories))
        overall = sum(det.confidence for det in detections) / len(detections) if detections else 0.0
        return FrameAnalysis(
            detections=detections,
            overall_confidence=overall,
            processing_time=time.perf_counter() - start,
            timestamp=timestamp if timestamp is not None else self._clock(),
            frame_info={
                "width": frame.width,
                "height": frame.height,
                "channels": frame.channels,
                "original_width": frame.original_width,
                "original_height": frame.original_height,
            },
        )

    # ------------------------------------------------------------------
    # Faces
    # ------------------------------------------------------------------
    async def recognize_faces(self, raw: RawImage, known_faces: Sequence[KnownFace] = ()) -> FaceRecognitionResult:
        descriptor = self.registry.descriptor(self.config.face_model_id)
        frame = await asyncio.to_thread(self.preprocess, raw, descriptor.input_shape[:2])
        result = await self.registry.predict(self.config.face_model_id, frame.data)
        rows = np.asarray(result.output, dtype=np.float32)
        faces: List[Face] = []
        if rows.size:
            rows = np.atleast_2d(rows)
            scale_x = frame.original_width / float(frame.width)
            scale_y = frame.original_height / float(frame.height)
            for index, row in enumerate(rows):
                x, y, width, height, confidence = (float(value) for value in row[:5])
                faces.append(
                    Face(
                        face_id=f"face_{index + 1:03d}",
                        bbox=_clip_box(
                            x * scale_x,
                            y * scale_y,
                            width * scale_x,
                            height * scale_y,
                            frame.original_width,
                            frame.original_height,
                        ),
                        confidence=min(max(confidence, 0.0), 1.0),
                        embedding=np.array(row[5:], dtype=np.float32),
                    )
                )
        return self.match_faces(faces, known_faces)

    def match_faces(self, faces: Sequence[Face], known_faces: Sequence[KnownFace]) -> FaceRecognitionResult:
        threshold = self.config.face_match_threshold
        matches: List[FaceMatch] = []
        unknown: List[Face] = []
        for face in faces:
            best: Optional[KnownFace] = None
            best_distance = math.inf
            for known in known_faces:
                known_embedding = np.asarray(known.embedding, dtype=np.float32)
                if known_embedding.shape != face.embedding.shape:
                    raise ValidationError(
                        f"Known face '{known.face_id}' embedding has shape {known_embedding.shape}, "
                        f"expected {face.embedding.shape}"
                    )
                distance = float(np.linalg.norm(face.embedding - known_embedding))
                if distance < threshold and distance < best_distance:
                    best, best_distance = known, distance
            if best is None:
                unknown.append(face)
            else:
                matches.append(FaceMatch(face=face, match=best, distance=best_distance, confidence=1.0 - best_distance))
        average = sum(face.confidence for face in faces) / len(faces) if faces else 0.0
        return FaceRecognitionResult(faces=list(faces), matches=matches, unknown_faces=unknown, average_confidence=average)

    # ------------------------------------------------------------------
    # Tracking and anomalies
    # ------------------------------------------------------------------
    def track(
        self, frames: Iterable[TrackingFrame], options: Optional[TrackingOptions] = None
    ) -> List[Track]:
        # tracker.py imports Detection from this module
        from .tracker import TrackingOptions, track_frames

        if options is None:
            options = TrackingOptions(
                max_distance=self.tracker_config.max_distance,
                min_confidence=self.tracker_config.min_confidence,
            )
        return track_frames(frames, options)

    def detect_anomalies(
        self,
        stream: Iterable[ActivitySample],
        baseline: Mapping[str, float],
        sensitivity: float = 1.0,
    ) -> AnomalyReport:
        """
        Score each measurement against its baseline value.

        confidence = 1 - exp(-sensitivity * relative_excess); a measurement is an
        anomaly once the confidence reaches ``anomaly_threshold``. Measurements
        without a baseline entry are ignored.
        """
        if sensitivity <= 0:
            raise ValidationError("sensitivity must be > 0")

        anomalies: List[Anomaly] = []
        for sample in stream:
            for anomaly_type, value in sample.measurements.items():
                expected = baseline.get(anomaly_type)
                if expected is None:
                    continue
                excess = (float(value) - float(expected)) / max(abs(float(expected)), 1e-6)
                if excess <= 0:
                    continue
                confidence = 1.0 - math.exp(-sensitivity * excess)
                if confidence < self.config.anomaly_threshold:
                    continue
                anomalies.append(
                    Anomaly(
                        type=anomaly_type,
                        confidence=confidence,
                        timestamp=sample.timestamp,
                        description=ANOMALY_DESCRIPTIONS.get(anomaly_type, f"Unusual {anomaly_type} activity"),
                        location=sample.location,
                    )
                )

        if any(anomaly.confidence > self.config.anomaly_high_cutoff for anomaly in anomalies):
            risk_level = "high"
        elif anomalies:
            risk_level = "medium"
        else:
            risk_level = "low"
        return AnomalyReport(
            detections=anomalies,
            risk_level=risk_level,
            recommendations=recommendations_for(anomalies),
        )


def threat_level_for(class_name: str) -> str:
    for level in ("high", "medium", "low"):
        if class_name in THREAT_CATEGORIES[level]:
            return level
    return "low"


def risk_score_for(level: str, confidence: float) -> float:
    low, high = RISK_RANGES[level]
    confidence = min(max(confidence, 0.0), 1.0)
    base = low + (high - low) * confidence
    return min(max(base * confidence, 0.0), 1.0)


def recommendations_for(anomalies: Iterable[Anomaly]) -> List[str]:
    recommendations: List[str] = []
    for anomaly in anomalies:
        for item in ANOMALY_RECOMMENDATIONS.get(anomaly.type, DEFAULT_RECOMMENDATIONS):
            if item not in recommendations:
                recommendations.append(item)
    return recommendations


def _decode(raw: RawImage) -> np.ndarray:
    if raw is None:
        raise ValidationError("Frame data is required")
    if isinstance(raw, np.ndarray):
        if raw.size == 0:
            raise ValidationError("Frame data is empty")
        if raw.ndim == 2:
            return cv2.cvtColor(raw, cv2.COLOR_GRAY2BGR)
        if raw.ndim == 3 and raw.shape[2] == 4:
            return cv2.cvtColor(raw, cv2.COLOR_BGRA2BGR)
        if raw.ndim == 3 and raw.shape[2] == 3:
            return raw
        raise ValidationError(f"Unsupported frame shape {raw.shape}")
    if len(raw) == 0:
        raise ValidationError("Frame data is empty")
    image = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise ValidationError("Unable to decode frame data")
    return image


def _class_name(class_id: int) -> str:
    if 0 <= class_id < len(COCO_CLASSES):
        return COCO_CLASSES[class_id]
    return f"class_{class_id}"


def _clip_box(x: float, y: float, width: float, height: float, max_w: int, max_h: int) -> BoundingBox:
    x1 = min(max(x, 0.0), float(max_w))
    y1 = min(max(y, 0.0), float(max_h))
    x2 = min(max(x + width, 0.0), float(max_w))
    y2 = min(max(y + height, 0.0), float(max_h))
    return BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1)


def _detection_id(now: float) -> str:
    return f"det_{int(now * 1000)}_{uuid.uuid4().hex[:9]}"
