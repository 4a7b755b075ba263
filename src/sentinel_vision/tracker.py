"""
Proximity based multi-frame tracker used by tracking requests.
"""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .detector import BoundingBox, Detection
from .errors import ValidationError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackingOptions:
    """Association parameters for a tracking request."""

    max_distance: float = 50.0  # max center displacement in pixels between frames
    min_confidence: float = 0.5  # a detection must reach this to start a track

    def validate(self) -> None:
        if self.max_distance <= 0:
            raise ValidationError("max_distance must be > 0")
        if not (0.0 <= self.min_confidence <= 1.0):
            raise ValidationError("min_confidence must be in [0, 1]")


@dataclass(slots=True)
class TrackingFrame:
    """Detections observed in one frame of a tracking request."""

    timestamp: float
    detections: List[Detection] = field(default_factory=list)


@dataclass(slots=True)
class Track:
    """Track state that we propagate across frames."""

    track_id: str
    class_name: str
    confidence: float
    bbox: BoundingBox
    last_timestamp: float
    velocity: Tuple[float, float] = (0.0, 0.0)  # pixels per second
    is_active: bool = True
    hits: int = 1
    first_frame: int = 0
    last_frame: int = 0


class ProximityTracker:
    """
    Greedy tracker associating detections of the same class by center distance.

    Tracks that miss a frame are marked inactive and are never revived; a
    reappearing object starts a new track.
    """

    def __init__(self, options: TrackingOptions):
        options.validate()
        self.options = options
        self._next_track_id = itertools.count(1)
        self._tracks: Dict[str, Track] = {}

    @property
    def tracks(self) -> List[Track]:
        return list(self._tracks.values())

    def update(self, frame_index: int, timestamp: float, detections: Iterable[Detection]) -> List[Track]:
        active = [track for track in self._tracks.values() if track.is_active]
        matched: set[str] = set()

        for detection in sorted(detections, key=lambda det: det.confidence, reverse=True):
            match = self._match_detection(active, detection, matched)
            if match is None:
                if detection.confidence < self.options.min_confidence:
                    continue
                track = Track(
                    track_id=f"track_{next(self._next_track_id)}",
                    class_name=detection.class_name,
                    confidence=detection.confidence,
                    bbox=detection.bbox,
                    last_timestamp=timestamp,
                    first_frame=frame_index,
                    last_frame=frame_index,
                )
                self._tracks[track.track_id] = track
                matched.add(track.track_id)
                continue

            elapsed = timestamp - match.last_timestamp
            if elapsed <= 0:
                elapsed = float(frame_index - match.last_frame) or 1.0
            (old_x, old_y), (new_x, new_y) = match.bbox.center, detection.bbox.center
            match.velocity = ((new_x - old_x) / elapsed, (new_y - old_y) / elapsed)
            match.bbox = detection.bbox
            match.confidence = detection.confidence
            match.last_timestamp = timestamp
            match.last_frame = frame_index
            match.hits += 1
            matched.add(match.track_id)

        for track in active:
            if track.track_id not in matched:
                LOGGER.debug(
                    "Track %s lost at frame %d (hits=%d)",
                    track.track_id,
                    frame_index,
                    track.hits,
                )
                track.is_active = False
        return self.tracks

    def _match_detection(
        self, candidates: List[Track], detection: Detection, taken: set[str]
    ) -> Optional[Track]:
        best: Optional[Track] = None
        best_key: Tuple[float, float] | None = None
        for track in candidates:
            if track.track_id in taken or track.class_name != detection.class_name:
                continue
            distance = _center_distance(track.bbox, detection.bbox)
            if distance > self.options.max_distance:
                continue
            key = (distance, -_iou(track.bbox.as_xyxy(), detection.bbox.as_xyxy()))
            if best_key is None or key < best_key:
                best, best_key = track, key
        return best


def track_frames(frames: Iterable[TrackingFrame], options: TrackingOptions) -> List[Track]:
    tracker = ProximityTracker(options)
    for index, frame in enumerate(frames):
        tracker.update(index, frame.timestamp, frame.detections)
    return tracker.tracks


def _center_distance(a: BoundingBox, b: BoundingBox) -> float:
    (ax, ay), (bx, by) = a.center, b.center
    return math.hypot(ax - bx, ay - by)


def _iou(a: Tuple[float, float, float, float], b: Tuple[float, float, float, float]) -> float:
    ax1, ay1, ax2, ay2 = a
    bx1, by1, bx2, by2 = b

    inter_x1 = max(ax1, bx1)
    inter_y1 = max(ay1, by1)
    inter_x2 = min(ax2, bx2)
    inter_y2 = min(ay2, by2)

    inter_w = max(0.0, inter_x2 - inter_x1)
    inter_h = max(0.0, inter_y2 - inter_y1)
    inter_area = inter_w * inter_h

    area_a = max(0.0, (ax2 - ax1)) * max(0.0, (ay2 - ay1))
    area_b = max(0.0, (bx2 - bx1)) * max(0.0, (by2 - by1))
    union_area = area_a + area_b - inter_area
    if union_area <= 0:
        return 0.0
    return inter_area / union_area
