"""
Media toolkit used by the processing pipeline: probing, frame sampling and
single-frame extraction from video files via OpenCV.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import cv2

from .errors import ProcessingError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VideoMetadata:
    """Read-only properties of a source video."""

    duration: float
    width: int
    height: int
    fps: float
    codec: str = ""
    bitrate: Optional[int] = None
    size: Optional[int] = None


class MediaToolkit(Protocol):
    def probe(self, path: str) -> VideoMetadata: ...

    def extract_frames(self, path: str, rate: float) -> List[bytes]: ...

    def extract_frame(self, path: str, timestamp: float) -> bytes: ...


def sample_count(duration: float, rate: float) -> int:
    """Number of frames sampled at ``rate`` fps from a clip of ``duration`` seconds."""
    if duration <= 0 or rate <= 0:
        return 0
    return max(0, math.ceil(duration * rate - 1e-9))


class OpenCVMediaToolkit:
    """
    MediaToolkit backed by cv2.VideoCapture (FFmpeg backend).

    Frames are returned JPEG encoded so they can be written to disk or pushed
    over a transport unchanged.
    """

    def __init__(self, jpeg_quality: int = 90):
        self.jpeg_quality = jpeg_quality

    def probe(self, path: str) -> VideoMetadata:
        source = Path(path)
        if not source.is_file():
            raise ProcessingError(f"Video file not found: {path}")
        capture = self._open(path)
        try:
            fps = capture.get(cv2.CAP_PROP_FPS) or 30.0
            frame_count = capture.get(cv2.CAP_PROP_FRAME_COUNT)
            width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
            fourcc = int(capture.get(cv2.CAP_PROP_FOURCC))
            bitrate = capture.get(cv2.CAP_PROP_BITRATE)
        finally:
            capture.release()

        duration = frame_count / fps if frame_count > 0 else 0.0
        if duration <= 0 or width <= 0 or height <= 0:
            raise ProcessingError(f"Unable to read video properties from {path}")
        metadata = VideoMetadata(
            duration=duration,
            width=width,
            height=height,
            fps=fps,
            codec=self._fourcc_to_string(fourcc).strip("\x00 ") if fourcc else "",
            bitrate=int(bitrate * 1000) if bitrate and bitrate > 0 else None,
            size=source.stat().st_size,
        )
        LOGGER.debug("Probed %s: %s", path, metadata)
        return metadata

    def extract_frames(self, path: str, rate: float) -> List[bytes]:
        metadata = self.probe(path)
        count = sample_count(metadata.duration, rate)
        capture = self._open(path)
        frames: List[bytes] = []
        try:
            for index in range(count):
                frame = self._read_at(capture, index / rate)
                if frame is None:
                    LOGGER.warning(
                        "Stopped sampling %s at %.2fs (frame %d/%d unreadable)",
                        path,
                        index / rate,
                        index + 1,
                        count,
                    )
                    break
                frames.append(self._encode(frame))
        finally:
            capture.release()
        return frames

    def extract_frame(self, path: str, timestamp: float) -> bytes:
        capture = self._open(path)
        try:
            frame = self._read_at(capture, timestamp)
        finally:
            capture.release()
        if frame is None:
            raise ProcessingError(f"Unable to read frame at {timestamp:.2f}s from {path}")
        return self._encode(frame)

    @staticmethod
    def _open(path: str) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(str(path), cv2.CAP_FFMPEG)
        if not capture.isOpened():
            capture.release()
            raise ProcessingError(f"Unable to open video {path}")
        return capture

    @staticmethod
    def _read_at(capture: cv2.VideoCapture, timestamp: float):
        capture.set(cv2.CAP_PROP_POS_MSEC, max(timestamp, 0.0) * 1000.0)
        success, frame = capture.read()
        if not success or frame is None:
            return None
        return frame

    def _encode(self, frame) -> bytes:
        success, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not success:
            raise ProcessingError("JPEG encoding failed")
        return buffer.tobytes()

    @staticmethod
    def _fourcc_to_string(fourcc: int) -> str:
        """Convert FOURCC code to readable string."""
        return "".join([chr((fourcc >> 8 * i) & 0xFF) for i in range(4)])
