"""
Frame sources feeding the live feed streamer.

``FFmpegFrameSource`` loops a sample video through an ffmpeg subprocess that
writes MJPEG to stdout; ``SyntheticFrameSource`` renders a flat frame with
OpenCV on a timer. Both yield JPEG bytes from ``frames()`` and release their
resources in ``close()``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import subprocess
from collections import deque
from threading import Thread
from typing import AsyncIterator, Deque, List, Optional, Protocol

import cv2
import numpy as np

from .config import LiveFeedConfig

LOGGER = logging.getLogger(__name__)

JPEG_SOI = b"\xff\xd8"
JPEG_EOI = b"\xff\xd9"
READ_CHUNK = 64 * 1024
MAX_BUFFER = 16 * 1024 * 1024


class FrameSourceError(RuntimeError):
    """Raised when a frame source cannot be started or dies unexpectedly."""


class FrameSource(Protocol):
    def frames(self) -> AsyncIterator[bytes]: ...

    def close(self) -> None: ...


class MJPEGSplitter:
    """Incrementally split a byte stream into complete JPEG images."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[bytes]:
        self._buffer.extend(chunk)
        images: List[bytes] = []
        while True:
            start = self._buffer.find(JPEG_SOI)
            if start < 0:
                # keep a trailing 0xff in case the marker is split across chunks
                del self._buffer[:-1]
                break
            end = self._buffer.find(JPEG_EOI, start + 2)
            if end < 0:
                del self._buffer[:start]
                break
            images.append(bytes(self._buffer[start : end + 2]))
            del self._buffer[: end + 2]
        if len(self._buffer) > MAX_BUFFER:
            LOGGER.warning("Dropping %d buffered bytes without a complete JPEG", len(self._buffer))
            self._buffer.clear()
        return images


class FFmpegFrameSource:
    """Lifecycle wrapper around an ffmpeg subprocess that emits MJPEG frames on stdout."""

    def __init__(self, camera_id: str, config: LiveFeedConfig, target_fps: Optional[float] = None):
        self.camera_id = camera_id
        self.config = config
        self.target_fps = target_fps or config.target_fps
        self._process: subprocess.Popen[bytes] | None = None
        self._stderr_thread: Thread | None = None
        self._stderr_tail: Deque[str] = deque(maxlen=50)

    def start(self) -> None:
        if self._process and self._process.poll() is None:
            LOGGER.debug("ffmpeg source for camera '%s' already running", self.camera_id)
            return

        cmd = self._build_command()
        LOGGER.info("Starting ffmpeg source for camera '%s': %s", self.camera_id, _format_cmd(cmd))
        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except FileNotFoundError as exc:
            raise FrameSourceError(
                "ffmpeg executable not found. Ensure ffmpeg is installed and available in PATH."
            ) from exc

        if self._process.stderr is not None:
            self._stderr_thread = Thread(
                target=self._consume_stderr,
                name=f"ffmpeg-live-{self.camera_id}",
                daemon=True,
            )
            self._stderr_thread.start()

    async def frames(self) -> AsyncIterator[bytes]:
        self.start()
        process = self._process
        if process is None or process.stdout is None:
            raise FrameSourceError(f"ffmpeg source for camera '{self.camera_id}' has no stdout pipe")
        splitter = MJPEGSplitter()
        while True:
            chunk = await asyncio.to_thread(process.stdout.read, READ_CHUNK)
            if not chunk:
                code = process.poll()
                if code not in (None, 0) and self._process is process:
                    raise FrameSourceError(
                        f"ffmpeg source for camera '{self.camera_id}' exited with status {code}. "
                        f"Output:\n{self._collect_stderr_tail()}"
                    )
                return
            for image in splitter.feed(chunk):
                yield image

    def close(self, timeout: float = 5.0) -> None:
        process = self._process
        if not process:
            return
        self._process = None
        if process.poll() is None:
            LOGGER.info("Stopping ffmpeg source for camera '%s'", self.camera_id)
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                LOGGER.warning(
                    "ffmpeg source for camera '%s' did not terminate, sending SIGKILL",
                    self.camera_id,
                )
                process.kill()
                try:
                    process.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    LOGGER.error(
                        "ffmpeg source for camera '%s' failed to exit after SIGKILL",
                        self.camera_id,
                    )
        if process.stdout is not None:
            process.stdout.close()

        if self._stderr_thread and self._stderr_thread.is_alive():
            self._stderr_thread.join(timeout=1.0)
        self._stderr_thread = None

    def _consume_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        for raw in process.stderr:
            clean = raw.decode("utf-8", errors="replace").rstrip()
            if not clean:
                continue
            self._stderr_tail.append(clean)
            LOGGER.debug("ffmpeg[%s] %s", self.camera_id, clean)

    def _collect_stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def _build_command(self) -> List[str]:
        cfg = self.config
        input_source = os.path.expanduser(cfg.sample_video)
        if not input_source:
            raise FrameSourceError("live_feed.sample_video must be set for the ffmpeg source")
        if "://" not in input_source and not os.path.exists(input_source):
            LOGGER.warning(
                "Sample video '%s' for camera '%s' does not exist; ffmpeg may fail to start",
                cfg.sample_video,
                self.camera_id,
            )
        # jpeg_quality (1-100) mapped onto ffmpeg's mjpeg qscale (2 best .. 31 worst)
        qscale = max(2, min(31, round(31 - (cfg.jpeg_quality / 100.0) * 29)))
        return [
            "ffmpeg",
            "-hide_banner",
            "-loglevel",
            cfg.log_level,
            "-re",
            "-stream_loop",
            "-1",
            "-i",
            input_source,
            "-an",
            "-vf",
            f"scale={cfg.frame_width}:{cfg.frame_height}",
            "-r",
            f"{self.target_fps:g}",
            "-f",
            "image2pipe",
            "-vcodec",
            "mjpeg",
            "-q:v",
            str(qscale),
            "pipe:1",
        ]


class SyntheticFrameSource:
    """Emits a flat JPEG frame at the target rate until closed."""

    def __init__(self, camera_id: str, config: LiveFeedConfig, target_fps: Optional[float] = None):
        self.camera_id = camera_id
        self.config = config
        self.target_fps = target_fps or config.target_fps
        self._closed = False
        self._frame: Optional[bytes] = None

    async def frames(self) -> AsyncIterator[bytes]:
        interval = 1.0 / self.target_fps
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._closed:
            yield self._render()
            next_tick += interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    def close(self) -> None:
        self._closed = True

    def _render(self) -> bytes:
        if self._frame is None:
            image = np.full(
                (self.config.frame_height, self.config.frame_width, 3), 64, dtype=np.uint8
            )
            success, buffer = cv2.imencode(
                ".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality]
            )
            if not success:
                raise FrameSourceError("JPEG encoding failed")
            self._frame = buffer.tobytes()
        return self._frame


def create_frame_source(camera_id: str, config: LiveFeedConfig, target_fps: Optional[float] = None):
    if config.source == "ffmpeg":
        return FFmpegFrameSource(camera_id, config, target_fps)
    if config.source == "synthetic":
        return SyntheticFrameSource(camera_id, config, target_fps)
    raise FrameSourceError(f"Unsupported live feed source '{config.source}'")


def _format_cmd(cmd: List[str]) -> str:
    return " ".join(shlex.quote(part) for part in cmd)
