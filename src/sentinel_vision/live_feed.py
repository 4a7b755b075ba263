"""
Live feed streamer: one asyncio task per camera pulling frames from a frame
source, running them through the detection engine and pushing the result to a
subscriber callback.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .config import LiveFeedConfig
from .detector import CategoryFlags, Detection, ThreatDetector
from .errors import DuplicateFeedError, SentinelError, ValidationError
from .frame_sources import FrameSource, FrameSourceError, create_frame_source
from .telemetry import MetricsPublisher

LOGGER = logging.getLogger(__name__)

FrameCallback = Callable[[bytes, List[Detection]], Union[None, Awaitable[None]]]
SourceFactory = Callable[[str, LiveFeedConfig, float], FrameSource]


@dataclass(slots=True)
class FeedSettings:
    categories: CategoryFlags = field(default_factory=CategoryFlags)
    target_fps: Optional[float] = None  # falls back to live_feed.target_fps

    def validate(self) -> None:
        if self.target_fps is not None and self.target_fps <= 0:
            raise ValidationError("target_fps must be > 0")


@dataclass(slots=True)
class LiveFeedSession:
    camera_id: str
    settings: FeedSettings
    source: FrameSource
    started_at: float
    task: Optional[asyncio.Task] = None
    frames_delivered: int = 0
    analysis_errors: int = 0


class LiveFeedSubscription:
    """Handle returned by LiveFeedStreamer.start; stopping it ends the feed."""

    def __init__(self, streamer: "LiveFeedStreamer", session: LiveFeedSession):
        self._streamer = streamer
        self._session = session

    @property
    def camera_id(self) -> str:
        return self._session.camera_id

    @property
    def active(self) -> bool:
        task = self._session.task
        return task is not None and not task.done()

    @property
    def frames_delivered(self) -> int:
        return self._session.frames_delivered

    async def wait(self) -> None:
        """Wait until the feed ends (source exhausted or stopped)."""
        if self._session.task is not None:
            try:
                await asyncio.shield(self._session.task)
            except asyncio.CancelledError:
                if not self._session.task.cancelled():
                    raise

    async def stop(self) -> None:
        await self._streamer._release(self._session)

    unsubscribe = stop


class LiveFeedStreamer:
    """Owns the live feed sessions, keyed by camera id."""

    def __init__(
        self,
        engine: ThreatDetector,
        config: Optional[LiveFeedConfig] = None,
        source_factory: Optional[SourceFactory] = None,
        metrics: Optional[MetricsPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.config = config or LiveFeedConfig()
        self._source_factory = source_factory or create_frame_source
        self.metrics = metrics
        self._clock = clock
        self._sessions: Dict[str, LiveFeedSession] = {}

    def active_feeds(self) -> List[str]:
        return list(self._sessions)

    async def start(
        self,
        camera_id: str,
        settings: Optional[FeedSettings],
        on_frame: FrameCallback,
    ) -> LiveFeedSubscription:
        if not camera_id:
            raise ValidationError("camera_id must not be empty")
        if camera_id in self._sessions:
            raise DuplicateFeedError(camera_id)
        settings = settings or FeedSettings()
        settings.validate()

        await self.engine.registry.load(self.engine.config.object_model_id)
        # re-check: another start for this camera may have won while the model loaded
        if camera_id in self._sessions:
            raise DuplicateFeedError(camera_id)

        target_fps = settings.target_fps or self.config.target_fps
        source = self._source_factory(camera_id, self.config, target_fps)
        session = LiveFeedSession(
            camera_id=camera_id,
            settings=settings,
            source=source,
            started_at=self._clock(),
        )
        self._sessions[camera_id] = session
        session.task = asyncio.create_task(self._run(session, on_frame), name=f"live-feed-{camera_id}")
        self._publish_active()
        LOGGER.info("Started live feed for camera '%s' at %.1f fps", camera_id, target_fps)
        return LiveFeedSubscription(self, session)

    async def stop(self, camera_id: str) -> None:
        session = self._sessions.get(camera_id)
        if session is None:
            LOGGER.debug("No live feed for camera '%s'; nothing to stop", camera_id)
            return
        await self._release(session)

    async def stop_all(self) -> None:
        for session in list(self._sessions.values()):
            await self._release(session)

    async def _release(self, session: LiveFeedSession) -> None:
        if self._sessions.get(session.camera_id) is session:
            del self._sessions[session.camera_id]
        task = session.task
        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await asyncio.to_thread(session.source.close)
        self._publish_active()

    async def _run(self, session: LiveFeedSession, on_frame: FrameCallback) -> None:
        camera_id = session.camera_id
        try:
            async with aclosing(session.source.frames()) as frames:
                async for frame in frames:
                    detections = await self._analyze(session, frame)
                    try:
                        result = on_frame(frame, detections)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        LOGGER.exception("Live feed subscriber for camera '%s' raised", camera_id)
                    session.frames_delivered += 1
                    if self.metrics is not None:
                        self.metrics.live_frame(camera_id)
        except FrameSourceError as exc:
            LOGGER.error("Live feed source for camera '%s' failed: %s", camera_id, exc)
        finally:
            await asyncio.to_thread(session.source.close)
            if self._sessions.get(camera_id) is session:
                del self._sessions[camera_id]
                self._publish_active()
            LOGGER.info(
                "Live feed for camera '%s' ended after %d frames",
                camera_id,
                session.frames_delivered,
            )

    async def _analyze(self, session: LiveFeedSession, frame: bytes) -> List[Detection]:
        try:
            analysis = await self.engine.analyze_frame(frame, session.settings.categories)
        except SentinelError as exc:
            session.analysis_errors += 1
            LOGGER.warning("Live analysis failed for camera '%s': %s", session.camera_id, exc)
            return []
        except Exception:
            session.analysis_errors += 1
            LOGGER.exception("Unexpected live analysis error for camera '%s'", session.camera_id)
            return []
        if self.metrics is not None:
            self.metrics.frames_analyzed("live")
            for detection in analysis.detections:
                self.metrics.detections_emitted("live", detection.threat_level)
        LOGGER.debug(
            "Camera '%s' frame analyzed: %d detections in %.3fs",
            session.camera_id,
            len(analysis.detections),
            analysis.processing_time,
        )
        return analysis.detections

    def _publish_active(self) -> None:
        if self.metrics is not None:
            self.metrics.set_active_feeds(len(self._sessions))
