"""
Video processing pipeline.

A submitted video becomes a ProcessingJob that runs through ordered stages:

- probe           (0%)       read VideoMetadata, failure aborts the job
- extract_frames  (0-40%)    sample frames at options.frame_rate
- thumbnails      (+20%, <=60%) evenly spaced thumbnails across the duration
- detect_threats  (60-100%)  per-frame detection on a bounded worker pool

Stage errors are recorded on the job (status=failed) and never raised to the
submitter. Independent jobs run concurrently up to max_concurrent_jobs.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import math
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from .config import ProcessingConfig
from .detector import CategoryFlags, Detection, ThreatDetector
from .errors import ProcessingError, ResourceNotFoundError, SentinelError, ValidationError
from .media import MediaToolkit, OpenCVMediaToolkit, VideoMetadata
from .telemetry import MetricsPublisher

LOGGER = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

EXTRACTION_BAND = 40
THUMBNAIL_STEP = 20
THUMBNAIL_CAP = 60
DETECTION_START = 60

_OPTION_ALIASES = {
    "extract_frames": "extract_frames",
    "extractFrames": "extract_frames",
    "generate_thumbnails": "generate_thumbnails",
    "generateThumbnails": "generate_thumbnails",
    "detect_threats": "detect_threats",
    "detectThreats": "detect_threats",
    "frame_rate": "frame_rate",
    "frameRate": "frame_rate",
}


@dataclass(slots=True)
class ProcessingOptions:
    """Every option a submission recognizes, with its default."""

    extract_frames: bool = True
    generate_thumbnails: bool = True
    detect_threats: bool = True
    frame_rate: float = 1.0  # frames sampled per second of source video

    def validate(self) -> None:
        for name in ("extract_frames", "generate_thumbnails", "detect_threats"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a boolean")
        if isinstance(self.frame_rate, bool) or not isinstance(self.frame_rate, (int, float)):
            raise ValidationError("frame_rate must be a number")
        if not math.isfinite(self.frame_rate) or self.frame_rate <= 0:
            raise ValidationError("frame_rate must be > 0")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProcessingOptions":
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _OPTION_ALIASES.get(key)
            if name is None:
                raise ValidationError(f"Unknown processing option '{key}'")
            kwargs[name] = value
        options = cls(**kwargs)
        options.validate()
        return options


@dataclass(slots=True)
class FrameDetections:
    frame_number: int
    timestamp: float
    frame_file: str
    detections: List[Detection]

    def to_dict(self) -> dict:
        return {
            "frame_number": self.frame_number,
            "timestamp": self.timestamp,
            "frame_file": self.frame_file,
            "detections": [det.to_dict() for det in self.detections],
        }


@dataclass(slots=True)
class DetectionReport:
    video_id: str
    total_frames: int
    threats_detected: int
    frames: List[FrameDetections]
    processing_time: float
    created_at: float
    analysis_file: str = ""

    def to_dict(self) -> dict:
        return {
            "video_id": self.video_id,
            "total_frames": self.total_frames,
            "threats_detected": self.threats_detected,
            "frames": [frame.to_dict() for frame in self.frames],
            "processing_time": self.processing_time,
            "created_at": self.created_at,
            "analysis_file": self.analysis_file,
        }


@dataclass(slots=True)
class ProcessingJob:
    """One video's journey through the pipeline. Frozen once terminal."""

    job_id: str
    video_id: str
    source_path: str
    options: ProcessingOptions
    started_at: float
    status: str = PROCESSING
    progress: int = 0
    finished_at: Optional[float] = None
    stage_times: Dict[str, Dict[str, float]] = field(default_factory=dict)
    error: Optional[str] = None
    metadata: Optional[VideoMetadata] = None
    estimated_time: Optional[int] = None
    report: Optional[DetectionReport] = None
    frames_extracted: int = 0
    thumbnails: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status != PROCESSING

    @property
    def processing_time(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def advance(self, progress: float) -> None:
        self._ensure_mutable()
        self.progress = max(self.progress, min(int(progress), 100))

    def begin_stage(self, stage: str, now: float) -> None:
        self._ensure_mutable()
        self.stage_times[stage] = {"started_at": now}

    def end_stage(self, stage: str, now: float) -> None:
        self._ensure_mutable()
        self.stage_times.setdefault(stage, {})["finished_at"] = now

    def complete(self, now: float) -> None:
        self._ensure_mutable()
        self.progress = 100
        self.status = COMPLETED
        self.finished_at = now

    def fail(self, error: str, now: float) -> None:
        self._ensure_mutable()
        self.status = FAILED
        self.error = error
        self.finished_at = now

    def snapshot(self) -> "ProcessingJob":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        metadata = None
        if self.metadata is not None:
            metadata = {
                "duration": self.metadata.duration,
                "width": self.metadata.width,
                "height": self.metadata.height,
                "fps": self.metadata.fps,
                "codec": self.metadata.codec,
                "bitrate": self.metadata.bitrate,
                "size": self.metadata.size,
            }
        return {
            "job_id": self.job_id,
            "video_id": self.video_id,
            "status": self.status,
            "progress": self.progress,
            "options": {
                "extract_frames": self.options.extract_frames,
                "generate_thumbnails": self.options.generate_thumbnails,
                "detect_threats": self.options.detect_threats,
                "frame_rate": self.options.frame_rate,
            },
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "processing_time": self.processing_time,
            "stage_times": copy.deepcopy(self.stage_times),
            "error": self.error,
            "metadata": metadata,
            "estimated_time": self.estimated_time,
            "frames_extracted": self.frames_extracted,
            "thumbnails": list(self.thumbnails),
            "report": self.report.to_dict() if self.report is not None else None,
        }

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise ProcessingError(f"Job {self.job_id} is already {self.status}")


class JobStore(Protocol):
    """Key-value persistence contract for terminal job records."""

    def put(self, key: str, value: dict) -> None: ...

    def get(self, key: str) -> Optional[dict]: ...

    def delete(self, key: str) -> None: ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._items: Dict[str, dict] = {}

    def put(self, key: str, value: dict) -> None:
        self._items[key] = value

    def get(self, key: str) -> Optional[dict]:
        return self._items.get(key)

    def delete(self, key: str) -> None:
        self._items.pop(key, None)


@dataclass(slots=True)
class _JobWorkspace:
    root: Path
    frame_files: List[Path] = field(default_factory=list)

    @property
    def frames_dir(self) -> Path:
        return self.root / "frames"

    @property
    def thumbnails_dir(self) -> Path:
        return self.root / "thumbnails"

    @property
    def analysis_dir(self) -> Path:
        return self.root / "analysis"


def estimate_processing_time(metadata: VideoMetadata) -> int:
    """Advisory estimate in seconds: 2s per source second, scaled by area relative to 1080p."""
    base_time = metadata.duration * 2
    resolution_factor = (metadata.width * metadata.height) / (1920 * 1080)
    return int(math.ceil(base_time * resolution_factor))


class VideoPipeline:
    """Owns processing jobs and drives them through the analysis stages."""

    def __init__(
        self,
        engine: ThreatDetector,
        config: Optional[ProcessingConfig] = None,
        media: Optional[MediaToolkit] = None,
        store: Optional[JobStore] = None,
        metrics: Optional[MetricsPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.config = config or ProcessingConfig()
        self.media = media or OpenCVMediaToolkit()
        self.store = store or InMemoryJobStore()
        self.metrics = metrics
        self._clock = clock
        self._jobs: Dict[str, ProcessingJob] = {}
        self._workspaces: Dict[str, _JobWorkspace] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_jobs)
        self._listeners: List[Callable[[ProcessingJob], None]] = []

    @property
    def output_dir(self) -> Path:
        return Path(self.config.output_dir)

    def add_listener(self, callback: Callable[[ProcessingJob], None]) -> None:
        """Register a callback receiving a job snapshot after every job mutation."""
        self._listeners.append(callback)

    async def submit(
        self,
        video_id: str,
        source_path: str,
        options: ProcessingOptions | Mapping[str, Any] | None = None,
    ) -> ProcessingJob:
        if not video_id:
            raise ValidationError("video_id must not be empty")
        if not source_path:
            raise ValidationError("source_path must not be empty")
        if isinstance(options, ProcessingOptions):
            options.validate()
        else:
            options = ProcessingOptions.from_mapping(options or {})

        existing = self._jobs.get(video_id)
        if existing is not None and not existing.is_terminal:
            raise ValidationError(f"Video {video_id} is already being processed")

        job = ProcessingJob(
            job_id=str(uuid.uuid4()),
            video_id=video_id,
            source_path=str(source_path),
            options=options,
            started_at=self._clock(),
        )
        self._jobs[video_id] = job
        self._workspaces[video_id] = _JobWorkspace(root=self.output_dir / video_id)
        self._tasks.pop(video_id, None)
        LOGGER.info("Submitted job %s for video '%s' (%s)", job.job_id, video_id, source_path)
        if self.metrics is not None:
            self.metrics.job_submitted()
        self._notify(job)

        # a fresh run never sees artifacts of a previous one
        previous = self.output_dir / video_id
        if previous.exists():
            await asyncio.to_thread(shutil.rmtree, previous, True)
            LOGGER.info("Removed previous artifacts for video '%s'", video_id)

        probe = asyncio.create_task(self._run_stage(job, "probe", self._probe), name=f"probe-{video_id}")
        self._tasks[video_id] = probe
        try:
            await asyncio.wait({probe})
        except asyncio.CancelledError:
            probe.cancel()
            raise

        if self._jobs.get(video_id) is not job:
            raise ResourceNotFoundError(f"Video {video_id} was deleted during submission")
        if not probe.cancelled() and probe.result():
            self._tasks[video_id] = asyncio.create_task(self._run(job), name=f"job-{video_id}")
        return job.snapshot()

    def status(self, video_id: str) -> ProcessingJob:
        job = self._jobs.get(video_id)
        if job is None:
            raise ResourceNotFoundError(f"No processing job for video {video_id}")
        return job.snapshot()

    def jobs(self) -> List[ProcessingJob]:
        return [job.snapshot() for job in self._jobs.values()]

    async def wait(self, video_id: str) -> ProcessingJob:
        """Wait for the job to reach a terminal status and return it."""
        task = self._tasks.get(video_id)
        if task is not None:
            await asyncio.shield(task)
        return self.status(video_id)

    async def get_thumbnail(self, video_id: str, index: int) -> bytes:
        job = self._jobs.get(video_id)
        if job is None:
            raise ResourceNotFoundError(f"Unknown video {video_id}")
        if not 0 <= index < len(job.thumbnails):
            raise ResourceNotFoundError(f"Thumbnail {index} not found for video {video_id}")
        path = Path(job.thumbnails[index])
        if not path.is_file():
            raise ResourceNotFoundError(f"Thumbnail {index} not found for video {video_id}")
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, video_id: str) -> None:
        task = self._tasks.pop(video_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._jobs.pop(video_id, None)
        self._workspaces.pop(video_id, None)
        self.store.delete(video_id)
        target = self.output_dir / video_id
        if target.exists():
            await asyncio.to_thread(shutil.rmtree, target, True)
            LOGGER.info("Deleted artifacts for video '%s'", video_id)

    async def close(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Stage orchestration
    # ------------------------------------------------------------------
    async def _run(self, job: ProcessingJob) -> None:
        try:
            async with self._semaphore:
                stages = (
                    ("extract_frames", job.options.extract_frames, self._extract_frames),
                    ("thumbnails", job.options.generate_thumbnails, self._generate_thumbnails),
                    ("detect_threats", job.options.detect_threats, self._detect_threats),
                )
                for name, enabled, stage in stages:
                    if not enabled:
                        LOGGER.debug("Job %s skipping stage %s", job.job_id, name)
                        continue
                    if not await self._run_stage(job, name, stage):
                        return
                self._finish(job)
        except asyncio.CancelledError:
            if not job.is_terminal:
                self._finish(job, error="cancelled")
            raise

    async def _run_stage(
        self, job: ProcessingJob, name: str, stage: Callable[[ProcessingJob], Awaitable[None]]
    ) -> bool:
        job.begin_stage(name, self._clock())
        try:
            await stage(job)
        except asyncio.CancelledError:
            if not job.is_terminal:
                self._finish(job, error="cancelled")
            raise
        except Exception as exc:
            if isinstance(exc, SentinelError):
                LOGGER.error("Job %s failed during %s: %s", job.job_id, name, exc)
            else:
                LOGGER.exception("Unexpected error in job %s during %s", job.job_id, name)
            self._finish(job, error=f"{name}: {exc}")
            return False
        job.end_stage(name, self._clock())
        self._notify(job)
        return True

    def _finish(self, job: ProcessingJob, error: Optional[str] = None) -> None:
        now = self._clock()
        if error is None:
            job.complete(now)
        else:
            job.fail(error, now)
        if self._jobs.get(job.video_id) is job:
            self.store.put(job.video_id, job.to_dict())
        if self.metrics is not None:
            self.metrics.job_finished(job.status, job.processing_time or 0.0)
        LOGGER.info(
            "Job %s for video '%s' %s in %.2fs",
            job.job_id,
            job.video_id,
            job.status,
            job.processing_time or 0.0,
        )
        self._notify(job)

    def _notify(self, job: ProcessingJob) -> None:
        if not self._listeners:
            return
        snapshot = job.snapshot()
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception:
                LOGGER.exception("Job listener raised for job %s", job.job_id)

    def _workspace(self, job: ProcessingJob) -> _JobWorkspace:
        workspace = self._workspaces.get(job.video_id)
        if workspace is None or self._jobs.get(job.video_id) is not job:
            raise ProcessingError(f"Video {job.video_id} was deleted")
        return workspace

    async def _media_call(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking media call off the event loop with bounded retries."""
        attempts = self.config.media_retries + 1
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(func, *args)
            except Exception as exc:
                if attempt + 1 >= attempts:
                    if isinstance(exc, ProcessingError):
                        raise
                    raise ProcessingError(str(exc)) from exc
                backoff = self.config.media_retry_backoff * (2**attempt)
                LOGGER.warning(
                    "%s failed (%s), retrying in %.2fs (attempt %d/%d)",
                    getattr(func, "__name__", "media call"),
                    exc,
                    backoff,
                    attempt + 1,
                    attempts,
                )
                await asyncio.sleep(backoff)
        raise ProcessingError("media call exhausted retries")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _probe(self, job: ProcessingJob) -> None:
        metadata: VideoMetadata = await self._media_call(self.media.probe, job.source_path)
        job.metadata = metadata
        job.estimated_time = estimate_processing_time(metadata)
        workspace = self._workspace(job)
        await asyncio.to_thread(workspace.root.mkdir, parents=True, exist_ok=True)

    async def _extract_frames(self, job: ProcessingJob) -> None:
        workspace = self._workspace(job)
        frames: List[bytes] = await self._media_call(
            self.media.extract_frames, job.source_path, job.options.frame_rate
        )
        await asyncio.to_thread(workspace.frames_dir.mkdir, parents=True, exist_ok=True)
        total = len(frames)
        for index, data in enumerate(frames, start=1):
            path = workspace.frames_dir / f"frame_{index:04d}.jpg"
            await asyncio.to_thread(path.write_bytes, data)
            workspace.frame_files.append(path)
            job.frames_extracted = index
            job.advance(EXTRACTION_BAND * index / total)
            self._notify(job)
        job.advance(EXTRACTION_BAND)
        LOGGER.info("Job %s extracted %d frames at %.2f fps", job.job_id, total, job.options.frame_rate)

    async def _generate_thumbnails(self, job: ProcessingJob) -> None:
        if job.metadata is None:
            raise ProcessingError("thumbnails require probed video metadata")
        workspace = self._workspace(job)
        await asyncio.to_thread(workspace.thumbnails_dir.mkdir, parents=True, exist_ok=True)
        count = self.config.thumbnail_count
        interval = job.metadata.duration / count
        images = await asyncio.gather(
            *(
                self._media_call(self.media.extract_frame, job.source_path, index * interval)
                for index in range(count)
            )
        )
        paths: List[str] = []
        for index, data in enumerate(images):
            path = workspace.thumbnails_dir / f"thumb_{index:03d}.jpg"
            await asyncio.to_thread(path.write_bytes, data)
            paths.append(str(path))
        job.thumbnails = paths
        job.advance(min(job.progress + THUMBNAIL_STEP, THUMBNAIL_CAP))

    async def _detect_threats(self, job: ProcessingJob) -> None:
        workspace = self._workspace(job)
        frame_files = list(workspace.frame_files)
        total = len(frame_files)
        await self.engine.registry.load(self.engine.config.object_model_id)
        job.advance(DETECTION_START)

        pool = asyncio.Semaphore(self.config.detection_workers)
        completed = 0

        async def analyze(index: int, path: Path) -> FrameDetections:
            nonlocal completed
            timestamp = index / job.options.frame_rate
            async with pool:
                data = await asyncio.to_thread(path.read_bytes)
                analysis = await self.engine.analyze_frame(data, CategoryFlags(), timestamp=timestamp)
            completed += 1
            job.advance(DETECTION_START + (100 - DETECTION_START) * completed / total)
            self._notify(job)
            return FrameDetections(
                frame_number=index + 1,
                timestamp=timestamp,
                frame_file=path.name,
                detections=analysis.detections,
            )

        tasks = [asyncio.create_task(analyze(index, path)) for index, path in enumerate(frame_files)]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        flagged = [result for result in results if result.detections]
        report = DetectionReport(
            video_id=job.video_id,
            total_frames=total,
            threats_detected=len(flagged),
            frames=flagged,
            processing_time=self._clock() - job.started_at,
            created_at=self._clock(),
        )
        await asyncio.to_thread(workspace.analysis_dir.mkdir, parents=True, exist_ok=True)
        analysis_file = workspace.analysis_dir / "threat_analysis.json"
        report.analysis_file = str(analysis_file)
        await asyncio.to_thread(
            analysis_file.write_text, json.dumps(report.to_dict(), indent=2), "utf-8"
        )
        job.report = report

        if self.metrics is not None:
            self.metrics.frames_analyzed("pipeline", total)
            for result in flagged:
                for detection in result.detections:
                    self.metrics.detections_emitted("pipeline", detection.threat_level)
        LOGGER.info(
            "Job %s analyzed %d frames, %d with detections",
            job.job_id,
            total,
            len(flagged),
        )
