"""
Pydantic models shared by the HTTP API and websocket clients.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..detector import Detection, FrameAnalysis
from ..media import VideoMetadata
from ..pipeline import DetectionReport, FrameDetections, ProcessingJob
from ..registry import LoadResult, ModelInfo, RegistryMetrics


class BoundingBoxPayload(BaseModel):
    x: float
    y: float
    width: float = Field(ge=0.0)
    height: float = Field(ge=0.0)


class DetectionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    class_name: str = Field(alias="class")
    confidence: float = Field(ge=0.0, le=1.0)
    bbox: BoundingBoxPayload
    threat_level: str
    risk_score: float = Field(ge=0.0, le=1.0)
    timestamp: float

    @classmethod
    def from_detection(cls, detection: Detection) -> "DetectionPayload":
        return cls.model_validate(detection.to_dict())


class CategoryPayload(BaseModel):
    persons: bool = True
    vehicles: bool = True
    objects: bool = True


class SubmitVideoRequest(BaseModel):
    source_path: str = Field(min_length=1)
    # passed through to ProcessingOptions.from_mapping (snake_case or camelCase keys)
    options: Dict[str, Any] = Field(default_factory=dict)


class VideoMetadataPayload(BaseModel):
    duration: float
    width: int
    height: int
    fps: float
    codec: str = ""
    bitrate: Optional[int] = None
    size: Optional[int] = None

    @classmethod
    def from_metadata(cls, metadata: VideoMetadata) -> "VideoMetadataPayload":
        return cls(
            duration=metadata.duration,
            width=metadata.width,
            height=metadata.height,
            fps=metadata.fps,
            codec=metadata.codec,
            bitrate=metadata.bitrate,
            size=metadata.size,
        )


class FrameDetectionsPayload(BaseModel):
    frame_number: int
    timestamp: float
    frame_file: str
    detections: List[DetectionPayload] = Field(default_factory=list)

    @classmethod
    def from_frame(cls, frame: FrameDetections) -> "FrameDetectionsPayload":
        return cls(
            frame_number=frame.frame_number,
            timestamp=frame.timestamp,
            frame_file=frame.frame_file,
            detections=[DetectionPayload.from_detection(det) for det in frame.detections],
        )


class DetectionReportPayload(BaseModel):
    video_id: str
    total_frames: int
    threats_detected: int
    frames: List[FrameDetectionsPayload] = Field(default_factory=list)
    processing_time: float
    created_at: float
    analysis_file: str = ""

    @classmethod
    def from_report(cls, report: DetectionReport) -> "DetectionReportPayload":
        return cls(
            video_id=report.video_id,
            total_frames=report.total_frames,
            threats_detected=report.threats_detected,
            frames=[FrameDetectionsPayload.from_frame(frame) for frame in report.frames],
            processing_time=report.processing_time,
            created_at=report.created_at,
            analysis_file=report.analysis_file,
        )


class JobPayload(BaseModel):
    job_id: str
    video_id: str
    status: str
    progress: int = Field(ge=0, le=100)
    started_at: float
    finished_at: Optional[float] = None
    processing_time: Optional[float] = None
    error: Optional[str] = None
    metadata: Optional[VideoMetadataPayload] = None
    estimated_time: Optional[int] = None
    frames_extracted: int = 0
    thumbnail_count: int = 0
    stage_times: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    report: Optional[DetectionReportPayload] = None

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobPayload":
        return cls(
            job_id=job.job_id,
            video_id=job.video_id,
            status=job.status,
            progress=job.progress,
            started_at=job.started_at,
            finished_at=job.finished_at,
            processing_time=job.processing_time,
            error=job.error,
            metadata=VideoMetadataPayload.from_metadata(job.metadata) if job.metadata else None,
            estimated_time=job.estimated_time,
            frames_extracted=job.frames_extracted,
            thumbnail_count=len(job.thumbnails),
            stage_times=job.stage_times,
            report=DetectionReportPayload.from_report(job.report) if job.report else None,
        )


class ModelPayload(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    type: str
    name: str
    version: str
    accuracy: float
    speed: str
    input_shape: List[int]
    supported_detections: List[str] = Field(default_factory=list)
    is_default: bool = False
    is_loaded: bool = False
    memory_estimate: int
    backend_kind: Optional[str] = None
    inference_count: int = 0
    average_inference_time: float = 0.0
    last_used: Optional[float] = None

    @classmethod
    def from_info(cls, info: ModelInfo) -> "ModelPayload":
        descriptor = info.descriptor
        stats = info.stats
        return cls(
            id=descriptor.id,
            type=descriptor.type,
            name=descriptor.name,
            version=descriptor.version,
            accuracy=descriptor.accuracy,
            speed=descriptor.speed,
            input_shape=list(descriptor.input_shape),
            supported_detections=list(descriptor.supported_detections),
            is_default=descriptor.is_default,
            is_loaded=info.is_loaded,
            memory_estimate=descriptor.memory_estimate_mb,
            backend_kind=stats.backend_kind if stats else None,
            inference_count=stats.inference_count if stats else 0,
            average_inference_time=stats.average_inference_time if stats else 0.0,
            last_used=stats.last_used if stats else None,
        )


class LoadResultPayload(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    load_time: float
    memory_estimate: int
    backend_kind: str

    @classmethod
    def from_result(cls, result: LoadResult) -> "LoadResultPayload":
        return cls(
            model_id=result.model_id,
            load_time=result.load_time,
            memory_estimate=result.memory_estimate,
            backend_kind=result.backend_kind,
        )


class UnloadPayload(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    status: str = "unloaded"


class RegistryMetricsPayload(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    total_inferences: int
    average_inference_time: float
    memory_estimate: int
    models_loaded: int
    last_updated: float

    @classmethod
    def from_metrics(cls, metrics: RegistryMetrics) -> "RegistryMetricsPayload":
        return cls(
            total_inferences=metrics.total_inferences,
            average_inference_time=metrics.average_inference_time,
            memory_estimate=metrics.memory_estimate,
            models_loaded=metrics.models_loaded,
            last_updated=metrics.last_updated,
        )


class AnalyzeFrameRequest(BaseModel):
    image: str = Field(min_length=1)  # base64 JPEG/PNG, optionally a data: URL
    categories: CategoryPayload = Field(default_factory=CategoryPayload)


class FrameAnalysisPayload(BaseModel):
    detections: List[DetectionPayload] = Field(default_factory=list)
    overall_confidence: float
    processing_time: float
    timestamp: float
    frame_info: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_analysis(cls, analysis: FrameAnalysis) -> "FrameAnalysisPayload":
        return cls(
            detections=[DetectionPayload.from_detection(det) for det in analysis.detections],
            overall_confidence=analysis.overall_confidence,
            processing_time=analysis.processing_time,
            timestamp=analysis.timestamp,
            frame_info=analysis.frame_info,
        )


class LiveFramePayload(BaseModel):
    camera_id: str
    frame_index: int
    frame_jpeg: str  # base64
    detections: List[DetectionPayload] = Field(default_factory=list)
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorPayload(BaseModel):
    error: str
    detail: str


class WsEnvelope(BaseModel):
    type: str
    payload: LiveFramePayload | ErrorPayload
