"""
FastAPI application exposing the pipeline, model registry, detection engine
and live feeds over HTTP and websockets.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from ..config import ServiceConfig
from ..detector import CategoryFlags, Detection, ThreatDetector
from ..errors import (
    DuplicateFeedError,
    ModelNotLoadedError,
    ProcessingError,
    ResourceNotFoundError,
    SentinelError,
    ValidationError,
)
from ..live_feed import FeedSettings, LiveFeedStreamer, SourceFactory
from ..media import MediaToolkit
from ..pipeline import JobStore, VideoPipeline
from ..registry import ModelRegistry
from ..telemetry import MetricsPublisher
from .schemas import (
    AnalyzeFrameRequest,
    DetectionPayload,
    ErrorPayload,
    FrameAnalysisPayload,
    JobPayload,
    LiveFramePayload,
    LoadResultPayload,
    ModelPayload,
    RegistryMetricsPayload,
    SubmitVideoRequest,
    UnloadPayload,
    WsEnvelope,
)
from .state import ConnectionManager

LOGGER = logging.getLogger(__name__)

# most specific first
ERROR_STATUS = (
    (ValidationError, 400),
    (ResourceNotFoundError, 404),
    (ModelNotLoadedError, 409),
    (DuplicateFeedError, 409),
    (ProcessingError, 500),
)


class AppContext:
    """Holds the shared service components behind the API."""

    def __init__(
        self,
        config: ServiceConfig,
        media: Optional[MediaToolkit] = None,
        store: Optional[JobStore] = None,
        backend_factory=None,
        source_factory: Optional[SourceFactory] = None,
        load_defaults: bool = True,
    ):
        self.config = config
        self.load_defaults = load_defaults
        self.metrics = MetricsPublisher(config.prometheus)
        self.registry = ModelRegistry(config.registry, backend_factory=backend_factory, metrics=self.metrics)
        self.engine = ThreatDetector(self.registry, config.detector, config.tracker)
        self.pipeline = VideoPipeline(
            self.engine,
            config.processing,
            media=media,
            store=store,
            metrics=self.metrics,
        )
        self.streamer = LiveFeedStreamer(
            self.engine,
            config.live_feed,
            source_factory=source_factory,
            metrics=self.metrics,
        )
        self.connections = ConnectionManager()

    async def start(self, serve_metrics: bool = True) -> None:
        self.metrics.start(serve=serve_metrics)
        if self.load_defaults:
            await self.registry.load_default_models()
        self.registry.start_maintenance()

    async def stop(self) -> None:
        await self.streamer.stop_all()
        await self.pipeline.close()
        await self.registry.close()


def create_app(
    config: Optional[ServiceConfig] = None,
    context: Optional[AppContext] = None,
    serve_metrics: bool = True,
) -> FastAPI:
    if context is None:
        context = AppContext(config or ServiceConfig())
    app = FastAPI(title="Sentinel Vision")
    app.state.context = context

    @app.on_event("startup")
    async def _on_startup() -> None:
        await context.start(serve_metrics=serve_metrics)

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        await context.stop()

    @app.exception_handler(SentinelError)
    async def _sentinel_error(request: Request, exc: SentinelError) -> JSONResponse:
        status = 500
        for error_type, code in ERROR_STATUS:
            if isinstance(exc, error_type):
                status = code
                break
        if status >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content=ErrorPayload(error=type(exc).__name__, detail=str(exc)).model_dump(),
        )

    router = APIRouter()

    @router.get("/api/health")
    async def health():
        report = context.registry.health_check()
        report["active_feeds"] = context.streamer.active_feeds()
        report["jobs"] = len(context.pipeline.jobs())
        return report

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    @router.post("/api/videos/{video_id}", response_model=JobPayload, status_code=202)
    async def submit_video(video_id: str, body: SubmitVideoRequest) -> JobPayload:
        job = await context.pipeline.submit(video_id, body.source_path, body.options)
        return JobPayload.from_job(job)

    @router.get("/api/videos", response_model=List[JobPayload])
    async def list_videos() -> List[JobPayload]:
        return [JobPayload.from_job(job) for job in context.pipeline.jobs()]

    @router.get("/api/videos/{video_id}", response_model=JobPayload)
    async def video_status(video_id: str) -> JobPayload:
        return JobPayload.from_job(context.pipeline.status(video_id))

    @router.delete("/api/videos/{video_id}", status_code=204)
    async def delete_video(video_id: str) -> Response:
        await context.pipeline.delete(video_id)
        return Response(status_code=204)

    @router.get("/api/videos/{video_id}/thumbnails/{index}")
    async def video_thumbnail(video_id: str, index: int) -> Response:
        data = await context.pipeline.get_thumbnail(video_id, index)
        return Response(content=data, media_type="image/jpeg")

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------
    @router.get("/api/models", response_model=List[ModelPayload])
    async def list_models() -> List[ModelPayload]:
        return [ModelPayload.from_info(info) for info in context.registry.available_models()]

    @router.get("/api/models/metrics", response_model=RegistryMetricsPayload)
    async def model_metrics() -> RegistryMetricsPayload:
        return RegistryMetricsPayload.from_metrics(context.registry.metrics())

    @router.post("/api/models/{model_id}/load", response_model=LoadResultPayload)
    async def load_model(model_id: str) -> LoadResultPayload:
        return LoadResultPayload.from_result(await context.registry.load(model_id))

    @router.post("/api/models/{model_id}/unload", response_model=UnloadPayload)
    async def unload_model(model_id: str) -> UnloadPayload:
        await context.registry.unload(model_id)
        return UnloadPayload(model_id=model_id)

    # ------------------------------------------------------------------
    # Single frame analysis
    # ------------------------------------------------------------------
    @router.post("/api/ai/analyze-frame", response_model=FrameAnalysisPayload)
    async def analyze_frame(body: AnalyzeFrameRequest) -> FrameAnalysisPayload:
        raw = _decode_image(body.image)
        categories = CategoryFlags(
            persons=body.categories.persons,
            vehicles=body.categories.vehicles,
            objects=body.categories.objects,
        )
        analysis = await context.engine.analyze_frame(raw, categories)
        return FrameAnalysisPayload.from_analysis(analysis)

    # ------------------------------------------------------------------
    # Live feeds
    # ------------------------------------------------------------------
    @router.websocket("/ws/live/{camera_id}")
    async def live_feed(
        websocket: WebSocket,
        camera_id: str,
        persons: bool = True,
        vehicles: bool = True,
        objects: bool = True,
        fps: Optional[float] = None,
    ):
        await context.connections.connect(camera_id, websocket)
        frame_index = 0

        async def push(frame: bytes, detections: List[Detection]) -> None:
            nonlocal frame_index
            frame_index += 1
            envelope = WsEnvelope(
                type="frame",
                payload=LiveFramePayload(
                    camera_id=camera_id,
                    frame_index=frame_index,
                    frame_jpeg=base64.b64encode(frame).decode("ascii"),
                    detections=[DetectionPayload.from_detection(det) for det in detections],
                ),
            )
            await context.connections.send(websocket, envelope)

        settings = FeedSettings(
            categories=CategoryFlags(persons=persons, vehicles=vehicles, objects=objects),
            target_fps=fps,
        )
        try:
            subscription = await context.streamer.start(camera_id, settings, push)
        except SentinelError as exc:
            LOGGER.warning("Refusing live feed for camera '%s': %s", camera_id, exc)
            envelope = WsEnvelope(
                type="error",
                payload=ErrorPayload(error=type(exc).__name__, detail=str(exc)),
            )
            await context.connections.send(websocket, envelope)
            await websocket.close(code=1008)
            await context.connections.disconnect(camera_id, websocket)
            return

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            LOGGER.debug("Websocket receive loop ended for camera '%s'", camera_id)
        finally:
            await subscription.stop()
            await context.connections.disconnect(camera_id, websocket)

    app.include_router(router)
    return app


def _decode_image(payload: str) -> bytes:
    if payload.startswith("data:"):
        _, _, payload = payload.partition(",")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("image must be base64 encoded") from exc
    if not raw:
        raise ValidationError("Frame data is empty")
    return raw
