"""
Model registry and lifecycle manager.

Owns the model descriptors, loads/unloads inference backends and keeps
per-model and aggregate inference counters.

Concurrency:
- load()/unload() on the same model id serialize on a per-model lock
- predict() never takes the lock; backends run concurrently in worker threads
- unload() waits for in-flight predictions before disposing the backend
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .backends import BackendFactory, InferenceBackend
from .config import ModelDescriptor, RegistryConfig
from .errors import ModelNotLoadedError, ResourceNotFoundError
from .telemetry import MetricsPublisher

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LoadOptions:
    priority: str = "normal"


@dataclass(slots=True)
class LoadResult:
    model_id: str
    load_time: float  # seconds, 0 when the model was already loaded
    memory_estimate: int  # MiB
    backend_kind: str


@dataclass(slots=True)
class PredictionResult:
    model_id: str
    output: np.ndarray
    inference_time: float
    timestamp: float
    backend_kind: str


@dataclass(slots=True)
class ModelStats:
    inference_count: int
    total_inference_time: float
    average_inference_time: float
    last_used: float
    loaded_at: float
    memory_estimate: int
    backend_kind: str


@dataclass(slots=True)
class ModelInfo:
    descriptor: ModelDescriptor
    is_loaded: bool
    stats: Optional[ModelStats] = None


@dataclass(slots=True)
class RegistryMetrics:
    total_inferences: int
    average_inference_time: float
    memory_estimate: int
    models_loaded: int
    last_updated: float


@dataclass(slots=True)
class LoadedModel:
    """Live backend plus usage counters for one model id."""

    descriptor: ModelDescriptor
    backend: InferenceBackend
    loaded_at: float
    last_used: float
    inference_count: int = 0
    total_inference_time: float = 0.0
    inflight: int = 0
    idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        self.idle.set()

    @property
    def backend_kind(self) -> str:
        return self.backend.kind

    def acquire(self) -> None:
        self.inflight += 1
        self.idle.clear()

    def release(self) -> None:
        self.inflight -= 1
        if self.inflight <= 0:
            self.inflight = 0
            self.idle.set()

    def record(self, inference_time: float, now: float) -> None:
        self.inference_count += 1
        self.total_inference_time += inference_time
        self.last_used = now

    def stats(self) -> ModelStats:
        average = self.total_inference_time / self.inference_count if self.inference_count else 0.0
        return ModelStats(
            inference_count=self.inference_count,
            total_inference_time=self.total_inference_time,
            average_inference_time=average,
            last_used=self.last_used,
            loaded_at=self.loaded_at,
            memory_estimate=self.descriptor.memory_estimate_mb,
            backend_kind=self.backend_kind,
        )


class ModelRegistry:
    """Registry of loaded inference backends, one entry per model id."""

    def __init__(
        self,
        config: RegistryConfig,
        backend_factory: Optional[Any] = None,
        metrics: Optional[MetricsPublisher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._factory = backend_factory or BackendFactory(config)
        self._metrics = metrics
        self._clock = clock
        self._descriptors: Dict[str, ModelDescriptor] = {model.id: model for model in config.models}
        self._models: Dict[str, LoadedModel] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._total_inferences = 0
        self._total_inference_time = 0.0
        self._last_updated = clock()
        self._task: Optional[asyncio.Task] = None

    def descriptor(self, model_id: str) -> ModelDescriptor:
        try:
            return self._descriptors[model_id]
        except KeyError:
            raise ResourceNotFoundError(f"Model configuration not found: {model_id}") from None

    def is_loaded(self, model_id: str) -> bool:
        return model_id in self._models

    def loaded_models(self) -> List[str]:
        return list(self._models)

    async def load(self, model_id: str, options: Optional[LoadOptions] = None) -> LoadResult:
        descriptor = self.descriptor(model_id)
        options = options or LoadOptions()
        async with self._locks[model_id]:
            existing = self._models.get(model_id)
            if existing is not None:
                LOGGER.debug("Model '%s' is already loaded", model_id)
                return LoadResult(model_id, 0.0, descriptor.memory_estimate_mb, existing.backend_kind)

            LOGGER.info("Loading model '%s' (priority=%s)", model_id, options.priority)
            start = time.perf_counter()
            backend = await asyncio.to_thread(self._factory.create, descriptor)
            load_time = time.perf_counter() - start
            now = self._clock()
            self._models[model_id] = LoadedModel(
                descriptor=descriptor,
                backend=backend,
                loaded_at=now,
                last_used=now,
            )

        LOGGER.info(
            "Model '%s' loaded in %.3fs (backend=%s, ~%d MiB)",
            model_id,
            load_time,
            backend.kind,
            descriptor.memory_estimate_mb,
        )
        self._publish_loaded()
        return LoadResult(model_id, load_time, descriptor.memory_estimate_mb, backend.kind)

    async def unload(self, model_id: str) -> None:
        self.descriptor(model_id)
        async with self._locks[model_id]:
            entry = self._models.pop(model_id, None)
            if entry is None:
                raise ModelNotLoadedError(model_id)
            await entry.idle.wait()
            await asyncio.to_thread(entry.backend.dispose)
        LOGGER.info("Model '%s' unloaded", model_id)
        self._publish_loaded()

    async def predict(self, model_id: str, inputs: np.ndarray) -> PredictionResult:
        entry = self._models.get(model_id)
        if entry is None:
            raise ModelNotLoadedError(model_id)

        entry.acquire()
        start = time.perf_counter()
        try:
            output = await asyncio.to_thread(entry.backend.predict, inputs)
        except Exception:
            LOGGER.error("Prediction error for model '%s'", model_id)
            raise
        finally:
            entry.release()
        inference_time = time.perf_counter() - start

        now = self._clock()
        entry.record(inference_time, now)
        self._total_inferences += 1
        self._total_inference_time += inference_time
        self._last_updated = now
        if self._metrics is not None:
            self._metrics.observe_inference(model_id, entry.backend_kind, inference_time)
        return PredictionResult(
            model_id=model_id,
            output=output,
            inference_time=inference_time,
            timestamp=now,
            backend_kind=entry.backend_kind,
        )

    async def optimize(self) -> List[str]:
        """Unload non-default models idle for longer than the configured threshold."""
        now = self._clock()
        threshold = self.config.idle_threshold_seconds
        candidates = [
            model_id
            for model_id, entry in list(self._models.items())
            if not entry.descriptor.is_default and now - entry.last_used > threshold
        ]
        unloaded: List[str] = []
        for model_id in candidates:
            LOGGER.info("Unloading unused model: %s", model_id)
            try:
                await self.unload(model_id)
            except ModelNotLoadedError:
                continue
            unloaded.append(model_id)
        return unloaded

    def metrics(self) -> RegistryMetrics:
        average = self._total_inference_time / self._total_inferences if self._total_inferences else 0.0
        return RegistryMetrics(
            total_inferences=self._total_inferences,
            average_inference_time=average,
            memory_estimate=sum(entry.descriptor.memory_estimate_mb for entry in self._models.values()),
            models_loaded=len(self._models),
            last_updated=self._last_updated,
        )

    def model_stats(self, model_id: str) -> ModelStats:
        entry = self._models.get(model_id)
        if entry is None:
            raise ModelNotLoadedError(model_id)
        return entry.stats()

    def available_models(self) -> List[ModelInfo]:
        infos: List[ModelInfo] = []
        for model_id, descriptor in self._descriptors.items():
            entry = self._models.get(model_id)
            infos.append(
                ModelInfo(
                    descriptor=descriptor,
                    is_loaded=entry is not None,
                    stats=entry.stats() if entry is not None else None,
                )
            )
        return infos

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "models_loaded": len(self._models),
            "total_models": len(self._descriptors),
            "synthetic_models": sorted(
                model_id for model_id, entry in self._models.items() if entry.backend.is_synthetic
            ),
            "maintenance_running": self._task is not None and not self._task.done(),
        }

    async def load_default_models(self) -> List[LoadResult]:
        results = []
        for descriptor in self._descriptors.values():
            if descriptor.is_default:
                results.append(await self.load(descriptor.id, LoadOptions(priority="high")))
        return results

    def start_maintenance(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._maintenance_loop(), name="model-registry-maintenance")

    async def stop_maintenance(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def close(self) -> None:
        await self.stop_maintenance()
        for model_id in list(self._models):
            try:
                await self.unload(model_id)
            except ModelNotLoadedError:
                continue

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.optimize_interval_seconds)
            try:
                unloaded = await self.optimize()
            except Exception:
                LOGGER.exception("Model registry maintenance failed")
                continue
            if unloaded:
                LOGGER.info("Maintenance unloaded %d idle model(s)", len(unloaded))

    def _publish_loaded(self) -> None:
        if self._metrics is not None:
            self._metrics.set_models_loaded(len(self._models))
