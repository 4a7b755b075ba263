"""
Exception taxonomy shared by the pipeline, registry, detection engine and live feeds.
"""

from __future__ import annotations


class SentinelError(RuntimeError):
    """Base class for all errors raised by the analysis core."""


class ValidationError(SentinelError):
    """Raised when caller supplied input is malformed (e.g. missing frame data)."""


class ModelNotLoadedError(SentinelError):
    """Raised when an operation targets a model that is not in the registry."""

    def __init__(self, model_id: str):
        super().__init__(f"Model not loaded: {model_id}")
        self.model_id = model_id


class DuplicateFeedError(SentinelError):
    """Raised when a live feed is already active for a camera."""

    def __init__(self, camera_id: str):
        super().__init__(f"Live feed already active for camera {camera_id}")
        self.camera_id = camera_id


class ResourceNotFoundError(SentinelError):
    """Raised for unknown jobs, videos, thumbnails or model descriptors."""


class ProcessingError(SentinelError):
    """Raised when a media stage (probe, extraction, thumbnails) fails."""
