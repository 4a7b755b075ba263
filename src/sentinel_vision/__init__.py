"""
Core package for the sentinel-vision video analysis service.

Modules expose building blocks for processing uploaded videos, managing
inference models, detecting threats in frames and streaming live camera feeds.
"""

from .config import ServiceConfig, load_config  # noqa: F401
from .detector import CategoryFlags, Detection, ThreatDetector  # noqa: F401
from .errors import SentinelError  # noqa: F401
from .live_feed import FeedSettings, LiveFeedStreamer  # noqa: F401
from .pipeline import ProcessingOptions, VideoPipeline  # noqa: F401
from .registry import ModelRegistry  # noqa: F401
