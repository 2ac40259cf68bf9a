"""Multi-pipeline vision runtime for a single-camera robot controller."""

from .base import BlobRegion, DetectionRecord, DetectorBackend, LabeledBox, TagPose
from .binding import FrameDispatch, PipelineSnapshot, VideoSourceBinding
from .config import (
    DEFAULT_VISION_PROFILE,
    VISION_PROFILE_PATH,
    build_descriptors,
    load_vision_profile,
    save_vision_profile,
)
from .descriptors import PipelineDescriptor
from .errors import ConfigurationError, DetectorFailure
from .events import VisionEventBus
from .kinds import BlobColor, PipelineFamily, PipelineKind
from .manager import VisionPipelineManager
from .multiplexer import ActivationMultiplexer
from .ranking import best_detection, rank_by_confidence
from .registry import PIPELINE_DEFINITIONS, PipelineHandle, PipelineRegistry
from .sources import FrameSource, StaticFrameSource

__all__ = [
    "ActivationMultiplexer",
    "BlobColor",
    "BlobRegion",
    "ConfigurationError",
    "DEFAULT_VISION_PROFILE",
    "DetectionRecord",
    "DetectorBackend",
    "DetectorFailure",
    "FrameDispatch",
    "FrameSource",
    "LabeledBox",
    "PIPELINE_DEFINITIONS",
    "PipelineDescriptor",
    "PipelineFamily",
    "PipelineHandle",
    "PipelineKind",
    "PipelineRegistry",
    "PipelineSnapshot",
    "StaticFrameSource",
    "TagPose",
    "VISION_PROFILE_PATH",
    "VideoSourceBinding",
    "VisionEventBus",
    "VisionPipelineManager",
    "best_detection",
    "build_descriptors",
    "load_vision_profile",
    "rank_by_confidence",
    "save_vision_profile",
]
