"""Detection records and the detector backend contract."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .descriptors import PipelineDescriptor
from .kinds import PipelineKind


@dataclass(frozen=True)
class TagPose:
    """Pose of a decoded fiducial tag relative to the camera.

    ``x`` is to the right, ``y`` forward and ``z`` up, in the descriptor's
    distance unit. Angles are in the descriptor's angle unit.
    """

    tag_id: int
    x: float
    y: float
    z: float
    yaw: float
    pitch: float
    roll: float
    range: float
    bearing: float
    elevation: float
    image_center: Tuple[float, float]


@dataclass(frozen=True)
class BlobRegion:
    """Bounding rect ``(x, y, width, height)`` of a color blob in pixels."""

    rect: Tuple[int, int, int, int]
    area: float
    solidity: float
    image_center: Tuple[float, float]
    field_point: Optional[Tuple[float, float]] = None


@dataclass(frozen=True)
class LabeledBox:
    """Corner box ``(x1, y1, x2, y2)`` of a learned-object detection in pixels."""

    box: Tuple[float, float, float, float]
    field_point: Optional[Tuple[float, float]] = None

    @property
    def image_center(self) -> Tuple[float, float]:
        x1, y1, x2, y2 = self.box
        return (x1 + x2) / 2.0, (y1 + y2) / 2.0


DetectionPayload = Union[TagPose, BlobRegion, LabeledBox]


@dataclass(frozen=True)
class DetectionRecord:
    """One detection from one pipeline, tagged by the kind that produced it."""

    kind: PipelineKind
    confidence: float
    payload: DetectionPayload
    label: Optional[str] = None
    frame_index: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")


class DetectorBackend(ABC):
    """Base class for detector backends.

    To plug in a new pipeline kind, subclass this, implement
    :meth:`process_frame` and register a factory for its family in
    ``registry.BACKEND_FACTORIES`` (or pass ``backend_factories`` when
    building the registry).

    The enabled flag mirrors what the activation multiplexer decided. The
    binding only dispatches to enabled backends, so implementations do not
    need to check it themselves.
    """

    def __init__(self, descriptor: PipelineDescriptor):
        self.descriptor = descriptor
        self._enabled = False
        self._lock = threading.Lock()

    @property
    def kind(self) -> PipelineKind:
        return self.descriptor.kind

    @abstractmethod
    def process_frame(self, frame: np.ndarray) -> Sequence[DetectionRecord]:
        """Run detection on one BGR frame and return fresh records."""

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._enabled = bool(enabled)

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def close(self) -> None:
        """Release backend resources (models, buffers). Optional."""


__all__ = [
    "BlobRegion",
    "DetectionPayload",
    "DetectionRecord",
    "DetectorBackend",
    "LabeledBox",
    "TagPose",
]
