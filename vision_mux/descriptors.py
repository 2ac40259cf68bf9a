"""Static per-pipeline configuration.

A :class:`PipelineDescriptor` is built once from the vision profile and bound
to exactly one detector backend. Nothing in here changes after start-up.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .errors import ConfigurationError
from .kinds import PipelineFamily, PipelineKind

Point = Tuple[float, float]
Range = Tuple[float, float]


class DistanceUnit(str, Enum):
    INCH = "inch"
    CM = "cm"
    METER = "meter"

    def from_inches(self, value: float) -> float:
        return value * _PER_INCH[self]


_PER_INCH = {DistanceUnit.INCH: 1.0, DistanceUnit.CM: 2.54, DistanceUnit.METER: 0.0254}


class AngleUnit(str, Enum):
    DEGREES = "degrees"
    RADIANS = "radians"

    def from_radians(self, value: float) -> float:
        return math.degrees(value) if self is AngleUnit.DEGREES else value


@dataclass(frozen=True)
class OutputUnits:
    distance: DistanceUnit = DistanceUnit.INCH
    angle: AngleUnit = AngleUnit.DEGREES


@dataclass(frozen=True)
class CameraIntrinsics:
    """Lens intrinsics in pixels plus the image size they were measured at."""

    fx: float
    fy: float
    cx: float
    cy: float
    width: int = 640
    height: int = 480

    def matrix(self) -> np.ndarray:
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )


@dataclass(frozen=True)
class FieldGeometry:
    """Homography between four image points and four field points.

    Points are ordered top-left, top-right, bottom-left, bottom-right.
    """

    camera_rect: Tuple[Point, Point, Point, Point]
    world_rect: Tuple[Point, Point, Point, Point]
    _matrix: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        src = np.array(self.camera_rect, dtype=np.float32)
        dst = np.array(self.world_rect, dtype=np.float32)
        if src.shape != (4, 2) or dst.shape != (4, 2):
            raise ConfigurationError("camera_rect and world_rect need exactly four [x, y] points")
        object.__setattr__(self, "_matrix", cv2.getPerspectiveTransform(src, dst))

    def map_point(self, x: float, y: float) -> Point:
        point = np.array([[[x, y]]], dtype=np.float32)
        mapped = cv2.perspectiveTransform(point, self._matrix)
        return float(mapped[0, 0, 0]), float(mapped[0, 0, 1])


@dataclass(frozen=True)
class ColorThresholds:
    """Inclusive lower/upper bounds for each of the three channels."""

    channel0: Range
    channel1: Range
    channel2: Range

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "ColorThresholds":
        if len(values) != 6:
            raise ConfigurationError(f"color thresholds need 6 values, got {len(values)}")
        v = [float(item) for item in values]
        for low, high in ((v[0], v[1]), (v[2], v[3]), (v[4], v[5])):
            if low > high:
                raise ConfigurationError(f"color threshold lower bound {low} exceeds upper bound {high}")
        return cls((v[0], v[1]), (v[2], v[3]), (v[4], v[5]))

    def lower(self) -> np.ndarray:
        return np.array([self.channel0[0], self.channel1[0], self.channel2[0]], dtype=np.float64)

    def upper(self) -> np.ndarray:
        return np.array([self.channel0[1], self.channel1[1], self.channel2[1]], dtype=np.float64)


@dataclass(frozen=True)
class ContourFilter:
    min_area: float = 0.0
    min_perimeter: float = 0.0
    width_range: Range = (0.0, 1000.0)
    height_range: Range = (0.0, 1000.0)
    solidity_range: Range = (0.0, 100.0)
    vertices_range: Range = (0.0, 1000000.0)
    aspect_ratio_range: Range = (0.0, 1000.0)

    def accepts(
        self,
        *,
        area: float,
        perimeter: float,
        width: float,
        height: float,
        solidity: float,
        vertices: int,
        aspect_ratio: float,
    ) -> bool:
        return (
            area >= self.min_area
            and perimeter >= self.min_perimeter
            and _within(width, self.width_range)
            and _within(height, self.height_range)
            and _within(solidity, self.solidity_range)
            and _within(vertices, self.vertices_range)
            and _within(aspect_ratio, self.aspect_ratio_range)
        )


def _within(value: float, bounds: Range) -> bool:
    return bounds[0] <= value <= bounds[1]


@dataclass(frozen=True)
class FiducialParams:
    """``tag_size`` is the black-square edge length in inches."""

    tag_family: str = "tag36h11"
    tag_size: float = 2.0


@dataclass(frozen=True)
class ColorBlobParams:
    thresholds: ColorThresholds
    contour_filter: ContourFilter
    color_conversion: str = "BGR2RGB"


@dataclass(frozen=True)
class LearnedObjectParams:
    model_path: str
    labels: Tuple[str, ...]
    min_confidence: float
    device: str = "cpu"


DescriptorParams = Union[FiducialParams, ColorBlobParams, LearnedObjectParams]

_PARAM_TYPES = {
    PipelineFamily.FIDUCIAL: FiducialParams,
    PipelineFamily.COLOR_BLOB: ColorBlobParams,
    PipelineFamily.LEARNED_OBJECT: LearnedObjectParams,
}


@dataclass(frozen=True)
class PipelineDescriptor:
    """Everything a detector backend needs to be configured."""

    kind: PipelineKind
    camera: CameraIntrinsics
    params: DescriptorParams
    units: OutputUnits = OutputUnits()
    geometry: Optional[FieldGeometry] = None

    def __post_init__(self) -> None:
        expected = _PARAM_TYPES[self.kind.family]
        if not isinstance(self.params, expected):
            raise ConfigurationError(
                f"{self.kind.key} expects {expected.__name__}, got {type(self.params).__name__}"
            )

    @property
    def name(self) -> str:
        return self.kind.display_name.replace(" ", "")


__all__ = [
    "AngleUnit",
    "CameraIntrinsics",
    "ColorBlobParams",
    "ColorThresholds",
    "ContourFilter",
    "DistanceUnit",
    "FieldGeometry",
    "FiducialParams",
    "LearnedObjectParams",
    "OutputUnits",
    "PipelineDescriptor",
]
