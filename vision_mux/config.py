"""Vision profile: feature flags plus per-family calibration and thresholds."""

from __future__ import annotations

import json
import os
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .descriptors import (
    AngleUnit,
    CameraIntrinsics,
    ColorBlobParams,
    ColorThresholds,
    ContourFilter,
    DistanceUnit,
    FieldGeometry,
    FiducialParams,
    LearnedObjectParams,
    OutputUnits,
    PipelineDescriptor,
)
from .errors import ConfigurationError
from .kinds import PipelineFamily, PipelineKind
from .logging_utils import log_exception

VISION_PROFILE_PATH = Path(__file__).resolve().parent.parent / "runtime" / "vision_profile.json"

FAMILY_FLAGS: Dict[PipelineFamily, str] = {
    PipelineFamily.FIDUCIAL: "use_fiducial_vision",
    PipelineFamily.COLOR_BLOB: "use_color_blob_vision",
    PipelineFamily.LEARNED_OBJECT: "use_learned_object_vision",
}

DEFAULT_VISION_PROFILE: Dict[str, Any] = {
    "version": 1,
    "preferences": {
        "use_fiducial_vision": True,
        "use_color_blob_vision": True,
        "use_learned_object_vision": False,
        "use_webcam": True,
        "use_builtin_cam_back": False,
        "dispatch_mode": "sequential",
        "backend_timeout_s": None,
        "frame_interval_s": 0.01,
    },
    "camera": {
        "name": "Webcam 1",
        "width": 640,
        "height": 480,
        "fps": 30,
        "intrinsics": {"fx": 622.001, "fy": 622.001, "cx": 319.803, "cy": 241.251},
        "camera_rect": None,
        "world_rect": None,
        "units": {"distance": "inch", "angle": "degrees"},
    },
    "hardware": {
        "Webcam 1": {"index_or_path": 0, "backend": "auto"},
    },
    "builtin_cameras": {"front": 1, "back": 0},
    "fiducial": {"tag_family": "tag36h11", "tag_size": 2.0},
    "color_blob": {
        "color_conversion": "BGR2RGB",
        "thresholds": {
            "white": [160.0, 255.0, 175.0, 255.0, 150.0, 225.0],
            "yellow": [120.0, 255.0, 100.0, 225.0, 0.0, 60.0],
            "green": [0.0, 100.0, 120.0, 255.0, 0.0, 140.0],
            "purple": [120.0, 255.0, 0.0, 200.0, 200.0, 255.0],
        },
        "contour_filter": {
            "min_area": 1000.0,
            "min_perimeter": 100.0,
            "width_range": [10.0, 1000.0],
            "height_range": [10.0, 1000.0],
            "solidity_range": [0.0, 100.0],
            "vertices_range": [0.0, 1000.0],
            "aspect_ratio_range": [1.0, 10.0],
        },
    },
    "learned_object": {
        "model_path": "models/centerstage.pt",
        "labels": ["Pixel"],
        "min_confidence": 0.90,
        "device": "cpu",
    },
}


def _deep_merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = deepcopy(value)
    return base


def load_vision_profile(path: Path = VISION_PROFILE_PATH) -> Dict[str, Any]:
    """Load the persisted vision profile layered over the defaults."""

    profile = deepcopy(DEFAULT_VISION_PROFILE)
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = json.load(handle)
            if isinstance(loaded, dict):
                _deep_merge(profile, loaded)
        except (OSError, ValueError) as exc:
            log_exception(f"Failed to load vision profile {path}", exc, level="warning")
    return profile


def save_vision_profile(profile: Mapping[str, Any], path: Path = VISION_PROFILE_PATH) -> None:
    """Persist the profile atomically so a crash never leaves half a file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(profile, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


# ----------------------------------------------------------------------
# Descriptor construction


def _require(section: Mapping[str, Any], key: str, where: str) -> Any:
    value = section.get(key) if isinstance(section, Mapping) else None
    if value is None:
        raise ConfigurationError(f"Missing required vision parameter '{where}.{key}'")
    return value


def _section(profile: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = profile.get(name)
    if not isinstance(section, Mapping):
        raise ConfigurationError(f"Missing required vision section '{name}'")
    return section


def _as_float(value: Any, where: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{where}' must be a number, got {value!r}") from exc


def _as_int(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"'{where}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{where}' must be an integer, got {value!r}") from exc


def _as_range(value: Any, where: str) -> tuple:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigurationError(f"'{where}' must be a [min, max] pair, got {value!r}")
    return (_as_float(value[0], where), _as_float(value[1], where))


def family_enabled(profile: Mapping[str, Any], family: PipelineFamily) -> bool:
    preferences = profile.get("preferences", {}) or {}
    return bool(preferences.get(FAMILY_FLAGS[family], False))


def parse_camera_format(profile: Mapping[str, Any]) -> Tuple[int, int, float]:
    """Capture ``(width, height, fps)`` from the camera section."""
    camera = profile.get("camera") or {}
    width = _as_int(camera.get("width", 640), "camera.width")
    height = _as_int(camera.get("height", 480), "camera.height")
    fps = _as_float(camera.get("fps", 30), "camera.fps")
    if width <= 0 or height <= 0 or fps <= 0:
        raise ConfigurationError(
            f"camera.width, camera.height and camera.fps must be positive, got {width}x{height}@{fps}"
        )
    return width, height, fps


def parse_camera_intrinsics(profile: Mapping[str, Any]) -> CameraIntrinsics:
    camera = _section(profile, "camera")
    width, height, _fps = parse_camera_format(profile)
    intrinsics = _require(camera, "intrinsics", "camera")
    return CameraIntrinsics(
        fx=_as_float(_require(intrinsics, "fx", "camera.intrinsics"), "camera.intrinsics.fx"),
        fy=_as_float(_require(intrinsics, "fy", "camera.intrinsics"), "camera.intrinsics.fy"),
        cx=_as_float(_require(intrinsics, "cx", "camera.intrinsics"), "camera.intrinsics.cx"),
        cy=_as_float(_require(intrinsics, "cy", "camera.intrinsics"), "camera.intrinsics.cy"),
        width=width,
        height=height,
    )


def parse_output_units(profile: Mapping[str, Any]) -> OutputUnits:
    units = (profile.get("camera") or {}).get("units") or {}
    try:
        return OutputUnits(
            distance=DistanceUnit(str(units.get("distance", "inch")).lower()),
            angle=AngleUnit(str(units.get("angle", "degrees")).lower()),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid output units {units!r}: {exc}") from exc


def parse_field_geometry(profile: Mapping[str, Any]) -> Optional[FieldGeometry]:
    camera = profile.get("camera") or {}
    camera_rect = camera.get("camera_rect")
    world_rect = camera.get("world_rect")
    if camera_rect is None and world_rect is None:
        return None
    if camera_rect is None or world_rect is None:
        raise ConfigurationError("camera.camera_rect and camera.world_rect must be configured together")
    try:
        return FieldGeometry(
            camera_rect=tuple((float(x), float(y)) for x, y in camera_rect),
            world_rect=tuple((float(x), float(y)) for x, y in world_rect),
        )
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid field geometry: {exc}") from exc


def _fiducial_params(profile: Mapping[str, Any]) -> FiducialParams:
    section = _section(profile, "fiducial")
    tag_size = _as_float(section.get("tag_size", 2.0), "fiducial.tag_size")
    if tag_size <= 0:
        raise ConfigurationError("fiducial.tag_size must be positive")
    return FiducialParams(tag_family=str(section.get("tag_family", "tag36h11")), tag_size=tag_size)


def _contour_filter(section: Mapping[str, Any]) -> ContourFilter:
    where = "color_blob.contour_filter"
    return ContourFilter(
        min_area=_as_float(_require(section, "min_area", where), f"{where}.min_area"),
        min_perimeter=_as_float(_require(section, "min_perimeter", where), f"{where}.min_perimeter"),
        width_range=_as_range(_require(section, "width_range", where), f"{where}.width_range"),
        height_range=_as_range(_require(section, "height_range", where), f"{where}.height_range"),
        solidity_range=_as_range(_require(section, "solidity_range", where), f"{where}.solidity_range"),
        vertices_range=_as_range(_require(section, "vertices_range", where), f"{where}.vertices_range"),
        aspect_ratio_range=_as_range(
            _require(section, "aspect_ratio_range", where), f"{where}.aspect_ratio_range"
        ),
    )


def _color_blob_params(profile: Mapping[str, Any], kind: PipelineKind) -> ColorBlobParams:
    section = _section(profile, "color_blob")
    thresholds = _require(section, "thresholds", "color_blob")
    color = kind.variant.value
    values = _require(thresholds, color, "color_blob.thresholds")
    if not isinstance(values, (list, tuple)):
        raise ConfigurationError(f"color_blob.thresholds.{color} must be a list of 6 numbers")
    return ColorBlobParams(
        thresholds=ColorThresholds.from_sequence([_as_float(v, f"color_blob.thresholds.{color}") for v in values]),
        contour_filter=_contour_filter(_require(section, "contour_filter", "color_blob")),
        color_conversion=str(section.get("color_conversion", "BGR2RGB")),
    )


def _learned_object_params(profile: Mapping[str, Any]) -> LearnedObjectParams:
    section = _section(profile, "learned_object")
    labels = _require(section, "labels", "learned_object")
    if not isinstance(labels, (list, tuple)) or not labels:
        raise ConfigurationError("learned_object.labels must be a non-empty list")
    min_confidence = _as_float(_require(section, "min_confidence", "learned_object"), "learned_object.min_confidence")
    if not 0.0 <= min_confidence <= 1.0:
        raise ConfigurationError("learned_object.min_confidence must be within [0, 1]")
    return LearnedObjectParams(
        model_path=str(_require(section, "model_path", "learned_object")),
        labels=tuple(str(label) for label in labels),
        min_confidence=min_confidence,
        device=str(section.get("device", "cpu")),
    )


def build_descriptors(profile: Mapping[str, Any]) -> List[PipelineDescriptor]:
    """Turn the enabled families of ``profile`` into pipeline descriptors.

    Raises:
        ConfigurationError: when an enabled family is missing a required
            calibration or threshold parameter.
    """

    wanted = [kind for kind in PipelineKind if family_enabled(profile, kind.family)]
    if not wanted:
        return []

    camera = parse_camera_intrinsics(profile)
    units = parse_output_units(profile)
    geometry = parse_field_geometry(profile)

    descriptors: List[PipelineDescriptor] = []
    for kind in wanted:
        if kind.family is PipelineFamily.FIDUCIAL:
            params = _fiducial_params(profile)
        elif kind.family is PipelineFamily.COLOR_BLOB:
            params = _color_blob_params(profile, kind)
        else:
            params = _learned_object_params(profile)
        descriptors.append(
            PipelineDescriptor(kind=kind, camera=camera, params=params, units=units, geometry=geometry)
        )
    return descriptors


__all__ = [
    "DEFAULT_VISION_PROFILE",
    "FAMILY_FLAGS",
    "VISION_PROFILE_PATH",
    "build_descriptors",
    "family_enabled",
    "load_vision_profile",
    "parse_camera_format",
    "parse_camera_intrinsics",
    "save_vision_profile",
]
