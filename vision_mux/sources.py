"""Frame sources and camera resolution.

The binding owns exactly one :class:`FrameSource`; nothing else reads the
camera. Offline sources (video files, in-memory frames) implement the same
interface so the whole runtime can be exercised without hardware.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from itertools import cycle
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import cv2
import numpy as np

from .config import parse_camera_format
from .errors import ConfigurationError
from .logging_utils import log_exception, log_message

CameraSource = Union[int, str]

BACKEND_ALIASES = {
    "gst": "gstreamer",
    "gstreamer": "gstreamer",
    "v4l2": "v4l2",
    "video4linux": "v4l2",
    "video4linux2": "v4l2",
    "ffmpeg": "ffmpeg",
}


class FrameSource(ABC):
    """A single producer of BGR frames."""

    name: str = "source"

    @abstractmethod
    def start(self) -> bool:
        """Open the underlying device or file. Returns False on failure."""

    @abstractmethod
    def stop(self) -> None:
        """Release the underlying device or file."""

    @abstractmethod
    def read(self) -> Optional[np.ndarray]:
        """Return the next frame, or None when none is available."""


# ----------------------------------------------------------------------
# Camera resolution


def _normalize_source(value: Any) -> CameraSource:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return int(stripped)
        return stripped
    return int(value)


def resolve_camera_source(profile: Mapping[str, Any]) -> Tuple[str, CameraSource, Optional[str]]:
    """Resolve the profile's camera selection to an OpenCV source.

    Returns ``(name, source, backend)``. A named webcam must be listed under
    ``hardware``; otherwise the built-in camera facing ``back`` or ``front``
    is looked up in ``builtin_cameras``.

    Raises:
        ConfigurationError: when the camera cannot be resolved.
    """

    preferences = profile.get("preferences", {}) or {}
    camera = profile.get("camera", {}) or {}

    if preferences.get("use_webcam", True):
        name = camera.get("name")
        if not name:
            raise ConfigurationError("Missing required vision parameter 'camera.name'")
        hardware = profile.get("hardware", {}) or {}
        entry = hardware.get(name)
        if not isinstance(entry, Mapping) or entry.get("index_or_path") is None:
            known = ", ".join(sorted(hardware)) or "none"
            raise ConfigurationError(f"Camera '{name}' is not in the hardware map (known: {known})")
        try:
            source = _normalize_source(entry["index_or_path"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Camera '{name}' has an invalid index_or_path") from exc
        return str(name), source, entry.get("backend")

    direction = "back" if preferences.get("use_builtin_cam_back", False) else "front"
    builtin = profile.get("builtin_cameras", {}) or {}
    if builtin.get(direction) is None:
        raise ConfigurationError(f"No built-in camera configured for direction '{direction}'")
    try:
        source = _normalize_source(builtin[direction])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Built-in camera '{direction}' has an invalid index") from exc
    return f"builtin_{direction}", source, None


# ----------------------------------------------------------------------
# OpenCV capture helpers


def _backend_flag(name: Optional[str]) -> Optional[int]:
    flags = {
        "gstreamer": getattr(cv2, "CAP_GSTREAMER", None),
        "v4l2": getattr(cv2, "CAP_V4L2", None),
        "ffmpeg": getattr(cv2, "CAP_FFMPEG", None),
    }
    return flags.get(name) if name else None


def build_backend_priority(preferred: Optional[str] = None) -> List[Optional[str]]:
    """Backend names to try in order; ``None`` is OpenCV's default."""

    order: List[Optional[str]] = []
    candidates: List[Optional[str]] = []
    if preferred:
        key = str(preferred).strip().lower()
        if key and key not in {"auto", "default", "any"}:
            candidates.append(BACKEND_ALIASES.get(key, key))
    if os.name == "posix":
        candidates.extend(["v4l2", "gstreamer"])
    candidates.extend(["ffmpeg", None])

    for candidate in candidates:
        if candidate is not None and _backend_flag(candidate) is None:
            continue
        if candidate not in order:
            order.append(candidate)
    return order


def open_capture(
    source: CameraSource, *, preferred_backend: Optional[str] = None
) -> Tuple[Optional[str], Optional["cv2.VideoCapture"]]:
    """Open a ``cv2.VideoCapture`` trying backends in priority order."""

    for backend in build_backend_priority(preferred_backend):
        cap = None
        try:
            flag = _backend_flag(backend)
            cap = cv2.VideoCapture(source) if flag is None else cv2.VideoCapture(source, flag)
            if cap is not None and cap.isOpened():
                return backend, cap
        except cv2.error as exc:
            log_exception("Camera backend open failed", exc, level="debug")
        if cap is not None:
            cap.release()
    return None, None


class CameraFrameSource(FrameSource):
    """Live camera read through OpenCV."""

    def __init__(
        self,
        name: str,
        source: CameraSource,
        *,
        width: int = 640,
        height: int = 480,
        fps: float = 30.0,
        backend: Optional[str] = None,
    ) -> None:
        self.name = name
        self.source = source
        self.width = width
        self.height = height
        self.fps = fps
        self.backend = backend
        self._capture: Optional["cv2.VideoCapture"] = None
        self._lock = threading.Lock()

    def start(self) -> bool:
        with self._lock:
            if self._capture is not None:
                return True
            backend, cap = open_capture(self.source, preferred_backend=self.backend)
            if cap is None:
                log_message(f"Camera '{self.name}' could not be opened ({self.source!r})", level="error")
                return False
            self.backend = backend
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, float(self.width))
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, float(self.height))
            cap.set(cv2.CAP_PROP_FPS, float(self.fps))
            buffer_prop = getattr(cv2, "CAP_PROP_BUFFERSIZE", None)
            if buffer_prop is not None:
                # Trim capture buffers when the backend supports it.
                cap.set(buffer_prop, 1)
            self._capture = cap
            log_message(f"Camera '{self.name}' opened with backend {backend or 'default'}")
            return True

    def stop(self) -> None:
        with self._lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._capture is None:
                return None
            ok, frame = self._capture.read()
        return frame if ok else None


class VideoFileSource(CameraFrameSource):
    """Recorded footage, optionally looped."""

    def __init__(self, path: str, *, loop: bool = False) -> None:
        super().__init__(os.path.basename(path), path, backend="ffmpeg")
        self.loop = loop

    def start(self) -> bool:
        with self._lock:
            if self._capture is not None:
                return True
            cap = cv2.VideoCapture(self.source)
            if not cap.isOpened():
                cap.release()
                log_message(f"Video file could not be opened: {self.source}", level="error")
                return False
            self._capture = cap
            return True

    def read(self) -> Optional[np.ndarray]:
        frame = super().read()
        if frame is None and self.loop:
            with self._lock:
                if self._capture is not None:
                    self._capture.set(cv2.CAP_PROP_POS_FRAMES, 0)
            frame = super().read()
        return frame


class StaticFrameSource(FrameSource):
    """In-memory frames, for tests and offline replay."""

    def __init__(self, frames: Iterable[np.ndarray], *, loop: bool = False, name: str = "static") -> None:
        self.name = name
        self._frames = list(frames)
        self.loop = loop
        self._iterator: Optional[Iterator[np.ndarray]] = None
        self._lock = threading.Lock()
        self.reads = 0

    def start(self) -> bool:
        with self._lock:
            self._iterator = cycle(self._frames) if self.loop and self._frames else iter(self._frames)
        return True

    def stop(self) -> None:
        with self._lock:
            self._iterator = None

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._iterator is None:
                return None
            frame = next(self._iterator, None)
            if frame is not None:
                self.reads += 1
            return frame


def create_frame_source(profile: Mapping[str, Any]) -> CameraFrameSource:
    """Build the camera source described by ``profile``.

    Raises:
        ConfigurationError: when the named camera cannot be resolved
            or the capture format is malformed.
    """

    name, source, backend = resolve_camera_source(profile)
    width, height, fps = parse_camera_format(profile)
    return CameraFrameSource(name, source, width=width, height=height, fps=fps, backend=backend)


__all__ = [
    "CameraFrameSource",
    "FrameSource",
    "StaticFrameSource",
    "VideoFileSource",
    "build_backend_priority",
    "create_frame_source",
    "open_capture",
    "resolve_camera_source",
]
