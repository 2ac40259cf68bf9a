"""Runtime manager orchestrating the vision pipelines of one robot session."""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from .base import DetectionRecord
from .binding import FrameDispatch, PipelineSnapshot, VideoSourceBinding
from .config import build_descriptors, load_vision_profile
from .errors import describe_failure
from .events import VisionEventBus
from .kinds import PipelineFamily, PipelineKind
from .logging_utils import log_exception, log_message
from .multiplexer import ActivationMultiplexer, PipelineTarget
from .ranking import best_detection, rank_by_confidence
from .registry import BackendFactory, PipelineRegistry
from .sources import FrameSource, create_frame_source


class VisionPipelineManager:
    """Own the registry, multiplexer and camera binding for one session.

    Pass the instance to whoever needs vision (autonomous routines, UI);
    there is no global instance. All pipelines start disabled and each task
    phase enables the ones it needs.
    """

    stop_join_timeout_s = 1.5

    def __init__(
        self,
        registry: PipelineRegistry,
        *,
        event_bus: Optional[VisionEventBus] = None,
        frame_interval_s: float = 0.01,
    ) -> None:
        self._registry = registry
        self._binding: VideoSourceBinding = registry.binding
        self._bus = event_bus if event_bus is not None else VisionEventBus()
        self._multiplexer = ActivationMultiplexer(registry, self._bus)
        self._frame_interval_s = max(0.0, float(frame_interval_s))
        self._thread: Optional[threading.Thread] = None
        self._draining: Optional[threading.Thread] = None
        self._deferred_release: Optional[Callable[[], None]] = None
        self._loop_done = True
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._multiplexer.disable_all()

    @classmethod
    def from_profile(
        cls,
        profile: Optional[Mapping[str, Any]] = None,
        *,
        source: Optional[FrameSource] = None,
        backend_factories: Optional[Mapping[PipelineFamily, BackendFactory]] = None,
        event_bus: Optional[VisionEventBus] = None,
    ) -> "VisionPipelineManager":
        """Build everything described by ``profile``.

        Raises:
            ConfigurationError: when a parameter is missing or the named
                camera cannot be resolved. No manager is returned then.
        """

        profile = profile if profile is not None else load_vision_profile()
        preferences = profile.get("preferences", {}) or {}
        if source is None:
            source = create_frame_source(profile)
        descriptors = build_descriptors(profile)
        binding = VideoSourceBinding(
            source,
            dispatch_mode=str(preferences.get("dispatch_mode", "sequential")),
            backend_timeout_s=preferences.get("backend_timeout_s"),
        )
        registry = PipelineRegistry.build(descriptors, binding, backend_factories)
        return cls(
            registry,
            event_bus=event_bus,
            frame_interval_s=float(preferences.get("frame_interval_s", 0.01) or 0.0),
        )

    # ------------------------------------------------------------------
    # Accessors

    @property
    def registry(self) -> PipelineRegistry:
        return self._registry

    @property
    def multiplexer(self) -> ActivationMultiplexer:
        return self._multiplexer

    @property
    def binding(self) -> VideoSourceBinding:
        return self._binding

    @property
    def event_bus(self) -> VisionEventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Activation

    def set_enabled(self, target: PipelineTarget, enabled: bool) -> None:
        self._multiplexer.set_enabled(target, enabled)

    def is_enabled(self, target: PipelineTarget) -> bool:
        return self._multiplexer.is_enabled(target)

    def enabled_kinds(self) -> Tuple[PipelineKind, ...]:
        return self._multiplexer.enabled_kinds()

    def disable_all(self) -> None:
        self._multiplexer.disable_all()

    # ------------------------------------------------------------------
    # Queries

    def get_latest_snapshot(self, kind: "PipelineKind | str") -> Optional[PipelineSnapshot]:
        try:
            resolved = PipelineKind.parse(kind)
        except ValueError:
            return None
        return self._binding.latest(resolved)

    def get_latest_detections(self, kind: "PipelineKind | str") -> List[DetectionRecord]:
        """Detections of the latest complete frame for ``kind``.

        Empty when the pipeline is unknown, disabled, has not run yet, or
        failed on that frame.
        """
        snapshot = self.get_latest_snapshot(kind)
        if snapshot is None or snapshot.stale:
            return []
        return list(snapshot.detections)

    @staticmethod
    def rank_by_confidence(records: Iterable[DetectionRecord]) -> List[DetectionRecord]:
        return rank_by_confidence(records)

    def get_best_detection(self, kind: "PipelineKind | str") -> Optional[DetectionRecord]:
        return best_detection(self.get_latest_detections(kind))

    # ------------------------------------------------------------------
    # Processing

    def process_frame(self, frame: np.ndarray) -> FrameDispatch:
        """Dispatch ``frame`` synchronously to the enabled pipelines."""
        dispatch = self._binding.dispatch(frame)
        self._handle_dispatch(dispatch)
        return dispatch

    def process_next_frame(self) -> Optional[FrameDispatch]:
        """Pull one frame from the camera and dispatch it. None if no frame."""
        dispatch = self._binding.next_frame()
        if dispatch is not None:
            self._handle_dispatch(dispatch)
        return dispatch

    def _handle_dispatch(self, dispatch: FrameDispatch) -> None:
        for kind, snapshot in dispatch.snapshots.items():
            if snapshot.failure is not None:
                self._bus.detectorFailed.emit(kind.key, describe_failure(snapshot.failure))
                if snapshot.failure.fatal:
                    self._multiplexer.set_enabled(kind, False)
                continue
            self._bus.detectionsUpdated.emit(kind.key, dispatch.frame_index, len(snapshot.detections))

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> bool:
        """Open the camera and process frames on a background thread."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return True
            if self._draining is not None and self._draining.is_alive():
                log_message("Previous vision frame loop is still finishing a frame", level="warning", module="Vision")
                return False
            if not self._binding.start():
                log_message("Vision camera failed to start", level="error", module="Vision")
                return False
            self._stop_event.clear()
            self._draining = None
            self._loop_done = False
            self._thread = threading.Thread(target=self._frame_loop, name="vision_dispatch", daemon=True)
            self._thread.start()
            return True

    def stop(self) -> None:
        """Stop the frame loop and release the camera.

        If the loop does not exit within the join timeout, the camera is left
        open and released by the loop thread once its current frame is done.
        """
        self._shutdown(self._binding.stop)

    def close(self) -> None:
        self._shutdown(self._release_all)

    def _release_all(self) -> None:
        self._binding.close()
        self._registry.close()

    def _shutdown(self, release: Callable[[], None]) -> None:
        with self._lock:
            self._stop_event.set()
            thread = self._thread if self._thread is not None else self._draining
            self._thread = None
        if thread is not None and thread.is_alive():
            thread.join(timeout=self.stop_join_timeout_s)
            if thread.is_alive():
                log_message(
                    f"Vision frame loop did not stop within {self.stop_join_timeout_s:.1f}s; deferring camera release",
                    level="warning",
                    module="Vision",
                )
                with self._lock:
                    if not self._loop_done:
                        self._draining = thread
                        self._deferred_release = release
                        return
        release()

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def __enter__(self) -> "VisionPipelineManager":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    def _frame_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    dispatch = self.process_next_frame()
                except Exception as exc:  # pragma: no cover - keep the loop alive on camera errors
                    log_exception("Vision frame loop error", exc, level="warning", module="Vision")
                    dispatch = None
                if dispatch is None:
                    self._stop_event.wait(max(self._frame_interval_s, 0.05))
                elif self._frame_interval_s:
                    self._stop_event.wait(self._frame_interval_s)
        finally:
            with self._lock:
                self._loop_done = True
                release = self._deferred_release
                self._deferred_release = None
            if release is not None:
                release()


__all__ = ["VisionPipelineManager"]
