"""Fan-out of camera frames to the enabled detector backends."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .base import DetectionRecord
from .errors import DetectorFailure
from .kinds import PipelineKind
from .logging_utils import log_exception, log_message
from .sources import FrameSource

if TYPE_CHECKING:  # pragma: no cover
    from .registry import PipelineHandle

DISPATCH_MODES = ("sequential", "parallel")


@dataclass(frozen=True)
class PipelineSnapshot:
    """Detections of one pipeline for the latest fully dispatched frame."""

    kind: PipelineKind
    frame_index: int
    timestamp: float
    detections: Tuple[DetectionRecord, ...] = ()
    failure: Optional[DetectorFailure] = None

    @property
    def stale(self) -> bool:
        return self.failure is not None


@dataclass(frozen=True)
class FrameDispatch:
    """Outcome of dispatching one frame."""

    frame_index: int
    timestamp: float
    snapshots: Mapping[PipelineKind, PipelineSnapshot] = field(default_factory=dict)
    failures: Tuple[DetectorFailure, ...] = ()

    @property
    def dispatched(self) -> Tuple[PipelineKind, ...]:
        return tuple(self.snapshots)


class VideoSourceBinding:
    """Single owner of the frame source and of the active-backend list.

    ``activate``/``deactivate`` may be called from any thread. The active list
    is copied under the lock when a frame starts, so a change made while a
    frame is in flight applies from the next frame on.
    """

    def __init__(
        self,
        source: FrameSource,
        *,
        dispatch_mode: str = "sequential",
        backend_timeout_s: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        if dispatch_mode not in DISPATCH_MODES:
            raise ValueError(f"dispatch_mode must be one of {DISPATCH_MODES}, got {dispatch_mode!r}")
        self.source = source
        self.dispatch_mode = dispatch_mode
        self.backend_timeout_s = backend_timeout_s
        self._max_workers = max_workers or len(PipelineKind)

        self._lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._attached: Dict[PipelineKind, "PipelineHandle"] = {}
        self._active: List["PipelineHandle"] = []
        self._latest: Dict[PipelineKind, PipelineSnapshot] = {}
        self._frame_index = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._source_started = False

    # ------------------------------------------------------------------
    # Membership

    def attach(self, handle: "PipelineHandle") -> None:
        with self._lock:
            if handle.kind in self._attached:
                raise ValueError(f"Pipeline {handle.kind.key} is already attached")
            self._attached[handle.kind] = handle

    def detach(self, handle: "PipelineHandle") -> None:
        with self._lock:
            self._attached.pop(handle.kind, None)
            if handle in self._active:
                self._active.remove(handle)
            self._latest.pop(handle.kind, None)

    def activate(self, handle: "PipelineHandle") -> bool:
        """Append ``handle`` to the dispatch list. Returns False if already there."""
        with self._lock:
            if self._attached.get(handle.kind) is not handle:
                raise ValueError(f"Pipeline {handle.kind.key} is not attached to this binding")
            if handle in self._active:
                return False
            self._active.append(handle)
            return True

    def deactivate(self, handle: "PipelineHandle") -> bool:
        """Remove ``handle`` from the dispatch list and drop its snapshot."""
        with self._lock:
            self._latest.pop(handle.kind, None)
            if handle not in self._active:
                return False
            self._active.remove(handle)
            return True

    def is_active(self, handle: "PipelineHandle") -> bool:
        with self._lock:
            return handle in self._active

    def active_handles(self) -> Tuple["PipelineHandle", ...]:
        with self._lock:
            return tuple(self._active)

    def attached_kinds(self) -> Tuple[PipelineKind, ...]:
        with self._lock:
            return tuple(self._attached)

    # ------------------------------------------------------------------
    # Source lifecycle

    def start(self) -> bool:
        if self._source_started:
            return True
        self._source_started = bool(self.source.start())
        return self._source_started

    def stop(self) -> None:
        if self._source_started:
            self.source.stop()
            self._source_started = False

    def close(self) -> None:
        self.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # ------------------------------------------------------------------
    # Dispatch

    def next_frame(self) -> Optional[FrameDispatch]:
        """Read one frame from the source and dispatch it."""
        if not self._source_started and not self.start():
            return None
        frame = self.source.read()
        if frame is None:
            return None
        return self.dispatch(frame)

    def dispatch(self, frame: np.ndarray, timestamp: Optional[float] = None) -> FrameDispatch:
        with self._dispatch_lock:
            with self._lock:
                handles = tuple(self._active)
                self._frame_index += 1
                frame_index = self._frame_index
            stamp = time.time() if timestamp is None else timestamp

            # A timeout needs the pool even for a single backend.
            use_pool = len(handles) > 1 or (len(handles) == 1 and self.backend_timeout_s is not None)
            if self.dispatch_mode == "parallel" and use_pool:
                outcomes = self._dispatch_parallel(handles, frame, frame_index)
            else:
                outcomes = [self._run_backend(handle, frame, frame_index) for handle in handles]

            snapshots: Dict[PipelineKind, PipelineSnapshot] = {}
            failures: List[DetectorFailure] = []
            for handle, (records, failure) in zip(handles, outcomes):
                snapshots[handle.kind] = PipelineSnapshot(
                    kind=handle.kind,
                    frame_index=frame_index,
                    timestamp=stamp,
                    detections=records,
                    failure=failure,
                )
                if failure is not None:
                    failures.append(failure)

            with self._lock:
                # A pipeline disabled mid-frame must not get a snapshot back.
                for kind, snapshot in snapshots.items():
                    handle = self._attached.get(kind)
                    if handle is not None and handle in self._active:
                        self._latest[kind] = snapshot

        return FrameDispatch(
            frame_index=frame_index,
            timestamp=stamp,
            snapshots=snapshots,
            failures=tuple(failures),
        )

    def _run_backend(
        self, handle: "PipelineHandle", frame: np.ndarray, frame_index: int
    ) -> Tuple[Tuple[DetectionRecord, ...], Optional[DetectorFailure]]:
        try:
            records = handle.backend.process_frame(frame)
            return self._stamp(records, frame_index), None
        except Exception as exc:
            failure = DetectorFailure(handle.kind, exc)
            log_exception(
                f"Pipeline {handle.kind.key} failed on frame {frame_index}", exc, level="warning", module="Vision"
            )
            return (), failure

    @staticmethod
    def _stamp(records: Sequence[DetectionRecord], frame_index: int) -> Tuple[DetectionRecord, ...]:
        stamped = []
        for record in records or ():
            if not isinstance(record, DetectionRecord):
                raise TypeError(f"backend returned {type(record).__name__}, expected DetectionRecord")
            stamped.append(record if record.frame_index is not None else replace(record, frame_index=frame_index))
        return tuple(stamped)

    def _dispatch_parallel(
        self, handles: Sequence["PipelineHandle"], frame: np.ndarray, frame_index: int
    ) -> List[Tuple[Tuple[DetectionRecord, ...], Optional[DetectorFailure]]]:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="vision_backend")

        futures: List[Future] = [
            self._executor.submit(self._run_backend, handle, frame.copy(), frame_index) for handle in handles
        ]
        done, _pending = wait(futures, timeout=self.backend_timeout_s)

        outcomes = []
        for handle, future in zip(handles, futures):
            if future in done:
                outcomes.append(future.result())
                continue
            cause = TimeoutError(f"no result within {self.backend_timeout_s:.3f}s")
            failure = DetectorFailure(handle.kind, cause, fatal=True)
            log_message(
                f"Pipeline {handle.kind.key} hung on frame {frame_index}; taking it out of rotation",
                level="error",
                module="Vision",
            )
            outcomes.append(((), failure))
        return outcomes

    # ------------------------------------------------------------------
    # Latest-frame cache

    def latest(self, kind: PipelineKind) -> Optional[PipelineSnapshot]:
        with self._lock:
            return self._latest.get(kind)

    @property
    def frame_index(self) -> int:
        with self._lock:
            return self._frame_index


__all__ = ["DISPATCH_MODES", "FrameDispatch", "PipelineSnapshot", "VideoSourceBinding"]
