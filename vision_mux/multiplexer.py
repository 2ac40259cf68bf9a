"""Runtime enable/disable control for registered pipelines."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple, Union

from .kinds import PipelineKind
from .logging_utils import log_message
from .registry import PipelineHandle, PipelineRegistry

if TYPE_CHECKING:  # pragma: no cover
    from .events import VisionEventBus

PipelineTarget = Union[PipelineKind, PipelineHandle, str]


class ActivationMultiplexer:
    """Decide which pipelines receive frames.

    Enabling a pipeline appends its handle to the binding's dispatch list;
    disabling removes it. Asking about (or toggling) a pipeline that was never
    configured is a no-op, so callers can drive optional pipelines without
    checking the profile first.
    """

    def __init__(
        self,
        registry: PipelineRegistry,
        event_bus: Optional["VisionEventBus"] = None,
        on_change: Optional[Callable[[PipelineKind, bool], None]] = None,
    ) -> None:
        self._registry = registry
        self._binding = registry.binding
        self._bus = event_bus
        self._on_change = on_change
        self._lock = threading.RLock()

    def _resolve(self, target: PipelineTarget) -> Optional[PipelineHandle]:
        if isinstance(target, PipelineHandle):
            handle = self._registry.get(target.kind)
            return handle if handle is target else None
        try:
            kind = PipelineKind.parse(target)
        except ValueError:
            return None
        return self._registry.get(kind)

    def set_enabled(self, target: PipelineTarget, enabled: bool) -> None:
        handle = self._resolve(target)
        if handle is None:
            log_message(f"Ignoring toggle of unconfigured pipeline {target}", level="debug", module="Vision")
            return

        enabled = bool(enabled)
        with self._lock:
            if handle.enabled == enabled:
                return
            handle.enabled = enabled
            handle.backend.set_enabled(enabled)
            if enabled:
                self._binding.activate(handle)
            else:
                self._binding.deactivate(handle)

        log_message(f"Pipeline {handle.key} {'enabled' if enabled else 'disabled'}", level="debug", module="Vision")
        if self._bus is not None:
            self._bus.pipelineToggled.emit(handle.key, enabled)
        if self._on_change is not None:
            self._on_change(handle.kind, enabled)

    def is_enabled(self, target: PipelineTarget) -> bool:
        handle = self._resolve(target)
        if handle is None:
            return False
        with self._lock:
            return handle.enabled

    def enabled_kinds(self) -> Tuple[PipelineKind, ...]:
        """Enabled pipelines in dispatch order."""
        return tuple(handle.kind for handle in self._binding.active_handles())

    def disable_all(self) -> None:
        for handle in self._registry.handles():
            self.set_enabled(handle, False)
            handle.backend.set_enabled(False)

    def enable_only(self, targets: List[PipelineTarget]) -> None:
        wanted = {handle.kind for handle in (self._resolve(t) for t in targets) if handle is not None}
        for handle in self._registry.handles():
            if handle.kind not in wanted:
                self.set_enabled(handle, False)
        for target in targets:
            self.set_enabled(target, True)


__all__ = ["ActivationMultiplexer", "PipelineTarget"]
