"""Qt event bus for the vision runtime."""

from __future__ import annotations

from PySide6.QtCore import QObject, Signal


class VisionEventBus(QObject):
    """Qt signal hub connecting the vision runtime to UI or control code.

    Signals are emitted from whichever thread dispatches frames; connect with a
    queued connection when the receiver lives on another thread.
    """

    pipelineToggled = Signal(str, bool)
    detectionsUpdated = Signal(str, int, int)
    detectorFailed = Signal(str, str)

    def __init__(self) -> None:
        super().__init__()


__all__ = ["VisionEventBus"]
