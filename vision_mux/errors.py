"""Error types raised by the vision runtime."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .kinds import PipelineKind


class ConfigurationError(ValueError):
    """Raised at start-up when the vision profile cannot be turned into pipelines.

    Covers missing calibration/threshold parameters, malformed values,
    duplicate pipeline kinds and camera names that cannot be resolved.
    """


class DetectorFailure(RuntimeError):
    """A single detector backend failed while processing a frame.

    Failures never escape frame dispatch; they are logged and attached to the
    pipeline's snapshot for that frame. ``fatal`` marks a backend that hung and
    was taken out of rotation.
    """

    def __init__(self, kind: "PipelineKind", cause: BaseException, *, fatal: bool = False):
        self.kind = kind
        self.cause = cause
        self.fatal = fatal
        super().__init__(f"{kind.key}: {cause.__class__.__name__}: {cause}")

    def __repr__(self) -> str:
        return f"DetectorFailure(kind={self.kind.key!r}, cause={self.cause!r}, fatal={self.fatal})"


def describe_failure(failure: Optional[DetectorFailure]) -> str:
    if failure is None:
        return ""
    return f"{failure.cause.__class__.__name__}: {failure.cause}"


__all__ = ["ConfigurationError", "DetectorFailure", "describe_failure"]
