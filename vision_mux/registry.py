"""Pipeline registry: one handle per configured pipeline, built once."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .backends import ColorBlobBackend, FiducialBackend, LearnedObjectBackend
from .base import DetectorBackend
from .binding import VideoSourceBinding
from .descriptors import PipelineDescriptor
from .errors import ConfigurationError
from .kinds import PipelineFamily, PipelineKind
from .logging_utils import log_exception, log_message

BackendFactory = Callable[[PipelineDescriptor], DetectorBackend]

PIPELINE_DEFINITIONS: Dict[PipelineFamily, Dict[str, str]] = {
    PipelineFamily.FIDUCIAL: {
        "display_name": "AprilTagVision",
        "description": "Decode AprilTag fiducials and estimate their pose relative to the camera.",
    },
    PipelineFamily.COLOR_BLOB: {
        "display_name": "ColorBlobVision",
        "description": "Threshold white, yellow, green and purple game pieces and report filtered contours.",
    },
    PipelineFamily.LEARNED_OBJECT: {
        "display_name": "LearnedObjectVision",
        "description": "Run a trained object detector and keep labels of interest above a confidence cutoff.",
    },
}

BACKEND_FACTORIES: Dict[PipelineFamily, BackendFactory] = {
    PipelineFamily.FIDUCIAL: FiducialBackend,
    PipelineFamily.COLOR_BLOB: ColorBlobBackend,
    PipelineFamily.LEARNED_OBJECT: LearnedObjectBackend,
}


@dataclass(eq=False)
class PipelineHandle:
    """Runtime identity of one configured pipeline.

    ``enabled`` is only changed by :class:`~vision_mux.multiplexer.ActivationMultiplexer`.
    """

    descriptor: PipelineDescriptor
    backend: DetectorBackend
    enabled: bool = field(default=False)

    @property
    def kind(self) -> PipelineKind:
        return self.descriptor.kind

    @property
    def key(self) -> str:
        return self.descriptor.kind.key

    def __repr__(self) -> str:
        return f"PipelineHandle(kind={self.key!r}, enabled={self.enabled})"


class PipelineRegistry:
    """Immutable mapping from :class:`PipelineKind` to :class:`PipelineHandle`."""

    def __init__(self, handles: Iterable[PipelineHandle], binding: VideoSourceBinding):
        self._handles: Dict[PipelineKind, PipelineHandle] = {handle.kind: handle for handle in handles}
        self.binding = binding

    @classmethod
    def build(
        cls,
        descriptors: Sequence[PipelineDescriptor],
        binding: VideoSourceBinding,
        backend_factories: Optional[Mapping[PipelineFamily, BackendFactory]] = None,
    ) -> "PipelineRegistry":
        """Instantiate and attach one backend per descriptor.

        Handles are created in :class:`PipelineKind` declaration order, not in
        the order of ``descriptors``. Every handle starts disabled.

        Raises:
            ConfigurationError: on duplicate kinds or when a backend rejects
                its descriptor. Nothing stays attached to ``binding`` then.
        """

        factories = dict(BACKEND_FACTORIES)
        if backend_factories:
            factories.update(backend_factories)

        seen: Dict[PipelineKind, PipelineDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.kind in seen:
                raise ConfigurationError(f"Pipeline {descriptor.kind.key} is configured more than once")
            seen[descriptor.kind] = descriptor
        ordered = sorted(seen.values(), key=lambda d: d.kind.order)

        handles: List[PipelineHandle] = []
        announced: set = set()
        try:
            for descriptor in ordered:
                family = descriptor.kind.family
                if family not in announced:
                    announced.add(family)
                    log_message(f"Starting {PIPELINE_DEFINITIONS[family]['display_name']}...", module="Vision")
                factory = factories.get(family)
                if factory is None:
                    raise ConfigurationError(f"No detector backend registered for {family.value}")
                backend = factory(descriptor)
                backend.set_enabled(False)
                handle = PipelineHandle(descriptor=descriptor, backend=backend)
                binding.attach(handle)
                handles.append(handle)
        except Exception as exc:
            for handle in handles:
                binding.detach(handle)
                handle.backend.close()
            if isinstance(exc, ConfigurationError):
                raise
            log_exception("Vision pipeline construction failed", exc, module="Vision")
            raise ConfigurationError(f"Could not construct vision pipelines: {exc}") from exc

        return cls(handles, binding)

    # ------------------------------------------------------------------
    # Queries

    def get(self, kind: PipelineKind) -> Optional[PipelineHandle]:
        return self._handles.get(kind)

    def kinds(self) -> Tuple[PipelineKind, ...]:
        return tuple(self._handles)

    def handles(self) -> Tuple[PipelineHandle, ...]:
        return tuple(self._handles.values())

    def __contains__(self, kind: object) -> bool:
        return kind in self._handles

    def __iter__(self) -> Iterator[PipelineHandle]:
        return iter(self.handles())

    def __len__(self) -> int:
        return len(self._handles)

    def close(self) -> None:
        for handle in self._handles.values():
            try:
                handle.backend.close()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                log_exception(f"Pipeline {handle.key} close failed", exc, level="warning", module="Vision")


def get_pipeline_options() -> List[Dict[str, str]]:
    return [
        {"family": family.value, "display_name": meta["display_name"], "description": meta["description"]}
        for family, meta in PIPELINE_DEFINITIONS.items()
    ]


__all__ = [
    "BACKEND_FACTORIES",
    "PIPELINE_DEFINITIONS",
    "PipelineHandle",
    "PipelineRegistry",
    "get_pipeline_options",
]
