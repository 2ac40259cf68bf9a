"""Pipeline kinds known to the vision runtime."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional


class PipelineFamily(str, Enum):
    """Detector families; one backend class per family."""

    FIDUCIAL = "fiducial"
    COLOR_BLOB = "color_blob"
    LEARNED_OBJECT = "learned_object"


class BlobColor(str, Enum):
    WHITE = "white"
    YELLOW = "yellow"
    GREEN = "green"
    PURPLE = "purple"


class PipelineKind(Enum):
    """Concrete pipelines, in the order they are built and dispatched by default."""

    FIDUCIAL = ("fiducial", PipelineFamily.FIDUCIAL, None)
    WHITE_BLOB = ("color_blob.white", PipelineFamily.COLOR_BLOB, BlobColor.WHITE)
    YELLOW_BLOB = ("color_blob.yellow", PipelineFamily.COLOR_BLOB, BlobColor.YELLOW)
    GREEN_BLOB = ("color_blob.green", PipelineFamily.COLOR_BLOB, BlobColor.GREEN)
    PURPLE_BLOB = ("color_blob.purple", PipelineFamily.COLOR_BLOB, BlobColor.PURPLE)
    LEARNED_OBJECT = ("learned_object", PipelineFamily.LEARNED_OBJECT, None)

    def __init__(self, key: str, family: PipelineFamily, variant: Optional[BlobColor]):
        self.key = key
        self.family = family
        self.variant = variant

    @property
    def order(self) -> int:
        return _DECLARATION_ORDER[self]

    @property
    def display_name(self) -> str:
        if self.variant is not None:
            return f"{self.variant.value.title()} Blob"
        return self.family.value.replace("_", " ").title()

    @classmethod
    def for_family(cls, family: PipelineFamily) -> List["PipelineKind"]:
        return [kind for kind in cls if kind.family is family]

    @classmethod
    def parse(cls, text: "str | PipelineKind") -> "PipelineKind":
        """Resolve a key, member name or short alias to a kind.

        Raises:
            ValueError: if ``text`` names no known pipeline.
        """
        if isinstance(text, PipelineKind):
            return text
        normalized = str(text).strip().lower()
        kind = _LOOKUP.get(normalized)
        if kind is None:
            known = ", ".join(k.key for k in cls)
            raise ValueError(f"Unknown pipeline kind '{text}'. Known: {known}")
        return kind

    def __str__(self) -> str:
        return self.key


_DECLARATION_ORDER: Dict[PipelineKind, int] = {kind: index for index, kind in enumerate(PipelineKind)}

_ALIASES = {
    "apriltag": PipelineKind.FIDUCIAL,
    "april_tag": PipelineKind.FIDUCIAL,
    "tensorflow": PipelineKind.LEARNED_OBJECT,
    "tfod": PipelineKind.LEARNED_OBJECT,
    "yolo": PipelineKind.LEARNED_OBJECT,
}

_LOOKUP: Dict[str, PipelineKind] = {}
for _kind in PipelineKind:
    _LOOKUP[_kind.key] = _kind
    _LOOKUP[_kind.name.lower()] = _kind
    if _kind.variant is not None:
        _LOOKUP[_kind.variant.value] = _kind
        _LOOKUP[f"{_kind.variant.value}_pixel"] = _kind
_LOOKUP.update(_ALIASES)


__all__ = ["BlobColor", "PipelineFamily", "PipelineKind"]
