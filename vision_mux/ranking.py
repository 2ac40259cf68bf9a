"""Best-first ordering of detection records."""

from __future__ import annotations

from operator import attrgetter
from typing import Iterable, List, Optional

from .base import DetectionRecord

_confidence = attrgetter("confidence")


def rank_by_confidence(records: Iterable[DetectionRecord]) -> List[DetectionRecord]:
    """Return ``records`` sorted by decreasing confidence.

    The sort is stable, so records with equal confidence keep their input
    order. Confidences are compared as plain floats.
    """
    return sorted(records, key=_confidence, reverse=True)


def best_detection(records: Iterable[DetectionRecord]) -> Optional[DetectionRecord]:
    ranked = rank_by_confidence(records)
    return ranked[0] if ranked else None


__all__ = ["best_detection", "rank_by_confidence"]
