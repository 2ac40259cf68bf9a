import sys
from copy import deepcopy
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from vision_mux import DEFAULT_VISION_PROFILE, DetectionRecord, DetectorBackend, PipelineFamily, PipelineKind
from vision_mux.base import LabeledBox


class FakeBackend(DetectorBackend):
    """Backend that counts frames and returns canned detections."""

    def __init__(self, descriptor, confidences=(), error: Optional[BaseException] = None):
        super().__init__(descriptor)
        self.calls = 0
        self.frames: List[np.ndarray] = []
        self.confidences = list(confidences)
        self.error = error
        self.closed = False

    def process_frame(self, frame):
        self.calls += 1
        self.frames.append(frame)
        if self.error is not None:
            raise self.error
        return [
            DetectionRecord(
                kind=self.kind,
                confidence=confidence,
                payload=LabeledBox(box=(0.0, 0.0, 10.0, 10.0)),
                label=f"{self.kind.key}#{index}",
            )
            for index, confidence in enumerate(self.confidences)
        ]

    def close(self):
        self.closed = True


class FakeBackendFactory:
    """Backend factories for every family that remember what they built."""

    def __init__(self, confidences=(0.5,)):
        self.built: Dict[PipelineKind, FakeBackend] = {}
        self.confidences = confidences

    def __call__(self, descriptor):
        backend = FakeBackend(descriptor, confidences=self.confidences)
        self.built[descriptor.kind] = backend
        return backend

    def factories(self):
        return {family: self for family in PipelineFamily}


@pytest.fixture
def profile():
    data = deepcopy(DEFAULT_VISION_PROFILE)
    data["preferences"]["use_learned_object_vision"] = True
    return data


@pytest.fixture
def fake_factory():
    return FakeBackendFactory()


@pytest.fixture
def frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)
