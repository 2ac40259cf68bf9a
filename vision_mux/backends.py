"""Concrete detector backends.

These are thin adapters over OpenCV and Ultralytics: they turn a frame into
:class:`DetectionRecord` objects and nothing else. Rendering overlays is left
to whoever consumes the records.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .base import BlobRegion, DetectionRecord, DetectorBackend, LabeledBox, TagPose
from .descriptors import ColorBlobParams, FiducialParams, LearnedObjectParams, PipelineDescriptor
from .errors import ConfigurationError
from .logging_utils import log_message

RawDetection = Tuple[str, float, Tuple[float, float, float, float]]
ObjectDetector = Callable[[np.ndarray], Iterable[RawDetection]]

_TAG_DICTIONARIES = {
    "tag36h11": "DICT_APRILTAG_36h11",
    "tag36h10": "DICT_APRILTAG_36h10",
    "tag25h9": "DICT_APRILTAG_25h9",
    "tag16h5": "DICT_APRILTAG_16h5",
}


def _to_gray(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return frame
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


class FiducialBackend(DetectorBackend):
    """AprilTag detection with a single-tag pose estimate per marker."""

    def __init__(self, descriptor: PipelineDescriptor):
        super().__init__(descriptor)
        params: FiducialParams = descriptor.params  # type: ignore[assignment]
        dictionary_name = _TAG_DICTIONARIES.get(params.tag_family.lower())
        if dictionary_name is None or not hasattr(cv2.aruco, dictionary_name):
            raise ConfigurationError(f"Unsupported fiducial tag family '{params.tag_family}'")
        dictionary = cv2.aruco.getPredefinedDictionary(getattr(cv2.aruco, dictionary_name))
        self._detector = cv2.aruco.ArucoDetector(dictionary, cv2.aruco.DetectorParameters())
        self._camera_matrix = descriptor.camera.matrix()
        self._dist_coeffs = np.zeros((5, 1), dtype=np.float64)
        half = params.tag_size / 2.0
        # IPPE_SQUARE corner order: top-left, top-right, bottom-right, bottom-left.
        self._object_points = np.array(
            [[-half, half, 0.0], [half, half, 0.0], [half, -half, 0.0], [-half, -half, 0.0]],
            dtype=np.float64,
        )

    def process_frame(self, frame: np.ndarray) -> Sequence[DetectionRecord]:
        corners, ids, _rejected = self._detector.detectMarkers(_to_gray(frame))
        if ids is None or len(ids) == 0:
            return []

        records: List[DetectionRecord] = []
        for tag_corners, tag_id in zip(corners, ids.ravel()):
            image_points = np.asarray(tag_corners, dtype=np.float64).reshape(4, 2)
            pose = self._estimate_pose(int(tag_id), image_points)
            if pose is None:
                continue
            records.append(
                DetectionRecord(kind=self.kind, confidence=1.0, payload=pose, label=f"tag{int(tag_id)}")
            )
        return records

    def _estimate_pose(self, tag_id: int, image_points: np.ndarray) -> Optional[TagPose]:
        ok, rvec, tvec = cv2.solvePnP(
            self._object_points,
            image_points,
            self._camera_matrix,
            self._dist_coeffs,
            flags=cv2.SOLVEPNP_IPPE_SQUARE,
        )
        if not ok:
            return None

        # Camera frame is x right, y down, z forward; report x right, y forward, z up.
        distance = self.descriptor.units.distance
        tx, ty, tz = (distance.from_inches(float(v)) for v in tvec.ravel())
        x, y, z = tx, tz, -ty
        rotation, _ = cv2.Rodrigues(rvec)
        yaw = math.atan2(rotation[1, 0], rotation[0, 0])
        pitch = math.atan2(-rotation[2, 0], math.hypot(rotation[2, 1], rotation[2, 2]))
        roll = math.atan2(rotation[2, 1], rotation[2, 2])

        angle = self.descriptor.units.angle
        center = image_points.mean(axis=0)
        return TagPose(
            tag_id=tag_id,
            x=x,
            y=y,
            z=z,
            yaw=angle.from_radians(yaw),
            pitch=angle.from_radians(pitch),
            roll=angle.from_radians(roll),
            range=math.sqrt(x * x + y * y + z * z),
            bearing=angle.from_radians(-math.atan2(x, y)),
            elevation=angle.from_radians(math.atan2(z, y)),
            image_center=(float(center[0]), float(center[1])),
        )


class ColorBlobBackend(DetectorBackend):
    """Threshold one color range and report the contours that pass the filter."""

    def __init__(self, descriptor: PipelineDescriptor):
        super().__init__(descriptor)
        params: ColorBlobParams = descriptor.params  # type: ignore[assignment]
        conversion = getattr(cv2, f"COLOR_{params.color_conversion}", None)
        if conversion is None:
            raise ConfigurationError(f"Unknown OpenCV color conversion '{params.color_conversion}'")
        self._conversion = conversion
        self._lower = np.clip(np.round(params.thresholds.lower()), 0, 255).astype(np.uint8)
        self._upper = np.clip(np.round(params.thresholds.upper()), 0, 255).astype(np.uint8)
        self._filter = params.contour_filter

    def threshold(self, frame: np.ndarray) -> np.ndarray:
        converted = cv2.cvtColor(frame, self._conversion)
        return cv2.inRange(converted, self._lower, self._upper)

    def process_frame(self, frame: np.ndarray) -> Sequence[DetectionRecord]:
        mask = self.threshold(frame)
        contours = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)[-2]

        blobs: List[BlobRegion] = []
        for contour in contours:
            area = float(cv2.contourArea(contour))
            perimeter = float(cv2.arcLength(contour, True))
            x, y, w, h = cv2.boundingRect(contour)
            hull_area = float(cv2.contourArea(cv2.convexHull(contour)))
            solidity = 100.0 * area / hull_area if hull_area > 0 else 0.0
            aspect_ratio = float(w) / float(h) if h else 0.0
            if not self._filter.accepts(
                area=area,
                perimeter=perimeter,
                width=w,
                height=h,
                solidity=solidity,
                vertices=len(contour),
                aspect_ratio=aspect_ratio,
            ):
                continue
            field_point = None
            if self.descriptor.geometry is not None:
                field_point = self.descriptor.geometry.map_point(x + w / 2.0, float(y + h))
            blobs.append(
                BlobRegion(
                    rect=(int(x), int(y), int(w), int(h)),
                    area=area,
                    solidity=solidity,
                    image_center=(x + w / 2.0, y + h / 2.0),
                    field_point=field_point,
                )
            )

        blobs.sort(key=lambda blob: blob.area, reverse=True)
        label = self.descriptor.name
        return [
            DetectionRecord(
                kind=self.kind,
                confidence=min(1.0, max(0.0, blob.solidity / 100.0)),
                payload=blob,
                label=label,
            )
            for blob in blobs
        ]


class _YoloDetector:
    """Adapter from an Ultralytics model to ``(label, confidence, box)`` tuples."""

    def __init__(self, model: Any, *, min_confidence: float, device: str):
        self.model = model
        self.min_confidence = min_confidence
        self.device = device

    def __call__(self, frame: np.ndarray) -> Iterable[RawDetection]:
        results = self.model.predict(frame, conf=self.min_confidence, device=self.device, verbose=False)
        for result in results:
            names = result.names
            boxes = result.boxes
            if boxes is None:
                continue
            xyxy = boxes.xyxy.cpu().numpy()
            scores = boxes.conf.cpu().numpy()
            classes = boxes.cls.cpu().numpy().astype(int)
            for box, score, class_id in zip(xyxy, scores, classes):
                yield str(names[int(class_id)]), float(score), tuple(float(v) for v in box)


def load_yolo_detector(params: LearnedObjectParams) -> ObjectDetector:
    model_path = Path(params.model_path)
    if not model_path.exists():
        raise ConfigurationError(f"Learned-object model not found: {model_path}")
    try:
        from ultralytics import YOLO
    except ImportError as exc:
        raise ConfigurationError("Learned-object detection requires the 'ultralytics' package") from exc

    log_message(f"Loading learned-object model: {model_path}", module="Vision")
    return _YoloDetector(YOLO(str(model_path)), min_confidence=params.min_confidence, device=params.device)


class LearnedObjectBackend(DetectorBackend):
    """Neural-network object detection filtered by label and confidence."""

    def __init__(self, descriptor: PipelineDescriptor, detector: Optional[ObjectDetector] = None):
        super().__init__(descriptor)
        params: LearnedObjectParams = descriptor.params  # type: ignore[assignment]
        self._labels = frozenset(params.labels)
        self._min_confidence = params.min_confidence
        self._detector = detector if detector is not None else load_yolo_detector(params)

    def process_frame(self, frame: np.ndarray) -> Sequence[DetectionRecord]:
        records: List[DetectionRecord] = []
        geometry = self.descriptor.geometry
        for label, confidence, box in self._detector(frame):
            if label not in self._labels or confidence < self._min_confidence:
                continue
            x1, y1, x2, y2 = box
            field_point = geometry.map_point((x1 + x2) / 2.0, y2) if geometry is not None else None
            records.append(
                DetectionRecord(
                    kind=self.kind,
                    confidence=min(1.0, float(confidence)),
                    payload=LabeledBox(box=(x1, y1, x2, y2), field_point=field_point),
                    label=label,
                )
            )
        return records

    def close(self) -> None:
        self._detector = lambda _frame: ()


__all__ = [
    "ColorBlobBackend",
    "FiducialBackend",
    "LearnedObjectBackend",
    "load_yolo_detector",
]
