from dataclasses import replace

import cv2
import numpy as np
import pytest

from vision_mux import BlobRegion, ConfigurationError, LabeledBox, PipelineKind, TagPose, build_descriptors
from vision_mux.backends import ColorBlobBackend, FiducialBackend, LearnedObjectBackend
from vision_mux.descriptors import DistanceUnit


def _descriptor(profile, kind):
    return next(descriptor for descriptor in build_descriptors(profile) if descriptor.kind is kind)


@pytest.fixture
def yellow_frame():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.rectangle(frame, (100, 100), (299, 149), (0, 200, 230), thickness=-1)
    return frame


def test_yellow_blob_is_detected(profile, yellow_frame):
    backend = ColorBlobBackend(_descriptor(profile, PipelineKind.YELLOW_BLOB))
    records = backend.process_frame(yellow_frame)

    assert len(records) == 1
    record = records[0]
    assert record.kind is PipelineKind.YELLOW_BLOB
    assert record.label == "YellowBlob"
    assert isinstance(record.payload, BlobRegion)
    assert record.payload.rect == (100, 100, 200, 50)
    assert record.confidence == pytest.approx(1.0)
    assert record.payload.image_center == (200.0, 125.0)


def test_other_colors_ignore_the_yellow_blob(profile, yellow_frame):
    for kind in (PipelineKind.WHITE_BLOB, PipelineKind.GREEN_BLOB, PipelineKind.PURPLE_BLOB):
        assert ColorBlobBackend(_descriptor(profile, kind)).process_frame(yellow_frame) == []


def test_small_blobs_are_filtered_out(profile):
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.rectangle(frame, (10, 10), (29, 29), (0, 200, 230), thickness=-1)
    backend = ColorBlobBackend(_descriptor(profile, PipelineKind.YELLOW_BLOB))
    assert backend.process_frame(frame) == []


def test_blobs_are_ordered_by_area(profile):
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.rectangle(frame, (20, 20), (79, 59), (0, 200, 230), thickness=-1)
    cv2.rectangle(frame, (200, 200), (399, 299), (0, 200, 230), thickness=-1)
    records = ColorBlobBackend(_descriptor(profile, PipelineKind.YELLOW_BLOB)).process_frame(frame)
    assert [record.payload.rect for record in records] == [(200, 200, 200, 100), (20, 20, 60, 40)]


def test_blob_field_point_uses_geometry(profile, yellow_frame):
    profile["camera"]["camera_rect"] = [[0, 0], [640, 0], [0, 480], [640, 480]]
    profile["camera"]["world_rect"] = [[0, 480], [640, 480], [0, 0], [640, 0]]
    backend = ColorBlobBackend(_descriptor(profile, PipelineKind.YELLOW_BLOB))
    record = backend.process_frame(yellow_frame)[0]
    assert record.payload.field_point == pytest.approx((200.0, 330.0), abs=1e-6)


def test_unknown_color_conversion_is_rejected(profile):
    descriptor = _descriptor(profile, PipelineKind.GREEN_BLOB)
    broken = replace(descriptor, params=replace(descriptor.params, color_conversion="BGR2NOWHERE"))
    with pytest.raises(ConfigurationError, match="BGR2NOWHERE"):
        ColorBlobBackend(broken)


def _tag_frame(tag_id=7):
    dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_APRILTAG_36h11)
    marker = cv2.aruco.generateImageMarker(dictionary, tag_id, 200)
    gray = np.full((480, 640), 255, dtype=np.uint8)
    gray[140:340, 220:420] = marker
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def test_fiducial_tag_is_decoded(profile):
    frame = _tag_frame()

    records = FiducialBackend(_descriptor(profile, PipelineKind.FIDUCIAL)).process_frame(frame)

    assert len(records) == 1
    pose = records[0].payload
    assert isinstance(pose, TagPose)
    assert pose.tag_id == 7
    assert records[0].label == "tag7"
    assert records[0].confidence == 1.0
    assert pose.y > 0
    assert pose.range > 0
    assert pose.image_center == pytest.approx((320.0, 240.0), abs=2.0)


def test_fiducial_empty_frame(profile, frame):
    backend = FiducialBackend(_descriptor(profile, PipelineKind.FIDUCIAL))
    assert backend.process_frame(frame) == []


def test_unsupported_tag_family(profile):
    profile["fiducial"]["tag_family"] = "tag99h1"
    with pytest.raises(ConfigurationError, match="tag99h1"):
        FiducialBackend(_descriptor(profile, PipelineKind.FIDUCIAL))


def test_learned_object_filters_labels_and_confidence(profile, frame):
    def detector(_frame):
        return [
            ("Pixel", 0.97, (10.0, 20.0, 50.0, 60.0)),
            ("Pixel", 0.5, (0.0, 0.0, 5.0, 5.0)),
            ("Backdrop", 0.99, (100.0, 100.0, 200.0, 200.0)),
        ]

    backend = LearnedObjectBackend(_descriptor(profile, PipelineKind.LEARNED_OBJECT), detector=detector)
    records = backend.process_frame(frame)

    assert len(records) == 1
    assert records[0].label == "Pixel"
    assert records[0].confidence == pytest.approx(0.97)
    assert isinstance(records[0].payload, LabeledBox)
    assert records[0].payload.image_center == (30.0, 40.0)


def test_learned_object_missing_model(profile, tmp_path):
    profile["learned_object"]["model_path"] = str(tmp_path / "missing.pt")
    with pytest.raises(ConfigurationError):
        LearnedObjectBackend(_descriptor(profile, PipelineKind.LEARNED_OBJECT))


def test_backend_enable_flag(profile):
    backend = LearnedObjectBackend(_descriptor(profile, PipelineKind.LEARNED_OBJECT), detector=lambda _f: [])
    assert backend.kind is PipelineKind.LEARNED_OBJECT
    backend.set_enabled(True)
    assert backend.is_enabled()
    backend.set_enabled(False)
    assert not backend.is_enabled()


def test_fiducial_pose_follows_distance_unit(profile):
    frame = _tag_frame()
    inch_pose = FiducialBackend(_descriptor(profile, PipelineKind.FIDUCIAL)).process_frame(frame)[0].payload

    profile["camera"]["units"]["distance"] = "cm"
    cm_pose = FiducialBackend(_descriptor(profile, PipelineKind.FIDUCIAL)).process_frame(frame)[0].payload

    assert cm_pose.range == pytest.approx(inch_pose.range * 2.54)
    assert cm_pose.y == pytest.approx(inch_pose.y * 2.54)
    assert (cm_pose.x, cm_pose.z) == pytest.approx((inch_pose.x * 2.54, inch_pose.z * 2.54), abs=1e-9)
    assert cm_pose.yaw == pytest.approx(inch_pose.yaw)


def test_distance_unit_conversion():
    assert DistanceUnit.INCH.from_inches(2.0) == 2.0
    assert DistanceUnit.CM.from_inches(2.0) == pytest.approx(5.08)
    assert DistanceUnit.METER.from_inches(100.0) == pytest.approx(2.54)
