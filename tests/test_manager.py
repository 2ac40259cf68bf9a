import threading
import time

import pytest

from conftest import FakeBackend, FakeBackendFactory
from vision_mux import (
    ConfigurationError,
    PipelineFamily,
    PipelineKind,
    StaticFrameSource,
    VisionEventBus,
    VisionPipelineManager,
)


@pytest.fixture
def manager(profile, fake_factory, frame):
    source = StaticFrameSource([frame] * 3)
    with VisionPipelineManager.from_profile(
        profile, source=source, backend_factories=fake_factory.factories()
    ) as instance:
        yield instance


def test_all_pipelines_start_disabled(manager):
    assert len(manager.registry) == 6
    assert manager.enabled_kinds() == ()
    assert not any(manager.is_enabled(kind) for kind in PipelineKind)


def test_only_fiducial_runs_when_it_alone_is_enabled(manager, fake_factory):
    manager.set_enabled(PipelineKind.FIDUCIAL, True)

    for _ in range(3):
        assert manager.process_next_frame() is not None
    assert manager.process_next_frame() is None

    assert fake_factory.built[PipelineKind.FIDUCIAL].calls == 3
    for kind in PipelineKind:
        if kind is not PipelineKind.FIDUCIAL:
            assert fake_factory.built[kind].calls == 0
    assert len(manager.get_latest_detections(PipelineKind.FIDUCIAL)) == 1
    assert manager.get_latest_detections(PipelineKind.YELLOW_BLOB) == []


def test_failed_pipeline_reports_empty_and_signals(manager, fake_factory, frame):
    failures = []
    manager.event_bus.detectorFailed.connect(lambda key, message: failures.append((key, message)))
    fake_factory.built[PipelineKind.PURPLE_BLOB].error = RuntimeError("lost exposure")
    manager.set_enabled(PipelineKind.PURPLE_BLOB, True)
    manager.set_enabled(PipelineKind.FIDUCIAL, True)

    manager.process_frame(frame)

    assert manager.get_latest_detections(PipelineKind.PURPLE_BLOB) == []
    assert manager.get_latest_snapshot(PipelineKind.PURPLE_BLOB).stale
    assert len(manager.get_latest_detections(PipelineKind.FIDUCIAL)) == 1
    assert [key for key, _message in failures] == ["color_blob.purple"]
    assert "lost exposure" in failures[0][1]
    assert manager.is_enabled(PipelineKind.PURPLE_BLOB)


def test_toggle_and_update_signals(profile, fake_factory, frame):
    bus = VisionEventBus()
    toggles, updates = [], []
    bus.pipelineToggled.connect(lambda key, enabled: toggles.append((key, enabled)))
    bus.detectionsUpdated.connect(lambda key, index, count: updates.append((key, index, count)))
    manager = VisionPipelineManager.from_profile(
        profile, source=StaticFrameSource([]), backend_factories=fake_factory.factories(), event_bus=bus
    )
    try:
        manager.set_enabled("fiducial", True)
        manager.process_frame(frame)
        manager.set_enabled("fiducial", False)
    finally:
        manager.close()

    assert toggles == [("fiducial", True), ("fiducial", False)]
    assert updates == [("fiducial", 1, 1)]


def test_best_detection_uses_highest_confidence(profile, frame):
    factory = FakeBackendFactory(confidences=(0.4, 0.95, 0.7, 0.95))
    manager = VisionPipelineManager.from_profile(
        profile, source=StaticFrameSource([]), backend_factories=factory.factories()
    )
    try:
        manager.set_enabled(PipelineKind.LEARNED_OBJECT, True)
        manager.process_frame(frame)
        best = manager.get_best_detection(PipelineKind.LEARNED_OBJECT)
        ranked = manager.rank_by_confidence(manager.get_latest_detections(PipelineKind.LEARNED_OBJECT))
    finally:
        manager.close()

    assert best.label == "learned_object#1"
    assert [record.label for record in ranked] == [
        "learned_object#1",
        "learned_object#3",
        "learned_object#2",
        "learned_object#0",
    ]
    assert manager.get_best_detection(PipelineKind.GREEN_BLOB) is None


def test_unconfigured_kind_queries_are_empty(profile, fake_factory, frame):
    profile["preferences"]["use_learned_object_vision"] = False
    manager = VisionPipelineManager.from_profile(
        profile, source=StaticFrameSource([]), backend_factories=fake_factory.factories()
    )
    try:
        manager.set_enabled(PipelineKind.LEARNED_OBJECT, True)
        manager.process_frame(frame)
        assert not manager.is_enabled(PipelineKind.LEARNED_OBJECT)
        assert manager.get_latest_detections(PipelineKind.LEARNED_OBJECT) == []
        assert manager.get_latest_detections("no-such-pipeline") == []
    finally:
        manager.close()


def test_unknown_camera_is_a_configuration_error(profile, fake_factory):
    profile["camera"]["name"] = "Webcam 9"
    with pytest.raises(ConfigurationError, match="Webcam 9"):
        VisionPipelineManager.from_profile(profile, backend_factories=fake_factory.factories())


def test_missing_parameter_returns_no_manager(profile, fake_factory):
    del profile["color_blob"]["thresholds"]["white"]
    with pytest.raises(ConfigurationError, match="color_blob.thresholds.white"):
        VisionPipelineManager.from_profile(
            profile, source=StaticFrameSource([]), backend_factories=fake_factory.factories()
        )


def test_background_loop_processes_frames(profile, fake_factory, frame):
    source = StaticFrameSource([frame], loop=True)
    manager = VisionPipelineManager.from_profile(
        profile, source=source, backend_factories=fake_factory.factories()
    )
    manager.set_enabled(PipelineKind.GREEN_BLOB, True)
    try:
        assert manager.start() is True
        assert manager.running
        deadline = time.monotonic() + 3.0
        while manager.binding.frame_index < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        manager.close()

    assert not manager.running
    assert fake_factory.built[PipelineKind.GREEN_BLOB].calls >= 3
    assert all(backend.closed for backend in fake_factory.built.values())


class BlockingBackend(FakeBackend):
    def __init__(self, descriptor, entered, release):
        super().__init__(descriptor, confidences=(0.6,))
        self.entered = entered
        self.release = release

    def process_frame(self, frame):
        self.entered.set()
        self.release.wait(5.0)
        return super().process_frame(frame)


class CountingSource(StaticFrameSource):
    def __init__(self, frames, **kwargs):
        super().__init__(frames, **kwargs)
        self.stops = 0

    def stop(self):
        self.stops += 1
        super().stop()


def test_hung_backend_is_disabled_by_manager(profile, fake_factory, frame):
    release = threading.Event()
    factories = fake_factory.factories()
    factories[PipelineFamily.LEARNED_OBJECT] = lambda descriptor: BlockingBackend(
        descriptor, threading.Event(), release
    )
    profile["preferences"].update({"dispatch_mode": "parallel", "backend_timeout_s": 0.2})
    manager = VisionPipelineManager.from_profile(profile, source=StaticFrameSource([]), backend_factories=factories)
    failures = []
    manager.event_bus.detectorFailed.connect(lambda key, message: failures.append(key))
    try:
        manager.set_enabled(PipelineKind.LEARNED_OBJECT, True)
        manager.process_frame(frame)
        assert not manager.is_enabled(PipelineKind.LEARNED_OBJECT)
        assert failures == ["learned_object"]
    finally:
        release.set()
        manager.close()


def test_stop_waits_for_in_flight_frame_before_releasing_camera(profile, fake_factory, frame):
    entered, release = threading.Event(), threading.Event()
    factories = fake_factory.factories()
    factories[PipelineFamily.FIDUCIAL] = lambda descriptor: BlockingBackend(descriptor, entered, release)
    source = CountingSource([frame], loop=True)
    manager = VisionPipelineManager.from_profile(profile, source=source, backend_factories=factories)
    manager.stop_join_timeout_s = 0.1
    manager.set_enabled(PipelineKind.FIDUCIAL, True)
    try:
        assert manager.start()
        assert entered.wait(3.0)

        manager.stop()
        assert source.stops == 0
        assert manager.start() is False

        release.set()
        deadline = time.monotonic() + 3.0
        while source.stops == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert source.stops == 1
    finally:
        release.set()
        manager.close()
