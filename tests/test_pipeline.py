import threading
import time
from concurrent.futures import Future
from pathlib import Path

import pytest

from face_tracking.capture import PointerEvent, SurfaceGeometry
from face_tracking.exceptions import CapabilityError, FaceEngineError, FatalInitError, ModelLoadError
from face_tracking.pipeline import DetectionPipeline, PipelineState
from face_tracking.smoother import BoxSmoother
from face_tracking.types import BoundingBox

from conftest import FakeCamera, FakeDetector, face_record, make_detection, unit_vector


def _pipeline(detector, gallery, camera=None, **kwargs) -> DetectionPipeline:
    camera = camera or FakeCamera()
    return DetectionPipeline(
        capability=detector,
        gallery=gallery,
        camera_factory=lambda: camera,
        smoother=BoxSmoother(min_update_interval=0.0),
        weights_location=Path("weights"),
        target_fps=0,
        **kwargs,
    )


def test_initialize_loads_models_and_opens_camera(gallery):
    detector = FakeDetector()
    camera = FakeCamera(width=320, height=240)
    pipeline = _pipeline(detector, gallery, camera=camera)

    assert pipeline.initialize() is True
    assert pipeline.state is PipelineState.READY
    assert detector.loaded_from == Path("weights")
    assert pipeline.frame_size == (320, 240)
    assert camera.opened


def test_known_face_is_labelled(store, gallery):
    store.create("face", face_record("alice", unit_vector(0)))
    seen = []
    detector = FakeDetector(default=make_detection(unit_vector(0)))
    pipeline = _pipeline(detector, gallery, on_detection=lambda det, res: seen.append(res))
    pipeline.initialize()

    assert pipeline.tick() is True
    result = pipeline.get_result()
    assert result.label == "alice"
    assert result.confidence == pytest.approx(1.0)
    assert result.age == 30
    assert result.expression == "happy"
    assert seen == [result]
    assert pipeline.get_jpeg_frame().startswith(b"\xff\xd8")
    assert pipeline.get_state()["capturable"] is False


def test_empty_gallery_reports_unknown(gallery):
    detector = FakeDetector(default=make_detection(unit_vector(0)))
    pipeline = _pipeline(detector, gallery)
    pipeline.initialize()

    pipeline.tick()
    result = pipeline.get_result()
    assert result.label == "unknown"
    assert result.confidence == 1.0
    assert pipeline.get_state()["capturable"] is True


def test_no_face_clears_result_and_skips_callback(gallery):
    seen = []
    detector = FakeDetector(script=[make_detection(unit_vector(0)), None])
    pipeline = _pipeline(detector, gallery, on_detection=lambda det, res: seen.append(res))
    pipeline.initialize()

    pipeline.tick()
    pipeline.tick()
    assert pipeline.get_result() is None
    assert len(seen) == 1
    # The held box still renders while the miss is within tolerance.
    assert pipeline.smoother.last_valid_box is not None


def test_detector_error_does_not_stop_next_tick(gallery):
    detector = FakeDetector(
        script=[FaceEngineError("inference blew up"), make_detection(unit_vector(0))]
    )
    pipeline = _pipeline(detector, gallery)
    pipeline.initialize()

    assert pipeline.tick() is False
    assert pipeline.state is PipelineState.ERROR_RECOVERING
    assert pipeline.tick() is True
    assert pipeline.get_result().label == "unknown"


def test_camera_read_failure_skips_frame(gallery):
    detector = FakeDetector(default=make_detection(unit_vector(0)))
    pipeline = _pipeline(detector, gallery, camera=FakeCamera(fail_reads=1))
    pipeline.initialize()

    assert pipeline.tick() is False
    assert detector.calls == 0
    assert pipeline.tick() is True


def test_detection_from_smaller_input_is_rescaled(gallery):
    detection = make_detection(unit_vector(0), box=BoundingBox(10.0, 20.0, 30.0, 40.0))
    detection.source_size = (320, 240)
    pipeline = _pipeline(FakeDetector(default=detection), gallery)
    pipeline.initialize()

    pipeline.tick()
    assert pipeline.last_detection.detection.box == BoundingBox(20.0, 40.0, 60.0, 80.0)


def test_capture_at_unknown_face(gallery):
    detection = make_detection(unit_vector(0), box=BoundingBox(100.0, 100.0, 100.0, 100.0))
    pipeline = _pipeline(FakeDetector(default=detection), gallery)
    pipeline.initialize()
    pipeline.tick()

    surface = SurfaceGeometry(width=640, rendered_width=640)
    capture = pipeline.capture_at(PointerEvent(150, 150), surface)
    assert capture is not None
    assert capture.gender == "female"
    assert pipeline.capture_at(PointerEvent(600, 10), surface) is None


def test_capability_future_is_awaited(gallery):
    future = Future()
    detector = FakeDetector()
    future.set_result(detector)
    pipeline = _pipeline(future, gallery)
    assert pipeline.initialize() is True
    assert pipeline.detector is detector


def test_capability_timeout_raises(gallery):
    pipeline = _pipeline(Future(), gallery, capability_timeout=0.0)
    with pytest.raises(CapabilityError):
        pipeline.initialize()


def test_model_load_failure_fails_startup(gallery):
    class BrokenDetector(FakeDetector):
        def load_models(self, weights_location):
            raise OSError("weights missing")

    pipeline = _pipeline(BrokenDetector(), gallery)
    with pytest.raises(ModelLoadError):
        pipeline.initialize()


def test_worker_reports_failed_state(gallery):
    class BrokenDetector(FakeDetector):
        def load_models(self, weights_location):
            raise ModelLoadError("weights missing")

    pipeline = _pipeline(BrokenDetector(), gallery)
    pipeline.start()
    with pytest.raises(FatalInitError):
        pipeline.wait_until_ready(timeout=5.0)
    assert pipeline.state is PipelineState.FAILED
    assert pipeline.get_state()["error"] == "weights missing"
    pipeline.stop()


def test_stop_releases_camera_after_loop(gallery):
    camera = FakeCamera()
    pipeline = _pipeline(FakeDetector(default=make_detection(unit_vector(0))), gallery, camera=camera)
    pipeline.start()
    assert pipeline.wait_until_ready(timeout=5.0) in (PipelineState.READY, PipelineState.RUNNING)

    pipeline.stop()
    assert camera.closed
    assert pipeline.state is PipelineState.STOPPED
    assert pipeline.get_result() is None
    pipeline.stop()
    assert pipeline.tick() is False


def test_slightly_perturbed_face_still_matches(store, gallery):
    store.create("face", face_record("alice", unit_vector(0)))
    query = unit_vector(0) + unit_vector(1, 0.05)
    pipeline = _pipeline(FakeDetector(default=make_detection(query)), gallery)
    pipeline.initialize()

    pipeline.tick()
    result = pipeline.get_result()
    assert result.label == "alice"
    assert result.confidence > 0.9


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class BackendErrorCamera(FakeCamera):
    """Raises a non-camera error on one read, like a misbehaving capture backend."""

    def __init__(self, fail_on: int = 3, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on
        self.reads = 0

    def read(self):
        self.reads += 1
        if self.reads == self.fail_on:
            raise OSError("capture backend went away")
        return super().read()


class GatedCamera(FakeCamera):
    """Blocks inside open() until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def open(self) -> None:
        self.entered.set()
        self.release.wait(5.0)
        super().open()


def test_unexpected_read_error_keeps_worker_alive(gallery):
    camera = BackendErrorCamera(fail_on=3)
    pipeline = _pipeline(FakeDetector(default=make_detection(unit_vector(0))), gallery, camera=camera)
    pipeline.start()
    try:
        assert _wait_for(lambda: camera.reads > 6)
        assert pipeline.worker.is_alive()
        assert _wait_for(lambda: pipeline.state is PipelineState.RUNNING)
    finally:
        pipeline.stop()


def test_stop_while_awaiting_capability(gallery):
    camera = FakeCamera()
    pipeline = _pipeline(Future(), gallery, camera=camera)
    pipeline.start()
    worker = pipeline.worker
    assert _wait_for(lambda: pipeline.state is PipelineState.AWAITING_CAPABILITY)

    pipeline.stop()
    assert not worker.is_alive()
    assert pipeline.state is PipelineState.STOPPED
    assert not camera.opened
    assert pipeline.wait_until_ready(timeout=1.0) is PipelineState.STOPPED


def test_stop_while_camera_is_opening(gallery):
    camera = GatedCamera()
    pipeline = _pipeline(FakeDetector(default=make_detection(unit_vector(0))), gallery, camera=camera)
    pipeline.start()
    worker = pipeline.worker
    assert camera.entered.wait(5.0)

    releaser = threading.Timer(0.2, camera.release.set)
    releaser.start()
    pipeline.stop()
    releaser.join()

    worker.join(timeout=5.0)
    assert not worker.is_alive()
    assert camera.closed
    assert pipeline.camera is None
    assert pipeline.state is PipelineState.STOPPED


def test_init_failure_after_stop_does_not_report_failed(gallery):
    class FailingGatedCamera(GatedCamera):
        def open(self) -> None:
            self.entered.set()
            self.release.wait(5.0)
            raise OSError("device busy")

    camera = FailingGatedCamera()
    pipeline = _pipeline(FakeDetector(), gallery, camera=camera)
    pipeline.start()
    worker = pipeline.worker
    assert camera.entered.wait(5.0)

    releaser = threading.Timer(0.2, camera.release.set)
    releaser.start()
    pipeline.stop()
    releaser.join()
    worker.join(timeout=5.0)

    assert pipeline.state is PipelineState.STOPPED
    assert pipeline.get_state()["error"] is None
