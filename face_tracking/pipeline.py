import enum
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Callable, Optional, Protocol, Tuple, Union

import numpy as np

from .camera import CameraStream
from .capture import CaptureBridge, PointerEvent, SurfaceGeometry, encode_jpeg
from .config import (
    CAMERA_INDEX,
    CAPABILITY_POLL_SECONDS,
    CAPABILITY_WAIT_SECONDS,
    JPEG_QUALITY,
    MATCH_THRESHOLD,
    MODEL_DIR,
    TARGET_LOOP_FPS,
    UNKNOWN_LABEL,
)
from .exceptions import CameraError, CapabilityError, FatalInitError, ModelLoadError
from .gallery import GalleryCache
from .logger import setup_logger
from .matcher import recognize
from .overlay import build_overlay, render_overlay
from .smoother import BoxSmoother
from .types import (
    FaceDetection,
    FaceDetector,
    FrameOutcome,
    PendingCapture,
    RecognitionResult,
    TrackedDetection,
)


class PipelineState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_CAPABILITY = "awaiting_capability"
    AWAITING_CAMERA = "awaiting_camera"
    READY = "ready"
    RUNNING = "running"
    ERROR_RECOVERING = "error_recovering"
    STOPPED = "stopped"
    FAILED = "failed"


class FrameSource(Protocol):
    frame_size: Optional[Tuple[int, int]]

    def open(self) -> None:
        ...

    def read(self) -> np.ndarray:
        ...

    def close(self) -> None:
        ...


DetectionCallback = Callable[[FaceDetection, RecognitionResult], None]


class DetectionPipeline:
    """Per-stream detect, smooth, match and render loop.

    A worker thread walks the initialization states, then calls ``tick`` until
    ``stop`` is requested. Each tick runs to completion before the next one
    starts, so smoother and published state never see concurrent writers.
    """

    def __init__(
        self,
        capability: Union[FaceDetector, "Future[FaceDetector]"],
        gallery: GalleryCache,
        camera_factory: Optional[Callable[[], FrameSource]] = None,
        smoother: Optional[BoxSmoother] = None,
        capture_bridge: Optional[CaptureBridge] = None,
        weights_location: Path = MODEL_DIR,
        threshold: float = MATCH_THRESHOLD,
        target_fps: int = TARGET_LOOP_FPS,
        jpeg_quality: int = JPEG_QUALITY,
        capability_timeout: float = CAPABILITY_WAIT_SECONDS,
        on_detection: Optional[DetectionCallback] = None,
    ):
        self.capability = capability
        self.gallery = gallery
        self.camera_factory = camera_factory or (lambda: CameraStream(CAMERA_INDEX))
        self.smoother = smoother or BoxSmoother()
        self.capture_bridge = capture_bridge or CaptureBridge()
        self.weights_location = Path(weights_location)
        self.threshold = threshold
        self.target_fps = max(0, int(target_fps))
        self.frame_sleep_seconds = (1.0 / self.target_fps) if self.target_fps > 0 else 0.0
        self.jpeg_quality = jpeg_quality
        self.capability_timeout = capability_timeout
        self.on_detection = on_detection
        self.logger = setup_logger(self.__class__.__name__)

        self.detector: Optional[FaceDetector] = None
        self.camera: Optional[FrameSource] = None
        self.frame_size: Optional[Tuple[int, int]] = None

        self.worker: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.ready_event = threading.Event()
        self.lock = threading.Lock()
        self.camera_lock = threading.Lock()
        self.detector_lock = threading.Lock()

        self.state = PipelineState.UNINITIALIZED
        self.last_error: Optional[str] = None
        self.latest_result: Optional[RecognitionResult] = None
        self.last_detection: Optional[TrackedDetection] = None
        self.last_frame: Optional[np.ndarray] = None
        self.last_rendered: Optional[np.ndarray] = None
        self.last_overlay_jpeg: Optional[bytes] = None
        self.latest_fps = 0.0
        self.frame_index = 0
        self.read_fail_streak = 0

    # Lifecycle

    def start(self) -> None:
        if self.worker and self.worker.is_alive():
            return
        self.stop_event.clear()
        self.ready_event.clear()
        self.worker = threading.Thread(target=self._run, name="face-tracking-pipeline", daemon=True)
        self.worker.start()

    def stop(self) -> None:
        self.stop_event.set()
        worker = self.worker
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=3.0)
        self.worker = None
        self._release_camera()

        with self.lock:
            self.latest_result = None
            self.last_detection = None
            self.last_frame = None
            self.last_rendered = None
        self.smoother.reset()
        if self.state is not PipelineState.STOPPED:
            self._set_state(PipelineState.STOPPED)
            self.logger.info("Face tracking pipeline stopped")
        self.ready_event.set()

    def wait_until_ready(self, timeout: Optional[float] = None) -> PipelineState:
        self.ready_event.wait(timeout)
        if self.state is PipelineState.FAILED:
            raise FatalInitError(self.last_error or "Pipeline initialization failed.")
        return self.state

    def initialize(self) -> bool:
        """Run the initialization states. Returns False when stopped midway."""
        self._set_state(PipelineState.AWAITING_CAPABILITY)
        detector = self._await_capability()
        if detector is None:
            return False

        try:
            detector.load_models(self.weights_location)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load face models: {exc}") from exc
        self.detector = detector
        self.logger.info("Face models loaded from %s", self.weights_location)
        if self.stop_event.is_set():
            return False

        self._set_state(PipelineState.AWAITING_CAMERA)
        camera = self.camera_factory()
        try:
            camera.open()
        except CameraError:
            raise
        except Exception as exc:
            raise CameraError(f"Unable to start camera stream: {exc}") from exc

        with self.camera_lock:
            if self.stop_event.is_set():
                camera.close()
                return False
            self.camera = camera
            self.frame_size = camera.frame_size

        self._set_state(PipelineState.READY)
        self.logger.info("Camera ready with frame size %s", self.frame_size)
        return True

    def _run(self) -> None:
        try:
            initialized = self.initialize()
        except FatalInitError as exc:
            self._release_camera()
            if self.stop_event.is_set():
                self.logger.info("Initialization aborted by stop: %s", exc)
                return
            self.logger.error("Pipeline initialization failed: %s", exc)
            with self.lock:
                self.last_error = str(exc)
            self._set_state(PipelineState.FAILED)
            self.ready_event.set()
            return

        self.ready_event.set()
        if initialized:
            self._loop()

    def _await_capability(self) -> Optional[FaceDetector]:
        capability = self.capability
        if not isinstance(capability, Future):
            return capability

        deadline = time.monotonic() + self.capability_timeout
        while not self.stop_event.is_set():
            try:
                return capability.result(timeout=CAPABILITY_POLL_SECONDS)
            except FutureTimeoutError:
                if time.monotonic() >= deadline:
                    raise CapabilityError(
                        f"Face detection capability unavailable after {self.capability_timeout:.0f}s."
                    )
            except Exception as exc:
                raise CapabilityError(f"Face detection capability failed to start: {exc}") from exc
        return None

    def _loop(self) -> None:
        self._set_state(PipelineState.RUNNING)
        self.logger.info("Face tracking loop started")
        prev_time = time.perf_counter()
        while not self.stop_event.is_set():
            loop_started = time.perf_counter()
            try:
                self.tick()
            except Exception:
                self.logger.exception("Tick failed on frame %d", self.frame_index)
                self._set_state(PipelineState.ERROR_RECOVERING)

            now = time.perf_counter()
            self.latest_fps = 1.0 / max(1e-6, now - prev_time)
            prev_time = now

            if self.frame_sleep_seconds > 0.0:
                remaining = self.frame_sleep_seconds - (time.perf_counter() - loop_started)
                if remaining > 0.0:
                    self.stop_event.wait(remaining)

    # Per-frame work

    def tick(self) -> bool:
        """Run one detection cycle. Returns True when the frame was processed."""
        with self.camera_lock:
            camera = self.camera
            if camera is None:
                return False
            try:
                frame = camera.read()
            except CameraError as exc:
                self.read_fail_streak += 1
                if self.read_fail_streak in (1, 30) or self.read_fail_streak % 300 == 0:
                    self.logger.warning("Camera read failed (%d in a row): %s", self.read_fail_streak, exc)
                return False
        self.read_fail_streak = 0
        self.frame_index += 1

        try:
            outcome = self.process_frame(frame)
        except Exception:
            self.logger.exception("Face detection failed on frame %d", self.frame_index)
            self._set_state(PipelineState.ERROR_RECOVERING)
            return False

        rendered = frame.copy()
        if outcome.overlay is not None:
            render_overlay(rendered, outcome.overlay)
        jpeg = encode_jpeg(rendered, self.jpeg_quality)

        tracked = None
        if outcome.detection is not None:
            tracked = TrackedDetection(detection=outcome.detection, label=outcome.label)

        with self.lock:
            self.latest_result = outcome.result
            self.last_detection = tracked
            self.last_frame = frame
            self.last_rendered = rendered
            self.last_overlay_jpeg = jpeg

        if self.state is PipelineState.ERROR_RECOVERING:
            self._set_state(PipelineState.RUNNING)

        if outcome.detection is not None and outcome.result is not None and self.on_detection is not None:
            try:
                self.on_detection(outcome.detection, outcome.result)
            except Exception:
                self.logger.exception("Detection callback failed")
        return True

    def process_frame(self, frame: np.ndarray) -> FrameOutcome:
        if self.detector is None:
            raise ModelLoadError("Face models are not loaded.")

        with self.detector_lock:
            detection = self.detector.detect_one(frame)
        if detection is None:
            smoothed = self.smoother.smooth(None)
            overlay = build_overlay(smoothed, None) if smoothed is not None else None
            return FrameOutcome(result=None, overlay=overlay)

        h, w = frame.shape[:2]
        detection = detection.resized_to(w, h)
        smoothed = self.smoother.smooth(detection.box)

        snapshot = self.gallery.current()
        result = recognize(detection, snapshot, threshold=self.threshold)
        overlay = build_overlay(smoothed, result) if smoothed is not None else None
        return FrameOutcome(result=result, overlay=overlay, detection=detection, label=result.label)

    # Published state

    def capture_at(self, event: PointerEvent, surface: SurfaceGeometry) -> Optional[PendingCapture]:
        with self.lock:
            tracked = self.last_detection
            frame = self.last_frame
        return self.capture_bridge.on_pointer_event(event, surface, tracked, frame)

    def get_result(self) -> Optional[RecognitionResult]:
        with self.lock:
            return self.latest_result

    def get_rendered_frame(self) -> Optional[np.ndarray]:
        with self.lock:
            return self.last_rendered

    def get_jpeg_frame(self) -> Optional[bytes]:
        with self.lock:
            return self.last_overlay_jpeg

    def get_state(self) -> dict:
        with self.lock:
            result = self.latest_result
            tracked = self.last_detection
            error = self.last_error
        return {
            "state": self.state.value,
            "result": result.as_dict() if result else None,
            "capturable": tracked is not None and tracked.label == UNKNOWN_LABEL,
            "box": tracked.detection.box.as_dict() if tracked else None,
            "frame_size": list(self.frame_size) if self.frame_size else None,
            "fps": round(self.latest_fps, 1),
            "error": error,
        }

    def _set_state(self, state: PipelineState) -> None:
        # Once stop is requested only STOPPED may be entered.
        if self.stop_event.is_set() and state is not PipelineState.STOPPED:
            return
        previous = self.state
        self.state = state
        if previous is not state:
            self.logger.debug("Pipeline state %s -> %s", previous.value, state.value)

    def _release_camera(self) -> None:
        with self.camera_lock:
            if self.camera is not None:
                self.camera.close()
                self.camera = None
