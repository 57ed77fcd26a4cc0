import logging
import threading
import time
from typing import Any, Iterator, Optional, Tuple

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .capture import PointerEvent, SurfaceGeometry
from .enrollment import EnrollmentService, image_bytes_from_data_url, image_data_url
from .exceptions import EnrollmentError, FaceTrackingError, StoreError
from .pipeline import DetectionPipeline
from .types import PendingCapture


logger = logging.getLogger("face_tracking.web_app")


class CaptureBody(BaseModel):
    client_x: float
    client_y: float
    width: float
    rendered_width: float
    left: float = 0.0
    top: float = 0.0


class EnrollPendingBody(BaseModel):
    name: str
    age: Any = None
    gender: Optional[str] = None


class EnrollImageBody(BaseModel):
    name: str
    age: Any = None
    gender: Optional[str] = None
    image: str


def _mjpeg_frame_generator(pipeline: DetectionPipeline, poll_seconds: float = 0.03) -> Iterator[bytes]:
    while not pipeline.stop_event.is_set():
        frame = pipeline.get_jpeg_frame()
        if frame is None:
            time.sleep(poll_seconds)
            continue
        yield (
            b"--frame\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + frame + b"\r\n"
        )
        time.sleep(poll_seconds)


def _capture_payload(capture: PendingCapture) -> dict:
    return {
        "age": capture.age,
        "gender": capture.gender,
        "expression": capture.expression,
        "image": image_data_url(capture.image_bytes),
    }


class SharedDetector:
    """Lends the pipeline's loaded detector to still-image enrollment."""

    def __init__(self, pipeline: DetectionPipeline):
        self.pipeline = pipeline

    def load_models(self, weights_location) -> None:
        return None

    def detect_one(self, frame):
        detector = self.pipeline.detector
        if detector is None:
            raise EnrollmentError("Face models are still loading. Try again shortly.")
        with self.pipeline.detector_lock:
            return detector.detect_one(frame)


def build_services(camera_index: Optional[int] = None) -> Tuple[DetectionPipeline, EnrollmentService]:
    """Wire the camera-backed pipeline and enrollment service from config."""
    from .camera import CameraStream
    from .config import CAMERA_INDEX, DB_PATH
    from .face_engine import start_engine_async
    from .gallery import GalleryCache
    from .store import ObjectStore

    index = CAMERA_INDEX if camera_index is None else int(camera_index)
    store = ObjectStore(DB_PATH)
    gallery = GalleryCache(store)
    engine_future = start_engine_async()
    pipeline = DetectionPipeline(
        capability=engine_future,
        gallery=gallery,
        camera_factory=lambda: CameraStream(index),
    )

    enrollment = EnrollmentService(store=store, gallery=gallery, detector=SharedDetector(pipeline))
    return pipeline, enrollment


def create_web_app(
    pipeline: Optional[DetectionPipeline] = None,
    enrollment: Optional[EnrollmentService] = None,
    camera_index: Optional[int] = None,
) -> FastAPI:
    app = FastAPI(title="Face Tracking Dashboard", version="1.0.0")

    if pipeline is None or enrollment is None:
        default_pipeline, default_enrollment = build_services(camera_index)
        pipeline = pipeline or default_pipeline
        enrollment = enrollment or default_enrollment

    pending_lock = threading.Lock()
    pending: dict = {"capture": None}

    @app.on_event("startup")
    def _startup() -> None:
        try:
            pipeline.start()
        except Exception as exc:
            pipeline.last_error = f"Pipeline startup failed: {exc}"
            logger.exception("Pipeline startup failed")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        pipeline.stop()

    @app.get("/api/health")
    def health():
        return {"ok": True, "state": pipeline.state.value}

    @app.get("/api/state")
    def state():
        body = pipeline.get_state()
        with pending_lock:
            body["pending"] = pending["capture"] is not None
        return JSONResponse(body)

    @app.get("/api/stream")
    def stream():
        return StreamingResponse(
            _mjpeg_frame_generator(pipeline),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.post("/api/capture")
    def capture(payload: CaptureBody):
        try:
            captured = pipeline.capture_at(
                PointerEvent(client_x=payload.client_x, client_y=payload.client_y),
                SurfaceGeometry(
                    width=payload.width,
                    rendered_width=payload.rendered_width,
                    left=payload.left,
                    top=payload.top,
                ),
            )
        except FaceTrackingError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        if captured is None:
            return {"ok": True, "captured": False}
        with pending_lock:
            pending["capture"] = captured
        return {"ok": True, "captured": True, "capture": _capture_payload(captured)}

    @app.post("/api/capture/enroll")
    def enroll_pending(payload: EnrollPendingBody):
        with pending_lock:
            captured = pending["capture"]
        if captured is None:
            raise HTTPException(status_code=400, detail="No captured face to enroll.")
        try:
            object_id = enrollment.enroll_capture(
                captured,
                name=payload.name,
                age=payload.age,
                gender=payload.gender,
            )
        except EnrollmentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        with pending_lock:
            if pending["capture"] is captured:
                pending["capture"] = None
        return {"ok": True, "id": object_id}

    @app.post("/api/capture/clear")
    def clear_pending():
        with pending_lock:
            pending["capture"] = None
        return {"ok": True}

    @app.get("/api/faces")
    def list_faces(limit: int = 100):
        try:
            return {"faces": enrollment.list_identities(limit=limit)}
        except StoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.post("/api/faces")
    def enroll_image(payload: EnrollImageBody):
        try:
            object_id = enrollment.enroll(
                name=payload.name,
                age=payload.age,
                gender=payload.gender,
                image_bytes=image_bytes_from_data_url(payload.image),
            )
        except EnrollmentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"ok": True, "id": object_id}

    @app.delete("/api/faces/{object_id}")
    def delete_face(object_id: str):
        try:
            enrollment.delete_identity(object_id)
        except EnrollmentError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"ok": True}

    return app
