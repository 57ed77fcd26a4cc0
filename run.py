import argparse
import sys
from pathlib import Path
from typing import List, Optional

import cv2
import uvicorn

from face_tracking.capture import PointerEvent, SurfaceGeometry
from face_tracking.config import CAMERA_INDEX, DB_PATH, MATCH_THRESHOLD, MODEL_DIR
from face_tracking.enrollment import EnrollmentService
from face_tracking.exceptions import FaceTrackingError
from face_tracking.gallery import GalleryCache
from face_tracking.logger import setup_logger
from face_tracking.store import ObjectStore
from face_tracking.types import PendingCapture


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Real-time Face Tracking and Recognition"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    web = subparsers.add_parser("web", help="Serve the live overlay stream and enrollment API")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")
    web.add_argument("--camera", type=int, default=None, help="Camera index override")

    live = subparsers.add_parser("live", help="Run tracking in an OpenCV window; click an unknown face to enroll")
    live.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    live.add_argument(
        "--threshold",
        type=float,
        default=MATCH_THRESHOLD,
        help="Euclidean distance below which a face counts as a match",
    )
    live.add_argument("--models", type=Path, default=MODEL_DIR, help="Directory holding the model weights")

    enroll = subparsers.add_parser("enroll", help="Enroll a face from a still image")
    enroll.add_argument("--image", type=Path, required=True, help="Image file containing one face")
    enroll.add_argument("--name", required=True, help="Display name")
    enroll.add_argument("--age", type=int, required=True, help="Age in years")
    enroll.add_argument("--gender", required=True, help="male, female or other")
    enroll.add_argument("--models", type=Path, default=MODEL_DIR, help="Directory holding the model weights")

    list_cmd = subparsers.add_parser("list-faces", help="List enrolled faces")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    delete = subparsers.add_parser("delete-face", help="Delete an enrolled face")
    delete.add_argument("--id", required=True, dest="object_id", help="Enrolled face id")

    return parser


def _prompt_enrollment(service: EnrollmentService, capture: PendingCapture) -> Optional[str]:
    print(
        f"Captured unknown face (age ~{capture.age if capture.age is not None else '?'}, "
        f"{capture.gender or '?'}, {capture.expression or '?'})."
    )
    name = input("Name (blank to skip): ").strip()
    if not name:
        return None
    age_raw = input(f"Age [{capture.age if capture.age is not None else ''}]: ").strip()
    gender_raw = input(f"Gender (male/female/other) [{capture.gender or ''}]: ").strip()
    return service.enroll_capture(
        capture,
        name=name,
        age=age_raw or None,
        gender=gender_raw or None,
    )


def run_live(camera_index: int, threshold: float, models: Path) -> None:
    from face_tracking.camera import CameraStream
    from face_tracking.face_engine import start_engine_async
    from face_tracking.pipeline import DetectionPipeline

    logger = setup_logger("live")
    store = ObjectStore(DB_PATH)
    gallery = GalleryCache(store)
    service = EnrollmentService(store=store, gallery=gallery)
    pipeline = DetectionPipeline(
        capability=start_engine_async(),
        gallery=gallery,
        camera_factory=lambda: CameraStream(camera_index),
        weights_location=models,
        threshold=threshold,
    )

    clicks: List[PointerEvent] = []
    window_name = "Face Tracking - click an unknown face to enroll, Q to quit"

    def on_mouse(event, x, y, flags, param) -> None:
        if event == cv2.EVENT_LBUTTONDOWN:
            clicks.append(PointerEvent(client_x=float(x), client_y=float(y)))

    pipeline.start()
    try:
        pipeline.wait_until_ready()
        cv2.namedWindow(window_name)
        cv2.setMouseCallback(window_name, on_mouse)

        while True:
            frame = pipeline.get_rendered_frame()
            if frame is not None:
                cv2.imshow(window_name, frame)

            while clicks and frame is not None:
                width = float(frame.shape[1])
                capture = pipeline.capture_at(clicks.pop(0), SurfaceGeometry(width=width, rendered_width=width))
                if capture is None:
                    continue
                try:
                    object_id = _prompt_enrollment(service, capture)
                except FaceTrackingError as exc:
                    logger.warning("Enrollment rejected: %s", exc)
                    print(f"Error: {exc}")
                    continue
                if object_id:
                    print(f"Enrolled as {object_id}.")
                clicks.clear()

            key = cv2.waitKey(15) & 0xFF
            if key == ord("q"):
                break
    finally:
        pipeline.stop()
        cv2.destroyAllWindows()


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "web":
            from face_tracking.web_app import create_web_app

            app = create_web_app(camera_index=args.camera)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "live":
            run_live(camera_index=args.camera, threshold=args.threshold, models=args.models)
            print("Tracking stopped.")
            return 0

        if args.command == "enroll":
            from face_tracking.face_engine import FaceEngine

            engine = FaceEngine()
            engine.load_models(args.models)
            try:
                service = EnrollmentService(store=ObjectStore(DB_PATH), detector=engine)
                object_id = service.enroll(
                    name=args.name,
                    age=args.age,
                    gender=args.gender,
                    image_bytes=args.image.read_bytes(),
                )
            finally:
                engine.close()
            print(f"Enrolled {args.name.strip()} as {object_id}.")
            return 0

        if args.command == "list-faces":
            service = EnrollmentService(store=ObjectStore(DB_PATH))
            faces = service.list_identities(limit=args.limit)
            if not faces:
                print("No faces enrolled.")
                return 0

            print(f"{'Id':<34} {'Name':<24} {'Age':>4}  {'Gender'}")
            print("-" * 72)
            for face in faces:
                print(f"{face['id']:<34} {face['name'] or '':<24} {str(face['age']):>4}  {face['gender'] or ''}")
            return 0

        if args.command == "delete-face":
            service = EnrollmentService(store=ObjectStore(DB_PATH))
            service.delete_identity(args.object_id)
            print(f"Deleted {args.object_id}.")
            return 0

    except FaceTrackingError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except OSError as exc:
        logger.error("File error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
