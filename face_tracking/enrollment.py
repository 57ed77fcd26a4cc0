import base64
import binascii
from datetime import datetime
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from .config import EMBEDDING_DIM, GALLERY_KIND, GENDERS, MAX_AGE, MAX_IMAGE_BYTES, MIN_AGE
from .exceptions import EnrollmentError, FaceEngineError
from .gallery import GalleryCache
from .logger import setup_logger
from .store import ObjectStore
from .types import FaceDetector, PendingCapture


def image_data_url(image_bytes: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"


def image_bytes_from_data_url(data_url: str) -> bytes:
    header, sep, payload = (data_url or "").partition(",")
    if not sep:
        payload = header
    elif not header.startswith("data:image/") or ";base64" not in header:
        raise EnrollmentError("Image must be a base64 encoded data URL.")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EnrollmentError("Image data is not valid base64.") from exc


def decode_image(image_bytes: bytes) -> np.ndarray:
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise EnrollmentError("Image could not be decoded.")
    return image


class EnrollmentService:
    """Adds, lists and removes enrolled identities.

    Every change to the stored identities invalidates the gallery cache so the
    next match sees it.
    """

    def __init__(
        self,
        store: ObjectStore,
        gallery: Optional[GalleryCache] = None,
        detector: Optional[FaceDetector] = None,
        kind: str = GALLERY_KIND,
    ):
        self.store = store
        self.gallery = gallery
        self.detector = detector
        self.kind = kind
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(
        self,
        name: str,
        age: Any,
        gender: Optional[str],
        image_bytes: bytes,
        embedding: Optional[np.ndarray] = None,
    ) -> str:
        clean_name = self._validate_name(name)
        clean_age = self._validate_age(age)
        clean_gender = self._validate_gender(gender)
        if not image_bytes:
            raise EnrollmentError("An image is required.")
        if len(image_bytes) > MAX_IMAGE_BYTES:
            raise EnrollmentError(f"Image exceeds {MAX_IMAGE_BYTES // (1024 * 1024)} MB.")

        if embedding is None:
            embedding = self._describe(image_bytes)
        descriptor = np.asarray(embedding, dtype=np.float64).reshape(-1)
        if descriptor.size != EMBEDDING_DIM or not np.all(np.isfinite(descriptor)):
            raise EnrollmentError(f"Face descriptor must hold {EMBEDDING_DIM} finite values.")

        record = {
            "name": clean_name,
            "age": clean_age,
            "gender": clean_gender,
            "image": image_data_url(image_bytes),
            "descriptor": [float(value) for value in descriptor],
            "createdAt": datetime.now().isoformat(timespec="seconds"),
        }
        object_id = self.store.create(self.kind, record)
        self._invalidate()
        self.logger.info("Enrolled %s as %s", clean_name, object_id)
        return object_id

    def enroll_capture(
        self,
        capture: PendingCapture,
        name: str,
        age: Any = None,
        gender: Optional[str] = None,
    ) -> str:
        return self.enroll(
            name=name,
            age=capture.age if age is None else age,
            gender=capture.gender if gender is None else gender,
            image_bytes=capture.image_bytes,
            embedding=capture.embedding,
        )

    def list_identities(self, limit: int = 100) -> List[Dict[str, Any]]:
        identities = []
        for obj in self.store.list(self.kind, limit=limit, newest_first=True):
            data = obj.data
            identities.append(
                {
                    "id": obj.object_id,
                    "name": data.get("name"),
                    "age": data.get("age"),
                    "gender": data.get("gender"),
                    "image": data.get("image"),
                    "createdAt": data.get("createdAt", obj.created_at),
                }
            )
        return identities

    def delete_identity(self, object_id: str) -> None:
        if not self.store.delete(self.kind, object_id):
            raise EnrollmentError(f"No enrolled face with id {object_id}.")
        self._invalidate()
        self.logger.info("Deleted enrolled face %s", object_id)

    def _describe(self, image_bytes: bytes) -> np.ndarray:
        if self.detector is None:
            raise EnrollmentError("Face detection is not available for image enrollment.")
        image = decode_image(image_bytes)
        try:
            detection = self.detector.detect_one(image)
        except FaceEngineError as exc:
            raise EnrollmentError(f"Face analysis failed: {exc}") from exc
        if detection is None:
            raise EnrollmentError("No face detected in the image")
        return detection.embedding

    def _invalidate(self) -> None:
        if self.gallery is not None:
            self.gallery.invalidate()

    @staticmethod
    def _validate_name(name: Optional[str]) -> str:
        clean = (name or "").strip()
        if not clean:
            raise EnrollmentError("Name cannot be empty.")
        return clean

    @staticmethod
    def _validate_age(age: Any) -> int:
        if isinstance(age, bool):
            raise EnrollmentError("Age must be a whole number.")
        try:
            value = int(age)
        except (TypeError, ValueError) as exc:
            raise EnrollmentError("Age must be a whole number.") from exc
        if isinstance(age, float) and value != age:
            raise EnrollmentError("Age must be a whole number.")
        if not MIN_AGE <= value <= MAX_AGE:
            raise EnrollmentError(f"Age must be between {MIN_AGE} and {MAX_AGE}.")
        return value

    @staticmethod
    def _validate_gender(gender: Optional[str]) -> str:
        clean = (gender or "").strip().lower()
        if clean not in GENDERS:
            raise EnrollmentError(f"Gender must be one of: {', '.join(GENDERS)}.")
        return clean
