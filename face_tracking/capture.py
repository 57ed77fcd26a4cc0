from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import CAPTURE_PADDING, JPEG_QUALITY, UNKNOWN_LABEL
from .exceptions import FaceTrackingError
from .matcher import dominant_expression, rounded_age
from .types import PendingCapture, TrackedDetection


@dataclass(frozen=True)
class PointerEvent:
    client_x: float
    client_y: float


@dataclass(frozen=True)
class SurfaceGeometry:
    """Where the overlay surface sits on screen and how it is scaled.

    ``width`` is the native (frame) width of the surface, ``rendered_width``
    the width it is displayed at.
    """

    width: float
    rendered_width: float
    left: float = 0.0
    top: float = 0.0

    @property
    def scale(self) -> float:
        if self.rendered_width <= 0:
            return 1.0
        return self.width / self.rendered_width

    def to_frame(self, event: PointerEvent) -> Tuple[float, float]:
        scale = self.scale
        return (event.client_x - self.left) * scale, (event.client_y - self.top) * scale


def encode_jpeg(frame: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise FaceTrackingError("Failed to encode frame as JPEG.")
    return encoded.tobytes()


class CaptureBridge:
    """Turns a click on an unknown face into a ready-to-enroll capture."""

    def __init__(self, padding: float = CAPTURE_PADDING, jpeg_quality: int = JPEG_QUALITY):
        self.padding = padding
        self.jpeg_quality = jpeg_quality

    def hit_test(self, event: PointerEvent, surface: SurfaceGeometry, tracked: TrackedDetection) -> bool:
        x, y = surface.to_frame(event)
        return tracked.detection.box.expanded(self.padding).contains(x, y)

    def on_pointer_event(
        self,
        event: PointerEvent,
        surface: SurfaceGeometry,
        tracked: Optional[TrackedDetection],
        frame: Optional[np.ndarray],
    ) -> Optional[PendingCapture]:
        if tracked is None or tracked.label != UNKNOWN_LABEL or frame is None:
            return None
        if not self.hit_test(event, surface, tracked):
            return None

        detection = tracked.detection
        return PendingCapture(
            image_bytes=encode_jpeg(frame, self.jpeg_quality),
            embedding=np.array(detection.embedding, dtype=np.float32, copy=True),
            age=rounded_age(detection.age),
            gender=detection.gender,
            expression=dominant_expression(detection.expressions),
        )
