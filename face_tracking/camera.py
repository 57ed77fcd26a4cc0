from typing import Optional, Tuple

import cv2
import numpy as np

from .camera_capture import open_camera_capture
from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH, MIRROR_PREVIEW
from .exceptions import CameraError


class CameraStream:
    def __init__(
        self,
        camera_index: int = 0,
        width: int = FRAME_WIDTH,
        height: int = FRAME_HEIGHT,
        fps: int = FRAME_FPS,
        mirror: bool = MIRROR_PREVIEW,
    ):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.fps = fps
        self.mirror = mirror
        self.cap = None
        self.backend_name: Optional[str] = None
        self.frame_size: Optional[Tuple[int, int]] = None

    def open(self) -> None:
        self.cap, self.backend_name = open_camera_capture(self.camera_index)

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)

        cv2.setUseOptimized(True)

        # Frame dimensions are only trustworthy once a frame has arrived.
        frame = self.read()
        h, w = frame.shape[:2]
        self.frame_size = (int(w), int(h))

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Webcam stream is not initialized.")

        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        if self.mirror:
            frame = cv2.flip(frame, 1)
        return frame

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
