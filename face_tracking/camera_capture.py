from __future__ import annotations

import os
import time
from typing import List, Tuple

import cv2

from .exceptions import CameraError

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "v4l2": "V4L2",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "avfoundation": "AVFoundation",
}
_BACKEND_ATTRS = {
    "Auto": "CAP_ANY",
    "V4L2": "CAP_V4L2",
    "DirectShow": "CAP_DSHOW",
    "Media Foundation": "CAP_MSMF",
    "AVFoundation": "CAP_AVFOUNDATION",
}


def _default_backend_order() -> list[str]:
    if os.name == "nt":
        return ["DirectShow", "Media Foundation", "Auto"]
    return ["Auto", "V4L2", "AVFoundation"]


def preferred_backends() -> list[str]:
    raw = os.getenv("FACE_CAMERA_BACKEND_ORDER", "").strip()
    if not raw:
        return _default_backend_order()
    names: list[str] = []
    for token in raw.split(","):
        name = _BACKEND_ALIASES.get(token.strip().lower())
        if name and name not in names:
            names.append(name)
    return names or _default_backend_order()


def capture_backends() -> List[Tuple[str, int | None]]:
    candidates: List[Tuple[str, int | None]] = []
    seen: set[int | None] = set()
    for name in preferred_backends():
        backend = getattr(cv2, _BACKEND_ATTRS[name], None)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int, warmup_reads: int = 6) -> tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []

    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        if backend is None:
            cap = cv2.VideoCapture(camera_index)
        else:
            cap = cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # Opened devices can still refuse to deliver frames.
            for _ in range(max(1, warmup_reads)):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraError(
        f"Unable to open webcam index {camera_index}. Camera may be absent or access was denied. "
        f"Tried backends: {tried}."
    )
