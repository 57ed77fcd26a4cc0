from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest

from face_tracking.config import EMBEDDING_DIM
from face_tracking.exceptions import CameraError
from face_tracking.gallery import GalleryCache
from face_tracking.store import ObjectStore
from face_tracking.types import BoundingBox, FaceDetection


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDetector:
    """Replays a scripted list of detections; exceptions in the script are raised."""

    def __init__(self, script: Optional[List] = None, default=None):
        self.script = list(script or [])
        self.default = default
        self.loaded_from: Optional[Path] = None
        self.calls = 0

    def load_models(self, weights_location: Path) -> None:
        self.loaded_from = Path(weights_location)

    def detect_one(self, frame: np.ndarray) -> Optional[FaceDetection]:
        self.calls += 1
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return item


class FakeCamera:
    def __init__(self, width: int = 640, height: int = 480, fail_reads: int = 0):
        self.width = width
        self.height = height
        self.fail_reads = fail_reads
        self.frame_size = None
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self.opened = True
        self.frame_size = (self.width, self.height)

    def read(self) -> np.ndarray:
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise CameraError("Failed to read frame from webcam.")
        return np.full((self.height, self.width, 3), 40, dtype=np.uint8)

    def close(self) -> None:
        self.closed = True


def unit_vector(index: int, scale: float = 1.0) -> np.ndarray:
    vector = np.zeros(EMBEDDING_DIM, dtype=np.float32)
    vector[index] = scale
    return vector


def make_detection(
    embedding: np.ndarray,
    box: BoundingBox = BoundingBox(200.0, 120.0, 160.0, 180.0),
    age: Optional[float] = 29.6,
    gender: Optional[str] = "female",
    expressions: Optional[dict] = None,
) -> FaceDetection:
    return FaceDetection(
        box=box,
        embedding=embedding,
        age=age,
        gender=gender,
        expressions=expressions if expressions is not None else {"neutral": 0.2, "happy": 0.7, "sad": 0.1},
        source_size=(640, 480),
    )


def face_record(name: str, embedding: np.ndarray) -> dict:
    return {
        "name": name,
        "age": 30,
        "gender": "female",
        "image": "data:image/jpeg;base64,",
        "descriptor": [float(v) for v in embedding],
        "createdAt": "2024-01-01T00:00:00",
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> ObjectStore:
    return ObjectStore(tmp_path / "faces.db")


@pytest.fixture
def gallery(store: ObjectStore, clock: FakeClock) -> GalleryCache:
    return GalleryCache(store, refresh_interval=1.0, clock=clock)
