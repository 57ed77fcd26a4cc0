from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import numpy as np

from .config import UNKNOWN_LABEL


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def scaled(self, sx: float, sy: float) -> "BoundingBox":
        return BoundingBox(self.x * sx, self.y * sy, self.width * sx, self.height * sy)

    def expanded(self, padding: float) -> "BoundingBox":
        return BoundingBox(
            self.x - padding,
            self.y - padding,
            self.width + padding * 2,
            self.height + padding * 2,
        )

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.right and self.y <= py <= self.bottom

    def as_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class FaceDetection:
    """Single face returned by the detection capability."""

    box: BoundingBox
    embedding: np.ndarray
    score: float = 1.0
    age: Optional[float] = None
    gender: Optional[str] = None
    expressions: Dict[str, float] = field(default_factory=dict)
    landmarks: Optional[np.ndarray] = None
    # Width and height of the image the box was computed on.
    source_size: Optional[Tuple[int, int]] = None

    def resized_to(self, width: int, height: int) -> "FaceDetection":
        if self.source_size is None or self.source_size == (width, height):
            return self
        src_w, src_h = self.source_size
        sx = width / float(src_w)
        sy = height / float(src_h)
        landmarks = None
        if self.landmarks is not None:
            landmarks = self.landmarks * np.array([sx, sy], dtype=np.float32)
        return FaceDetection(
            box=self.box.scaled(sx, sy),
            embedding=self.embedding,
            score=self.score,
            age=self.age,
            gender=self.gender,
            expressions=dict(self.expressions),
            landmarks=landmarks,
            source_size=(width, height),
        )


class FaceDetector(Protocol):
    def load_models(self, weights_location: Path) -> None:
        ...

    def detect_one(self, frame: np.ndarray) -> Optional[FaceDetection]:
        ...


@dataclass(frozen=True)
class MatchResult:
    label: str
    distance: float

    @property
    def confidence(self) -> float:
        return float(np.clip(1.0 - self.distance, 0.0, 1.0))

    @property
    def is_known(self) -> bool:
        return self.label != UNKNOWN_LABEL


@dataclass(frozen=True)
class RecognitionResult:
    label: str
    confidence: float
    age: Optional[int] = None
    gender: Optional[str] = None
    expression: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "confidence": round(self.confidence, 4),
            "age": self.age,
            "gender": self.gender,
            "expression": self.expression,
        }


@dataclass
class PendingCapture:
    image_bytes: bytes
    embedding: np.ndarray
    age: Optional[int]
    gender: Optional[str]
    expression: Optional[str]


@dataclass(frozen=True)
class TrackedDetection:
    """Last raw detection of a tick together with the label it was given."""

    detection: FaceDetection
    label: str


@dataclass(frozen=True)
class OverlayInstructions:
    box: BoundingBox
    color: Tuple[int, int, int]
    main_label: str
    sub_label: str
    label_origin: Tuple[int, int]
    label_size: Tuple[int, int]


@dataclass
class FrameOutcome:
    result: Optional[RecognitionResult]
    overlay: Optional[OverlayInstructions]
    detection: Optional[FaceDetection] = None
    label: str = UNKNOWN_LABEL


@dataclass
class StoredObject:
    object_id: str
    kind: str
    data: Dict[str, Any]
    created_at: str
