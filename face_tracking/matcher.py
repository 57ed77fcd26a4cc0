from __future__ import annotations

from typing import Mapping, Optional

import numpy as np

from .config import MATCH_THRESHOLD, UNKNOWN_LABEL
from .gallery import GallerySnapshot
from .types import FaceDetection, MatchResult, RecognitionResult


def euclidean_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    query = np.asarray(query, dtype=np.float32).reshape(-1)
    if matrix.ndim != 2 or matrix.shape[1] != query.size:
        raise ValueError("Embedding shapes do not match")
    return np.linalg.norm(matrix - query[None, :], axis=1)


def match(
    query: np.ndarray,
    snapshot: GallerySnapshot,
    threshold: float = MATCH_THRESHOLD,
) -> MatchResult:
    """Return the nearest enrolled identity, or ``unknown`` past the threshold."""
    if len(snapshot) == 0:
        return MatchResult(label=UNKNOWN_LABEL, distance=0.0)

    distances = euclidean_distances(snapshot.embeddings, query)
    # argmin keeps the first minimum, so ties follow snapshot order.
    idx = int(np.argmin(distances))
    best = float(distances[idx])
    if best < threshold:
        return MatchResult(label=snapshot.identities[idx].name, distance=best)
    return MatchResult(label=UNKNOWN_LABEL, distance=best)


def dominant_expression(expressions: Optional[Mapping[str, float]]) -> Optional[str]:
    if not expressions:
        return None
    best_label = None
    best_score = float("-inf")
    for label, score in expressions.items():
        if score > best_score:
            best_label = label
            best_score = score
    return best_label


def rounded_age(age: Optional[float]) -> Optional[int]:
    if age is None:
        return None
    # Halves round up.
    return int(np.floor(float(age) + 0.5))


def recognize(
    detection: FaceDetection,
    snapshot: Optional[GallerySnapshot],
    threshold: float = MATCH_THRESHOLD,
) -> RecognitionResult:
    if snapshot is None:
        label, confidence = UNKNOWN_LABEL, 1.0
    else:
        result = match(detection.embedding, snapshot, threshold=threshold)
        label, confidence = result.label, result.confidence

    return RecognitionResult(
        label=label,
        confidence=confidence,
        age=rounded_age(detection.age),
        gender=detection.gender,
        expression=dominant_expression(detection.expressions),
    )
