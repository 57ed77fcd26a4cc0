from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import torch

from .config import DETECTION_MIN_CONFIDENCE, EMBEDDING_DIM, FACE_INFERENCE_SCALE
from .exceptions import FaceEngineError, ModelLoadError
from .logger import setup_logger
from .types import BoundingBox, FaceDetection

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None

try:
    import face_recognition
except Exception:  # pragma: no cover - runtime dependency guard
    face_recognition = None

# Optional attribute heads, TorchScript, fed a normalized 1x3x224x224 RGB face crop.
# age_gender.pt returns [age, male_logit, female_logit]; expression.pt returns
# seven logits in EXPRESSIONS order.
EXPRESSIONS = ("neutral", "happy", "sad", "angry", "fearful", "disgusted", "surprised")
GENDERS = ("male", "female")
AGE_GENDER_WEIGHTS = "age_gender.pt"
EXPRESSION_WEIGHTS = "expression.pt"
HEAD_INPUT_SIZE = 224


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


def expressions_from_logits(logits: np.ndarray) -> Dict[str, float]:
    probs = softmax(np.asarray(logits, dtype=np.float64).reshape(-1))
    if probs.size != len(EXPRESSIONS):
        raise FaceEngineError(f"Expression head returned {probs.size} scores, expected {len(EXPRESSIONS)}.")
    return {label: float(score) for label, score in zip(EXPRESSIONS, probs)}


def age_gender_from_output(output: np.ndarray) -> Tuple[float, str]:
    values = np.asarray(output, dtype=np.float64).reshape(-1)
    if values.size != 3:
        raise FaceEngineError(f"Age/gender head returned {values.size} values, expected 3.")
    age = float(max(0.0, values[0]))
    gender = GENDERS[int(np.argmax(values[1:]))]
    return age, gender


class FaceEngine:
    """Single-face detector producing a box, 128-d descriptor and attributes.

    MediaPipe finds the face and its keypoints, ``face_recognition`` computes the
    descriptor, and two optional TorchScript heads estimate age/gender and
    expression. A head whose weights are absent is skipped and its attributes
    are reported as unknown. Nothing is usable until ``load_models`` succeeds.
    """

    def __init__(
        self,
        device: Optional[str] = None,
        min_confidence: float = DETECTION_MIN_CONFIDENCE,
        inference_scale: float = FACE_INFERENCE_SCALE,
        min_face_size: int = 24,
    ):
        self.device = torch.device(device or ("cuda" if torch.cuda.is_available() else "cpu"))
        self.min_confidence = min_confidence
        self.inference_scale = float(np.clip(inference_scale, 0.25, 1.0))
        self.min_face_size = min_face_size
        self.logger = setup_logger(self.__class__.__name__)

        self.detector = None
        self.age_gender_head = None
        self.expression_head = None
        self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)

    @property
    def loaded(self) -> bool:
        return self.detector is not None

    def load_models(self, weights_location: Path) -> None:
        if mp is None:
            raise ModelLoadError("mediapipe is required. Install the project dependencies.")
        if face_recognition is None:
            raise ModelLoadError("face_recognition is required. Install the project dependencies.")

        weights_dir = Path(weights_location)
        age_gender_path = weights_dir / AGE_GENDER_WEIGHTS
        expression_path = weights_dir / EXPRESSION_WEIGHTS
        try:
            detector = mp.solutions.face_detection.FaceDetection(
                model_selection=0,
                min_detection_confidence=self.min_confidence,
            )
            age_gender_head = self._load_head(age_gender_path)
            expression_head = self._load_head(expression_path)
        except Exception as exc:
            raise ModelLoadError(f"Failed to load face models from {weights_dir}: {exc}") from exc

        self.detector = detector
        self.age_gender_head = age_gender_head
        self.expression_head = expression_head

    def close(self) -> None:
        if self.detector is not None:
            self.detector.close()
            self.detector = None

    def detect_one(self, frame: np.ndarray) -> Optional[FaceDetection]:
        if self.detector is None:
            raise FaceEngineError("Face models are not loaded.")

        small = self._resize_for_inference(frame)
        rgb = cv2.cvtColor(small, cv2.COLOR_BGR2RGB)
        try:
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return None

        best = max(result.detections, key=lambda det: float(det.score[0]) if det.score else 0.0)
        score = float(best.score[0]) if best.score else 0.0
        if score < self.min_confidence:
            return None

        h, w = rgb.shape[:2]
        rel = best.location_data.relative_bounding_box
        x1 = max(0, int(rel.xmin * w))
        y1 = max(0, int(rel.ymin * h))
        x2 = min(w, x1 + int(rel.width * w))
        y2 = min(h, y1 + int(rel.height * h))
        if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
            return None

        location = (y1, x2, y2, x1)
        try:
            encodings = face_recognition.face_encodings(rgb, known_face_locations=[location])
        except Exception as exc:
            raise FaceEngineError(f"Descriptor extraction failed: {exc}") from exc
        if not encodings:
            return None

        embedding = np.asarray(encodings[0], dtype=np.float32)
        if embedding.size != EMBEDDING_DIM:
            raise FaceEngineError(f"Unexpected descriptor size {embedding.size}.")

        # Keypoints come with the detection, in relative coordinates.
        keypoints = best.location_data.relative_keypoints
        landmarks = None
        if keypoints:
            landmarks = np.asarray([(kp.x * w, kp.y * h) for kp in keypoints], dtype=np.float32)

        age, gender, expressions = self._estimate_attributes(rgb[y1:y2, x1:x2])
        return FaceDetection(
            box=BoundingBox(float(x1), float(y1), float(x2 - x1), float(y2 - y1)),
            embedding=embedding,
            score=score,
            age=age,
            gender=gender,
            expressions=expressions,
            landmarks=landmarks,
            source_size=(w, h),
        )

    def _load_head(self, path: Path):
        if not path.is_file():
            self.logger.warning("Attribute head %s not found; its attributes will be reported as unknown", path)
            return None
        return torch.jit.load(str(path), map_location=self.device).eval()

    def _estimate_attributes(
        self, crop: np.ndarray
    ) -> Tuple[Optional[float], Optional[str], Dict[str, float]]:
        age, gender, expressions = None, None, {}
        if self.age_gender_head is None and self.expression_head is None:
            return age, gender, expressions

        tensor = self._to_tensor(crop)
        try:
            with torch.inference_mode():
                if self.age_gender_head is not None:
                    age, gender = age_gender_from_output(self.age_gender_head(tensor).detach().cpu().numpy())
                if self.expression_head is not None:
                    expressions = expressions_from_logits(self.expression_head(tensor).detach().cpu().numpy())
        except FaceEngineError:
            raise
        except Exception as exc:
            raise FaceEngineError(f"Attribute estimation failed: {exc}") from exc
        return age, gender, expressions

    def _to_tensor(self, crop: np.ndarray) -> torch.Tensor:
        resized = cv2.resize(crop, (HEAD_INPUT_SIZE, HEAD_INPUT_SIZE), interpolation=cv2.INTER_AREA)
        tensor = torch.from_numpy(resized).permute(2, 0, 1).float().unsqueeze(0) / 255.0
        tensor = tensor.to(self.device)
        return (tensor - self.mean) / self.std

    def _resize_for_inference(self, frame: np.ndarray) -> np.ndarray:
        if self.inference_scale >= 0.999:
            return frame
        h, w = frame.shape[:2]
        size = (max(1, int(w * self.inference_scale)), max(1, int(h * self.inference_scale)))
        return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)


def start_engine_async(**kwargs) -> "Future[FaceEngine]":
    """Construct the engine off the caller's thread; the future is its readiness signal."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="face-engine-init")
    future = executor.submit(FaceEngine, **kwargs)
    executor.shutdown(wait=False)
    return future
