import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip())


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("FACE_DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("FACE_LOG_DIR", BASE_DIR / "logs")
DB_PATH = _path_env("FACE_DB_PATH", DATA_DIR / "faces.db")
MODEL_DIR = _path_env("FACE_MODEL_DIR", BASE_DIR / "models")

# Webcam settings
CAMERA_INDEX = _int_env("FACE_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("FACE_FRAME_WIDTH", 640)
FRAME_HEIGHT = _int_env("FACE_FRAME_HEIGHT", 480)
FRAME_FPS = _int_env("FACE_FRAME_FPS", 30)
TARGET_LOOP_FPS = _int_env("FACE_TARGET_LOOP_FPS", 60)
JPEG_QUALITY = _int_env("FACE_JPEG_QUALITY", 85)
MIRROR_PREVIEW = _bool_env("FACE_MIRROR_PREVIEW", False)

# Detector settings
DETECTION_MIN_CONFIDENCE = _float_env("FACE_DETECTION_MIN_CONFIDENCE", 0.5)
FACE_INFERENCE_SCALE = _float_env("FACE_INFERENCE_SCALE", 1.0)
EMBEDDING_DIM = 128
CAPABILITY_WAIT_SECONDS = _float_env("FACE_CAPABILITY_WAIT_SECONDS", 60.0)
CAPABILITY_POLL_SECONDS = 0.1

# Box smoothing
SMOOTHER_MIN_UPDATE_INTERVAL = 1.0 / 30.0
SMOOTHER_MAX_MISSES = _int_env("FACE_SMOOTHER_MAX_MISSES", 5)
SMOOTHER_BLEND = _float_env("FACE_SMOOTHER_BLEND", 0.3)
SMOOTHER_HISTORY = 5

# Gallery and matching
GALLERY_KIND = "face"
GALLERY_REFRESH_SECONDS = _float_env("FACE_GALLERY_REFRESH_SECONDS", 1.0)
GALLERY_FETCH_LIMIT = _int_env("FACE_GALLERY_FETCH_LIMIT", 100)
MATCH_THRESHOLD = _float_env("FACE_MATCH_THRESHOLD", 0.6)
UNKNOWN_LABEL = "unknown"

# Overlay and capture
OVERLAY_PADDING = 15
CAPTURE_PADDING = 10

# Enrollment settings
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MIN_AGE = 0
MAX_AGE = 120
GENDERS = ("male", "female", "other")
