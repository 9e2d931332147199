import os
from pathlib import Path

import torch


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


def _str_env(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def _path_env(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw.strip()).expanduser()


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = _path_env("ATTENDANCE_DATA_DIR", BASE_DIR / "data")
LOG_DIR = _path_env("ATTENDANCE_LOG_DIR", BASE_DIR / "logs")
LABELED_IMAGES_DIR = _path_env("ATTENDANCE_LABELED_IMAGES_DIR", BASE_DIR / "labeled_images")

# Webcam settings
CAMERA_INDEX = _int_env("ATTENDANCE_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("ATTENDANCE_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("ATTENDANCE_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("ATTENDANCE_FRAME_FPS", 30)
JPEG_QUALITY = _int_env("ATTENDANCE_JPEG_QUALITY", 78)

# Frame loop
POLL_INTERVAL_MS = _int_env("ATTENDANCE_POLL_INTERVAL_MS", 200)
MAX_INFLIGHT_TICKS = _int_env("ATTENDANCE_MAX_INFLIGHT_TICKS", 2)
ENROLLMENT_DEBOUNCE_SECONDS = _float_env("ATTENDANCE_ENROLLMENT_DEBOUNCE_SECONDS", 2.0)

# Detection settings
FACE_DETECTION_THRESHOLD = _float_env("ATTENDANCE_FACE_DETECTION_THRESHOLD", 0.5)
MIN_FACE_SIZE = _int_env("ATTENDANCE_MIN_FACE_SIZE", 48)

# Recognition settings. Embeddings are L2-normalized, so a Euclidean distance
# of 0.6 corresponds to a cosine similarity of 0.82.
MATCH_THRESHOLD = _float_env("ATTENDANCE_MATCH_THRESHOLD", 0.6)
UNKNOWN_LABEL = "unknown"

# Roster settings
MAX_REFERENCE_IMAGES = _int_env("ATTENDANCE_MAX_REFERENCE_IMAGES", 2)
ROSTER_URL = _str_env("ATTENDANCE_ROSTER_URL", "")
REQUEST_TIMEOUT_SECONDS = _float_env("ATTENDANCE_REQUEST_TIMEOUT_SECONDS", 10.0)

# Ledger storage
STORE_BACKEND = _str_env("ATTENDANCE_STORE_BACKEND", "json").lower()
STORE_KEY = _str_env("ATTENDANCE_STORE_KEY", "attendance")
JSON_STORE_PATH = DATA_DIR / "attendance_state.json"
SQLITE_STORE_PATH = DATA_DIR / "attendance_state.db"

# Web
AUTO_START_RUNTIME = _bool_env("ATTENDANCE_AUTO_START_RUNTIME", True)

# Runtime settings
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
