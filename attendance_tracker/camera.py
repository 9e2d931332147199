import os
import threading
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    backend_map = {
        "auto": ("Auto", getattr(cv2, "CAP_ANY", None)),
        "v4l2": ("V4L2", getattr(cv2, "CAP_V4L2", None)),
        "dshow": ("DirectShow", getattr(cv2, "CAP_DSHOW", None)),
        "msmf": ("Media Foundation", getattr(cv2, "CAP_MSMF", None)),
    }
    raw = os.getenv("ATTENDANCE_CAMERA_BACKEND_ORDER", "").strip()
    if raw:
        order = [token.strip().lower() for token in raw.split(",") if token.strip()]
    elif os.name == "nt":
        order = ["dshow", "msmf", "auto"]
    else:
        order = ["auto", "v4l2"]

    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set = set()
    for key in order + ["auto"]:
        if key not in backend_map:
            continue
        name, backend = backend_map[key]
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> Tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []

    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # An opened device may still refuse to deliver frames (busy or denied).
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    raise CameraError(
        f"Unable to open webcam index {camera_index}. Tried backends: {', '.join(attempted) or 'default'}."
    )


class CameraStream:
    """Webcam handle whose reads are serialised, so overlapping ticks can share it."""

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    def open(self) -> None:
        with self._lock:
            if self.cap is not None:
                return
            cap, backend_name = open_camera_capture(self.camera_index)
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
            cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
            cv2.setUseOptimized(True)
            self.cap = cap
            self.backend_name = backend_name

    def read(self) -> np.ndarray:
        with self._lock:
            if self.cap is None:
                raise CameraError("Webcam stream is not initialized.")
            success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def close(self) -> None:
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
