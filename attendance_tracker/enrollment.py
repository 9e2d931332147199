import asyncio
import base64
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import cv2
import numpy as np

from .config import ENROLLMENT_DEBOUNCE_SECONDS, JPEG_QUALITY
from .exceptions import AttendanceError, EnrollmentError, EnrollmentInputError, EnrollmentSubmitError
from .face_engine import Box
from .logger import setup_logger


class EnrollmentState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    AWAITING_INPUT = "awaiting_input"
    SUBMITTING = "submitting"
    FAILED = "failed"


@dataclass
class PendingCapture:
    token: str
    box: Box
    image: bytes = b""
    preview_b64: str = ""
    created_at: float = field(default_factory=time.time)


def crop_box(frame: np.ndarray, box: Box) -> Optional[np.ndarray]:
    """Crop ``box`` out of ``frame``, clamped so the result is never empty.

    A box that has drifted partly or fully off the frame still yields the
    nearest in-bounds pixels.
    """
    if frame is None or frame.size == 0:
        return None
    h, w = frame.shape[:2]
    x, y, bw, bh = (int(v) for v in box)

    x1 = min(max(0, x), w - 1)
    y1 = min(max(0, y), h - 1)
    x2 = min(max(x1 + 1, x + bw), w)
    y2 = min(max(y1 + 1, y + bh), h)
    return frame[y1:y2, x1:x2].copy()


def encode_jpeg(image: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return b""
    return encoded.tobytes()


class EnrollmentWorkflow:
    """One-at-a-time enrollment of an unknown face.

    ``state`` doubles as the pending-enrollment flag: :meth:`begin` only
    succeeds from ``IDLE`` and flips the state before it returns, so two
    overlapping ticks cannot both start a capture.
    """

    def __init__(
        self,
        roster_source,
        frame_source: Callable[[], Optional[np.ndarray]],
        on_enrolled: Optional[Callable[[str], Awaitable[None]]] = None,
        notify: Optional[Callable[[str], None]] = None,
        debounce_seconds: float = ENROLLMENT_DEBOUNCE_SECONDS,
        jpeg_quality: int = JPEG_QUALITY,
    ):
        self.roster_source = roster_source
        self.frame_source = frame_source
        self.on_enrolled = on_enrolled
        self.notify = notify or (lambda message: None)
        self.debounce_seconds = max(0.0, float(debounce_seconds))
        self.jpeg_quality = int(np.clip(jpeg_quality, 45, 95))
        self.logger = setup_logger(self.__class__.__name__)

        self.state = EnrollmentState.IDLE
        self.pending: Optional[PendingCapture] = None
        self.last_error: Optional[str] = None
        self._capture_task: Optional[asyncio.Task] = None

    @property
    def is_idle(self) -> bool:
        return self.state is EnrollmentState.IDLE

    def begin(self, box: Box) -> bool:
        if self.state is not EnrollmentState.IDLE:
            return False

        self.state = EnrollmentState.CAPTURING
        pending = PendingCapture(token=uuid4().hex, box=tuple(int(v) for v in box))
        self.pending = pending
        self._capture_task = asyncio.get_running_loop().create_task(self._capture_after_debounce(pending))
        self.logger.info("Unknown face seen; capturing in %.1fs", self.debounce_seconds)
        return True

    async def _capture_after_debounce(self, pending: PendingCapture) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self.pending is not pending or self.state is not EnrollmentState.CAPTURING:
            return

        try:
            frame = self.frame_source()
            crop = crop_box(frame, pending.box) if frame is not None else None
            image = encode_jpeg(crop, self.jpeg_quality) if crop is not None else b""
        except Exception:
            self.logger.exception("Unknown face capture failed")
            image = b""

        if not image:
            self.logger.warning("No frame available to capture the unknown face; enrollment dropped.")
            self._reset()
            return

        pending.image = image
        pending.preview_b64 = base64.b64encode(image).decode("utf-8")
        self.state = EnrollmentState.AWAITING_INPUT
        self.notify("Unknown face captured. Enter a name to enroll it.")

    async def submit(self, name: str) -> str:
        if self.state is not EnrollmentState.AWAITING_INPUT or self.pending is None:
            raise EnrollmentError("No captured face is waiting for a name.")

        name = (name or "").strip()
        if not name:
            raise EnrollmentInputError("Please enter a name.")

        pending = self.pending
        self.state = EnrollmentState.SUBMITTING
        try:
            await asyncio.to_thread(self.roster_source.register, name, pending.image)
        except Exception as exc:
            self.state = EnrollmentState.FAILED
            self.last_error = f"Failed to register face: {exc}"
            self.logger.warning("Enrollment of %s failed: %s", name, exc)
            self.notify("Failed to register face.")
            self._reset()
            raise EnrollmentSubmitError(self.last_error) from exc

        self.last_error = None
        self.logger.info("Face registered for %s", name)
        self.notify(f"Face registered for {name}.")
        try:
            if self.on_enrolled is not None:
                await self.on_enrolled(name)
        except AttendanceError as exc:
            self.logger.warning("Session reload after enrolling %s failed: %s", name, exc)
            self.notify(f"Reload after enrollment failed: {exc}")
        finally:
            # Stay out of IDLE until the roster includes the new face.
            self._reset()
        return name

    def cancel(self) -> bool:
        if self.state not in (EnrollmentState.CAPTURING, EnrollmentState.AWAITING_INPUT):
            return False
        self._reset()
        self.logger.info("Enrollment cancelled by operator")
        return True

    def close(self) -> None:
        self._reset()

    def snapshot(self) -> dict:
        pending = None
        if self.pending is not None:
            pending = {
                "token": self.pending.token,
                "box": list(self.pending.box),
                "preview_b64": self.pending.preview_b64,
                "created_at": self.pending.created_at,
            }
        return {"state": self.state.value, "pending": pending, "error": self.last_error}

    def _reset(self) -> None:
        task = self._capture_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._capture_task = None
        self.pending = None
        self.state = EnrollmentState.IDLE
