import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Tuple

import cv2
import numpy as np

from .camera import CameraStream
from .config import (
    CAMERA_INDEX,
    ENROLLMENT_DEBOUNCE_SECONDS,
    JPEG_QUALITY,
    MATCH_THRESHOLD,
    MAX_INFLIGHT_TICKS,
    POLL_INTERVAL_MS,
)
from .enrollment import EnrollmentWorkflow, encode_jpeg
from .exceptions import AttendanceError, CameraError
from .face_engine import Box, Detection, FaceEngine
from .ledger import AttendanceLedger, report_filename
from .logger import setup_logger
from .matcher import MatchResult, match
from .roster import Roster, load_roster


@dataclass
class SessionState:
    roster: Roster
    ledger: AttendanceLedger
    enrollment: EnrollmentWorkflow


@dataclass
class TickOutcome:
    detections: int = 0
    matches: List[MatchResult] = field(default_factory=list)
    marked: List[str] = field(default_factory=list)
    skipped: bool = False
    enrollment_started: bool = False


class AttendanceRuntime:
    """Polls the camera, matches faces against the roster and drives enrollment.

    Ticks are started on a fixed interval and are allowed to overlap, up to
    ``max_inflight`` at a time; the poll loop skips an interval while that many
    are still running. A tick whose frame is older than the last published one
    is dropped. Blocking work (camera reads, detection, roster loading) runs in
    worker threads; session state is only touched from the event loop.
    """

    def __init__(
        self,
        engine: FaceEngine,
        roster_source,
        ledger: AttendanceLedger,
        camera: Optional[CameraStream] = None,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        threshold: float = MATCH_THRESHOLD,
        debounce_seconds: float = ENROLLMENT_DEBOUNCE_SECONDS,
        jpeg_quality: int = JPEG_QUALITY,
        max_inflight: int = MAX_INFLIGHT_TICKS,
    ):
        self.engine = engine
        self.roster_source = roster_source
        self.camera = camera if camera is not None else CameraStream(CAMERA_INDEX)
        self.poll_interval = max(10, int(poll_interval_ms)) / 1000.0
        self.threshold = threshold
        self.max_inflight = max(1, int(max_inflight))
        self.jpeg_quality = int(np.clip(jpeg_quality, 45, 95))
        self.logger = setup_logger(self.__class__.__name__)

        self.status = "stopped"
        self.fatal_error: Optional[str] = None
        self.last_error: Optional[str] = None
        self.announcements: Deque[str] = deque(maxlen=20)
        self.tick_count = 0

        self._latest_frame: Optional[np.ndarray] = None
        self._last_jpeg: Optional[bytes] = None
        self._last_frame_ts = 0.0
        self._frame_seq = 0
        self._published_seq = 0
        self.skipped_ticks = 0
        self.stale_ticks = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

        enrollment = EnrollmentWorkflow(
            roster_source=roster_source,
            frame_source=self.latest_frame,
            on_enrolled=self._on_enrolled,
            notify=self.notify,
            debounce_seconds=debounce_seconds,
            jpeg_quality=self.jpeg_quality,
        )
        self.session = SessionState(roster=Roster(), ledger=ledger, enrollment=enrollment)

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        if self.is_running:
            return

        self.status = "loading"
        try:
            await self.reload_roster()
        except AttendanceError as exc:
            self.last_error = f"Roster loading failed: {exc}"
            self.logger.error(self.last_error)
            self.notify(self.last_error)
        self.session.ledger.reload()
        await self.start_camera()

    async def start_camera(self) -> bool:
        """Open the camera and start polling. A failure is reported once and not retried."""
        if self.is_running:
            return True

        try:
            await asyncio.to_thread(self.camera.open)
        except CameraError as exc:
            self.status = "camera_unavailable"
            self.fatal_error = str(exc)
            self.logger.error("Camera unavailable: %s", exc)
            self.notify(f"Camera unavailable: {exc}")
            return False

        self.fatal_error = None
        self.status = "running"
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
        self.logger.info("Attendance runtime started (poll every %.0f ms)", self.poll_interval * 1000)
        return True

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        pending = list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self.session.enrollment.close()
        await asyncio.to_thread(self.camera.close)
        self.status = "stopped"
        self.logger.info("Attendance runtime stopped")

    async def _poll_loop(self) -> None:
        while True:
            if len(self._inflight) < self.max_inflight:
                task = asyncio.get_running_loop().create_task(self.tick())
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            else:
                self.skipped_ticks += 1
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> Optional[TickOutcome]:
        """Run one polling tick. Never raises; failures abort only this tick."""
        try:
            frame = await asyncio.to_thread(self.camera.read)
            self._frame_seq += 1
            seq = self._frame_seq
            detections = await asyncio.to_thread(self.engine.detect_all, frame)
        except AttendanceError as exc:
            self._report_tick_error(exc)
            return None
        except Exception as exc:
            self.logger.exception("Frame capture failed")
            self.last_error = str(exc)
            return None

        if seq < self._published_seq:
            self.stale_ticks += 1
            return None
        self._published_seq = seq

        try:
            outcome = self.process_frame(frame, detections)
        except Exception as exc:
            self.logger.exception("Frame processing failed")
            self.last_error = str(exc)
            return None

        self.tick_count += 1
        return outcome

    def process_frame(self, frame: np.ndarray, detections: List[Detection]) -> TickOutcome:
        self._latest_frame = frame
        overlay = frame.copy()
        outcome = TickOutcome(detections=len(detections))
        roster = self.session.roster

        if roster.is_empty:
            outcome.skipped = True
            self._publish(overlay)
            return outcome

        someone_matched = False
        for detection in detections:
            result = match(detection.embedding, roster, self.threshold)
            outcome.matches.append(result)
            self._draw_face_box(overlay, detection.box, result)

            if result.is_known:
                someone_matched = True
                marked = self.session.ledger.mark_present(result.name)
                if marked.inserted:
                    outcome.marked.append(result.name)
                    self.notify(f"{result.name} marked present at {marked.record.time}")

        # A recognised face anywhere in the frame takes priority over enrollment.
        enrollment = self.session.enrollment
        if not someone_matched and detections and enrollment.is_idle:
            target = max(detections, key=lambda det: det.area)
            outcome.enrollment_started = enrollment.begin(target.box)

        self._publish(overlay)
        return outcome

    def latest_frame(self) -> Optional[np.ndarray]:
        return self._latest_frame

    def get_jpeg_frame(self) -> Optional[bytes]:
        return self._last_jpeg

    def notify(self, message: str) -> None:
        self.announcements.append(message)

    async def reload_roster(self) -> Roster:
        roster = await asyncio.to_thread(load_roster, self.roster_source, self.engine)
        self.session.roster = roster
        return roster

    async def reinitialize(self) -> None:
        await self.reload_roster()
        self.session.ledger.reload()
        self.logger.info("Session re-initialised with %d known names", len(self.session.roster.names))

    async def _on_enrolled(self, name: str) -> None:
        await self.reinitialize()

    def clear_attendance(self) -> None:
        self.session.ledger.clear()
        self.notify("Attendance cleared.")

    def absentees(self) -> List[str]:
        return self.session.ledger.list_absent(self.session.roster.names)

    def report(self) -> Tuple[str, str]:
        text = self.session.ledger.export_report(self.session.roster.names)
        return report_filename(), text

    async def submit_enrollment(self, name: str) -> str:
        return await self.session.enrollment.submit(name)

    def cancel_enrollment(self) -> bool:
        return self.session.enrollment.cancel()

    def get_state(self) -> dict:
        now = time.time()
        announcements = list(self.announcements)
        self.announcements.clear()

        frame_age_ms: Optional[int] = None
        if self._last_frame_ts > 0.0:
            frame_age_ms = int(max(0.0, now - self._last_frame_ts) * 1000)

        ledger = self.session.ledger
        return {
            "status": self.status,
            "known_names": list(self.session.roster.names),
            "enrolled_count": len(self.session.roster.entries),
            "present": [record.to_dict() for record in ledger.cached_records()],
            "enrollment": self.session.enrollment.snapshot(),
            "announcements": announcements,
            "tick_count": self.tick_count,
            "inflight_ticks": len(self._inflight),
            "skipped_ticks": self.skipped_ticks,
            "stale_ticks": self.stale_ticks,
            "frame_age_ms": frame_age_ms,
            "error": self.fatal_error or self.last_error,
            "storage_error": ledger.last_error,
        }

    def _publish(self, overlay: np.ndarray) -> None:
        encoded = encode_jpeg(overlay, self.jpeg_quality)
        if encoded:
            self._last_jpeg = encoded
        self._last_frame_ts = time.time()

    def _report_tick_error(self, exc: AttendanceError) -> None:
        message = str(exc)
        if message != self.last_error:
            self.logger.warning("Tick aborted: %s", message)
        self.last_error = message

    @staticmethod
    def _draw_face_box(frame: np.ndarray, box: Box, result: MatchResult) -> None:
        x, y, w, h = (int(v) for v in box)
        color = (30, 180, 30) if result.is_known else (20, 20, 220)
        cv2.rectangle(frame, (x, y), (x + w, y + h), color, 2, cv2.LINE_AA)
        cv2.putText(
            frame,
            f"{result.label} ({result.distance:.2f})" if result.is_known else result.label,
            (x, max(20, y - 10)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            color,
            2,
            cv2.LINE_AA,
        )
