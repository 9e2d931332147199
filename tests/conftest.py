import os
import tempfile
import threading
import time
from typing import List, Optional

os.environ.setdefault("ATTENDANCE_LOG_DIR", tempfile.mkdtemp(prefix="attendance-logs-"))

import numpy as np
import pytest

from attendance_tracker.exceptions import CameraError, RosterError, StorageError
from attendance_tracker.face_engine import Detection
from attendance_tracker.ledger import AttendanceLedger
from attendance_tracker.roster import Roster, RosterEntry
from attendance_tracker.runtime import AttendanceRuntime
from attendance_tracker.storage import DocumentStore, MemoryStore


def vec(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float32)


class FakeEngine:
    def __init__(self, detections: Optional[List[Detection]] = None, delay: float = 0.0):
        self.detections = detections or []
        self.delay = delay
        self.error: Optional[Exception] = None
        self.reference_embedding = vec(1.0, 0.0, 0.0, 0.0)
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def detect_all(self, frame):
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return list(self.detections)
        finally:
            with self._lock:
                self.active -= 1

    def embed_reference(self, image):
        # Dark images stand in for reference photos without a face.
        if float(image.mean()) < 10.0:
            return None
        return self.reference_embedding.copy()


class FakeCamera:
    def __init__(self, fail_open: bool = False):
        self.fail_open = fail_open
        self.opened = 0
        self.closed = 0
        self.frame = np.full((240, 320, 3), 127, dtype=np.uint8)

    def open(self):
        self.opened += 1
        if self.fail_open:
            raise CameraError("Permission denied")

    def read(self):
        return self.frame.copy()

    def close(self):
        self.closed += 1


class FakeRosterSource:
    def __init__(self, names: Optional[List[str]] = None, fail_register: bool = False):
        self.names = list(names or [])
        self.fail_register = fail_register
        self.registered: List[tuple] = []

    def known_names(self):
        return list(self.names)

    def reference_images(self, name):
        return []

    def register(self, name, image):
        if self.fail_register:
            raise RosterError("Roster server unreachable")
        self.registered.append((name, image))
        if name not in self.names:
            self.names.append(name)


class FailingStore(DocumentStore):
    def __init__(self, fail_read: bool = False, fail_write: bool = True, fail_clear: bool = False):
        self.inner = MemoryStore()
        self.fail_read = fail_read
        self.fail_write = fail_write
        self.fail_clear = fail_clear

    def read(self, key, default=None):
        if self.fail_read:
            raise StorageError("storage unavailable")
        return self.inner.read(key, default)

    def write(self, key, value):
        if self.fail_write:
            raise StorageError("storage unavailable")
        self.inner.write(key, value)

    def clear(self, key):
        if self.fail_clear:
            raise StorageError("storage unavailable")
        self.inner.clear(key)


@pytest.fixture
def roster() -> Roster:
    return Roster.from_entries(
        [
            RosterEntry(name="Alice", embeddings=[vec(1.0, 0.0, 0.0, 0.0)]),
            RosterEntry(name="Bob", embeddings=[vec(0.0, 1.0, 0.0, 0.0), vec(0.0, 0.0, 1.0, 0.0)]),
        ]
    )


@pytest.fixture
def clock():
    ticks = iter(f"09:00:{second:02d}" for second in range(60))
    return lambda: next(ticks)


@pytest.fixture
def ledger(clock) -> AttendanceLedger:
    return AttendanceLedger(MemoryStore(), clock=clock)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def camera() -> FakeCamera:
    return FakeCamera()


@pytest.fixture
def roster_source() -> FakeRosterSource:
    return FakeRosterSource(names=["Alice", "Bob"])


@pytest.fixture
def make_runtime(engine, camera, roster_source, ledger, roster):
    def _make(**kwargs) -> AttendanceRuntime:
        options = {
            "engine": engine,
            "roster_source": roster_source,
            "ledger": ledger,
            "camera": camera,
            "debounce_seconds": 0.01,
            "poll_interval_ms": 20,
        }
        options.update(kwargs)
        runtime = AttendanceRuntime(**options)
        runtime.session.roster = roster
        return runtime

    return _make
