from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Optional

from .config import STORE_KEY
from .exceptions import StorageError
from .logger import setup_logger
from .storage import DocumentStore


@dataclass(frozen=True)
class AttendanceRecord:
    name: str
    time: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "time": self.time}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["AttendanceRecord"]:
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            return None
        return cls(name=name, time=str(raw.get("time", "")))


@dataclass(frozen=True)
class MarkResult:
    name: str
    inserted: bool
    record: Optional[AttendanceRecord] = None


def wall_clock_time() -> str:
    return datetime.now().strftime("%H:%M:%S")


def report_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"Attendance-{today.month}-{today.day}-{today.year}.txt"


class AttendanceLedger:
    """Who has been marked present this session, and when.

    The document store is the source of truth. ``_names`` mirrors it so that
    ``mark_present`` can run on every tick without touching storage for people
    who are already recorded. Storage failures while marking are logged and
    kept in ``last_error``; the record is still held in memory and written out
    with the next successful save.
    """

    def __init__(
        self,
        store: DocumentStore,
        key: str = STORE_KEY,
        clock: Callable[[], str] = wall_clock_time,
    ):
        self.store = store
        self.key = key
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)
        self.last_error: Optional[str] = None

        self._records: List[AttendanceRecord] = []
        self._names: set[str] = set()
        self._unsaved: List[AttendanceRecord] = []
        self.reload()

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._names)

    def reload(self) -> List[AttendanceRecord]:
        persisted = self._read_persisted()
        if persisted is not None:
            self._sync(self._with_unsaved(persisted))
        return list(self._records)

    def records(self) -> List[AttendanceRecord]:
        """Present records in the order they were marked, re-synced from storage."""
        return self.reload()

    def cached_records(self) -> List[AttendanceRecord]:
        """Records as of the last sync; never touches storage."""
        return list(self._records)

    def mark_present(self, name: str) -> MarkResult:
        if name in self._names:
            return MarkResult(name=name, inserted=False)

        persisted = self._read_persisted()
        records = self._with_unsaved(persisted) if persisted is not None else list(self._records)

        for existing in records:
            if existing.name == name:
                self._sync(records)
                return MarkResult(name=name, inserted=False, record=existing)

        record = AttendanceRecord(name=name, time=self.clock())
        records.append(record)
        self._sync(records)
        self._unsaved.append(record)
        self._persist(records)
        self.logger.info("%s marked present at %s", name, record.time)
        return MarkResult(name=name, inserted=True, record=record)

    def list_absent(self, roster_names: Iterable[str]) -> List[str]:
        present = {record.name for record in self.records()}
        return [name for name in roster_names if name not in present]

    def clear(self) -> None:
        self.store.clear(self.key)
        self._records = []
        self._names = set()
        self._unsaved = []
        self.last_error = None
        self.logger.info("Attendance ledger cleared")

    def export_report(self, roster_names: Iterable[str]) -> str:
        present = self.records()
        present_names = {record.name for record in present}
        absent = [name for name in roster_names if name not in present_names]

        lines = ["📋 Attendance Report", "", "Present:"]
        lines.extend(f"✔ {record.name} at {record.time}" for record in present)
        lines.extend(["", "Absent:"])
        lines.extend(f"✘ {name}" for name in absent)
        return "\n".join(lines) + "\n"

    def _read_persisted(self) -> Optional[List[AttendanceRecord]]:
        try:
            raw = self.store.read(self.key, default=[])
        except StorageError as exc:
            self._report_failure("read", exc)
            return None

        if raw is None:
            raw = []
        if not isinstance(raw, list):
            self._report_failure("read", StorageError(f"Attendance document '{self.key}' is not a list."))
            return None

        records: List[AttendanceRecord] = []
        seen: set[str] = set()
        for item in raw:
            record = AttendanceRecord.from_dict(item)
            if record is None or record.name in seen:
                continue
            seen.add(record.name)
            records.append(record)
        return records

    def _with_unsaved(self, persisted: List[AttendanceRecord]) -> List[AttendanceRecord]:
        present = {record.name for record in persisted}
        return persisted + [record for record in self._unsaved if record.name not in present]

    def _persist(self, records: List[AttendanceRecord]) -> None:
        try:
            self.store.write(self.key, [record.to_dict() for record in records])
        except StorageError as exc:
            self._report_failure("write", exc)
            return
        self._unsaved = []
        self.last_error = None

    def _sync(self, records: List[AttendanceRecord]) -> None:
        self._records = list(records)
        self._names = {record.name for record in records}

    def _report_failure(self, action: str, exc: Exception) -> None:
        message = f"Attendance storage {action} failed: {exc}"
        if message != self.last_error:
            self.logger.warning(message)
        self.last_error = message
