import contextlib
import json
import os
import sqlite3
import tempfile
import threading
from copy import deepcopy
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .config import JSON_STORE_PATH, SQLITE_STORE_PATH, STORE_BACKEND
from .exceptions import StorageError


class DocumentStore:
    """Key/value store for JSON-serialisable documents."""

    def read(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def write(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(DocumentStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = deepcopy(initial) if initial else {}

    def read(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return deepcopy(self._data[key])

    def write(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    def clear(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(DocumentStore):
    """All keys live in one JSON object on disk, replaced atomically on every write."""

    def __init__(self, path: Path = JSON_STORE_PATH):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Failed to read {self.path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt document store {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Document store {self.path} must hold a JSON object.")
        return data

    def _dump(self, data: Dict[str, Any]) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(self.path.parent))
        except OSError as exc:
            raise StorageError(f"Failed to write {self.path}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except (OSError, TypeError, ValueError) as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write {self.path}: {exc}") from exc

    def read(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def write(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def clear(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


class SqliteDocumentStore(DocumentStore):
    def __init__(self, db_path: Path = SQLITE_STORE_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to initialize document store: {exc}") from exc

    def read(self, key: str, default: Any = None) -> Any:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM documents WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read document {key}: {exc}") from exc

        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt document {key}: {exc}") from exc

    def write(self, key: str, value: Any) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Document {key} is not JSON serialisable: {exc}") from exc

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO documents (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, payload, now),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to write document {key}: {exc}") from exc

    def clear(self, key: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM documents WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to clear document {key}: {exc}") from exc


def create_store(backend: str = STORE_BACKEND) -> DocumentStore:
    backend = backend.strip().lower()
    if backend == "json":
        return JsonFileStore(JSON_STORE_PATH)
    if backend == "sqlite":
        return SqliteDocumentStore(SQLITE_STORE_PATH)
    if backend == "memory":
        return MemoryStore()
    raise StorageError(f"Unknown store backend '{backend}'. Use json, sqlite or memory.")
