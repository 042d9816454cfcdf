"""Durable storage of per-resource upload sessions.

A session is the minimum needed to continue a resumable upload after the
process restarts: the remote session handle and a local byte checkpoint.
"""

import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from lecture_uploader.services.utils import utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    """Persisted state of one interrupted or in-progress upload.

    ``bytes_transferred`` is a local checkpoint only. On resume the remote is
    asked for its received offset, which wins.
    """

    resource_id: str
    remote_session_handle: str
    bytes_transferred: int
    bytes_total: int
    label: str = ""
    interrupted_at: str = ""
    status: str = "transferring"

    @property
    def percent(self) -> int:
        if self.bytes_total <= 0:
            return 0
        return self.bytes_transferred * 100 // self.bytes_total

    def touch(self) -> None:
        self.interrupted_at = utc_now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadSession":
        return cls(
            resource_id=data["resource_id"],
            remote_session_handle=data["remote_session_handle"],
            bytes_transferred=int(data.get("bytes_transferred", 0)),
            bytes_total=int(data.get("bytes_total", 0)),
            label=data.get("label", ""),
            interrupted_at=data.get("interrupted_at", ""),
            status=data.get("status", "transferring"),
        )


class SessionStore(ABC):
    """Key-value store of upload sessions keyed by resource id."""

    @abstractmethod
    def load(self) -> dict[str, UploadSession]:
        """Read every stored session."""

    @abstractmethod
    def save(self, resource_id: str, session: UploadSession) -> None:
        """Insert or overwrite the session for ``resource_id``."""

    @abstractmethod
    def delete(self, resource_id: str) -> bool:
        """Remove the session. Returns True if one existed."""

    def get(self, resource_id: str) -> UploadSession | None:
        return self.load().get(resource_id)

    def list_sessions(self) -> list[UploadSession]:
        return list(self.load().values())


class JsonSessionStore(SessionStore):
    """All sessions in one JSON document, rewritten atomically on each change."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except ValueError:
            data = None
        if not isinstance(data, dict):
            # Keep the unreadable document for inspection; the next save starts fresh
            aside = self.path.with_name(self.path.name + ".corrupt")
            os.replace(self.path, aside)
            logger.warning("Corrupt session document %s moved to %s", self.path, aside)
            return {}
        return data

    def _write(self, data: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".sessions-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self) -> dict[str, UploadSession]:
        with self._lock:
            data = self._read()
        return {key: UploadSession.from_dict(value) for key, value in data.items()}

    def save(self, resource_id: str, session: UploadSession) -> None:
        with self._lock:
            data = self._read()
            data[resource_id] = session.to_dict()
            self._write(data)

    def delete(self, resource_id: str) -> bool:
        with self._lock:
            data = self._read()
            if resource_id not in data:
                return False
            del data[resource_id]
            self._write(data)
            return True


class SqliteSessionStore(SessionStore):
    """Session store with thread-safe SQLite access."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.connection.row_factory = sqlite3.Row
        conn: sqlite3.Connection = self._local.connection
        return conn

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS upload_sessions (
                resource_id TEXT PRIMARY KEY,
                session TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()

    def load(self) -> dict[str, UploadSession]:
        cursor = self._get_connection().execute(
            "SELECT resource_id, session FROM upload_sessions"
        )
        return {
            row["resource_id"]: UploadSession.from_dict(json.loads(row["session"]))
            for row in cursor.fetchall()
        }

    def get(self, resource_id: str) -> UploadSession | None:
        row = self._get_connection().execute(
            "SELECT session FROM upload_sessions WHERE resource_id = ?",
            (resource_id,),
        ).fetchone()
        return UploadSession.from_dict(json.loads(row["session"])) if row else None

    def save(self, resource_id: str, session: UploadSession) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO upload_sessions (resource_id, session, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(resource_id) DO UPDATE SET
                session = excluded.session,
                updated_at = excluded.updated_at
            """,
            (resource_id, json.dumps(session.to_dict()), utc_now_iso()),
        )
        conn.commit()

    def delete(self, resource_id: str) -> bool:
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM upload_sessions WHERE resource_id = ?", (resource_id,))
        conn.commit()
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close the database connection for the current thread."""
        if hasattr(self._local, "connection") and self._local.connection is not None:
            self._local.connection.close()
            self._local.connection = None
