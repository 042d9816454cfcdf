"""SQLite cache service for media analysis results keyed by content fingerprint."""

import hashlib
import json
import sqlite3
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from lecture_uploader.services.errors import NotFoundError
from lecture_uploader.services.media_service import AnalysisResult

# Bytes hashed per file. Distinct recordings in this corpus share at most a
# 163-byte common prefix, so 300 bytes separates them.
DEFAULT_FINGERPRINT_BYTES = 300


def compute_fingerprint(path: Path | str, prefix_bytes: int = DEFAULT_FINGERPRINT_BYTES) -> str:
    """Hash the first ``prefix_bytes`` of a file.

    This is a change detector, not a content identity: two files that share
    the same prefix get the same fingerprint.

    Raises:
        NotFoundError: If the file does not exist
    """
    try:
        with open(path, "rb") as f:
            prefix = f.read(prefix_bytes)
    except FileNotFoundError as e:
        raise NotFoundError(f"Media file not found: {path}") from e
    return hashlib.md5(prefix, usedforsecurity=False).hexdigest()


class FingerprintCache:
    """Cache service with thread-safe SQLite access for analysis results."""

    CACHE_FILE = "analysis_cache.db"

    def __init__(
        self,
        db_path: Path | str | None = None,
        prefix_bytes: int = DEFAULT_FINGERPRINT_BYTES,
    ) -> None:
        """Initialize the cache database."""
        self._db_path = Path(db_path) if db_path else Path(self.CACHE_FILE)
        self.prefix_bytes = prefix_bytes
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
        """Initialize the database schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS analysis_results (
                resource TEXT PRIMARY KEY,
                fingerprint TEXT NOT NULL,
                result TEXT NOT NULL,
                cached_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_fingerprint ON analysis_results(fingerprint)
        """)

        conn.commit()

    @staticmethod
    def resource_key(resource: Path | str) -> str:
        """Normalize a resource path into its cache key."""
        return str(Path(resource).absolute())

    def compute_fingerprint(self, resource: Path | str) -> str:
        return compute_fingerprint(resource, self.prefix_bytes)

    def get_entry(self, resource: Path | str) -> dict[str, Any] | None:
        """Return the raw cache entry without validating the fingerprint."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            "SELECT fingerprint, result, cached_at FROM analysis_results WHERE resource = ?",
            (self.resource_key(resource),),
        )

        row = cursor.fetchone()
        if row is None:
            return None

        return {
            "fingerprint": row["fingerprint"],
            "result": AnalysisResult.from_dict(json.loads(row["result"])),
            "cached_at": row["cached_at"],
        }

    def lookup(self, resource: Path | str, fingerprint: str) -> AnalysisResult | None:
        """Return the cached result if it was stored under ``fingerprint``."""
        entry = self.get_entry(resource)
        if entry is None or entry["fingerprint"] != fingerprint:
            return None
        result: AnalysisResult = entry["result"]
        return result

    def get(self, resource: Path | str) -> AnalysisResult | None:
        """Get the cached result for a resource.

        Returns:
            The cached AnalysisResult if the stored fingerprint matches the
            file's current one, None on a miss or a stale entry

        Raises:
            NotFoundError: If the resource does not exist
        """
        return self.lookup(resource, self.compute_fingerprint(resource))

    def put(self, resource: Path | str, fingerprint: str, result: AnalysisResult) -> None:
        """Insert or overwrite the cache entry for a resource."""
        conn = self._get_connection()
        cursor = conn.cursor()

        now = datetime.now(UTC).isoformat()

        cursor.execute(
            """
            INSERT INTO analysis_results (resource, fingerprint, result, cached_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(resource) DO UPDATE SET
                fingerprint = excluded.fingerprint,
                result = excluded.result,
                cached_at = excluded.cached_at
            """,
            (self.resource_key(resource), fingerprint, json.dumps(result.to_dict()), now),
        )

        conn.commit()

    def invalidate(self, resource: Path | str) -> bool:
        """Drop the entry for one resource. Returns True if one existed."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            "DELETE FROM analysis_results WHERE resource = ?",
            (self.resource_key(resource),),
        )
        deleted = cursor.rowcount

        conn.commit()
        return deleted > 0

    def sweep(self, valid_resources: Iterable[Path | str]) -> int:
        """Evict entries for resources not in ``valid_resources``.

        Returns:
            Number of entries deleted
        """
        keep = {self.resource_key(r) for r in valid_resources}

        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT resource FROM analysis_results")
        stale = [row["resource"] for row in cursor.fetchall() if row["resource"] not in keep]

        if stale:
            cursor.executemany(
                "DELETE FROM analysis_results WHERE resource = ?",
                [(resource,) for resource in stale],
            )
            conn.commit()

        return len(stale)

    def prune_missing(self) -> int:
        """Evict entries whose file no longer exists on disk."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT resource FROM analysis_results")
        present = [row["resource"] for row in cursor.fetchall() if Path(row["resource"]).exists()]
        return self.sweep(present)

    def get_cache_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT
                COUNT(*) as total_entries,
                MIN(cached_at) as oldest_entry,
                MAX(cached_at) as newest_entry
            FROM analysis_results
            """
        )
        row = cursor.fetchone()

        return {
            "total_entries": row["total_entries"] or 0,
            "oldest_entry": row["oldest_entry"],
            "newest_entry": row["newest_entry"],
            "prefix_bytes": self.prefix_bytes,
        }

    def close(self) -> None:
        """Close the database connection for the current thread."""
        if hasattr(self._local, "connection") and self._local.connection is not None:
            self._local.connection.close()
            self._local.connection = None
