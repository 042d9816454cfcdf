"""JSONL event log for uploads and analysis.

Writes one JSON object per line to hive-partitioned daily files:
``<log_dir>/json/year=YYYY/month=MM/day=DD/events.jsonl``.
"""

import json
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from lecture_uploader.config import get_settings


class LogService:
    """Structured event log with thread-safe appends."""

    def __init__(self, log_dir: Path | str | None = None) -> None:
        self._log_dir = Path(log_dir) if log_dir else None
        self._write_lock = threading.Lock()

    @property
    def log_dir(self) -> Path:
        log_dir = self._log_dir or get_settings().log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _partition_dir(self, dt: datetime) -> Path:
        return (
            self.log_dir
            / "json"
            / f"year={dt.year:04d}"
            / f"month={dt.month:02d}"
            / f"day={dt.day:02d}"
        )

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an entry to today's events file.

        Args:
            level: Log level (INFO, WARNING, ERROR)
            category: Event category (app, upload, analysis)
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data
        """
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level.upper(),
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        line = json.dumps(entry, default=str)

        with self._write_lock:
            day_dir = self._partition_dir(now)
            day_dir.mkdir(parents=True, exist_ok=True)
            with open(day_dir / "events.jsonl", "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an INFO-level event."""
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a WARNING-level event."""
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log an ERROR-level event."""
        self.log("ERROR", category, event, message, metadata)

    def _event_files(self, date: str | None) -> list[Path]:
        if date is None:
            json_dir = self.log_dir / "json"
            return sorted(json_dir.rglob("events.jsonl"), reverse=True) if json_dir.exists() else []
        try:
            dt = datetime.strptime(date, "%Y-%m-%d")
        except ValueError:
            return []
        path = self._partition_dir(dt) / "events.jsonl"
        return [path] if path.exists() else []

    @staticmethod
    def _iter_entries(path: Path) -> Iterator[dict[str, Any]]:
        try:
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        continue
        except OSError:
            return

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Read and filter log entries, newest first.

        Args:
            date: Only this day (YYYY-MM-DD). None reads every day.
            level: Filter by level (INFO/WARNING/ERROR)
            category: Filter by category
            search: Case-insensitive match on message or event name
            offset: Number of entries to skip
            limit: Maximum entries to return

        Returns:
            Dict with entries, total count, offset, limit
        """
        needle = search.lower() if search else None
        matches: list[dict[str, Any]] = []
        for path in self._event_files(date):
            for entry in self._iter_entries(path):
                if level and entry.get("level", "").upper() != level.upper():
                    continue
                if category and entry.get("category") != category:
                    continue
                if needle and not (
                    needle in entry.get("message", "").lower()
                    or needle in entry.get("event", "").lower()
                ):
                    continue
                matches.append(entry)

        matches.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return {
            "entries": matches[offset : offset + limit],
            "total": len(matches),
            "offset": offset,
            "limit": limit,
        }


_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the process-wide LogService writing to the configured directory."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
