"""Live upload progress snapshots and their publish/subscribe fan-out."""

import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from lecture_uploader.services.utils import format_file_size


class UploadStatus(Enum):
    """Status of a transfer as seen by observers."""

    TRANSFERRING = "transferring"
    COMPLETE = "complete"
    ERROR = "error"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self is not UploadStatus.TRANSFERRING


@dataclass
class UploadProgress:
    """Ephemeral progress of one upload operation."""

    operation_id: str
    resource_id: str
    bytes_transferred: int
    bytes_total: int
    status: UploadStatus = UploadStatus.TRANSFERRING
    label: str = ""
    error: str = ""
    error_code: str = ""

    @property
    def percent(self) -> int:
        if self.bytes_total <= 0:
            return 0
        return self.bytes_transferred * 100 // self.bytes_total

    def snapshot(self) -> "UploadProgress":
        """Copy safe to hand to another thread."""
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "operation_id": self.operation_id,
            "resource_id": self.resource_id,
            "label": self.label,
            "bytes_transferred": self.bytes_transferred,
            "bytes_total": self.bytes_total,
            "bytes_transferred_formatted": format_file_size(self.bytes_transferred),
            "bytes_total_formatted": format_file_size(self.bytes_total),
            "percent": self.percent,
            "status": self.status.value,
            "error": self.error or None,
            "error_code": self.error_code or None,
        }


class Subscription:
    """One observer's stream of progress snapshots for an operation."""

    def __init__(self, broadcaster: "ProgressBroadcaster", operation_id: str) -> None:
        self.operation_id = operation_id
        self._broadcaster = broadcaster
        self._queue: queue.Queue[UploadProgress | None] = queue.Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _deliver(self, progress: UploadProgress) -> None:
        if not self._closed.is_set():
            self._queue.put_nowait(progress)

    def get(self, timeout: float | None = None) -> UploadProgress | None:
        """Next snapshot, or None if the timeout passed or the stream closed."""
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        """Stop receiving updates. The operation itself keeps running."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._broadcaster._remove(self)
        # Wake a consumer blocked in get()
        self._queue.put_nowait(None)

    def __iter__(self) -> Iterator[UploadProgress]:
        while not self._closed.is_set():
            item = self._queue.get()
            if item is None:
                break
            yield item

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ProgressBroadcaster:
    """Per-operation fan-out of progress snapshots.

    Only the latest snapshot per operation is kept so a new subscriber can be
    brought up to date. Missed history is not replayed.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = {}
        self._latest: dict[str, UploadProgress] = {}
        self._lock = threading.Lock()

    def subscribe(self, operation_id: str) -> Subscription:
        subscription = Subscription(self, operation_id)
        with self._lock:
            self._subscribers.setdefault(operation_id, []).append(subscription)
            latest = self._latest.get(operation_id)
            # Delivered under the lock so no publish can slip in ahead of it
            if latest is not None:
                subscription._deliver(latest)
        return subscription

    def publish(self, operation_id: str, progress: UploadProgress) -> int:
        """Send a snapshot to current subscribers. Returns how many received it."""
        snapshot = progress.snapshot()
        with self._lock:
            self._latest[operation_id] = snapshot
            subscribers = list(self._subscribers.get(operation_id, []))
            for subscription in subscribers:
                subscription._deliver(snapshot)
        return len(subscribers)

    def latest(self, operation_id: str) -> UploadProgress | None:
        with self._lock:
            return self._latest.get(operation_id)

    def discard(self, operation_id: str) -> None:
        """Forget the latest snapshot of a finished operation."""
        with self._lock:
            self._latest.pop(operation_id, None)

    def subscriber_count(self, operation_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(operation_id, []))

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.operation_id)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
                if not subscribers:
                    del self._subscribers[subscription.operation_id]
