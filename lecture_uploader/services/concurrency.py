"""Thread-safe primitives for bounding and coalescing expensive work."""

import itertools
import threading
from collections import deque
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised inside an operation whose cancellation token was triggered."""


class CancellationToken:
    """One-shot cancellation signal shared by a loop and its in-flight request."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or until ``timeout`` elapses."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)


@dataclass
class LimiterStatus:
    """Snapshot of a limiter for observability."""

    capacity: int
    running: int
    queue_depth: int
    active_labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "capacity": self.capacity,
            "running": self.running,
            "queue_depth": self.queue_depth,
            "active_labels": list(self.active_labels),
        }


class ConcurrencyLimiter:
    """Counting semaphore with FIFO admission.

    Waiters are admitted strictly in arrival order: a caller only takes a free
    slot when it is at the head of the queue, so a late arrival can never
    overtake an older waiter.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("Limiter capacity must be at least 1")
        self.capacity = capacity
        self._cond = threading.Condition()
        self._waiters: deque[int] = deque()
        self._active: dict[int, str] = {}
        self._tickets = itertools.count()

    def acquire(self, label: str = "") -> int:
        """Block until a slot is free and return the slot ticket."""
        with self._cond:
            ticket = next(self._tickets)
            self._waiters.append(ticket)
            try:
                while not (
                    len(self._active) < self.capacity and self._waiters[0] == ticket
                ):
                    self._cond.wait()
            except BaseException:
                self._waiters.remove(ticket)
                self._cond.notify_all()
                raise
            self._waiters.popleft()
            self._active[ticket] = label
            # The next waiter may also fit if more than one slot is free
            self._cond.notify_all()
            return ticket

    def release(self, ticket: int) -> None:
        with self._cond:
            self._active.pop(ticket, None)
            self._cond.notify_all()

    @contextmanager
    def slot(self, label: str = "") -> Iterator[int]:
        """Hold a slot for the duration of the ``with`` block."""
        ticket = self.acquire(label)
        try:
            yield ticket
        finally:
            self.release(ticket)

    def run(self, op: Callable[[], T], label: str = "") -> T:
        """Run ``op`` while holding a slot, releasing it on success or failure."""
        with self.slot(label):
            return op()

    def status(self) -> LimiterStatus:
        with self._cond:
            return LimiterStatus(
                capacity=self.capacity,
                running=len(self._active),
                queue_depth=len(self._waiters),
                active_labels=[label for label in self._active.values() if label],
            )


class InFlightMap(Generic[T]):
    """Coalesces concurrent requests for the same key into one computation."""

    def __init__(self) -> None:
        self._pending: dict[str, Future[T]] = {}
        self._lock = threading.Lock()

    def run(self, key: str, fn: Callable[[], T]) -> T:
        """Run ``fn`` for ``key`` unless a run for that key is already underway.

        Followers block on the leader's result and receive the same value, or
        the same exception if the leader failed.
        """
        with self._lock:
            future = self._pending.get(key)
            leader = future is None
            if future is None:
                future = Future()
                self._pending[key] = future

        if not leader:
            return future.result()

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._pending.pop(key, None)

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
