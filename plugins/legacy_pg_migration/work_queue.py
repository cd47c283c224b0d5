"""
Bounded Work Queues

FIFO queues with fixed capacity connecting the pipeline stages. put blocks
while the queue is full, take blocks while it is empty and not complete.
Completion is one-way; cancellation wakes every blocked caller.
"""

from collections import deque
from typing import Any, Callable, List
import threading

from legacy_pg_migration.exceptions import PipelineCancelled, QueueClosedError

# Returned by take() once the queue is complete and fully drained
DRAINED = object()


class CancellationToken:
    """Single cancellation flag shared by every stage of one run."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def register(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)
            fire = self._event.is_set()
        if fire:
            callback()

    def cancel(self, reason: str = 'cancelled') -> bool:
        """Trigger cancellation. Returns False if it was already triggered."""
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PipelineCancelled(self.reason)

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class BoundedWorkQueue:
    """Capacity-bounded FIFO with completion and cancellation."""

    def __init__(self, name: str, capacity: int, token: CancellationToken):
        if capacity < 1:
            raise ValueError(f"Queue capacity must be >= 1, got {capacity}")
        self.name = name
        self.capacity = capacity
        self._token = token
        self._items = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._completed = False
        self.peak_size = 0
        self.total_put = 0
        token.register(self._wake_all)

    def _wake_all(self) -> None:
        with self._lock:
            self._not_empty.notify_all()
            self._not_full.notify_all()

    def put(self, item: Any) -> None:
        """
        Append an item, blocking while the queue is full.

        Raises:
            PipelineCancelled: Cancellation was triggered while waiting
            QueueClosedError: The queue was already marked complete
        """
        with self._not_full:
            while True:
                if self._token.is_cancelled:
                    raise PipelineCancelled(self._token.reason)
                if self._completed:
                    raise QueueClosedError(f"Queue '{self.name}' is complete")
                if len(self._items) < self.capacity:
                    break
                self._not_full.wait()
            self._items.append(item)
            self.total_put += 1
            if len(self._items) > self.peak_size:
                self.peak_size = len(self._items)
            self._not_empty.notify()

    def take(self) -> Any:
        """
        Remove the oldest item, blocking while empty.

        Returns:
            The item, or DRAINED once the queue is complete and empty

        Raises:
            PipelineCancelled: Cancellation was triggered
        """
        with self._not_empty:
            while True:
                if self._token.is_cancelled:
                    raise PipelineCancelled(self._token.reason)
                if self._items:
                    item = self._items.popleft()
                    self._not_full.notify()
                    return item
                if self._completed:
                    return DRAINED
                self._not_empty.wait()

    def __iter__(self):
        while True:
            item = self.take()
            if item is DRAINED:
                return
            yield item

    def complete(self) -> None:
        """Stop accepting puts; queued items still drain. Idempotent."""
        with self._lock:
            self._completed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    @property
    def is_complete(self) -> bool:
        return self._completed

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
