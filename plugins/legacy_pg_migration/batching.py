"""
Batches and the recycled batch buffer pool.

A batch is the unit of backpressure and of one bulk-load round trip. Rows are
attributed to the batch that receives their last record, so a fanned-out row
is counted as inserted once, when its final record is written.
"""

from collections import deque
from typing import Any, List, Tuple
import threading


class Batch:
    """Ordered records bound for one table."""

    __slots__ = ('records', 'source_rows', 'payload_bytes')

    def __init__(self):
        self.records: List[Tuple[Any, ...]] = []
        self.source_rows = 0
        self.payload_bytes = 0

    def __len__(self) -> int:
        return len(self.records)

    def append(self, record: Tuple[Any, ...], payload_bytes: int = 0) -> None:
        self.records.append(record)
        self.payload_bytes += payload_bytes

    def is_full(self, max_records: int, byte_budget: int) -> bool:
        return len(self.records) >= max_records or (byte_budget > 0 and self.payload_bytes >= byte_budget)

    def clear(self) -> None:
        # Keeps the list object so its storage is reused
        self.records.clear()
        self.source_rows = 0
        self.payload_bytes = 0


class BatchPool:
    """Thread-safe free list of cleared batches."""

    def __init__(self, preallocate: int = 0):
        self._free = deque(Batch() for _ in range(preallocate))
        self._lock = threading.Lock()
        self.created = preallocate
        self.reused = 0

    def acquire(self) -> Batch:
        with self._lock:
            if self._free:
                self.reused += 1
                return self._free.pop()
            self.created += 1
        return Batch()

    def release(self, batch: Batch) -> None:
        batch.clear()
        with self._lock:
            self._free.append(batch)

    def __len__(self) -> int:
        with self._lock:
            return len(self._free)
