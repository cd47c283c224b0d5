"""
Progress & Completion Tracking

Thread-safe counters behind increment(kind), periodic progress events, a
capped diagnostic log for bad rows, and the MigrationResult summary.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional
import logging
import threading
import time

logger = logging.getLogger(__name__)

PROCESSED = 'processed'
INSERTED = 'inserted'
SKIPPED = 'skipped'
ERRORED = 'errored'
RECORDS_WRITTEN = 'records_written'
COUNTER_KINDS = (PROCESSED, INSERTED, SKIPPED, ERRORED, RECORDS_WRITTEN)


class MigrationCounters:
    """Atomic counters for one table run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._values = {kind: 0 for kind in COUNTER_KINDS}

    def increment(self, kind: str, amount: int = 1) -> int:
        """Add amount to a counter and return its new value."""
        with self._lock:
            if kind not in self._values:
                raise KeyError(f"Unknown counter kind: {kind}")
            self._values[kind] += amount
            return self._values[kind]

    def get(self, kind: str) -> int:
        with self._lock:
            return self._values[kind]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)


class ProgressEvent(NamedTuple):
    table: str
    processed: int
    inserted: int
    skipped: int
    errored: int
    elapsed_seconds: float
    rows_per_second: float
    final: bool


class DiagnosticLog:
    """
    Skip and error bookkeeping with capped detail.

    Every occurrence is counted; only the first `limit` of each kind are
    logged in detail and kept as messages for the result.
    """

    def __init__(self, table: str, limit: int = 10):
        self.table = table
        self.limit = limit
        self._lock = threading.Lock()
        self.skip_reasons: Counter = Counter()
        self.error_reasons: Counter = Counter()
        self.error_messages: List[str] = []
        self._skips_logged = 0
        self._errors_logged = 0

    def record_skip(self, reason: str, detail: str = '') -> None:
        with self._lock:
            self.skip_reasons[reason] += 1
            log_it = self._skips_logged < self.limit
            if log_it:
                self._skips_logged += 1
        if log_it:
            suffix = f" ({detail})" if detail else ''
            logger.warning(f"{self.table}: skipping row, {reason}{suffix}")

    def record_error(self, error: BaseException, row: Any = None) -> None:
        reason = type(error).__name__
        message = f"{reason}: {error}"
        with self._lock:
            self.error_reasons[reason] += 1
            log_it = self._errors_logged < self.limit
            if log_it:
                self._errors_logged += 1
                self.error_messages.append(message)
        if log_it:
            # Only the leading key column; other values may hold credentials
            key = f"; row key={row[0]!r}" if row is not None and len(row) else ''
            logger.warning(f"{self.table}: row transform failed, {message}{key}")

    @property
    def suppressed(self) -> int:
        with self._lock:
            skips = sum(self.skip_reasons.values()) - self._skips_logged
            errors = sum(self.error_reasons.values()) - self._errors_logged
        return skips + errors

    def log_summary(self) -> None:
        suppressed = self.suppressed
        if suppressed:
            logger.warning(f"{self.table}: {suppressed} further skip/error diagnostics suppressed")
        for reason, count in self.skip_reasons.most_common():
            logger.info(f"{self.table}: skipped {count} rows, {reason}")


class ProgressTracker:
    """Emits a progress event every `interval` processed records."""

    def __init__(
        self,
        table: str,
        counters: MigrationCounters,
        interval: int = 1000,
        listener: Optional[Callable[[ProgressEvent], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.table = table
        self.counters = counters
        self.interval = interval
        self.listener = listener
        self._clock = clock
        self._started = clock()

    def start(self) -> None:
        self._started = self._clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    def record_processed(self, amount: int = 1) -> None:
        processed = self.counters.increment(PROCESSED, amount)
        if processed // self.interval != (processed - amount) // self.interval:
            self.emit(final=False)

    def emit(self, final: bool) -> ProgressEvent:
        snap = self.counters.snapshot()
        elapsed = self.elapsed
        rate = snap[PROCESSED] / elapsed if elapsed > 0 else 0.0
        event = ProgressEvent(
            table=self.table,
            processed=snap[PROCESSED],
            inserted=snap[INSERTED],
            skipped=snap[SKIPPED],
            errored=snap[ERRORED],
            elapsed_seconds=elapsed,
            rows_per_second=rate,
            final=final,
        )
        prefix = 'Completed' if final else 'Progress'
        logger.info(
            f"{prefix} {self.table}: processed {event.processed:,} "
            f"(inserted {event.inserted:,}, skipped {event.skipped:,}, errored {event.errored:,}) "
            f"at {rate:,.0f} rows/sec"
        )
        if self.listener is not None:
            self.listener(event)
        return event


@dataclass
class MigrationResult:
    """Outcome of one table migration."""

    table_name: str
    target_table: str
    records_processed: int = 0
    records_inserted: int = 0
    records_skipped: int = 0
    records_errored: int = 0
    target_rows_written: int = 0
    rows_updated: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    elapsed_time_seconds: float = 0.0
    success: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_counters(cls, table_name: str, target_table: str, counters: MigrationCounters,
                      diagnostics: DiagnosticLog, elapsed: float, success: bool) -> 'MigrationResult':
        snap = counters.snapshot()
        return cls(
            table_name=table_name,
            target_table=target_table,
            records_processed=snap[PROCESSED],
            records_inserted=snap[INSERTED],
            records_skipped=snap[SKIPPED],
            records_errored=snap[ERRORED],
            target_rows_written=snap[RECORDS_WRITTEN],
            skip_reasons=dict(diagnostics.skip_reasons),
            errors=list(diagnostics.error_messages),
            elapsed_time_seconds=elapsed,
            success=success,
        )

    @property
    def avg_rows_per_second(self) -> float:
        if self.elapsed_time_seconds <= 0:
            return 0.0
        return self.records_processed / self.elapsed_time_seconds

    @property
    def is_conserved(self) -> bool:
        """Every processed row ended up inserted, skipped or errored."""
        return self.records_processed == (
            self.records_inserted + self.records_skipped + self.records_errored
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table_name': self.table_name,
            'target_table': self.target_table,
            'records_processed': self.records_processed,
            'records_inserted': self.records_inserted,
            'records_skipped': self.records_skipped,
            'records_errored': self.records_errored,
            'target_rows_written': self.target_rows_written,
            'rows_updated': self.rows_updated,
            'skip_reasons': dict(self.skip_reasons),
            'errors': list(self.errors),
            'elapsed_time_seconds': self.elapsed_time_seconds,
            'avg_rows_per_second': self.avg_rows_per_second,
            'success': self.success,
            'timestamp': self.timestamp,
        }
