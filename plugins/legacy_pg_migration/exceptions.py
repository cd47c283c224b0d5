"""Exception types raised by the migration engine."""


class MigrationError(Exception):
    """Base class for migration failures."""


class MappingError(MigrationError):
    """A table mapping is inconsistent or does not match its source query."""


class SkipRow(MigrationError):
    """
    Row rejected by validation.

    Raised inside the transformer and converted to a skip count by the
    worker that drained the row. Never propagates out of a pipeline run.
    """

    def __init__(self, reason: str, detail: str = ''):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class PipelineCancelled(MigrationError):
    """A blocked queue operation was interrupted by cancellation."""


class QueueClosedError(MigrationError):
    """Put attempted on a queue that was already marked complete."""


class BatchWriteError(MigrationError):
    """A bulk-load session failed. The original driver error is chained."""


class MigrationCancelled(MigrationError):
    """The caller aborted a running migration."""
