"""
Migration Settings

Environment-driven configuration for the record migration engine. Values are
read once when the settings object is built and stay fixed for the run.

Environment variables:
- MIGRATION_BATCH_SIZE: Records per bulk-load batch (default 500)
- BINARY_BATCH_SIZE: Records per batch for tables carrying binary payloads (default 50)
- BATCH_BYTE_BUDGET: Binary payload bytes allowed in one batch (default 64 MiB)
- TRANSFORM_WORKERS: Transform worker threads (default cpu_count - 1)
- RAW_QUEUE_CAPACITY: Raw row queue capacity (default max(1000, workers * 2000))
- BATCH_QUEUE_CAPACITY: Batch queue capacity (default max(4, raw capacity / batch size))
- BULK_WRITERS: Writers for non-transactional runs (default min(4, cpu_count / 2))
- MIGRATION_FAST_MODE: Use the fast password hashing cost (default true)
- HASH_ITERATIONS: Explicit PBKDF2 iteration count
- MAX_BINARY_PAYLOAD_BYTES: Ceiling for one binary value (default 50 MiB)
- BINARY_READ_CHUNK_BYTES: Chunk size for binary reads (default 8 KiB)
- SKIP_BINARY_PAYLOADS: Migrate attachment metadata only (default false)
- PROGRESS_INTERVAL: Processed records between progress events (default 1000)
- ROW_ERROR_LOG_LIMIT: Detailed row diagnostics logged per kind (default 10)
- MAX_PG_CONNECTIONS: Upper bound of the PostgreSQL connection pool (default 8)
- FIELD_ENCRYPTION_KEY: Base64 AES-256 key for encrypted columns
"""

from dataclasses import dataclass
from typing import Mapping, Optional
import logging
import os

logger = logging.getLogger(__name__)

FAST_HASH_ITERATIONS = 10_000
SECURE_HASH_ITERATIONS = 1_500_000
MAX_BULK_WRITERS = 4


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('true', '1', 'yes', 'on')


def default_worker_count(cpu_count: Optional[int] = None) -> int:
    """Available parallelism minus one, never below one."""
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return max(1, cpus - 1)


def default_writer_count(transactional: bool, cpu_count: Optional[int] = None) -> int:
    """One writer for atomic runs, otherwise half the cores capped at four."""
    if transactional:
        return 1
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    return min(MAX_BULK_WRITERS, max(1, cpus // 2))


@dataclass(frozen=True)
class MigrationSettings:
    """Tunables consumed by the pipeline, transformer and writers."""

    batch_size: int = 500
    binary_batch_size: int = 50
    batch_byte_budget: int = 64 * 1024 * 1024
    transform_workers: int = 1
    raw_queue_capacity: int = 2000
    batch_queue_capacity: int = 4
    bulk_writers: Optional[int] = None
    fast_mode: bool = True
    hash_iterations: int = FAST_HASH_ITERATIONS
    max_binary_bytes: int = 50 * 1024 * 1024
    binary_chunk_bytes: int = 8 * 1024
    skip_binary_payloads: bool = False
    progress_interval: int = 1000
    error_log_limit: int = 10
    max_pg_connections: int = 8
    encryption_key: Optional[str] = None

    def __post_init__(self):
        for name in ('batch_size', 'binary_batch_size', 'transform_workers',
                     'raw_queue_capacity', 'batch_queue_capacity', 'hash_iterations',
                     'binary_chunk_bytes', 'progress_interval', 'max_pg_connections'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.bulk_writers is not None and not 1 <= self.bulk_writers <= MAX_BULK_WRITERS:
            raise ValueError(f"bulk_writers must be between 1 and {MAX_BULK_WRITERS}")
        if self.max_binary_bytes < self.binary_chunk_bytes:
            raise ValueError("max_binary_bytes must not be smaller than binary_chunk_bytes")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'MigrationSettings':
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (defaults to os.environ)

        Returns:
            MigrationSettings with defaults applied for unset variables
        """
        env = os.environ if env is None else env

        batch_size = _env_int(env, 'MIGRATION_BATCH_SIZE', 500)
        workers = _env_int(env, 'TRANSFORM_WORKERS', default_worker_count())
        raw_capacity = _env_int(env, 'RAW_QUEUE_CAPACITY', max(1000, workers * 2000))
        batch_capacity = _env_int(env, 'BATCH_QUEUE_CAPACITY', max(4, raw_capacity // batch_size))
        fast_mode = _env_bool(env, 'MIGRATION_FAST_MODE', True)
        iterations = _env_int(
            env,
            'HASH_ITERATIONS',
            FAST_HASH_ITERATIONS if fast_mode else SECURE_HASH_ITERATIONS,
        )
        writers = env.get('BULK_WRITERS')

        settings = cls(
            batch_size=batch_size,
            binary_batch_size=_env_int(env, 'BINARY_BATCH_SIZE', 50),
            batch_byte_budget=_env_int(env, 'BATCH_BYTE_BUDGET', 64 * 1024 * 1024),
            transform_workers=workers,
            raw_queue_capacity=raw_capacity,
            batch_queue_capacity=batch_capacity,
            bulk_writers=_env_int(env, 'BULK_WRITERS', 1) if writers else None,
            fast_mode=fast_mode,
            hash_iterations=iterations,
            max_binary_bytes=_env_int(env, 'MAX_BINARY_PAYLOAD_BYTES', 50 * 1024 * 1024),
            binary_chunk_bytes=_env_int(env, 'BINARY_READ_CHUNK_BYTES', 8 * 1024),
            skip_binary_payloads=_env_bool(env, 'SKIP_BINARY_PAYLOADS', False),
            progress_interval=_env_int(env, 'PROGRESS_INTERVAL', 1000),
            error_log_limit=_env_int(env, 'ROW_ERROR_LOG_LIMIT', 10, minimum=0),
            max_pg_connections=_env_int(env, 'MAX_PG_CONNECTIONS', 8),
            encryption_key=env.get('FIELD_ENCRYPTION_KEY') or None,
        )

        mode = 'fast' if settings.fast_mode else 'secure'
        logger.info(
            f"Migration settings: batch_size={settings.batch_size}, "
            f"workers={settings.transform_workers}, raw_queue={settings.raw_queue_capacity}, "
            f"batch_queue={settings.batch_queue_capacity}, hashing={mode} "
            f"({settings.hash_iterations} iterations)"
        )
        return settings

    def writer_count(self, transactional: bool) -> int:
        """Number of bulk writers for a run in the given mode."""
        if transactional:
            return 1
        if self.bulk_writers is not None:
            return self.bulk_writers
        return default_writer_count(transactional)
