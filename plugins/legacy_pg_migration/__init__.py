"""
Legacy Schema to PostgreSQL Record Migration

Moves master and transactional data from the legacy SQL Server schema into
the redesigned PostgreSQL schema, table by table, applying per-column rules,
foreign-key filtering and default values on the way.

Modules:
- settings: Environment-driven tunables
- reference_cache: Target key sets for foreign-key gates and fan-out
- extraction: Forward-only source reader with bounded binary reads
- field_rules / field_transforms / crypto: Per-column policies and helpers
- mapping / tables: Per-table configuration and the table registry
- transformer: Source row to target records
- work_queue / batching: Bounded queues, batches and buffer recycling
- binary_copy / writers: Binary COPY sessions
- pipeline: Parallel extraction -> transform -> write pipeline
- upsert: Ordered insert-or-update path
- progress: Counters, progress events and results
- connections / coordinator: Airflow connections and run orchestration

Performance Options:
- TRANSFORM_WORKERS=N: Transform threads per table
- BULK_WRITERS=N: COPY writers per table in independent mode (max 4)
- MIGRATION_BATCH_SIZE=N: Records per COPY batch
"""

__version__ = "1.0.0"

from legacy_pg_migration import mapping
from legacy_pg_migration import pipeline
from legacy_pg_migration import progress
from legacy_pg_migration import settings
from legacy_pg_migration import tables
from legacy_pg_migration import upsert

# coordinator and connections need Airflow and pyodbc; import them explicitly

__all__ = [
    "mapping",
    "pipeline",
    "progress",
    "settings",
    "tables",
    "upsert",
]
