"""
Migration Coordinator

Owns source and target connections, picks the bulk pipeline or the ordered
upsert path for each table, and wraps runs in target transactions.

Transactional mode runs every table on one target connection with a single
COPY writer and commits once; any failure rolls everything back. Independent
mode gives each table its own commit scope and pooled writers, and a failed
table does not stop the remaining ones.
"""

from typing import Any, Callable, Dict, List, Optional
import logging
import time

from legacy_pg_migration.connections import OdbcConnectionHelper, PostgresConnectionPool
from legacy_pg_migration.crypto import FieldEncryptor
from legacy_pg_migration.mapping import TableMapping
from legacy_pg_migration.pipeline import MigrationPipeline
from legacy_pg_migration.progress import MigrationResult, ProgressEvent
from legacy_pg_migration.settings import MigrationSettings
from legacy_pg_migration.tables import TABLE_MAPPINGS, migration_order
from legacy_pg_migration.upsert import OrderedUpsertMigration

logger = logging.getLogger(__name__)


def _failed_result(mapping: TableMapping, error: BaseException, elapsed: float = 0.0) -> MigrationResult:
    return MigrationResult(
        table_name=mapping.name,
        target_table=mapping.qualified_target,
        errors=[f"{type(error).__name__}: {error}"],
        elapsed_time_seconds=elapsed,
        success=False,
    )


class MigrationCoordinator:
    """Entry point used by the DAG and the module-level run functions."""

    def __init__(
        self,
        source_conn_id: str,
        target_conn_id: str,
        settings: Optional[MigrationSettings] = None,
        mappings: Optional[Dict[str, TableMapping]] = None,
        progress_listener: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        self.settings = settings or MigrationSettings.from_env()
        self.source = OdbcConnectionHelper(source_conn_id)
        self.target_conn_id = target_conn_id
        self.mappings = TABLE_MAPPINGS if mappings is None else mappings
        self.progress_listener = progress_listener
        self.results: Dict[str, MigrationResult] = {}
        self._encryptor: Optional[FieldEncryptor] = None

    def get_tables(self) -> List[Dict[str, str]]:
        """Migratable tables with their descriptions, in migration order."""
        return [
            {'name': name, 'description': self.mappings[name].description}
            for name in migration_order(self.mappings)
        ]

    def get_mappings(self, table_name: str) -> List[Dict[str, str]]:
        """(source, logic, target) triples of one table."""
        return self._mapping(table_name).mapping_metadata()

    def _mapping(self, table_name: str) -> TableMapping:
        try:
            return self.mappings[table_name.lower()]
        except KeyError:
            raise ValueError(f"Unknown table '{table_name}'. Available: {sorted(self.mappings)}")

    def _encryptor_for(self, mapping: TableMapping) -> Optional[FieldEncryptor]:
        if not mapping.requires_encryptor:
            return None
        if self._encryptor is None:
            self._encryptor = FieldEncryptor.from_base64(self.settings.encryption_key)
        return self._encryptor

    def _target_pool(self) -> PostgresConnectionPool:
        return PostgresConnectionPool.for_conn_id(self.target_conn_id, self.settings.max_pg_connections)

    def _run_table(self, mapping: TableMapping, source_conn, target_conn=None, pool=None) -> MigrationResult:
        encryptor = self._encryptor_for(mapping)
        if mapping.upsert is not None:
            return OrderedUpsertMigration(
                mapping, self.settings, source_conn, target_conn,
                encryptor=encryptor, progress_listener=self.progress_listener,
            ).run()
        if target_conn is not None:
            pipeline = MigrationPipeline(
                mapping, self.settings, source_conn, target_conn=target_conn,
                encryptor=encryptor, progress_listener=self.progress_listener,
            )
        else:
            pipeline = MigrationPipeline(
                mapping, self.settings, source_conn, connection_pool=pool,
                writer_count=self.settings.writer_count(transactional=False),
                encryptor=encryptor, progress_listener=self.progress_listener,
            )
        return pipeline.run()

    def migrate_table(self, table_name: str, transactional: bool = True) -> MigrationResult:
        """
        Migrate one table.

        Transactional runs commit only after the whole table is loaded and roll
        back on any failure before re-raising it.
        """
        mapping = self._mapping(table_name)
        pool = self._target_pool()
        logger.info(f"Migrating {mapping.name} ({'transactional' if transactional else 'independent'} mode)")

        with self.source.connection() as source_conn:
            if transactional or mapping.upsert is not None:
                with pool.connection() as target_conn:
                    try:
                        result = self._run_table(mapping, source_conn, target_conn=target_conn)
                        target_conn.commit()
                    except Exception as e:
                        logger.error(f"Migration of {mapping.name} failed, rolling back: {e}")
                        target_conn.rollback()
                        raise
            else:
                result = self._run_table(mapping, source_conn, pool=pool)

        self.results[mapping.name] = result
        return result

    def migrate_all(self, transactional: bool = True) -> Dict[str, MigrationResult]:
        """
        Migrate every registered table in dependency order.

        Transactional: one connection, one commit; the first failure rolls back
        every table and is re-raised. self.results then holds the per-table
        results gathered before the failure.

        Independent: failures are recorded per table and the run continues.
        """
        self.results = {}
        order = migration_order(self.mappings)
        logger.info(f"Migrating {len(order)} tables: {', '.join(order)}")

        if not transactional:
            for name in order:
                started = time.monotonic()
                try:
                    self.migrate_table(name, transactional=False)
                except Exception as e:
                    logger.error(f"Table {name} failed, continuing with the remaining tables: {e}")
                    self.results[name] = _failed_result(self.mappings[name], e, time.monotonic() - started)
            return self.results

        pool = self._target_pool()
        with pool.connection() as target_conn:
            current = None
            try:
                for name in order:
                    current = self.mappings[name]
                    with self.source.connection() as source_conn:
                        self.results[name] = self._run_table(current, source_conn, target_conn=target_conn)
                target_conn.commit()
            except Exception as e:
                logger.error(f"Migration of {current.name if current else 'tables'} failed, rolling back all tables: {e}")
                target_conn.rollback()
                for result in self.results.values():
                    result.success = False
                    result.errors.append('rolled back')
                if current is not None:
                    self.results[current.name] = _failed_result(current, e)
                raise
        return self.results


def _summary(results: Dict[str, MigrationResult], error: Optional[BaseException] = None) -> Dict[str, Any]:
    success = error is None and all(r.success for r in results.values())
    return {
        'success': success,
        'per_table_results': {name: r.to_dict() for name, r in results.items()},
        'total_inserted': sum(r.records_inserted for r in results.values() if r.success),
        'errors': [f"{type(error).__name__}: {error}"] if error is not None else [],
    }


def run_migration(
    table_name: str,
    source_conn_id: str = 'mssql_source',
    target_conn_id: str = 'postgres_target',
    transactional: bool = True,
    settings: Optional[MigrationSettings] = None,
) -> Dict[str, Any]:
    """
    Migrate one table and report the outcome as a dict.

    Failures are reported with success=False rather than raised.
    """
    coordinator = MigrationCoordinator(source_conn_id, target_conn_id, settings)
    started = time.monotonic()
    try:
        return coordinator.migrate_table(table_name, transactional=transactional).to_dict()
    except Exception as e:
        logger.error(f"Migration of {table_name} failed: {e}")
        mapping = coordinator.mappings.get(table_name.lower())
        if mapping is None:
            return {'table_name': table_name, 'success': False, 'errors': [str(e)]}
        return _failed_result(mapping, e, time.monotonic() - started).to_dict()


def run_all_migrations(
    transactional: bool = True,
    source_conn_id: str = 'mssql_source',
    target_conn_id: str = 'postgres_target',
    settings: Optional[MigrationSettings] = None,
) -> Dict[str, Any]:
    """Migrate every table; returns per-table results and total inserted."""
    coordinator = MigrationCoordinator(source_conn_id, target_conn_id, settings)
    try:
        results = coordinator.migrate_all(transactional=transactional)
    except Exception as e:
        return _summary(coordinator.results, e)
    return _summary(results)
