"""
Tests for the Reference Cache Module

These tests validate key set loading, composite keys, fan-out collections
and the fail-closed handling of lookup failures.
"""

from legacy_pg_migration.reference_cache import (
    ReferenceCollection,
    ReferenceKeySet,
    load_reference_collection,
    load_reference_keys,
    load_references,
)

from .fakes import FakeDatabaseError


class TestReferenceKeySet:
    """Test the in-memory key set."""

    def test_membership(self):
        """Test keys are found and missing keys are not."""
        keys = ReferenceKeySet('customers', [1, 2, 3])
        assert 2 in keys
        assert 4 not in keys
        assert len(keys) == 3
        assert not keys.load_failed

    def test_collection_is_sorted_and_unique(self):
        """Test fan-out values come out in a stable order."""
        collection = ReferenceCollection('companies', [30, 10, 20, 10])
        assert collection.values == (10, 20, 30)
        assert list(collection) == [10, 20, 30]


class TestLoadReferenceKeys:
    """Test loading key sets through a target connection."""

    def test_loads_single_column_keys(self, database, target_conn):
        """Test rows become bare keys and null keys are dropped."""
        database.reference_rows['SELECT id FROM customers'] = [(1,), (2,), (None,)]

        keys = load_reference_keys(target_conn, 'customers', 'SELECT id FROM customers')

        assert set(keys) == {1, 2}
        assert not keys.load_failed

    def test_loads_composite_keys(self, database, target_conn):
        """Test multi-column rows become tuple keys."""
        database.reference_rows['SELECT a, b FROM pairs'] = [(1, 'x'), (2, 'y'), (3, None)]

        keys = load_reference_keys(target_conn, 'pairs', 'SELECT a, b FROM pairs')

        assert (1, 'x') in keys
        assert (2, 'y') in keys
        assert len(keys) == 2

    def test_runs_inside_savepoint(self, database, target_conn):
        """Test lookups in a transaction are wrapped in a savepoint."""
        database.reference_rows['SELECT id FROM customers'] = [(1,)]

        load_reference_keys(target_conn, 'customers', 'SELECT id FROM customers')

        assert target_conn.statements == [
            'SAVEPOINT reference_load',
            'SELECT id FROM customers',
            'RELEASE SAVEPOINT reference_load',
        ]

    def test_autocommit_connection_skips_savepoint(self, database, target_conn):
        """Test no savepoint is issued outside a transaction."""
        target_conn.autocommit = True
        database.reference_rows['SELECT id FROM customers'] = [(1,)]

        load_reference_keys(target_conn, 'customers', 'SELECT id FROM customers')

        assert target_conn.statements == ['SELECT id FROM customers']

    def test_failure_yields_empty_failed_set(self, database, target_conn):
        """Test a failed lookup is fail-closed and rolls back to the savepoint."""
        database.reference_errors['SELECT id FROM customers'] = FakeDatabaseError('relation does not exist')

        keys = load_reference_keys(target_conn, 'customers', 'SELECT id FROM customers')

        assert len(keys) == 0
        assert keys.load_failed
        assert 1 not in keys
        assert 'ROLLBACK TO SAVEPOINT reference_load' in target_conn.statements
        # Earlier staged work is untouched
        assert target_conn.rollbacks == 0


class TestLoadReferences:
    """Test loading every reference a mapping declares."""

    def test_loads_sets_and_collections(self, database, target_conn):
        """Test key sets and collections are returned by name."""
        database.reference_rows['SELECT id FROM customers'] = [(5,)]
        database.reference_rows['SELECT company_id FROM companies'] = [(2,), (1,)]

        key_sets, collections = load_references(
            target_conn,
            {'customers': 'SELECT id FROM customers'},
            {'companies': 'SELECT company_id FROM companies'},
        )

        assert 5 in key_sets['customers']
        assert collections['companies'].values == (1, 2)

    def test_failed_collection_is_empty(self, database, target_conn):
        """Test a failed collection load produces no fan-out elements."""
        database.reference_errors['SELECT company_id FROM companies'] = FakeDatabaseError('timeout')

        collection = load_reference_collection(target_conn, 'companies', 'SELECT company_id FROM companies')

        assert collection.values == ()
        assert collection.load_failed
