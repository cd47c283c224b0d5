"""Shared fixtures for the migration engine tests."""

import pytest

from legacy_pg_migration.field_rules import Direct, ForeignKey
from legacy_pg_migration.mapping import TableMapping, TargetColumn
from legacy_pg_migration.settings import MigrationSettings

from .fakes import FakeConnectionPool, FakeDatabase, FakeSourceConnection, FakeTargetConnection

CUSTOMERS_QUERY = 'SELECT customer_id FROM customers'


@pytest.fixture
def database():
    """Empty fake target database."""
    return FakeDatabase()


@pytest.fixture
def target_conn(database):
    """Single fake target connection in a transaction."""
    return FakeTargetConnection(database)


@pytest.fixture
def connection_pool(database):
    return FakeConnectionPool(database)


@pytest.fixture
def make_source():
    """Factory for fake source connections."""
    def factory(columns, rows, **kwargs):
        return FakeSourceConnection(columns, rows, **kwargs)
    return factory


@pytest.fixture
def settings():
    """Small queues and batches so several batches flow in every test."""
    return MigrationSettings(
        batch_size=3,
        transform_workers=2,
        raw_queue_capacity=4,
        batch_queue_capacity=2,
        progress_interval=2,
        hash_iterations=1,
    )


@pytest.fixture
def orders_mapping():
    """Three-column mapping gated on a customers reference set."""
    return TableMapping(
        name='orders',
        description='Orders with a customer foreign key',
        source_query='SELECT ID, CUSTOMER_ID, AMOUNT FROM ORDERS ORDER BY ID',
        source_columns=['ID', 'CUSTOMER_ID', 'AMOUNT'],
        target_table='orders',
        reference_keys={'customers': CUSTOMERS_QUERY},
        columns=[
            TargetColumn('order_id', 'int4', Direct('ID')),
            TargetColumn('customer_id', 'int4', ForeignKey('CUSTOMER_ID', 'customers')),
            TargetColumn('amount', 'int4', Direct('AMOUNT', default=0)),
        ],
    )
