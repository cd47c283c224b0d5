"""
Connections

Source (SQL Server over ODBC) and target (PostgreSQL) connections resolved
from Airflow connection ids. Only the coordinator uses this module; the engine
itself works on plain DB-API connections.
"""

from typing import Dict, Optional
import contextlib
import logging
import threading

from airflow.hooks.base import BaseHook
from airflow.providers.postgres.hooks.postgres import PostgresHook
from psycopg2 import pool as pg_pool
import pyodbc

logger = logging.getLogger(__name__)


class OdbcConnectionHelper:
    """
    Opens pyodbc connections to the legacy SQL Server database.

    Each extraction stream gets its own connection; pyodbc connections are
    never shared between threads.
    """

    def __init__(self, odbc_conn_id: str, driver: str = '{ODBC Driver 18 for SQL Server}'):
        self.conn_id = odbc_conn_id
        self.driver = driver
        self._conn_config: Optional[Dict[str, str]] = None

    def _get_connection_config(self) -> Dict[str, str]:
        """ODBC keywords built from the Airflow connection (cached)."""
        if self._conn_config is None:
            conn = BaseHook.get_connection(self.conn_id)
            port = conn.port or 1433
            server = f"{conn.host},{port}" if port != 1433 else conn.host

            config = {
                'DRIVER': self.driver,
                'SERVER': server,
                'DATABASE': conn.schema,
                'TrustServerCertificate': 'yes',
            }
            if conn.login:
                config['UID'] = conn.login
                config['PWD'] = conn.password or ''
                config['Trusted_Connection'] = 'no'
            else:
                # Windows authentication (Kerberos)
                config['Trusted_Connection'] = 'yes'
            self._conn_config = config
        return self._conn_config

    def _build_connection_string(self) -> str:
        config = self._get_connection_config()
        return ';'.join(f"{k}={v}" for k, v in config.items() if v)

    def get_conn(self) -> pyodbc.Connection:
        """Open a new read connection."""
        return pyodbc.connect(self._build_connection_string(), readonly=True)

    @contextlib.contextmanager
    def connection(self):
        conn = self.get_conn()
        try:
            yield conn
        finally:
            conn.close()


class PostgresConnectionPool:
    """
    Thread-safe pool of target connections, one per Airflow connection id.

    Pooled writers take a connection per batch; transactional runs take a
    single connection for the whole run.
    """

    _pools: Dict[str, 'PostgresConnectionPool'] = {}
    _pools_lock = threading.Lock()

    def __init__(self, postgres_conn_id: str, max_connections: int = 8):
        self.conn_id = postgres_conn_id
        self.hook = PostgresHook(postgres_conn_id=postgres_conn_id)
        conn = self.hook.get_connection(postgres_conn_id)
        self._pool = pg_pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=max_connections,
            host=conn.host,
            port=conn.port or 5432,
            database=conn.schema or conn.login,
            user=conn.login,
            password=conn.password,
        )
        logger.info(f"Created PostgreSQL pool for {postgres_conn_id}: max={max_connections}")

    @classmethod
    def for_conn_id(cls, postgres_conn_id: str, max_connections: int = 8) -> 'PostgresConnectionPool':
        """Shared pool for a connection id, created on first use."""
        if postgres_conn_id not in cls._pools:
            with cls._pools_lock:
                if postgres_conn_id not in cls._pools:
                    cls._pools[postgres_conn_id] = cls(postgres_conn_id, max_connections)
        return cls._pools[postgres_conn_id]

    def getconn(self):
        return self._pool.getconn()

    def putconn(self, conn) -> None:
        self._pool.putconn(conn)

    @contextlib.contextmanager
    def connection(self):
        """
        Borrow a connection; anything not committed is rolled back on return.
        """
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            if not conn.closed and not conn.autocommit:
                try:
                    conn.rollback()
                except Exception:
                    logger.exception("Exception occurred during PostgreSQL connection rollback")
            self._pool.putconn(conn)

    def closeall(self) -> None:
        self._pool.closeall()
        with self._pools_lock:
            self._pools.pop(self.conn_id, None)
