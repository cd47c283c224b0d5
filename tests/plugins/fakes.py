"""
In-memory stand-ins for the source (pyodbc) and target (psycopg2) connections.

The fake target decodes the binary COPY stream it is given, so writer and
pipeline tests check what would actually reach PostgreSQL.
"""

import struct
import threading

from psycopg2 import sql

COPY_HEADER_LENGTH = 19


class FakeDatabaseError(Exception):
    """Raised by the fake target in place of a psycopg2 error."""


def decode_copy(data):
    """Split a binary COPY payload into rows of raw field bytes (None for NULL)."""
    assert data[:11] == b'PGCOPY\n\xff\r\n\x00', 'missing COPY signature'
    offset = COPY_HEADER_LENGTH
    rows = []
    while True:
        (field_count,) = struct.unpack_from('>h', data, offset)
        offset += 2
        if field_count == -1:
            break
        fields = []
        for _ in range(field_count):
            (length,) = struct.unpack_from('>i', data, offset)
            offset += 4
            if length == -1:
                fields.append(None)
            else:
                fields.append(data[offset:offset + length])
                offset += length
        rows.append(tuple(fields))
    assert offset == len(data), 'trailing bytes after COPY trailer'
    return rows


def _copy_table(statement):
    identifiers = [part for part in statement.seq if isinstance(part, sql.Identifier)]
    return identifiers[1].string


class FakeSourceCursor:
    def __init__(self, columns, rows, fail_after=None, fail_on_execute=None):
        self.columns = columns
        self.rows = list(rows)
        self.fail_after = fail_after
        self.fail_on_execute = fail_on_execute
        self.description = None
        self.executed = []
        self.closed = False
        self._position = 0

    def execute(self, query, parameters=None):
        self.executed.append((query, parameters))
        if self.fail_on_execute is not None:
            raise self.fail_on_execute
        self.description = [(name, None, None, None, None, None, None) for name in self.columns]

    def fetchmany(self, size):
        if self.fail_after is not None and self._position >= self.fail_after:
            raise FakeDatabaseError('source read failed')
        end = self._position + size
        if self.fail_after is not None:
            end = min(end, self.fail_after)
        chunk = self.rows[self._position:end]
        self._position += len(chunk)
        return chunk

    def close(self):
        self.closed = True


class FakeSourceConnection:
    """Source connection returning fixed rows for any query."""

    def __init__(self, columns, rows, fail_after=None, fail_on_execute=None):
        self.columns = columns
        self.rows = rows
        self.fail_after = fail_after
        self.fail_on_execute = fail_on_execute
        self.cursors = []

    def cursor(self):
        cursor = FakeSourceCursor(self.columns, self.rows, self.fail_after, self.fail_on_execute)
        self.cursors.append(cursor)
        return cursor


class FakeDatabase:
    """
    Committed state shared by every fake target connection.

    reference_rows maps a lookup query to the rows it returns; reference_errors
    maps a lookup query to the exception it raises. fail_copy_calls holds the
    1-based COPY call numbers that fail; fail_at_record fails any COPY session
    that would bring a connection's staged row count to that value.
    """

    def __init__(self):
        self.committed = {}
        self.reference_rows = {}
        self.reference_errors = {}
        self.fail_copy_calls = set()
        self.fail_at_record = None
        self.copy_calls = 0
        self.lock = threading.Lock()

    def rows(self, table):
        return list(self.committed.get(table, []))

    def int_values(self, table, position, staged_on=None):
        rows = staged_on.staged.get(table, []) if staged_on is not None else self.rows(table)
        return [None if r[position] is None else struct.unpack('>i', r[position])[0] for r in rows]

    def int8_values(self, table, position, staged_on=None):
        rows = staged_on.staged.get(table, []) if staged_on is not None else self.rows(table)
        return [None if r[position] is None else struct.unpack('>q', r[position])[0] for r in rows]


class FakeTargetCursor:
    def __init__(self, connection):
        self.connection = connection
        self.statements = connection.statements
        self._result = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def execute(self, query, parameters=None):
        self.statements.append(query)
        database = self.connection.database
        if isinstance(query, str) and query.split()[0].upper() in ('SAVEPOINT', 'RELEASE', 'ROLLBACK'):
            return
        if query in database.reference_errors:
            raise database.reference_errors[query]
        self._result = list(database.reference_rows.get(query, []))

    def fetchall(self):
        return self._result

    def copy_expert(self, statement, stream, size=8192):
        database = self.connection.database
        with database.lock:
            database.copy_calls += 1
            call_number = database.copy_calls
        chunks = []
        while True:
            chunk = stream.read(size)
            if not chunk:
                break
            chunks.append(chunk)
        rows = decode_copy(b''.join(chunks))
        table = _copy_table(statement)
        if call_number in database.fail_copy_calls:
            raise FakeDatabaseError(f"COPY call {call_number} rejected")
        staged = self.connection.staged.setdefault(table, [])
        if database.fail_at_record is not None and len(staged) + len(rows) >= database.fail_at_record:
            raise FakeDatabaseError(f"record {database.fail_at_record} violates a constraint")
        staged.extend(rows)

    def close(self):
        pass


class FakeTargetConnection:
    """Target connection staging COPY rows until commit."""

    def __init__(self, database, autocommit=False):
        self.database = database
        self.autocommit = autocommit
        self.closed = 0
        self.staged = {}
        self.statements = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return FakeTargetCursor(self)

    def commit(self):
        with self.database.lock:
            for table, rows in self.staged.items():
                self.database.committed.setdefault(table, []).extend(rows)
        self.staged = {}
        self.commits += 1

    def rollback(self):
        self.staged = {}
        self.rollbacks += 1


class FakeConnectionPool:
    """getconn/putconn pool over a shared FakeDatabase."""

    def __init__(self, database):
        self.database = database
        self._free = []
        self._lock = threading.Lock()
        self.created = 0
        self.checked_out = 0

    def getconn(self):
        with self._lock:
            self.checked_out += 1
            if self._free:
                return self._free.pop()
            self.created += 1
        return FakeTargetConnection(self.database)

    def putconn(self, conn):
        with self._lock:
            self.checked_out -= 1
            self._free.append(conn)
