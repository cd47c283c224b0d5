"""
Extraction Stream

Forward-only reader over a source query. Column ordinals are resolved once
from the cursor description; rows are handed on as immutable SourceRow tuples.

Every declared column of a row is read before the row is emitted, whatever the
later validation outcome, so sequential-access drivers never see a skipped
column. Binary values over the ceiling are dropped (or the row rejected, for
mandatory columns). pyodbc hands binary columns over already fetched, so this
check runs after the transfer; tables with large payloads also cap them in
the source query (see DATALENGTH in the attachments mapping), which keeps
oversized values from being transferred at all.
"""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging

from legacy_pg_migration.exceptions import MappingError

logger = logging.getLogger(__name__)


class PayloadTooLarge(Exception):
    """A binary value exceeded the configured ceiling while being read."""

    def __init__(self, size: int, ceiling: int):
        super().__init__(f"binary payload of {size} bytes exceeds ceiling of {ceiling} bytes")
        self.size = size
        self.ceiling = ceiling


class SourceRow:
    """
    One source record addressed by ordinal.

    The name index is shared by every row of a stream and resolved once.
    """

    __slots__ = ('values', 'index', 'rejection', 'payload_bytes')

    def __init__(
        self,
        values: Tuple[Any, ...],
        index: Dict[str, int],
        rejection: Optional[str] = None,
        payload_bytes: int = 0,
    ):
        self.values = values
        self.index = index
        self.rejection = rejection
        self.payload_bytes = payload_bytes

    def __getitem__(self, ordinal: int) -> Any:
        return self.values[ordinal]

    def __len__(self) -> int:
        return len(self.values)

    def get(self, name: str) -> Any:
        """Look a value up by column name (for diagnostics, not the hot path)."""
        return self.values[self.index[name]]

    def __repr__(self) -> str:
        # Values stay out of reprs so tracebacks never carry row contents
        key = self.values[0] if self.values else None
        return f"SourceRow(key={key!r}, columns={len(self.values)})"


def read_binary_payload(value: Any, ceiling: int, chunk_size: int) -> Optional[bytes]:
    """
    Apply the size ceiling to a binary value.

    Values the driver already fetched whole (bytes-like, as pyodbc returns
    them) are checked after the fetch and returned without copying; the
    ceiling on transferred bytes belongs in the source query. File-like
    values exposing read(n) are read in chunks and abandoned as soon as the
    running total passes the ceiling.

    Raises:
        PayloadTooLarge: If the value is larger than ceiling
    """
    if value is None:
        return None

    if isinstance(value, (bytes, bytearray, memoryview)):
        size = memoryview(value).nbytes
        if size > ceiling:
            raise PayloadTooLarge(size, ceiling)
        return value if isinstance(value, bytes) else bytes(value)

    read = getattr(value, 'read', None)
    if read is None:
        raise TypeError(f"Cannot read binary payload from {type(value).__name__}")

    buffer = bytearray()
    while True:
        chunk = read(chunk_size)
        if not chunk:
            break
        buffer += chunk
        if len(buffer) > ceiling:
            raise PayloadTooLarge(len(buffer), ceiling)
    return bytes(buffer)


class ExtractionStream:
    """
    Lazy, single-pass sequence of SourceRow over one source query.

    Not restartable: iterating a second time raises RuntimeError. The source
    connection must not be used by any other thread while the stream is open.
    """

    def __init__(
        self,
        connection,
        query: str,
        expected_columns: Optional[Sequence[str]] = None,
        binary_columns: Optional[Dict[str, bool]] = None,
        max_binary_bytes: int = 50 * 1024 * 1024,
        binary_chunk_bytes: int = 8 * 1024,
        skip_binary_payloads: bool = False,
        fetch_size: int = 1000,
        parameters: Optional[List[Any]] = None,
    ):
        """
        Args:
            connection: DB-API source connection (pyodbc in production)
            query: SELECT whose select-list order matches expected_columns
            expected_columns: Declared column names, checked against the cursor description
            binary_columns: Binary column name -> mandatory flag
            max_binary_bytes: Ceiling for a single binary value
            binary_chunk_bytes: Buffer size for chunked binary reads
            skip_binary_payloads: Emit None for every binary column without reading it
            fetch_size: Rows fetched per round trip
            parameters: Optional query parameters
        """
        self._connection = connection
        self._query = query
        self._expected = list(expected_columns) if expected_columns else None
        self._binary_columns = dict(binary_columns or {})
        self._max_binary_bytes = max_binary_bytes
        self._chunk_bytes = binary_chunk_bytes
        self._skip_binary = skip_binary_payloads
        self._fetch_size = fetch_size
        self._parameters = parameters
        self._opened = False
        self._iterating = False
        self._cursor = None
        self.columns: List[str] = []
        self.index: Dict[str, int] = {}
        self.rows_read = 0
        self.oversized_payloads = 0

    def _resolve_columns(self, description) -> None:
        names = [col[0] for col in description]
        lowered = [n.lower() for n in names]
        if self._expected is not None:
            expected = [n.lower() for n in self._expected]
            if lowered != expected:
                raise MappingError(
                    f"Source query columns {names} do not match declared columns {self._expected}"
                )
        self.columns = names
        self.index = {name: i for i, name in enumerate(lowered)}
        missing = [c for c in self._binary_columns if c.lower() not in self.index]
        if missing:
            raise MappingError(f"Binary columns not in source query: {missing}")

    def _decode(self, raw: Sequence[Any], binary_ordinals: List[Tuple[int, str, bool]]) -> SourceRow:
        values = list(raw)
        rejection = None
        payload_bytes = 0
        for ordinal, name, mandatory in binary_ordinals:
            if self._skip_binary:
                values[ordinal] = None
                continue
            try:
                payload = read_binary_payload(values[ordinal], self._max_binary_bytes, self._chunk_bytes)
            except PayloadTooLarge as e:
                self.oversized_payloads += 1
                payload = None
                if mandatory:
                    rejection = f"{name} {e}"
                else:
                    logger.warning(f"Row {self.rows_read + 1}: dropping {name}, {e}")
            values[ordinal] = payload
            if payload is not None:
                payload_bytes += len(payload)
        return SourceRow(tuple(values), self.index, rejection, payload_bytes)

    def open(self) -> 'ExtractionStream':
        """
        Execute the query and resolve column ordinals.

        Raises:
            RuntimeError: If the stream was already opened
            MappingError: If the result columns do not match the declaration
        """
        if self._opened:
            raise RuntimeError("ExtractionStream is single-pass and has already been opened")
        self._opened = True
        self._cursor = self._connection.cursor()
        try:
            if self._parameters:
                self._cursor.execute(self._query, self._parameters)
            else:
                self._cursor.execute(self._query)
            self._resolve_columns(self._cursor.description)
        except Exception:
            self.close()
            raise
        logger.info(f"Extraction opened with {len(self.columns)} columns")
        return self

    def close(self) -> None:
        if self._cursor is not None:
            self._cursor.close()
            self._cursor = None

    def __iter__(self) -> Iterator[SourceRow]:
        if not self._opened:
            self.open()
        elif self._cursor is None or self._iterating:
            raise RuntimeError("ExtractionStream is single-pass and cannot be iterated again")
        self._iterating = True
        cursor = self._cursor
        try:
            binary_ordinals = [
                (self.index[name.lower()], name, mandatory)
                for name, mandatory in self._binary_columns.items()
            ]

            while True:
                rows = cursor.fetchmany(self._fetch_size)
                if not rows:
                    break
                for raw in rows:
                    row = self._decode(raw, binary_ordinals) if binary_ordinals else SourceRow(tuple(raw), self.index)
                    self.rows_read += 1
                    yield row
        finally:
            self.close()
