"""
PostgreSQL Binary COPY

Encodes target records in PostgreSQL's binary COPY format and streams them
through psycopg2's copy_expert. One COPY statement is one import session: it
either loads every row it was given or none of them.

Format:
- Header: PGCOPY signature + flags + extension length
- Rows: field count (int16) + (length int32, data) per field, length -1 for NULL
- Trailer: -1 as int16

Reference: https://www.postgresql.org/docs/current/sql-copy.html
"""

from datetime import datetime, date, time as dt_time, timezone
from decimal import Decimal
from io import BytesIO, RawIOBase
from typing import Any, Callable, Iterable, List, Sequence, Tuple
from uuid import UUID
import json
import logging
import struct

from psycopg2 import sql

logger = logging.getLogger(__name__)

BINARY_HEADER = b'PGCOPY\n\xff\r\n\x00' + struct.pack('>I', 0) + struct.pack('>I', 0)
BINARY_TRAILER = struct.pack('>h', -1)
NULL_FIELD = struct.pack('>i', -1)

PG_EPOCH = datetime(2000, 1, 1)
PG_EPOCH_DATE = date(2000, 1, 1)

_INT16 = struct.Struct('>h')
_INT32 = struct.Struct('>i')
_INT64 = struct.Struct('>q')


def _encode_bool(value: Any) -> bytes:
    return b'\x01' if value else b'\x00'


def _encode_int2(value: Any) -> bytes:
    return _INT16.pack(int(value))


def _encode_int4(value: Any) -> bytes:
    return _INT32.pack(int(value))


def _encode_int8(value: Any) -> bytes:
    return _INT64.pack(int(value))


def _encode_float4(value: Any) -> bytes:
    return struct.pack('>f', float(value))


def _encode_float8(value: Any) -> bytes:
    return struct.pack('>d', float(value))


def _encode_text(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode('utf-8')


def _encode_bytea(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode('utf-8')
    return bytes(value)


def _micros_since_epoch(value: datetime) -> int:
    delta = value - PG_EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def _encode_timestamp(value: Any) -> bytes:
    """Microseconds since 2000-01-01; any timezone is dropped."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if not isinstance(value, datetime):
        raise TypeError(f"Cannot encode timestamp from {type(value).__name__}")
    return _INT64.pack(_micros_since_epoch(value.replace(tzinfo=None)))


def _encode_timestamptz(value: Any) -> bytes:
    """Aware values are normalized to UTC; naive values are taken as UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return _encode_timestamp(value)


def _encode_date(value: Any) -> bytes:
    if isinstance(value, str):
        value = date.fromisoformat(value)
    elif isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        raise TypeError(f"Cannot encode date from {type(value).__name__}")
    return _INT32.pack((value - PG_EPOCH_DATE).days)


def _encode_time(value: Any) -> bytes:
    if isinstance(value, str):
        value = dt_time.fromisoformat(value)
    if not isinstance(value, dt_time):
        raise TypeError(f"Cannot encode time from {type(value).__name__}")
    micros = ((value.hour * 60 + value.minute) * 60 + value.second) * 1_000_000 + value.microsecond
    return _INT64.pack(micros)


def _encode_numeric(value: Any) -> bytes:
    """
    numeric: ndigits, weight, sign, dscale (int16 each) then base-10000 digits.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value.is_nan():
        return struct.pack('>hhHh', 0, 0, 0xC000, 0)
    if value.is_infinite():
        raise ValueError("numeric does not support infinity")

    negative, digits, exponent = value.as_tuple()
    sign = 0x4000 if negative else 0
    dscale = max(0, -exponent)
    digit_str = ''.join(str(d) for d in digits) + ('0' * exponent if exponent > 0 else '')

    if dscale:
        digit_str = digit_str.rjust(dscale + 1, '0')
        int_part, frac_part = digit_str[:-dscale], digit_str[-dscale:]
    else:
        int_part, frac_part = digit_str, ''

    int_part = int_part.lstrip('0')
    int_part = int_part.rjust(-(-len(int_part) // 4) * 4, '0')
    frac_part = frac_part.ljust(-(-len(frac_part) // 4) * 4, '0')

    groups = [int(int_part[i:i + 4]) for i in range(0, len(int_part), 4)]
    weight = len(groups) - 1
    groups += [int(frac_part[i:i + 4]) for i in range(0, len(frac_part), 4)]

    while groups and groups[0] == 0:
        groups.pop(0)
        weight -= 1
    while groups and groups[-1] == 0:
        groups.pop()

    if not groups:
        return struct.pack('>hhHh', 0, 0, 0, dscale)
    header = struct.pack('>hhHh', len(groups), weight, sign, dscale)
    return header + b''.join(struct.pack('>H', g) for g in groups)


def _encode_uuid(value: Any) -> bytes:
    if isinstance(value, str):
        value = UUID(value)
    if not isinstance(value, UUID):
        raise TypeError(f"Cannot encode uuid from {type(value).__name__}")
    return value.bytes


def _encode_json(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode('utf-8')
    return json.dumps(value, default=str).encode('utf-8')


def _encode_jsonb(value: Any) -> bytes:
    # jsonb binary input carries a version byte
    return b'\x01' + _encode_json(value)


_ENCODERS = {
    'bool': _encode_bool,
    'boolean': _encode_bool,
    'int2': _encode_int2,
    'smallint': _encode_int2,
    'int4': _encode_int4,
    'int': _encode_int4,
    'integer': _encode_int4,
    'int8': _encode_int8,
    'bigint': _encode_int8,
    'float4': _encode_float4,
    'real': _encode_float4,
    'float8': _encode_float8,
    'double precision': _encode_float8,
    'text': _encode_text,
    'varchar': _encode_text,
    'character varying': _encode_text,
    'char': _encode_text,
    'bytea': _encode_bytea,
    'timestamp': _encode_timestamp,
    'timestamptz': _encode_timestamptz,
    'timestamp with time zone': _encode_timestamptz,
    'date': _encode_date,
    'time': _encode_time,
    'numeric': _encode_numeric,
    'decimal': _encode_numeric,
    'uuid': _encode_uuid,
    'json': _encode_json,
    'jsonb': _encode_jsonb,
}


def encoder_for(pg_type: str) -> Callable[[Any], bytes]:
    base_type = pg_type.lower().split('(')[0].strip()
    try:
        return _ENCODERS[base_type]
    except KeyError:
        raise ValueError(f"Unsupported PostgreSQL type for binary COPY: {pg_type}")


class BinaryEncoder:
    """
    Encodes whole records for a fixed column type list.

    Column encoders are resolved once at construction; an unsupported type
    fails here rather than in the middle of a load.
    """

    def __init__(self, column_types: Sequence[str]):
        self.column_types = list(column_types)
        self._encoders = [encoder_for(t) for t in self.column_types]
        self._field_count = _INT16.pack(len(self._encoders))

    def encode_value(self, value: Any, column: int) -> bytes:
        """Length-prefixed field, or the NULL marker."""
        if value is None:
            return NULL_FIELD
        data = self._encoders[column](value)
        return _INT32.pack(len(data)) + data

    def encode_record(self, record: Tuple[Any, ...]) -> bytes:
        if len(record) != len(self._encoders):
            raise ValueError(f"Record has {len(record)} fields, expected {len(self._encoders)}")
        parts = [self._field_count]
        for column, value in enumerate(record):
            parts.append(self.encode_value(value, column))
        return b''.join(parts)


class BinaryRowStream(RawIOBase):
    """
    File-like producer of binary COPY data, read lazily by copy_expert.

    Records are pulled from the iterable only as the server consumes bytes.
    An exception raised by the iterable propagates out of read(), which makes
    psycopg2 abort the COPY so nothing from this session is kept.
    """

    def __init__(self, records: Iterable[Tuple[Any, ...]], encoder: BinaryEncoder):
        self._iterator = iter(records)
        self._encoder = encoder
        self._buffer = BytesIO()
        self._header_written = False
        self._exhausted = False
        self._row_count = 0

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if not self._header_written:
            self._buffer.write(BINARY_HEADER)
            self._header_written = True

        while (size < 0 or self._buffer.tell() < size) and not self._exhausted:
            try:
                record = next(self._iterator)
            except StopIteration:
                self._buffer.write(BINARY_TRAILER)
                self._exhausted = True
                break
            self._buffer.write(self._encoder.encode_record(record))
            self._row_count += 1

        data = self._buffer.getvalue()
        self._buffer = BytesIO()
        if size < 0 or len(data) <= size:
            return data
        self._buffer.write(data[size:])
        return data[:size]

    @property
    def rows_encoded(self) -> int:
        return self._row_count


def build_copy_sql(schema_name: str, table_name: str, columns: List[str]) -> sql.Composed:
    """COPY ... FROM STDIN WITH (FORMAT BINARY) with quoted identifiers."""
    return sql.SQL('COPY {}.{} ({}) FROM STDIN WITH (FORMAT BINARY)').format(
        sql.Identifier(schema_name),
        sql.Identifier(table_name),
        sql.SQL(', ').join([sql.Identifier(col) for col in columns]),
    )


def copy_records(
    postgres_conn,
    schema_name: str,
    table_name: str,
    columns: List[str],
    column_types: List[str],
    records: Iterable[Tuple[Any, ...]],
) -> int:
    """
    Run one binary COPY session over the given records.

    Returns:
        Number of records sent
    """
    stream = BinaryRowStream(records, BinaryEncoder(column_types))
    with postgres_conn.cursor() as cursor:
        cursor.copy_expert(build_copy_sql(schema_name, table_name, columns), stream)
    return stream.rows_encoded
