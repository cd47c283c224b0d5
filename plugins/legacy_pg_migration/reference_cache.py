"""
Reference Cache

Loads keys already present in target lookup tables so the transformer can
reject rows that would violate a foreign key before they reach the bulk loader.

Sets are loaded once per table migration, before any worker starts, and are
read-only afterwards. A failed load yields an empty set: every row gated on it
is then skipped (fail-closed) and the run itself continues.
"""

from typing import Any, Dict, FrozenSet, Hashable, Iterable, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


def _key_of(row: Tuple[Any, ...]) -> Hashable:
    # Single-column keys are stored bare, composite keys as tuples
    if len(row) == 1:
        return row[0]
    return tuple(row)


class ReferenceKeySet:
    """Immutable set of valid keys with O(1) membership."""

    __slots__ = ('name', '_keys', 'load_failed')

    def __init__(self, name: str, keys: Iterable[Hashable] = (), load_failed: bool = False):
        self.name = name
        self._keys: FrozenSet[Hashable] = frozenset(keys)
        self.load_failed = load_failed

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self):
        return iter(self._keys)

    def __repr__(self) -> str:
        state = ', load_failed' if self.load_failed else ''
        return f"ReferenceKeySet({self.name!r}, {len(self._keys)} keys{state})"


class ReferenceCollection:
    """
    Ordered reference values used to fan one source row out into many records.

    Values are sorted at load time so the expansion order, and therefore every
    derived id, is the same on each run.
    """

    __slots__ = ('name', 'values', 'load_failed')

    def __init__(self, name: str, values: Iterable[Any] = (), load_failed: bool = False):
        self.name = name
        self.values: Tuple[Any, ...] = tuple(sorted(set(values)))
        self.load_failed = load_failed

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self):
        return iter(self.values)

    def __repr__(self) -> str:
        return f"ReferenceCollection({self.name!r}, {len(self.values)} values)"


def _fetch_rows(connection, query: str, parameters: Optional[List[Any]] = None) -> List[Tuple[Any, ...]]:
    # The savepoint keeps a failed lookup from aborting an enclosing transaction
    # that may already hold rows of earlier tables.
    in_transaction = not getattr(connection, 'autocommit', False)
    cursor = connection.cursor()
    try:
        if in_transaction:
            cursor.execute('SAVEPOINT reference_load')
        try:
            if parameters:
                cursor.execute(query, parameters)
            else:
                cursor.execute(query)
            rows = cursor.fetchall()
        except Exception:
            if in_transaction:
                cursor.execute('ROLLBACK TO SAVEPOINT reference_load')
            raise
        if in_transaction:
            cursor.execute('RELEASE SAVEPOINT reference_load')
        return rows
    finally:
        cursor.close()


def load_reference_keys(
    connection,
    name: str,
    query: str,
    parameters: Optional[List[Any]] = None,
) -> ReferenceKeySet:
    """
    Load a reference key set from the target store.

    Args:
        connection: DB-API connection to the target store
        name: Name used in log messages and skip reasons
        query: SELECT returning one key column (or several for composite keys)
        parameters: Optional query parameters

    Returns:
        ReferenceKeySet; empty with load_failed set when the query fails
    """
    try:
        rows = _fetch_rows(connection, query, parameters)
    except Exception as e:
        logger.error(f"Failed to load reference set '{name}': {e}")
        logger.warning(
            f"Reference set '{name}' is empty; every row validated against it will be skipped"
        )
        return ReferenceKeySet(name, load_failed=True)

    keys = [_key_of(row) for row in rows if all(v is not None for v in row)]
    key_set = ReferenceKeySet(name, keys)
    logger.info(f"Loaded {len(key_set)} keys for reference set '{name}'")
    return key_set


def load_reference_collection(
    connection,
    name: str,
    query: str,
    parameters: Optional[List[Any]] = None,
) -> ReferenceCollection:
    """
    Load an ordered fan-out collection from the target store.

    Same failure policy as load_reference_keys: an unreadable collection is
    empty, so rows fanned out over it produce no records and are skipped.
    """
    try:
        rows = _fetch_rows(connection, query, parameters)
    except Exception as e:
        logger.error(f"Failed to load reference collection '{name}': {e}")
        return ReferenceCollection(name, load_failed=True)

    collection = ReferenceCollection(name, (_key_of(row) for row in rows if row[0] is not None))
    logger.info(f"Loaded {len(collection)} values for reference collection '{name}'")
    return collection


def load_references(
    connection,
    key_queries: Dict[str, str],
    collection_queries: Dict[str, str],
) -> Tuple[Dict[str, ReferenceKeySet], Dict[str, ReferenceCollection]]:
    """Load every key set and fan-out collection a table mapping declares."""
    key_sets = {
        name: load_reference_keys(connection, name, query)
        for name, query in key_queries.items()
    }
    collections = {
        name: load_reference_collection(connection, name, query)
        for name, query in collection_queries.items()
    }
    return key_sets, collections
