"""
Table Mapping

Per-table configuration consumed by the generic pipeline: source query,
declared source columns, ordered target columns with one rule each, reference
sets, gates, fan-out and upsert options.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from legacy_pg_migration.exceptions import MappingError
from legacy_pg_migration.field_rules import (
    FanOutId,
    FanOutValue,
    FieldRule,
    ForeignKey,
    RowDerivation,
)


@dataclass(frozen=True)
class TargetColumn:
    """One target column: name, PostgreSQL type for binary encoding, and rule."""

    name: str
    pg_type: str
    rule: FieldRule


@dataclass(frozen=True)
class FanOut:
    """
    Expansion of one source row into several records.

    Elements come either from a reference collection loaded from the target
    (one record per company, say) or from an expand function applied to
    source columns (one record per non-blank header). Each record gets the
    id base * multiplier + sequence, sequence starting at 1 in element order.
    """

    base_source: str
    collection: Optional[str] = None
    expand: Optional[Callable[..., Sequence[Any]]] = None
    expand_sources: Sequence[str] = ()
    multiplier: int = 1000

    def describe(self) -> str:
        what = f"each value of {self.collection}" if self.collection else 'each expanded element'
        return f"One record per {what}, id = {self.base_source} * {self.multiplier} + sequence"


@dataclass(frozen=True)
class UpsertOptions:
    """Ordered insert-or-update path instead of the bulk pipeline."""

    conflict_columns: Sequence[str]
    sequence_column: str
    update_columns: Optional[Sequence[str]] = None
    chunk_size: int = 500


@dataclass
class TableMapping:
    name: str
    description: str
    source_query: str
    source_columns: List[str]
    target_table: str
    columns: List[TargetColumn]
    target_schema: str = 'public'
    reference_keys: Dict[str, str] = field(default_factory=dict)
    reference_collections: Dict[str, str] = field(default_factory=dict)
    gates: List[ForeignKey] = field(default_factory=list)
    derivations: List[RowDerivation] = field(default_factory=list)
    fan_out: Optional[FanOut] = None
    binary_columns: Dict[str, bool] = field(default_factory=dict)
    upsert: Optional[UpsertOptions] = None
    depends_on: List[str] = field(default_factory=list)
    requires_encryptor: bool = False
    logics: Optional[List[str]] = None
    # settings -> parameters bound to the '?' markers of source_query
    source_parameters: Optional[Callable[[Any], List[Any]]] = None

    @property
    def target_column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def column_types(self) -> List[str]:
        return [c.pg_type for c in self.columns]

    @property
    def qualified_target(self) -> str:
        return f"{self.target_schema}.{self.target_table}"

    def get_logics(self) -> List[str]:
        """MigrationLogics: one descriptor per target column."""
        if self.logics is not None:
            return list(self.logics)
        return [c.rule.logic for c in self.columns]

    def mapping_metadata(self) -> List[Dict[str, str]]:
        """(source, logic, target) triples for display."""
        return [
            {'source': column.rule.source_label(), 'logic': logic, 'target': column.name}
            for column, logic in zip(self.columns, self.get_logics())
        ]

    def query_parameters(self, settings) -> Optional[List[Any]]:
        if self.source_parameters is None:
            return None
        return list(self.source_parameters(settings))

    def batch_size(self, settings) -> int:
        """Binary-heavy tables use small batches so payload bytes stay bounded."""
        if self.binary_columns and not settings.skip_binary_payloads:
            return min(settings.batch_size, settings.binary_batch_size)
        return settings.batch_size

    def validate(self) -> None:
        """
        Check the mapping is self-consistent.

        Raises:
            MappingError: On the first inconsistency found
        """
        logics = self.get_logics()
        if len(logics) != len(self.columns):
            raise MappingError(
                f"{self.name}: {len(logics)} logic descriptors for {len(self.columns)} target columns"
            )
        if not self.columns:
            raise MappingError(f"{self.name}: no target columns declared")

        names = self.target_column_names
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise MappingError(f"{self.name}: duplicate target columns {duplicates}")

        sources = {s.lower() for s in self.source_columns}

        def check_sources(columns, owner):
            missing = [s for s in columns if s.lower() not in sources]
            if missing:
                raise MappingError(f"{self.name}: {owner} reads undeclared source columns {missing}")

        for column in self.columns:
            rule = column.rule
            check_sources(rule.sources, f"column {column.name}")
            if isinstance(rule, ForeignKey) and rule.reference not in self.reference_keys:
                raise MappingError(f"{self.name}: column {column.name} uses unknown reference '{rule.reference}'")
            if isinstance(rule, (FanOutValue, FanOutId)) and self.fan_out is None:
                raise MappingError(f"{self.name}: column {column.name} needs a fan-out declaration")

        for gate in self.gates:
            check_sources(gate.sources, 'gate')
            if gate.reference not in self.reference_keys:
                raise MappingError(f"{self.name}: gate uses unknown reference '{gate.reference}'")

        for derivation in self.derivations:
            check_sources(derivation.sources, f"derivation {derivation.name}")

        check_sources(self.binary_columns.keys(), 'binary column list')

        if self.fan_out is not None:
            fan_out = self.fan_out
            check_sources([fan_out.base_source, *fan_out.expand_sources], 'fan-out')
            if (fan_out.collection is None) == (fan_out.expand is None):
                raise MappingError(f"{self.name}: fan-out needs exactly one of collection or expand")
            if fan_out.collection is not None and fan_out.collection not in self.reference_collections:
                raise MappingError(f"{self.name}: fan-out uses unknown collection '{fan_out.collection}'")

        if self.upsert is not None:
            unknown = [c for c in self.upsert.conflict_columns if c not in names]
            if self.upsert.update_columns:
                unknown += [c for c in self.upsert.update_columns if c not in names]
            if unknown:
                raise MappingError(f"{self.name}: upsert columns not in target columns {unknown}")
            check_sources([self.upsert.sequence_column], 'upsert sequence')
