"""
Row Transformer

Turns one SourceRow into zero or more target records (plain tuples in target
column order). Validation failures raise SkipRow; any other exception is a
row error. Both are counted by the caller and never stop the stream.
"""

from typing import Any, Dict, List, Tuple
import logging

from legacy_pg_migration.exceptions import MappingError, SkipRow
from legacy_pg_migration.field_rules import RecordScope, TransformContext, resolve_ordinal
from legacy_pg_migration.mapping import TableMapping

logger = logging.getLogger(__name__)

TargetRecord = Tuple[Any, ...]


def fan_out_id(base: Any, sequence: int, multiplier: int = 1000) -> int:
    """Deterministic id of the sequence-th record expanded from base."""
    if not 1 <= sequence < multiplier:
        raise ValueError(f"Fan-out sequence {sequence} outside 1..{multiplier - 1}")
    return int(base) * multiplier + sequence


class RowTransformer:
    """
    Compiled transform for one table.

    Built once per run after reference sets are loaded and the source column
    index is known. Immutable afterwards, so one instance is shared by all
    transform workers.
    """

    def __init__(self, mapping: TableMapping, context: TransformContext, index: Dict[str, int]):
        self.mapping = mapping
        self.context = context

        gate_rules = [c.rule for c in mapping.columns if c.rule.kind == 'foreign_key'] + list(mapping.gates)
        self._gates = [rule.compile_gate(index, context) for rule in gate_rules]
        self._derivations = [(d.name, d.compile(index)) for d in mapping.derivations]
        self._values = [c.rule.compile(index) for c in mapping.columns]

        self._fan_out = mapping.fan_out
        if self._fan_out is not None:
            fan_out = self._fan_out
            self._base_ordinal = resolve_ordinal(index, fan_out.base_source)
            if fan_out.collection is not None:
                try:
                    self._elements = tuple(context.collections[fan_out.collection])
                except KeyError:
                    raise MappingError(f"Reference collection '{fan_out.collection}' was not loaded")
            else:
                self._elements = None
                self._expand_ordinals = [resolve_ordinal(index, s) for s in fan_out.expand_sources]

    def _build(self, row, scope: RecordScope) -> TargetRecord:
        return tuple(value(row, scope) for value in self._values)

    def transform(self, row) -> List[TargetRecord]:
        """
        Transform one row.

        Returns:
            List of target records (exactly one unless the table fans out)

        Raises:
            SkipRow: The row fails validation
        """
        if row.rejection:
            raise SkipRow('mandatory binary payload too large', row.rejection)

        for gate in self._gates:
            gate(row)

        derived = {name: fn(row, self.context) for name, fn in self._derivations}

        if self._fan_out is None:
            return [self._build(row, RecordScope(self.context, derived))]
        return self._expand(row, derived)

    def _expand(self, row, derived: Dict[str, Any]) -> List[TargetRecord]:
        fan_out = self._fan_out
        base = row[self._base_ordinal]
        if base is None:
            raise SkipRow(f"{fan_out.base_source} is null", '')

        if self._elements is not None:
            elements = self._elements
        else:
            elements = fan_out.expand(*[row[o] for o in self._expand_ordinals])
        if not elements:
            raise SkipRow('no fan-out elements', f"{fan_out.base_source}={base!r}")

        records = []
        for sequence, element in enumerate(elements, start=1):
            scope = RecordScope(self.context, derived, element, fan_out_id(base, sequence, fan_out.multiplier))
            records.append(self._build(row, scope))
        return records
