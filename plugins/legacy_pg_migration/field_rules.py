"""
Field Rules

Declarative per-column policies. A TableMapping lists one rule per target
column; the transformer compiles them against the source column index once
per run, so the per-row path only does ordinal lookups.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from legacy_pg_migration.exceptions import MappingError, SkipRow

# Bound value function: (row, scope) -> value
ValueFn = Callable[[Any, 'RecordScope'], Any]
# Bound gate: (row) -> None, raises SkipRow
GateFn = Callable[[Any], None]


class TransformContext:
    """Per-run state shared read-only by every transform worker."""

    def __init__(
        self,
        key_sets: Optional[Dict[str, Any]] = None,
        collections: Optional[Dict[str, Any]] = None,
        run_started_at: Optional[datetime] = None,
        settings=None,
        encryptor=None,
    ):
        self.key_sets = key_sets or {}
        self.collections = collections or {}
        self.run_started_at = run_started_at or datetime.now(timezone.utc)
        self.settings = settings
        self.encryptor = encryptor


class RecordScope:
    """Values available while one target record is being built."""

    __slots__ = ('context', 'derived', 'element', 'record_id')

    def __init__(self, context: TransformContext, derived: Dict[str, Any], element: Any = None, record_id: Any = None):
        self.context = context
        self.derived = derived
        self.element = element
        self.record_id = record_id


def resolve_ordinal(index: Dict[str, int], source: str) -> int:
    try:
        return index[source.lower()]
    except KeyError:
        raise MappingError(f"Source column '{source}' is not in the source query")


class FieldRule:
    """Base class: one policy producing the value of one target column."""

    kind = 'rule'
    sources: Tuple[str, ...] = ()

    def __init__(self, logic: Optional[str] = None):
        self._logic = logic

    @property
    def logic(self) -> str:
        return self._logic or self.describe()

    def describe(self) -> str:
        return self.kind

    def source_label(self) -> str:
        return ', '.join(self.sources) if self.sources else '-'

    def compile(self, index: Dict[str, int]) -> ValueFn:
        raise NotImplementedError

    def compile_gate(self, index: Dict[str, int], context: TransformContext) -> Optional[GateFn]:
        return None


class Direct(FieldRule):
    """Copy the source value, optionally converted; None falls back to default."""

    kind = 'direct'

    def __init__(self, source: str, convert: Optional[Callable[[Any], Any]] = None,
                 default: Any = None, logic: Optional[str] = None):
        super().__init__(logic)
        self.sources = (source,)
        self.convert = convert
        self.default = default

    def describe(self) -> str:
        if self.default is not None:
            return f"Direct copy (default {self.default!r} when null)"
        return 'Direct copy'

    def compile(self, index):
        ordinal = resolve_ordinal(index, self.sources[0])
        convert, default = self.convert, self.default

        def value(row, scope):
            raw = row[ordinal]
            if raw is not None and convert is not None:
                raw = convert(raw)
            return default if raw is None else raw
        return value


class Fixed(FieldRule):
    """Ignore the source and emit a constant (None for an explicit null)."""

    kind = 'fixed'

    def __init__(self, value: Any, logic: Optional[str] = None):
        super().__init__(logic)
        self.value = value

    def describe(self) -> str:
        return 'Fixed null' if self.value is None else f"Fixed default {self.value!r}"

    def compile(self, index):
        constant = self.value
        return lambda row, scope: constant


class RunTimestamp(FieldRule):
    """Timestamp taken once at run start, identical for every record."""

    kind = 'run_timestamp'

    def describe(self) -> str:
        return 'Migration run timestamp'

    def compile(self, index):
        return lambda row, scope: scope.context.run_started_at


class Computed(FieldRule):
    """Derive a value from one or more source columns with a pure function."""

    kind = 'computed'

    def __init__(self, func: Callable[..., Any], *sources: str, with_context: bool = False,
                 logic: Optional[str] = None):
        super().__init__(logic)
        self.func = func
        self.sources = tuple(sources)
        self.with_context = with_context

    def describe(self) -> str:
        return f"Computed by {getattr(self.func, '__name__', 'function')}"

    def compile(self, index):
        ordinals = [resolve_ordinal(index, s) for s in self.sources]
        func = self.func
        if self.with_context:
            return lambda row, scope: func(scope.context, *[row[o] for o in ordinals])
        return lambda row, scope: func(*[row[o] for o in ordinals])


class Derived(FieldRule):
    """
    Read a value computed once per row by a RowDerivation.

    Used when several target columns come from one computation, such as a
    password hash and its salt.
    """

    kind = 'derived'

    def __init__(self, name: str, item: Optional[int] = None, logic: Optional[str] = None):
        super().__init__(logic)
        self.name = name
        self.item = item

    def describe(self) -> str:
        suffix = f"[{self.item}]" if self.item is not None else ''
        return f"Derived from {self.name}{suffix}"

    def compile(self, index):
        name, item = self.name, self.item
        if item is None:
            return lambda row, scope: scope.derived[name]
        return lambda row, scope: scope.derived[name][item]


class ForeignKey(FieldRule):
    """
    Foreign-key gate.

    A present value missing from the reference set rejects the whole row. A
    null passes through as null unless the column is required. Composite keys
    (several sources) are only usable as row gates, not as column rules.
    """

    kind = 'foreign_key'

    def __init__(self, source: Union[str, Sequence[str]], reference: str, required: bool = False,
                 convert: Optional[Callable[[Any], Any]] = None, logic: Optional[str] = None):
        super().__init__(logic)
        self.sources = (source,) if isinstance(source, str) else tuple(source)
        self.reference = reference
        self.required = required
        self.convert = convert

    def describe(self) -> str:
        return f"Foreign key lookup in {self.reference}"

    def _key(self, row, ordinals):
        convert = self.convert
        values = [row[o] for o in ordinals]
        if convert is not None:
            values = [None if v is None else convert(v) for v in values]
        return values[0] if len(values) == 1 else tuple(values)

    def compile(self, index):
        if len(self.sources) != 1:
            raise MappingError(f"Composite foreign key on {self.sources} cannot fill a single column")
        ordinal = resolve_ordinal(index, self.sources[0])
        convert = self.convert

        def value(row, scope):
            raw = row[ordinal]
            return raw if raw is None or convert is None else convert(raw)
        return value

    def compile_gate(self, index, context):
        ordinals = [resolve_ordinal(index, s) for s in self.sources]
        try:
            keys = context.key_sets[self.reference]
        except KeyError:
            raise MappingError(f"Reference set '{self.reference}' was not loaded")
        label = ', '.join(self.sources)
        required = self.required
        reason = f"{label} not found in {self.reference}"

        def gate(row):
            key = self._key(row, ordinals)
            if key is None or (isinstance(key, tuple) and any(k is None for k in key)):
                if required:
                    raise SkipRow(f"{label} is null", '')
                return
            if key not in keys:
                raise SkipRow(reason, f"{label}={key!r}")
        return gate


class FanOutValue(FieldRule):
    """Value of the reference element the record was expanded for."""

    kind = 'fan_out_value'

    def __init__(self, item: Optional[int] = None, logic: Optional[str] = None):
        super().__init__(logic)
        self.item = item

    def describe(self) -> str:
        return 'Fan-out element'

    def compile(self, index):
        item = self.item
        if item is None:
            return lambda row, scope: scope.element
        return lambda row, scope: scope.element[item]


class FanOutId(FieldRule):
    """Deterministic id of an expanded record: base * multiplier + sequence."""

    kind = 'fan_out_id'

    def describe(self) -> str:
        return 'Generated id (base * multiplier + sequence)'

    def compile(self, index):
        return lambda row, scope: scope.record_id


class RowDerivation:
    """A computation evaluated once per row and shared by Derived rules."""

    def __init__(self, name: str, func: Callable[..., Any], *sources: str, with_context: bool = False):
        self.name = name
        self.func = func
        self.sources = tuple(sources)
        self.with_context = with_context

    def compile(self, index: Dict[str, int]) -> Callable[[Any, TransformContext], Any]:
        ordinals = [resolve_ordinal(index, s) for s in self.sources]
        func = self.func
        if self.with_context:
            return lambda row, context: func(context, *[row[o] for o in ordinals])
        return lambda row, context: func(*[row[o] for o in ordinals])
