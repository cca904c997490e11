"""
Core data structures and the error taxonomy.

Schema definitions, raw SQL clauses, filter specifications and compiled
queries are plain data. Every error raised by the store derives from
StoreError so callers can catch the whole family at once.
"""

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union


class StoreError(Exception):
    """Base class for every error raised by mvc_store."""
    pass


class ConfigError(StoreError):
    """Raised for missing, invalid or unknown configuration options."""
    pass


class SchemaError(StoreError):
    """Raised when a schema registration is invalid."""
    pass


class UnknownTableError(SchemaError):
    """Raised when a table is used before it was registered."""
    pass


class UnknownColumnError(SchemaError):
    """Raised when a column is not part of a registered table."""
    pass


class SchemaLockedError(SchemaError):
    """Raised when the schema is changed after the migration engine executed."""
    pass


class FilterError(StoreError):
    """Raised when a filter specification cannot be compiled."""
    pass


class UnknownOperatorError(FilterError):
    """Raised for comparison or logic operators outside the operator table."""
    pass


class InvalidOperandError(FilterError):
    """Raised when an operand has the wrong arity or type for its operator."""
    pass


class UnsupportedFilterEntryError(FilterError):
    """Raised for filter entries the compiler cannot classify."""
    pass


class UnencodableValueError(StoreError):
    """Raised when a value has no bound-parameter representation."""
    pass


class MigrationError(StoreError):
    """Base class for migration engine errors."""
    pass


class NonMonotonicVersionError(MigrationError):
    """Raised when an update version is not above every registered version."""
    pass


class RegistrationClosedError(MigrationError):
    """Raised when functions are registered after execution started."""
    pass


class InvalidStateError(MigrationError):
    """Raised when the migration engine is driven out of order."""
    pass


class EngineError(StoreError):
    """
    An error reported by the SQL engine.

    Carries the engine's native code and message together with the
    statement that failed.
    """

    UNKNOWN_CODE = -424242

    def __init__(self, message: str, code: Optional[int] = None, sql: str = ""):
        self.code = self.UNKNOWN_CODE if code is None else code
        self.message = message
        self.sql = sql
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"SQL ERROR #{self.code}: {self.message} in '{self.sql}'"

    @classmethod
    def from_exception(cls, exc: Exception, sql: str = "") -> "EngineError":
        """Normalize a sqlite3 (or any) exception into an EngineError."""
        if isinstance(exc, EngineError):
            return exc
        code = getattr(exc, "sqlite_errorcode", None)
        return cls(str(exc), code=code, sql=sql)


class DatabaseNotOpenError(EngineError):
    """Raised when a statement runs against a closed connection."""

    def __init__(self, sql: str = ""):
        super().__init__("database not open", sql=sql)


@dataclass
class ColumnDefinition:
    """
    One column of a registered table.

    - name: Column name (unique within its table)
    - type: Declared type, upper-cased (free form, mapped to an affinity)
    - constraints: Column constraint SQL (e.g. "NOT NULL DEFAULT 0")
    - temporal: True for date/time columns (decoded on read)
    """
    name: str
    type: str = ""
    constraints: str = ""
    temporal: bool = False

    def as_tuple(self) -> Tuple[str, str, str]:
        """Return the (name, type, constraints) triple."""
        return (self.name, self.type, self.constraints)


@dataclass
class IndexDefinition:
    """A named index on one or more columns of a table."""
    name: str
    table: str
    columns: List[str]
    unique: bool = False


@dataclass
class TableDefinition:
    """A registered table: ordered columns, table constraints and triggers."""
    name: str
    columns: List[ColumnDefinition] = field(default_factory=list)
    constraints: List[str] = field(default_factory=list)
    triggers: List[str] = field(default_factory=list)

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def column_index(self, name: str) -> int:
        """Position of a column, or -1 when it is not defined."""
        for index, column in enumerate(self.columns):
            if column.name == name:
                return index
        return -1


class SqlClause:
    """
    An opaque SQL fragment with its own positional values.

    Used to embed sub-selects or engine functions in a filter, as a
    returned column, or as the value of a column clause:

        SqlClause("SELECT id FROM foo WHERE a = ? AND b = ?", [5, 6])
    """

    def __init__(self, clause: str = "", values: Optional[Sequence[Any]] = None):
        self._clause = ""
        self._values: List[Any] = []
        self.set(clause)
        if values is not None:
            self.values = values

    def __str__(self) -> str:
        return self._clause

    def __repr__(self) -> str:
        return f"SqlClause({self._clause!r}, {self._values!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SqlClause):
            return NotImplemented
        return self._clause == other._clause and self._values == other._values

    def set(self, clause: str) -> None:
        if not isinstance(clause, str):
            raise TypeError("SqlClause accepts only strings")
        self._clause = clause

    def get(self) -> str:
        return self._clause

    def has_values(self) -> bool:
        return len(self._values) > 0

    @property
    def values(self) -> List[Any]:
        return self._values

    @values.setter
    def values(self, values: Sequence[Any]) -> None:
        self._values = list(values)


# Order entries: "column" or ("column", "ASC"|"DESC")
OrderSpec = Union[str, Sequence[Union[str, Sequence[str]]]]
LimitSpec = Union[int, Sequence[int], None]


@dataclass
class FilterSpec:
    """
    A declarative search request.

    - filter: Filter entries (brackets, raw clauses, column clauses)
    - columns: Returned columns (names or SqlClause objects); empty = all
    - limit: Row count, or (offset, count)
    - operator: Default logic operator between entries (AND)
    - order: ORDER BY entries
    """
    filter: List[Any] = field(default_factory=list)
    columns: Optional[List[Union[str, SqlClause]]] = None
    limit: LimitSpec = None
    operator: Optional[str] = None
    order: Optional[OrderSpec] = None

    @classmethod
    def coerce(cls, value: Any) -> "FilterSpec":
        """Build a FilterSpec from a FilterSpec, a mapping or a bare filter list."""
        if isinstance(value, FilterSpec):
            return value
        if isinstance(value, Mapping):
            if "filter" not in value or value["filter"] is None:
                raise FilterError(
                    "need search object: {filter, [columns], [limit], [operator], [order]}"
                )
            return cls(
                filter=list(value["filter"]),
                columns=value.get("columns"),
                limit=value.get("limit"),
                operator=value.get("operator"),
                order=value.get("order", value.get("order_by")),
            )
        if isinstance(value, (list, tuple)):
            return cls(filter=list(value))
        raise FilterError(
            f"unsupported search specification ({type(value).__name__}); "
            "need a FilterSpec, a mapping or a filter list"
        )


@dataclass(frozen=True)
class CompiledQuery:
    """SQL text and the values for its '?' placeholders, left to right."""
    sql: str
    values: Tuple[Any, ...] = ()

    def placeholder_count(self) -> int:
        """Number of '?' placeholders outside of quoted literals."""
        count = 0
        quote = None
        for char in self.sql:
            if quote:
                if char == quote:
                    quote = None
            elif char in ("'", '"'):
                quote = char
            elif char == "?":
                count += 1
        return count

    def as_clause(self) -> SqlClause:
        return SqlClause(self.sql, list(self.values))
