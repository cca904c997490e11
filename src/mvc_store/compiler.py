"""
FilterCompiler - compiles filter arrays into parameterized SQL.

A filter is a list of entries:

    ['a', '=', 1]                     -> (a = ?)                    [1]
    ['b', 'BETWEEN', "5,6"]           -> (b BETWEEN ? AND ?)        ["5", "6"]
    ['c', 'IN', [6, 7], 'OR']         -> OR (c IN (?, ?))           [6, 7]
    ['d', 'ISNULL']                   -> (ISNULL(d))                []
    '(' ... ')'                       -> grouping
    SqlClause('x > ?', [5])           -> (x > ?)                    [5]

Entries are joined by their own logic operator (4th element) or the
search's default operator. Values are encoded by the ValueCodec and
bound positionally, left to right.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from .codec import ValueCodec
from .models import (
    CompiledQuery,
    FilterSpec,
    InvalidOperandError,
    SqlClause,
    UnknownColumnError,
    UnknownOperatorError,
    UnsupportedFilterEntryError,
)
from .schema import SchemaRegistry

OPERATORS = frozenset([
    "<", ">", "=", ">=", "<=", "<>", "!=",
    "BETWEEN", "NOT BETWEEN", "IN", "NOT IN",
    "LIKE", "NOT LIKE",
    "REGEXP", "RLIKE", "NOT REGEXP",
    "ISNULL", "NOT ISNULL",
    "EXISTS", "NOT EXISTS", "ALL", "ANY",
])
ARRAY_OPERATORS = frozenset(["BETWEEN", "NOT BETWEEN", "IN", "NOT IN"])
UNARY_OPERATORS = frozenset(["ISNULL", "NOT ISNULL"])
LOGIC_OPERATORS = ("AND", "OR", "XOR", "NOT")
ORDER_DIRECTIONS = ("ASC", "DESC")
BRACKETS = ("(", ")")

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_LIST_SEPARATOR = re.compile(r"\s*,\s*")
_SUBSELECT = re.compile(r"^\s*SELECT\b", re.IGNORECASE)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


@dataclass(frozen=True)
class Bracket:
    """An opening or closing group bracket."""
    token: str
    logic: Optional[str] = None


@dataclass(frozen=True)
class RawClauseEntry:
    """A caller supplied SQL fragment with its own values."""
    clause: SqlClause
    logic: Optional[str] = None


@dataclass(frozen=True)
class ColumnClause:
    """A [column, operator, value, logic] comparison."""
    column: str
    operator: str
    value: Any = MISSING
    logic: Optional[str] = None


FilterEntry = Union[Bracket, RawClauseEntry, ColumnClause]
EntryHook = Callable[[ColumnClause], Optional[ColumnClause]]


def classify_entry(entry: Any, index: int) -> FilterEntry:
    """
    Turn one raw filter entry into its tagged variant.

    Raises:
        UnsupportedFilterEntryError: If the entry has no recognized shape
    """
    if isinstance(entry, (Bracket, RawClauseEntry, ColumnClause)):
        return entry
    if isinstance(entry, str):
        if entry in BRACKETS:
            return Bracket(entry)
        raise UnsupportedFilterEntryError(
            f"filter[{index}] ('{entry}') isn't a bracket, clause or SqlClause"
        )
    if isinstance(entry, SqlClause):
        return RawClauseEntry(entry)
    if not isinstance(entry, (list, tuple)):
        raise UnsupportedFilterEntryError(
            f"filter[{index}] ({type(entry).__name__}) isn't a list"
        )
    if not entry or entry[0] is None or entry[0] == "":
        raise UnsupportedFilterEntryError(
            f"filter[{index}][0] column name (or bracket or SqlClause) doesn't exist"
        )

    head = entry[0]
    if isinstance(head, str) and head in BRACKETS:
        return Bracket(head, entry[1] if len(entry) > 1 else None)
    if isinstance(head, SqlClause):
        return RawClauseEntry(head, entry[1] if len(entry) > 1 else None)
    if not isinstance(head, str):
        raise UnsupportedFilterEntryError(
            f"filter[{index}][0] unsupported field type ({type(head).__name__})"
        )
    if len(entry) < 2 or entry[1] is None or entry[1] == "":
        raise UnknownOperatorError(f"missing or empty operator in filter[{index}][1]")
    if len(entry) > 4:
        raise UnsupportedFilterEntryError(
            f"filter[{index}] has {len(entry)} elements; need [column, operator, value, logic]"
        )

    return ColumnClause(
        column=head,
        operator=entry[1],
        value=entry[2] if len(entry) > 2 else MISSING,
        logic=entry[3] if len(entry) > 3 else None,
    )


class FilterCompiler:
    """
    Compiles FilterSpecs for one table.

    Args:
        table: Table (or view) name
        schema: Registry used to resolve and validate columns
        codec: Value encoder (defaults to the schema's timestamp type)
        entry_hook: Called for every column clause; may rewrite it or
            return None to drop it
    """

    def __init__(
        self,
        table: str,
        schema: SchemaRegistry,
        codec: Optional[ValueCodec] = None,
        entry_hook: Optional[EntryHook] = None,
    ):
        if not table or not isinstance(table, str):
            raise ValueError("table name is missing or empty")
        self.table = table
        self.schema = schema
        self.codec = codec or ValueCodec(schema.config.timestamp_type)
        self.entry_hook = entry_hook

    # ------------------------------------------------------------------
    # statements
    # ------------------------------------------------------------------

    def compile_search(self, spec: Any) -> CompiledQuery:
        """SELECT <columns> FROM <table> [WHERE ...] [ORDER BY ...] [LIMIT ...]"""
        spec = FilterSpec.coerce(spec)
        columns, column_values = self.resolve_columns(spec.columns)
        where = self.compile_where(spec)

        sql = f"SELECT {', '.join(columns)} FROM {self.table}"
        if where.sql:
            sql += f" WHERE {where.sql}"
        sql += self.build_order_by(spec.order)
        sql += self.build_limit(spec.limit)

        return CompiledQuery(sql, tuple(column_values) + where.values)

    def compile_count(self, spec: Any) -> CompiledQuery:
        """SELECT COUNT(*) FROM <table> [WHERE ...]"""
        where = self.compile_where(FilterSpec.coerce(spec))
        sql = f"SELECT COUNT(*) FROM {self.table}"
        if where.sql:
            sql += f" WHERE {where.sql}"
        return CompiledQuery(sql, where.values)

    def compile_delete(self, spec: Any) -> CompiledQuery:
        """
        DELETE FROM <table> [WHERE ...]

        With a limit the rows are selected by rowid, SQLite builds
        usually lack DELETE ... LIMIT.
        """
        spec = FilterSpec.coerce(spec)
        where = self.compile_where(spec)
        condition = f" WHERE {where.sql}" if where.sql else ""
        limit = self.build_limit(spec.limit)

        if limit:
            sql = (
                f"DELETE FROM {self.table} WHERE rowid IN "
                f"(SELECT rowid FROM {self.table}{condition}{limit})"
            )
        else:
            sql = f"DELETE FROM {self.table}{condition}"
        return CompiledQuery(sql, where.values)

    # ------------------------------------------------------------------
    # WHERE
    # ------------------------------------------------------------------

    def compile_where(self, spec: Any) -> CompiledQuery:
        """
        Compile the filter array into a WHERE fragment (without WHERE).

        Raises:
            UnknownOperatorError: Unknown search operator or clause operator
            InvalidOperandError: Missing value or wrong operand shape
            UnsupportedFilterEntryError: Unclassifiable entry or unbalanced brackets
        """
        spec = FilterSpec.coerce(spec)
        entries = spec.filter
        if not isinstance(entries, (list, tuple)):
            raise UnsupportedFilterEntryError(
                f"filter is {type(entries).__name__}; need a list"
            )
        if not entries:
            return CompiledQuery("")

        default_logic = (spec.operator or "AND").strip().upper()
        if default_logic not in LOGIC_OPERATORS:
            raise UnknownOperatorError(
                f"unknown search operator '{spec.operator}'; "
                f"accepts only: {', '.join(LOGIC_OPERATORS)}"
            )

        # a single bare clause ['a', '=', 1]
        if isinstance(entries[0], str) and entries[0] not in BRACKETS:
            entries = [entries]

        parts: List[str] = []
        values: List[Any] = []
        at_group_start = True
        depth = 0

        for index, raw in enumerate(entries):
            entry = classify_entry(raw, index)

            if isinstance(entry, Bracket):
                if entry.token == "(":
                    if not at_group_start:
                        parts.append(f" {self._logic(entry.logic, default_logic)} ")
                    at_group_start = True
                    depth += 1
                else:
                    if depth == 0:
                        raise UnsupportedFilterEntryError(
                            f"filter[{index}] closes a bracket that was never opened"
                        )
                    if parts[-1] == "(":
                        raise UnsupportedFilterEntryError(
                            f"filter[{index}] closes an empty bracket group"
                        )
                    at_group_start = False
                    depth -= 1
                parts.append(entry.token)
                continue

            if isinstance(entry, RawClauseEntry):
                body = str(entry.clause)
                clause_values = list(entry.clause.values)
                logic = entry.logic
            else:
                entry = self._prepare_clause(entry, index)
                if entry is None:
                    continue
                body, clause_values = self._compile_clause(entry, index)
                logic = entry.logic

            if not at_group_start:
                parts.append(f" {self._logic(logic, default_logic)} ")
            at_group_start = False

            parts.append(f"({body})")
            values.extend(clause_values)

        if depth:
            raise UnsupportedFilterEntryError(
                f"filter has {depth} unclosed bracket(s)"
            )

        return CompiledQuery("".join(parts), tuple(values))

    def _prepare_clause(self, entry: ColumnClause, index: int) -> Optional[ColumnClause]:
        column = self.prepare_column_name(entry.column, index)
        entry = ColumnClause(column, entry.operator, entry.value, entry.logic)

        if self.entry_hook is not None:
            entry = self.entry_hook(entry)
            if entry is None:
                return None
            entry = classify_entry(entry, index)
            if not isinstance(entry, ColumnClause):
                raise UnsupportedFilterEntryError(
                    f"entry hook returned {type(entry).__name__} for filter[{index}]"
                )

        if (
            _IDENTIFIER.match(entry.column)
            and self.schema.table_exists(self.table)
            and not self.schema.column_exists(self.table, entry.column)
        ):
            raise UnknownColumnError(
                f"unknown column '{entry.column}' in filter[{index}][0] for table '{self.table}'"
            )
        return entry

    def _compile_clause(self, entry: ColumnClause, index: int) -> Tuple[str, List[Any]]:
        operator = self.prepare_operator(entry.operator, index)

        if operator in UNARY_OPERATORS:
            return f"{operator}({entry.column})", []

        value = entry.value
        if value is MISSING:
            raise InvalidOperandError(
                f"missing value in filter[{index}][2] for '{entry.column} {operator}'"
            )

        if isinstance(value, SqlClause):
            text = str(value)
            if _SUBSELECT.match(text):
                text = f"({text})"
            return f"{entry.column} {operator} {text}", list(value.values)

        if operator in ARRAY_OPERATORS:
            sql_value, values = self._compile_array_value(operator, value, index)
            return f"{entry.column} {operator} {sql_value}", values

        if isinstance(value, (list, tuple, set)):
            raise InvalidOperandError(
                f"unsupported list for scalar operator '{operator}' in filter[{index}][2]: {list(value)!r}"
            )
        return f"{entry.column} {operator} ?", [self.codec.encode(value)]

    def _compile_array_value(self, operator: str, value: Any, index: int) -> Tuple[str, List[Any]]:
        if isinstance(value, str):
            items = _LIST_SEPARATOR.split(value.strip())
        elif isinstance(value, (list, tuple)):
            items = list(value)
        else:
            raise InvalidOperandError(
                f"operator '{operator}' needs a list or comma separated string "
                f"in filter[{index}][2], got {type(value).__name__}"
            )

        for item in items:
            if isinstance(item, (list, tuple, set, dict)):
                raise InvalidOperandError(
                    f"nested {type(item).__name__} in filter[{index}][2] for '{operator}'"
                )
        values = self.codec.encode_all(items)

        if operator in ("BETWEEN", "NOT BETWEEN"):
            if len(values) != 2:
                raise InvalidOperandError(
                    f"operator '{operator}' needs exactly 2 values in filter[{index}][2], "
                    f"got {len(values)}: {items!r}"
                )
            return "? AND ?", values

        return "(" + ", ".join("?" for _ in values) + ")", values

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def prepare_column_name(column: Any, index: int = 0) -> str:
        """Trim and lower-case a filter column name."""
        if not column or not isinstance(column, str) or not column.strip():
            raise UnsupportedFilterEntryError(
                f"invalid or empty column name in filter[{index}][0]: {column!r}"
            )
        return column.strip().lower()

    @staticmethod
    def prepare_operator(operator: Any, index: int = 0) -> str:
        """
        Validate a comparison operator and return it upper-cased.

        Raises:
            UnknownOperatorError: For non-strings and operators outside the table
        """
        if not isinstance(operator, str):
            raise UnknownOperatorError(
                f"wrong operator type ({type(operator).__name__}) in filter[{index}][1]"
            )
        normalized = " ".join(operator.split()).upper()
        if normalized not in OPERATORS:
            raise UnknownOperatorError(f"unknown operator '{operator}' in filter[{index}][1]")
        return normalized

    @staticmethod
    def _logic(logic: Any, default: str) -> str:
        if isinstance(logic, str) and logic.strip().upper() in LOGIC_OPERATORS:
            return logic.strip().upper()
        return default

    def resolve_columns(
        self, columns: Optional[Sequence[Union[str, SqlClause]]]
    ) -> Tuple[List[str], List[Any]]:
        """
        Returned column SQL and the values of SqlClause columns.

        An empty list means every registered column, in registration order.
        """
        if not columns:
            return list(self.schema.get_columns(self.table)), []

        resolved: List[str] = []
        values: List[Any] = []
        for index, column in enumerate(columns):
            if isinstance(column, SqlClause):
                resolved.append(str(column))
                values.extend(column.values)
            elif isinstance(column, str):
                if not self.schema.column_exists(self.table, column):
                    raise UnknownColumnError(
                        f"unknown column in columns[{index}]: '{column}' for table '{self.table}'"
                    )
                resolved.append(column)
            else:
                raise UnsupportedFilterEntryError(
                    f"unaccepted column type columns[{index}] ({type(column).__name__})"
                )
        return resolved, values

    def search_columns(self, spec: Any) -> List[str]:
        """Names of the columns a search returns (SqlClause columns as text)."""
        return self.resolve_columns(FilterSpec.coerce(spec).columns)[0]

    @staticmethod
    def build_order_by(order: Any) -> str:
        """
        ' ORDER BY ...' or ''.

        Entries are "column" or [column, direction]; other directions
        become ASC, other entries are ignored.
        """
        if not order:
            return ""
        if isinstance(order, str):
            return f" ORDER BY {order}"

        terms = []
        for entry in order:
            if isinstance(entry, str):
                terms.append(entry)
            elif isinstance(entry, (list, tuple)) and entry and isinstance(entry[0], str):
                direction = entry[1].strip().upper() if len(entry) > 1 and isinstance(entry[1], str) else ""
                if direction not in ORDER_DIRECTIONS:
                    direction = "ASC"
                terms.append(f"{entry[0]} {direction}")

        return f" ORDER BY {', '.join(terms)}" if terms else ""

    @staticmethod
    def build_limit(limit: Any) -> str:
        """' LIMIT n', ' LIMIT offset, count' or ''."""
        if limit is None or isinstance(limit, bool):
            return ""
        if isinstance(limit, (list, tuple)):
            if len(limit) >= 2 and _to_int(limit[1]) > 0:
                return f" LIMIT {max(_to_int(limit[0]), 0)}, {_to_int(limit[1])}"
            return ""
        count = _to_int(limit)
        return f" LIMIT {count}" if count > 0 else ""


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
