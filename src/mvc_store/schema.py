"""
SchemaRegistry - in-memory table, column, index, trigger and view definitions.

Tables are registered once at startup, before any query runs. The
registry validates names, derives the auto timestamp columns and their
change trigger, and renders the DDL used by the connector and the dump
format. Once the owning migration engine executed, the registry is
locked and every further registration raises SchemaLockedError.
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .config import StoreConfig
from .models import (
    ColumnDefinition,
    IndexDefinition,
    SchemaError,
    SchemaLockedError,
    TableDefinition,
    UnknownColumnError,
    UnknownTableError,
)

# SQLite type affinities (BLOB columns have affinity NONE)
AFFINITIES = ("INTEGER", "TEXT", "NONE", "REAL", "NUMERIC")

# "now" in the storage representation of each timestamp affinity
TIMESTAMP_NOW = {
    "INTEGER": "STRFTIME('%s', 'NOW')",
    "TEXT": "STRFTIME('%Y-%m-%d %H:%M:%S', 'NOW', 'LOCALTIME')",
    "NUMERIC": "JULIANDAY('NOW')",
}

SQL_CREATE_TABLE = "CREATE TABLE IF NOT EXISTS {table} ({columns}{constraints});"
SQL_CREATE_INDEX = "CREATE{unique} INDEX IF NOT EXISTS {name} ON {table} ({columns});"
SQL_CREATE_TRIGGER = "CREATE TRIGGER IF NOT EXISTS {name} {definition}"
SQL_CREATE_VIEW = "CREATE VIEW IF NOT EXISTS {name} AS {select}"
SQL_CHANGE_TRIGGER = (
    "AFTER UPDATE ON {table} "
    "BEGIN "
    "UPDATE {table} SET {column} = {now} WHERE id = new.id; "
    "END;"
)

ColumnInput = Union[ColumnDefinition, Sequence[str]]


def type_affinity(declared_type: Optional[str]) -> str:
    """
    Classify a declared column type into a SQLite type affinity.

    Substring rules in priority order: INT -> INTEGER;
    CHAR/TEXT/CLOB -> TEXT; BLOB -> NONE; REAL/FLOA/DOUB -> REAL;
    everything else -> NUMERIC. An empty type has affinity NONE.
    """
    if not declared_type or not isinstance(declared_type, str):
        return "NONE"
    upper = declared_type.upper()

    if "INT" in upper:
        return "INTEGER"
    if "CHAR" in upper or "TEXT" in upper or "CLOB" in upper:
        return "TEXT"
    if "BLOB" in upper:
        return "NONE"
    if "REAL" in upper or "FLOA" in upper or "DOUB" in upper:
        return "REAL"
    return "NUMERIC"


def is_date_type(declared_type: Optional[str]) -> bool:
    """True if a declared type mentions DATE or TIME."""
    upper = (declared_type or "").upper()
    return "DATE" in upper or "TIME" in upper


class SchemaRegistry:
    """
    Registry of table definitions.

    Usage:
        schema = SchemaRegistry(config)
        schema.add_table("user", [
            ["id", "INTEGER", "PRIMARY KEY AUTOINCREMENT"],
            ["name", "TEXT", "NOT NULL"],
            ["dt_create", "", ""],
        ], [["INDEX", "user_name", "name"]])
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()
        self._tables: Dict[str, TableDefinition] = {}
        self._indexes: Dict[str, IndexDefinition] = {}
        self._triggers: Dict[str, str] = {}
        self._views: Dict[str, str] = {}
        self._locked = False
        self._collate_types = re.compile(self.config.auto_collate_types, re.IGNORECASE)

    # ------------------------------------------------------------------
    # locking
    # ------------------------------------------------------------------

    @property
    def locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        """Freeze the registry (called when the migration engine executes)."""
        self._locked = True

    def _check_unlocked(self, action: str) -> None:
        if self._locked:
            raise SchemaLockedError(
                f"schema is locked after migration; can't {action}"
            )

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    def add_table(
        self,
        name: str,
        columns: Optional[Sequence[ColumnInput]] = None,
        constraints: Optional[Sequence[Union[str, Sequence[str]]]] = None,
    ) -> TableDefinition:
        """
        Add (or overwrite) a table.

        Args:
            name: Table name
            columns: Column triples [name, type, constraints]
            constraints: Table constraint SQL strings; entries shaped
                ["INDEX", index_name, columns] register an index instead

        Returns:
            The registered TableDefinition
        """
        self._check_unlocked(f"add table '{name}'")
        if not name or not isinstance(name, str):
            raise SchemaError("missing or empty table name")

        self._tables[name] = TableDefinition(name=name)
        if columns:
            self.set_columns(name, columns)
        self.set_table_constraints(name, constraints or [])
        self._prepare_auto_columns(name)

        return self._tables[name]

    def set_columns(
        self,
        table: str,
        columns: Union[str, ColumnInput, Sequence[ColumnInput]],
        definitions: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Add or replace column definitions.

        Accepts a single triple, a list of triples, or a column name with
        definitions=[type, constraints]. A replaced column keeps its position.
        """
        self._check_unlocked(f"set columns of '{table}'")
        definition = self._require_table(table)

        if isinstance(columns, str):
            if not definitions or len(definitions) != 2:
                raise SchemaError(
                    f"missing or invalid definitions for '{table}'.'{columns}'; "
                    "need [type, constraints]"
                )
            batch: List[ColumnInput] = [[columns, definitions[0], definitions[1]]]
        elif isinstance(columns, ColumnDefinition):
            batch = [columns]
        elif columns and isinstance(columns[0], str):
            batch = [columns]
        else:
            batch = list(columns)

        for entry in batch:
            column = self._make_column(table, entry)
            index = definition.column_index(column.name)
            if index == -1:
                definition.columns.append(column)
            else:
                definition.columns[index] = column

    def set_table_constraints(
        self,
        table: str,
        constraints: Sequence[Union[str, Sequence[str]]],
    ) -> None:
        """
        Set (overwrite) all table constraints.

        SQLite has no INDEX table constraint; entries shaped
        ["INDEX", index_name, "col[, colN]" | [cols]] are moved to the
        index registry.
        """
        self._check_unlocked(f"set constraints of '{table}'")
        definition = self._require_table(table)

        kept: List[str] = []
        for position, constraint in enumerate(constraints or []):
            if isinstance(constraint, str):
                kept.append(constraint)
                continue
            if constraint and str(constraint[0]).upper() == "INDEX":
                if len(constraint) < 3:
                    raise SchemaError(
                        f"unsupported INDEX constraint in {table}.constraints[{position}]; "
                        "needs ['INDEX', index_name, columns]"
                    )
                self.add_index(constraint[1], table, constraint[2])
                continue
            raise SchemaError(
                f"unsupported constraint in {table}.constraints[{position}]: {constraint!r}"
            )

        definition.constraints = kept

    def add_index(
        self,
        name: str,
        table: str,
        columns: Union[str, Sequence[str]],
        unique: bool = False,
    ) -> IndexDefinition:
        """
        Add (or overwrite) an index.

        Args:
            name: Index name
            table: Registered table
            columns: Column list or comma separated string
            unique: Create a UNIQUE index
        """
        self._check_unlocked(f"add index '{name}'")
        if not name:
            raise SchemaError("missing or empty index name")

        if isinstance(columns, str):
            columns = [col for col in re.split(r"\s*,\s*", columns.strip()) if col]
        columns = list(columns)
        self.check_columns(table, columns)

        index = IndexDefinition(name=name, table=table, columns=columns, unique=bool(unique))
        self._indexes[name] = index
        return index

    def add_trigger(self, name: str, definition: str, table: Optional[str] = None) -> None:
        """Add (or overwrite) a trigger; definition follows the trigger name."""
        self._check_unlocked(f"add trigger '{name}'")
        if not name:
            raise SchemaError("missing or empty trigger name")
        if not definition:
            raise SchemaError(f"missing or empty definition for trigger '{name}'")

        if table is not None:
            owner = self._require_table(table)
            if name not in owner.triggers:
                owner.triggers.append(name)
        self._triggers[name] = definition

    def add_view(self, name: str, select: str) -> None:
        """Add (or overwrite) a view from its SELECT statement."""
        self._check_unlocked(f"add view '{name}'")
        if not name:
            raise SchemaError("missing or empty view name")
        if not select:
            raise SchemaError(f"missing or empty select for view '{name}'")
        self._views[name] = select

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def get_tables(self, name: Optional[str] = None):
        """All table names, or the definition of one table (None if unknown)."""
        if not name:
            return list(self._tables)
        return self._tables.get(name)

    def get_triggers(self) -> List[str]:
        return list(self._triggers)

    def get_indexes(self) -> List[str]:
        return list(self._indexes)

    def get_views(self) -> List[str]:
        return list(self._views)

    def get_index(self, name: str) -> Optional[IndexDefinition]:
        return self._indexes.get(name)

    def get_columns(self, table: str, column: Optional[str] = None):
        """
        Column names of a table in registration order, or one column's
        (name, type, constraints) triple (None if the column is unknown).
        """
        definition = self._require_table(table)
        if not column:
            return definition.column_names()

        index = definition.column_index(column)
        return definition.columns[index].as_tuple() if index > -1 else None

    def get_column(self, table: str, column: str) -> ColumnDefinition:
        definition = self._require_table(table)
        index = definition.column_index(column)
        if index == -1:
            raise UnknownColumnError(f"column '{table}'.'{column}' isn't defined")
        return definition.columns[index]

    def get_column_type(self, table: str, column: str) -> str:
        return self.get_column(table, column).type

    def get_sql_column_type(self, table: str, column: str) -> str:
        """
        Storage affinity of a column.

        Temporal columns always use the affinity of the configured
        timestamp_type, the engine has no native date type.
        """
        definition = self.get_column(table, column)
        if definition.temporal:
            return type_affinity(self.config.timestamp_type)
        return type_affinity(definition.type)

    def is_date_column(self, table: str, column: str) -> bool:
        return self.get_column(table, column).temporal

    def table_exists(self, table: str) -> bool:
        return bool(table) and table in self._tables

    def column_exists(self, table: str, column: str) -> bool:
        return (
            self.table_exists(table)
            and bool(column)
            and self._tables[table].column_index(column) > -1
        )

    def check_columns(self, table: str, columns: Sequence[str]) -> None:
        """
        Raises:
            UnknownTableError: If the table isn't registered
            UnknownColumnError: Naming the first unknown column
        """
        self._require_table(table)
        if isinstance(columns, str) or not isinstance(columns, (list, tuple)):
            raise SchemaError(
                f"columns is '{type(columns).__name__}' instead of a list"
            )
        for column in columns:
            if not self.column_exists(table, column):
                raise UnknownColumnError(f"column '{column}' doesn't exist in '{table}'")

    # ------------------------------------------------------------------
    # DDL
    # ------------------------------------------------------------------

    def sql_create_table(self, table: str) -> str:
        definition = self._require_table(table)
        columns = []
        for column in definition.columns:
            sql_type = (
                type_affinity(self.config.timestamp_type) if column.temporal else column.type
            )
            columns.append(" ".join(part for part in (column.name, sql_type, column.constraints) if part))
        constraints = "".join(f", {constraint}" for constraint in definition.constraints)
        return SQL_CREATE_TABLE.format(
            table=table, columns=", ".join(columns), constraints=constraints
        )

    def sql_create_trigger(self, name: str) -> str:
        if name not in self._triggers:
            raise SchemaError(f"trigger '{name}' isn't defined")
        return SQL_CREATE_TRIGGER.format(name=name, definition=self._triggers[name])

    def sql_create_index(self, name: str) -> str:
        index = self._indexes.get(name)
        if index is None:
            raise SchemaError(f"index '{name}' isn't defined")
        return SQL_CREATE_INDEX.format(
            unique=" UNIQUE" if index.unique else "",
            name=name,
            table=index.table,
            columns=", ".join(index.columns),
        )

    def sql_create_view(self, name: str) -> str:
        if name not in self._views:
            raise SchemaError(f"view '{name}' isn't defined")
        return SQL_CREATE_VIEW.format(name=name, select=self._views[name])

    @staticmethod
    def sql_drop(kind: str, name: str) -> str:
        """DROP statement for a TABLE, TRIGGER, INDEX or VIEW."""
        return f"DROP {kind.upper()} IF EXISTS {name};"

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require_table(self, table: str) -> TableDefinition:
        if not table:
            raise SchemaError("missing table name")
        definition = self._tables.get(table)
        if definition is None:
            raise UnknownTableError(f"table '{table}' isn't added/defined")
        return definition

    def _make_column(self, table: str, entry: ColumnInput) -> ColumnDefinition:
        if isinstance(entry, ColumnDefinition):
            name, col_type, constraints = entry.as_tuple()
        else:
            if isinstance(entry, str) or not entry or not entry[0]:
                raise SchemaError(f"invalid column definition for '{table}': {entry!r}")
            parts = list(entry) + ["", ""]
            name, col_type, constraints = parts[0], parts[1] or "", parts[2] or ""

        col_type = col_type.upper()
        temporal = name in self._timestamp_columns() or is_date_type(col_type)

        auto_collate = self.config.auto_collate
        if (
            auto_collate
            and not temporal
            and self._collate_types.search(col_type)
            and not re.search(r"\bCOLLATE\b", constraints, re.IGNORECASE)
        ):
            constraints = f"{constraints} COLLATE {auto_collate}".strip()

        return ColumnDefinition(name=name, type=col_type, constraints=constraints, temporal=temporal)

    def _timestamp_columns(self) -> Tuple[str, ...]:
        return tuple(
            name
            for name in (self.config.timestamp_create, self.config.timestamp_change)
            if name
        )

    def _prepare_auto_columns(self, table: str) -> None:
        """Redefine the timestamp columns and register the change trigger."""
        columns = self.get_columns(table)
        timestamp_type = self.config.timestamp_type or "INTEGER"
        now = TIMESTAMP_NOW.get(type_affinity(timestamp_type), TIMESTAMP_NOW["INTEGER"])
        constraints = f"NOT NULL DEFAULT ({now})"

        create = self.config.timestamp_create
        if create and create in columns:
            self.set_columns(table, create, [timestamp_type, constraints])

        change = self.config.timestamp_change
        if change and change in columns:
            self.set_columns(table, change, [timestamp_type, constraints])
            self.add_trigger(
                f"{table}_dt_change_autoupdate",
                SQL_CHANGE_TRIGGER.format(table=table, column=change, now=now),
                table=table,
            )
