"""
Backup utilities for mvc-store.

DbBackup dumps the registered schema and the table contents into a
portable document and restores such a document into a database:

    {
        "sql": {"tables": [...], "views": [...], "triggers": [...], "indexes": [...]},
        "tables": {"user": ["id", "name"]},
        "data": {"user": [[1, "Ann"], [2, "Bob"]]},
        "errors": {"log": "[1]: no such table: log"}
    }

A failing table is recorded in errors and never stops the other tables.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from .database import Database, Transaction
from .models import EngineError

logger = logging.getLogger(__name__)

DDL_SECTIONS = ("tables", "triggers", "indexes", "views")


@dataclass
class DumpData:
    """A schema and data dump."""
    sql: Dict[str, List[str]] = field(
        default_factory=lambda: {"tables": [], "views": [], "triggers": [], "indexes": []}
    )
    tables: Dict[str, List[str]] = field(default_factory=dict)
    data: Dict[str, List[List[Any]]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sql": {key: list(value) for key, value in self.sql.items()},
            "tables": {key: list(value) for key, value in self.tables.items()},
            "data": {key: [list(row) for row in rows] for key, rows in self.data.items()},
            "errors": dict(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DumpData":
        dump = cls()
        for key, statements in (data.get("sql") or {}).items():
            dump.sql[key] = list(statements or [])
        dump.tables = {key: list(value) for key, value in (data.get("tables") or {}).items()}
        dump.data = {key: [list(row) for row in rows] for key, rows in (data.get("data") or {}).items()}
        dump.errors = dict(data.get("errors") or {})
        return dump

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, text: str) -> "DumpData":
        return cls.from_dict(json.loads(text))


def _error_text(error: EngineError) -> str:
    return f"[{error.code}]: {error.message}"


class DbBackup:
    """
    Dump/restore of the registered schema.

    Args:
        database: Connector (its schema registry describes what is dumped)
    """

    formatters = {
        "raw": lambda dump: dump,
        "json": lambda dump: dump.to_json(),
    }

    def __init__(self, database: Database):
        self.database = database

    def dump(self, formatter: str = "json", include_data: bool = True) -> Union[DumpData, str]:
        """
        Dump the schema DDL and, with include_data, every table's rows.

        Args:
            formatter: "json" (JSON text) or "raw" (the DumpData)
            include_data: Dump table contents too

        Raises:
            ValueError: For an unknown formatter
        """
        if formatter not in self.formatters:
            raise ValueError(f"unknown formatter '{formatter}'; use one of {sorted(self.formatters)}")

        schema = self.database.schema
        dump = DumpData()

        tables = schema.get_tables()
        for table in tables:
            dump.sql["tables"].append(schema.sql_create_table(table))
            dump.tables[table] = list(schema.get_columns(table))
        dump.sql["triggers"] = [schema.sql_create_trigger(name) for name in schema.get_triggers()]
        dump.sql["indexes"] = [schema.sql_create_index(name) for name in schema.get_indexes()]
        dump.sql["views"] = [schema.sql_create_view(name) for name in schema.get_views()]

        if include_data:
            for table in tables:
                self._dump_table(dump, table)

        return self.formatters[formatter](dump)

    def _dump_table(self, dump: DumpData, table: str) -> None:
        columns = dump.tables[table]
        rows: List[List[Any]] = []

        def on_success(tx: Transaction, result) -> None:
            rows.extend([row[column] for column in columns] for row in result.rows)

        def on_error(tx: Transaction, error: EngineError) -> None:
            dump.errors[table] = _error_text(error)
            logger.warning("dump of table '%s' failed: %s", table, error)

        self.database.execute_sql(
            None, f"SELECT {', '.join(columns)} FROM {table}", [], on_success, on_error
        )
        dump.data[table] = rows

    def restore(self, dump: Union[DumpData, Dict[str, Any], str]) -> DumpData:
        """
        Replay the DDL (tables, triggers, indexes, views) and insert the
        rows of every table with INSERT OR IGNORE, one transaction per table.

        Returns:
            The dump with errors filled for every table that failed
        """
        if isinstance(dump, str):
            dump = DumpData.from_json(dump)
        elif isinstance(dump, dict):
            dump = DumpData.from_dict(dump)
        dump.errors = {}

        self.database.transaction(lambda tx: self._restore_sql(tx, dump))

        for table, rows in dump.data.items():
            self._restore_table(dump, table, rows)

        if dump.errors:
            logger.warning("restore finished with errors in %s", sorted(dump.errors))
        return dump

    def _restore_sql(self, tx: Transaction, dump: DumpData) -> None:
        for section in DDL_SECTIONS:
            for position, statement in enumerate(dump.sql.get(section, [])):
                def on_error(tx: Transaction, error: EngineError, key=f"sql.{section}[{position}]") -> None:
                    dump.errors[key] = _error_text(error)

                tx.execute_sql(statement, [], on_error=on_error)

    def _restore_table(self, dump: DumpData, table: str, rows: List[List[Any]]) -> None:
        columns = dump.tables.get(table) or []
        live = self.live_columns(table)

        problem = ""
        if not live:
            problem = f"no such table: {table}"
        elif sorted(columns) != sorted(live):
            problem = f"columns {columns} don't match the table columns {live}"
        else:
            for position, row in enumerate(rows):
                if len(row) != len(columns):
                    problem = f"row {position} has {len(row)} values for {len(columns)} columns"
                    break

        if problem:
            dump.errors[table] = _error_text(EngineError(problem))
            logger.warning("restore of table '%s' skipped: %s", table, problem)
            return
        if not rows:
            return

        sql = (
            f"INSERT OR IGNORE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )

        def body(tx: Transaction) -> None:
            for row in rows:
                tx.execute_sql(sql, row)

        def on_error(error: EngineError) -> None:
            dump.errors[table] = _error_text(error)
            logger.warning("restore of table '%s' failed: %s", table, error)

        self.database.transaction(body, on_error)

    def live_columns(self, table: str) -> List[str]:
        """Column names of a table as the engine knows them (empty if missing)."""
        result = self.database.execute_sql(None, f"PRAGMA table_info({table})")
        return [row["name"] for row in result] if result else []
