"""
TableRepository - record persistence on one registered table.

Records are dicts by default, or any object built by a factory from a
row dict. Objects may opt into hooks by implementing the capability
interfaces below; capabilities are detected once per call.
"""

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .database import Database, ResultSet, Transaction
from .models import SchemaError, UnknownTableError
from .query import DbQuery

logger = logging.getLogger(__name__)


@runtime_checkable
class Serializable(Protocol):
    """Provides the column values to store instead of reading attributes."""

    def to_record(self) -> Dict[str, Any]:
        ...


@runtime_checkable
class Awakenable(Protocol):
    """Post-processes a loaded record; returns the record to hand out."""

    def wakeup(self) -> Any:
        ...


@runtime_checkable
class SaveAware(Protocol):
    """Runs inside the save transaction, after the row was written."""

    def after_save(self, tx: Transaction) -> None:
        ...


@runtime_checkable
class RemoveAware(Protocol):
    """Runs inside the remove transaction, after the row was deleted."""

    def after_remove(self, tx: Transaction) -> None:
        ...


RecordFactory = Callable[[Dict[str, Any]], Any]


class TableRepository:
    """
    save/get/get_all/remove/search for records of one table, and
    add_child for records of a child table pointing at them.

    The table needs an integer "id" primary key. The columns id and the
    configured timestamp columns are never written by save().

    Args:
        database: Connector
        table: Registered table name
        factory: Builds a record from a row dict (default: dict)
    """

    def __init__(self, database: Database, table: str, factory: RecordFactory = dict):
        if not database.schema.table_exists(table):
            raise UnknownTableError(f"table '{table}' not defined in the schema registry")
        if not database.schema.column_exists(table, "id"):
            raise SchemaError(f"table '{table}' has no 'id' column")

        self.database = database
        self.table = table
        self.factory = factory
        self.query = DbQuery(table, database)

    @property
    def protected_columns(self) -> List[str]:
        config = self.database.config
        return [name for name in ("id", config.timestamp_create, config.timestamp_change) if name]

    def write_columns(self) -> List[str]:
        protected = self.protected_columns
        return [column for column in self.database.schema.get_columns(self.table) if column not in protected]

    # ------------------------------------------------------------------
    # save
    # ------------------------------------------------------------------

    def save(
        self,
        obj: Any,
        on_success: Optional[Callable[[Any], Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> Any:
        """
        Insert (id 0/None) or update (by id) a record.

        Only the columns the record carries are written, the engine
        fills in defaults for the rest. New records get their id set.
        SaveAware.after_save(tx) runs in the same transaction.

        With tx the record is written in that transaction. Otherwise it
        gets its own, which is queued when another one is running; the
        id is set and on_success called only after the write committed.

        Returns:
            The record
        """
        record_id = max(0, int(_read(obj, "id") or 0))
        is_new = record_id == 0
        source = obj.to_record() if isinstance(obj, Serializable) else obj
        columns = [column for column in self.write_columns() if _has(source, column)]
        values = [_read(source, column) for column in columns]
        sql = self._save_sql(columns, values, is_new)
        if not is_new:
            values.append(record_id)

        def body(tx: Transaction) -> None:
            if sql:
                result = tx.execute_sql(sql, values)
                if is_new:
                    _write(obj, "id", result.insert_id)
            if isinstance(obj, SaveAware):
                obj.after_save(tx)

        def saved() -> None:
            logger.debug("saved %s id=%s", self.table, _read(obj, "id"))
            if on_success is not None:
                on_success(obj)

        if tx is not None:
            body(tx)
            saved()
        else:
            self.database.transaction(body, on_success=saved)
        return obj

    def _save_sql(self, columns: List[str], values: List[Any], is_new: bool) -> str:
        """INSERT or UPDATE for the columns the record carries ('' if nothing to update)."""
        if not columns:
            return f"INSERT INTO {self.table} DEFAULT VALUES" if is_new else ""

        schema = self.database.schema
        placeholders = []
        for column, value in zip(columns, values):
            # 0 and NULL stay unset; only real dates go through the timestamp conversion
            if schema.is_date_column(self.table, column) and isinstance(value, (date, str)):
                placeholders.append(self.database.codec.placeholder(schema.get_sql_column_type(self.table, column)))
            else:
                placeholders.append("?")

        if is_new:
            return (
                f"INSERT INTO {self.table} ({', '.join(columns)}) "
                f"VALUES ({', '.join(placeholders)})"
            )
        assignments = ", ".join(f"{column}={placeholder}" for column, placeholder in zip(columns, placeholders))
        return f"UPDATE {self.table} SET {assignments} WHERE id=?"

    def add_child(
        self,
        parent: Any,
        child: Any,
        children: "TableRepository",
        foreign_key: str,
        on_success: Optional[Callable[[Any], Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> Any:
        """
        Save child as a new record of the children repository, linked to
        parent through the foreign_key column.

        A new parent is saved first, in the same transaction as the child.
        Call it from SaveAware.after_save(tx) with that tx to store the
        children of a record together with it.

        Returns:
            The child, with its id and foreign key set once saved
        """
        self.database.schema.check_columns(children.table, [foreign_key])

        def body(tx: Transaction) -> None:
            if not _read(parent, "id"):
                self.save(parent, tx=tx)
            _write(child, "id", 0)
            _write(child, foreign_key, _read(parent, "id"))
            children.save(child, tx=tx)

        def added() -> None:
            if on_success is not None:
                on_success(child)

        if tx is not None:
            body(tx)
            added()
        else:
            self.database.transaction(body, on_success=added)
        return child

    # ------------------------------------------------------------------
    # load
    # ------------------------------------------------------------------

    def get(self, record_id: int, on_success: Optional[Callable[[Any], Any]] = None) -> Optional[Any]:
        """Load one record by id (None if not found)."""
        found: List[Any] = []

        def deliver(rows: List[Dict[str, Any]]) -> None:
            found.append(self._build(rows[0]) if rows else None)
            if on_success is not None:
                on_success(found[0])

        self.query.search({"filter": [["id", "=", record_id]], "limit": 1}, deliver)
        return found[0] if found else None

    def get_all(self, on_success: Optional[Callable[[List[Any]], Any]] = None) -> List[Any]:
        """Every record of the table."""
        return self.search([], on_success)

    def search(
        self,
        spec: Any,
        on_success: Optional[Callable[[List[Any]], Any]] = None,
        on_error: Optional[Callable] = None,
    ) -> List[Any]:
        """
        Records matching a filter specification.

        Returns [] if the search failed and on_error handled it, or was
        queued behind a running transaction (on_success still gets the
        records then).
        """
        found: List[List[Any]] = []

        def deliver(rows: List[Dict[str, Any]]) -> None:
            found.append([self._build(row) for row in rows])
            if on_success is not None:
                on_success(found[0])

        self.query.search(spec, deliver, on_error)
        return found[0] if found else []

    def _build(self, row: Dict[str, Any]) -> Any:
        record = self.factory(row)
        if isinstance(record, Awakenable):
            record = record.wakeup()
        return record

    # ------------------------------------------------------------------
    # remove
    # ------------------------------------------------------------------

    def remove(self, obj: Any, on_success: Optional[Callable[[Any], Any]] = None) -> Optional[bool]:
        """
        Delete a record by id.

        "<table>:remove" is emitted and on_success called only after a
        row was really deleted and the transaction committed.

        Returns:
            Whether a row was deleted, None if queued behind a running
            transaction
        """
        record_id = _read(obj, "id")
        removed: List[ResultSet] = []

        def body(tx: Transaction) -> None:
            result = tx.execute_sql(f"DELETE FROM {self.table} WHERE id = ?", [record_id])
            if result.rows_affected:
                removed.append(result)
                if isinstance(obj, RemoveAware):
                    obj.after_remove(tx)

        def committed() -> None:
            if not removed:
                return
            self.database.observer.emit(f"{self.table}:remove", self, id=record_id)
            if on_success is not None:
                on_success(obj)

        if self.database.transaction(body, on_success=committed) is None:
            return None
        return bool(removed)


def _has(source: Any, name: str) -> bool:
    if isinstance(source, dict):
        return name in source
    return hasattr(source, name)


def _read(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _write(target: Any, name: str, value: Any) -> None:
    if isinstance(target, dict):
        target[name] = value
    else:
        setattr(target, name, value)
