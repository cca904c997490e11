"""
Database - the single connection to the embedded SQLite engine.

Transactions follow the callback protocol of the WebSQL database API:

    db.transaction(body, on_error, on_success)
        body(tx) -> tx.execute_sql(sql, values, on_success, on_error)

The connection is opened lazily by the first transaction and reused.
A transaction requested while another one runs (e.g. from inside a
callback) is queued and runs after the current one committed, so all
transactions are serialized.
"""

import logging
import sqlite3
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple

from .codec import ValueCodec
from .config import StoreConfig
from .models import DatabaseNotOpenError, EngineError, SchemaError
from .observer import StoreObserver, get_observer
from .schema import SchemaRegistry

logger = logging.getLogger(__name__)

# Engine internals that are never dropped
_INTERNAL_OBJECTS = ("sqlite_", "__WebKitDatabaseInfoTable__")

TransactionBody = Callable[["Transaction"], None]
ErrorCallback = Callable[[EngineError], Any]
SuccessCallback = Callable[[], Any]


class ResultSet:
    """Fully materialized result of one statement."""

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        insert_id: Optional[int] = None,
        rows_affected: int = 0,
    ):
        self.rows = rows or []
        self.insert_id = insert_id
        self.rows_affected = rows_affected

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.rows)

    def item(self, index: int) -> Dict[str, Any]:
        return self.rows[index]

    def __repr__(self) -> str:
        return (
            f"ResultSet(rows={len(self.rows)}, insert_id={self.insert_id}, "
            f"rows_affected={self.rows_affected})"
        )


class Transaction:
    """Handle passed to transaction bodies; valid until the transaction ends."""

    def __init__(self, database: "Database", conn: sqlite3.Connection):
        self.database = database
        self._conn = conn
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        self._active = False

    def execute_sql(
        self,
        sql: str,
        values: Optional[Sequence[Any]] = None,
        on_success: Optional[Callable[["Transaction", ResultSet], Any]] = None,
        on_error: Optional[Callable[["Transaction", EngineError], Any]] = None,
    ) -> Optional[ResultSet]:
        """
        Execute one statement.

        Args:
            sql: Statement with '?' placeholders
            values: Values for the placeholders
            on_success: Called with (tx, result)
            on_error: Called with (tx, error); the transaction continues.
                Without it the error is raised and the transaction rolls back.

        Returns:
            The ResultSet, or None if the statement failed and on_error handled it
        """
        if not self._active:
            raise EngineError("transaction already finished", sql=sql)

        params = self.database.codec.encode_all(values or ())
        self.database.remember(sql, params)

        try:
            cursor = self._conn.execute(sql, params)
            rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
        except sqlite3.Error as exc:
            error = EngineError.from_exception(exc, sql)
            if on_error is None:
                raise error from exc
            on_error(self, error)
            return None

        result = ResultSet(rows, cursor.lastrowid, max(cursor.rowcount, 0))
        if on_success is not None:
            on_success(self, result)
        return result


class Database:
    """
    SQLite connector.

    Args:
        config: Connector options (config.name is the database file)
        schema: Schema registry (created from config if None)
        observer: Event observer (uses global if None)
    """

    def __init__(
        self,
        config: StoreConfig,
        schema: Optional[SchemaRegistry] = None,
        observer: Optional[StoreObserver] = None,
    ):
        self.config = config
        self.schema = schema or SchemaRegistry(config)
        self.observer = observer or get_observer()
        self.codec = ValueCodec(config.timestamp_type)

        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False
        self._initialized = False
        self._in_transaction = False
        self._queue: Deque[Tuple[TransactionBody, Optional[ErrorCallback], Optional[SuccessCallback]]] = deque()
        self._last_sql = ""

    # ------------------------------------------------------------------
    # open / close
    # ------------------------------------------------------------------

    def open(self) -> "Database":
        """Open the database if necessary (idempotent)."""
        if self._conn is not None:
            return self

        self.config.validate()
        name = self.config.name
        if name != ":memory:" and not name.startswith("file:"):
            Path(name).expanduser().parent.mkdir(parents=True, exist_ok=True)
            name = str(Path(name).expanduser())

        try:
            conn = sqlite3.connect(name, isolation_level=None, uri=name.startswith("file:"))
        except sqlite3.Error as exc:
            raise EngineError.from_exception(
                exc,
                f"open('{self.config.name}', '{self.config.version}', "
                f"'{self.config.label}', {self.config.database_size})",
            ) from exc

        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        self._conn = conn
        self._closed = False

        logger.info("opened database %s (version %s)", self.config.label, self.config.version)
        self.observer.emit("SQL:open", self)

        if self.config.auto_init:
            self.init_db()
        return self

    def close(self) -> None:
        """Close the database; later transactions fail until open() is called."""
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None
        self._closed = True
        self._initialized = False
        logger.info("closed database %s", self.config.label)
        self.observer.emit("SQL:close", self)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @property
    def last_sql(self) -> str:
        return self._last_sql

    def remember(self, sql: str, values: Sequence[Any] = ()) -> None:
        """Keep the last statement for error messages."""
        self._last_sql = sql
        if self.config.debug:
            logger.debug("SQL: %s %r", sql, list(values))

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    def transaction(
        self,
        body: TransactionBody,
        on_error: Optional[ErrorCallback] = None,
        on_success: Optional[SuccessCallback] = None,
    ) -> Optional[bool]:
        """
        Run body(tx) in one transaction.

        A transaction requested inside a running one is queued and runs
        as soon as the running one finished; its outcome then reaches
        only on_success / on_error.

        Returns:
            True if committed, False if rolled back and handled by on_error,
            None if queued behind the running transaction

        Raises:
            EngineError: If the transaction failed and no on_error was given,
                or else the first failure of a queued transaction
        """
        if self._in_transaction:
            self._queue.append((body, on_error, on_success))
            return None

        try:
            committed = self._run_transaction(body, on_error, on_success)
        except Exception:
            self._drain_queue(raise_errors=False)
            raise
        self._drain_queue()
        return committed

    def _drain_queue(self, raise_errors: bool = True) -> None:
        """Run every queued transaction, including those queued meanwhile."""
        errors: List[Exception] = []
        while self._queue:
            try:
                self._run_transaction(*self._queue.popleft())
            except Exception as exc:
                errors.append(exc)

        failed = errors[1:] if raise_errors else errors
        for error in failed:
            logger.warning("queued transaction failed: %s", error)
        if errors and raise_errors:
            raise errors[0]

    def _run_transaction(
        self,
        body: TransactionBody,
        on_error: Optional[ErrorCallback],
        on_success: Optional[SuccessCallback],
    ) -> bool:
        try:
            with self._begin() as tx:
                body(tx)
        except (sqlite3.Error, EngineError) as exc:
            error = EngineError.from_exception(exc, self._last_sql)
            logger.debug("transaction rolled back: %s", error)
            if on_error is None:
                if error is exc:
                    raise
                raise error from exc
            on_error(error)
            return False

        if on_success is not None:
            on_success()
        return True

    @contextmanager
    def _begin(self) -> Iterator[Transaction]:
        """Context manager for one engine transaction."""
        conn = self._require_connection()
        tx = Transaction(self, conn)
        self._in_transaction = True
        try:
            conn.execute("BEGIN")
            yield tx
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            tx.close()
            self._in_transaction = False

    def _require_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if self._closed:
                raise DatabaseNotOpenError(self._last_sql)
            self.open()
        return self._conn

    def execute_sql(
        self,
        tx: Optional[Transaction],
        sql: str,
        values: Optional[Sequence[Any]] = None,
        on_success: Optional[Callable[[Transaction, ResultSet], Any]] = None,
        on_error: Optional[Callable[[Transaction, EngineError], Any]] = None,
    ) -> Optional[ResultSet]:
        """
        Execute a statement, in its own transaction when tx is None.

        Use this for every statement so the last SQL is kept for errors.
        """
        if tx is not None:
            return tx.execute_sql(sql, values, on_success, on_error)

        results: List[Optional[ResultSet]] = []
        self.transaction(lambda t: results.append(t.execute_sql(sql, values, on_success, on_error)))
        return results[0] if results else None

    # ------------------------------------------------------------------
    # schema creation
    # ------------------------------------------------------------------

    def init_db(self, tx: Optional[Transaction] = None, force: bool = False) -> None:
        """Create every registered object once (force=True repeats it)."""
        if self._initialized and not force:
            return
        if tx is None:
            self.transaction(self.create_schema)
        else:
            self.create_schema(tx)
        self._initialized = True

    def create_schema(self, tx: Transaction) -> None:
        """Create tables, then triggers, then indexes, then views."""
        for table in self.schema.get_tables():
            self.create_table(tx, table)
        for trigger in self.schema.get_triggers():
            self.create_trigger(tx, trigger)
        for index in self.schema.get_indexes():
            self.create_index(tx, index)
        for view in self.schema.get_views():
            self.create_view(tx, view)

    def create_table(self, tx: Transaction, name: str) -> None:
        self._create(tx, "TABLE", name, self.schema.sql_create_table(name))

    def create_trigger(self, tx: Transaction, name: str) -> None:
        self._create(tx, "TRIGGER", name, self.schema.sql_create_trigger(name))

    def create_index(self, tx: Transaction, name: str) -> None:
        self._create(tx, "INDEX", name, self.schema.sql_create_index(name))

    def create_view(self, tx: Transaction, name: str) -> None:
        self._create(tx, "VIEW", name, self.schema.sql_create_view(name))

    def _create(self, tx: Transaction, kind: str, name: str, sql: str) -> None:
        if self.config.drop_on_init:
            tx.execute_sql(self.schema.sql_drop(kind, name))
        tx.execute_sql(sql)

    # ------------------------------------------------------------------
    # bulk helpers
    # ------------------------------------------------------------------

    def insert_multi_rows(
        self,
        table: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        tx: Optional[Transaction] = None,
        on_success: Optional[Callable[[Transaction, ResultSet], Any]] = None,
        on_error: Optional[Callable[[Transaction, EngineError], Any]] = None,
    ) -> Optional[ResultSet]:
        """
        Insert many rows with one statement.

        Args:
            table: Registered table
            columns: Registered columns, in row value order
            rows: Value lists [[col1, ..., colN], ...]
        """
        columns = list(columns)
        self.schema.check_columns(table, columns)
        if not rows:
            return None

        values: List[Any] = []
        for position, row in enumerate(rows):
            if len(row) != len(columns):
                raise SchemaError(
                    f"rows[{position}] has {len(row)} values for {len(columns)} columns of '{table}'"
                )
            values.extend(self.codec.encode_all(row))

        sql = self.sql_insert_multi_rows(table, columns, len(rows))
        return self.execute_sql(tx, sql, values, on_success, on_error)

    @staticmethod
    def sql_insert_multi_rows(table: str, columns: Sequence[str], row_count: int) -> str:
        """INSERT ... SELECT ? AS col, ... UNION ALL SELECT ?, ... for row_count rows."""
        if row_count < 1:
            return ""
        first = ", ".join(f"? AS {column}" for column in columns)
        placeholders = ", ".join("?" for _ in columns)
        rest = "".join(f" UNION ALL SELECT {placeholders}" for _ in range(row_count - 1))
        return f"INSERT INTO {table} ({', '.join(columns)}) SELECT {first}{rest}"

    def drop_database(
        self,
        tx: Optional[Transaction] = None,
        on_success: Optional[Callable[[Transaction, ResultSet], Any]] = None,
    ) -> None:
        """Drop every table, view, index and trigger and reset autoincrement ids."""
        if tx is None:
            self.transaction(lambda t: self.drop_database(t, on_success))
            return

        objects = tx.execute_sql("SELECT type, name FROM sqlite_master")
        has_sequence = False
        for row in objects:
            if row["name"] == "sqlite_sequence":
                has_sequence = True
            if row["name"].startswith(_INTERNAL_OBJECTS):
                continue
            tx.execute_sql(self.schema.sql_drop(row["type"], row["name"]))

        if has_sequence:
            tx.execute_sql("DELETE FROM sqlite_sequence", [], on_success)
        elif on_success is not None:
            on_success(tx, ResultSet())
        self._initialized = False
