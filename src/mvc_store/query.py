"""
DbQuery - the table-bound query surface.

    query = DbQuery("user", database)
    rows = query.search({"filter": [["age", ">", 18], ["city", "=", "Berlin"]]})
    total = query.count([["age", ">", 18]])
    removed = query.delete_search({"filter": [["age", "<", 18]], "limit": 10})

Every call validates and compiles before a transaction opens; filter
errors are raised immediately and never reach the engine.
"""

from typing import Any, Callable, Dict, List, Optional

from .compiler import EntryHook, FilterCompiler
from .database import Database, ResultSet, Transaction
from .executor import Query, QueryExecutor
from .models import CompiledQuery, EngineError, SqlClause


class DbQuery:
    """
    Search, count and delete on one table (or view).

    Args:
        table: Registered table name
        database: Connector
        entry_hook: Optional rewrite hook for every column clause
    """

    def __init__(self, table: str, database: Database, entry_hook: Optional[EntryHook] = None):
        self.table = table
        self.database = database
        self.compiler = FilterCompiler(table, database.schema, database.codec, entry_hook)
        self.executor = QueryExecutor(database)
        self._compiled = CompiledQuery("")

    @property
    def sql(self) -> str:
        """SQL of the last prepared query."""
        return self._compiled.sql

    @property
    def values(self) -> List[Any]:
        """Bound values of the last prepared query."""
        return list(self._compiled.values)

    def get_sql_clause(self) -> SqlClause:
        """The last prepared query as a SqlClause, e.g. for a sub-select."""
        return self._compiled.as_clause()

    # prepare

    def prepare_search(self, spec: Any) -> CompiledQuery:
        self._compiled = self.compiler.compile_search(spec)
        return self._compiled

    def prepare_count(self, spec: Any) -> CompiledQuery:
        self._compiled = self.compiler.compile_count(spec)
        return self._compiled

    def prepare_delete_search(self, spec: Any) -> CompiledQuery:
        self._compiled = self.compiler.compile_delete(spec)
        return self._compiled

    # run

    def search(
        self,
        spec: Any,
        on_success: Optional[Callable[[List[Dict[str, Any]]], Any]] = None,
        on_error: Optional[Callable[[EngineError], Any]] = None,
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Run a search.

        Returns:
            Rows as dicts with temporal columns decoded, or None if the
            query failed and on_error handled it. Inside a running
            transaction the search is queued and None is returned;
            on_success gets the rows after it ran.
        """
        compiled = self.prepare_search(spec)
        found: List[List[Dict[str, Any]]] = []

        def deliver(result: ResultSet) -> None:
            found.append(self.decode_rows(result.rows))
            if on_success is not None:
                on_success(found[0])

        self.executor.run(compiled, deliver, on_error)
        return found[0] if found else None

    def count(
        self,
        spec: Any,
        on_success: Optional[Callable[[int], Any]] = None,
        on_error: Optional[Callable[[EngineError], Any]] = None,
    ) -> Optional[int]:
        """Number of matching rows (None if failed and handled, or queued)."""
        compiled = self.prepare_count(spec)
        found: List[int] = []

        def deliver(result: ResultSet) -> None:
            found.append(int(next(iter(result.rows[0].values()))) if result.rows else 0)
            if on_success is not None:
                on_success(found[0])

        self.executor.run(compiled, deliver, on_error)
        return found[0] if found else None

    def delete_search(
        self,
        spec: Any,
        on_success: Optional[Callable[[int], Any]] = None,
        on_error: Optional[Callable[[EngineError], Any]] = None,
    ) -> Optional[int]:
        """Delete matching rows and return how many were deleted."""
        compiled = self.prepare_delete_search(spec)
        found: List[int] = []

        def deliver(result: ResultSet) -> None:
            found.append(result.rows_affected)
            if on_success is not None:
                on_success(result.rows_affected)

        self.executor.run(compiled, deliver, on_error)
        return found[0] if found else None

    # delegates

    def execute(self, query: Optional[Query] = None, on_success=None, on_error=None) -> Optional[ResultSet]:
        """Run a query (the last prepared one by default)."""
        return self.executor.execute(query or self._compiled, on_success, on_error)

    def execute_one_value(self, query: Optional[Query] = None, on_success=None, on_error=None) -> Any:
        return self.executor.execute_one_value(query or self._compiled, on_success, on_error)

    def execute_in_transaction(
        self, tx: Transaction, query: Optional[Query] = None, on_success=None, on_error=None
    ) -> Optional[ResultSet]:
        return self.executor.execute_in_transaction(tx, query or self._compiled, on_success, on_error)

    def decode_rows(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Decode the temporal columns of result rows in place."""
        schema = self.database.schema
        if not rows or not schema.table_exists(self.table):
            return rows

        temporal = {
            column: schema.get_sql_column_type(self.table, column)
            for column in rows[0]
            if schema.column_exists(self.table, column) and schema.is_date_column(self.table, column)
        }
        if not temporal:
            return rows

        for row in rows:
            for column, affinity in temporal.items():
                row[column] = self.database.codec.decode(row[column], affinity)
        return rows
