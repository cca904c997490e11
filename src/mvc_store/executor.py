"""
QueryExecutor - runs compiled queries against the connector.

Every entry point hands fully materialized rows to its success callback
and an EngineError (code, message and failed statement) to its error
callback. Without an error callback the EngineError is raised.
"""

import logging
from typing import Any, Callable, List, Optional, Union

from .database import Database, ResultSet, Transaction
from .models import CompiledQuery, EngineError, SqlClause

logger = logging.getLogger(__name__)

Query = Union[CompiledQuery, SqlClause, str]


def _split(query: Query) -> CompiledQuery:
    if isinstance(query, CompiledQuery):
        return query
    if isinstance(query, SqlClause):
        return CompiledQuery(str(query), tuple(query.values))
    if isinstance(query, str):
        return CompiledQuery(query)
    raise TypeError(f"can't execute {type(query).__name__}; need CompiledQuery, SqlClause or str")


class QueryExecutor:
    """
    Transactional runner for compiled SQL.

    Results are delivered once the transaction committed. Called from
    inside a running transaction the query is queued behind it, so the
    return value is None and only the callbacks see the result.

    Args:
        database: Connector the statements run on
    """

    def __init__(self, database: Database):
        self.database = database

    def run(
        self,
        query: Query,
        on_result: Optional[Callable[[ResultSet], Any]] = None,
        on_error: Optional[Callable[[EngineError], Any]] = None,
    ) -> Optional[ResultSet]:
        """
        Run a query in its own transaction and hand on_result the whole
        ResultSet after the commit.

        Returns:
            The ResultSet, or None if the query was queued, or failed and
            on_error handled it
        """
        compiled = _split(query)
        results: List[ResultSet] = []

        def body(tx: Transaction) -> None:
            results.append(tx.execute_sql(compiled.sql, list(compiled.values)))

        def committed() -> None:
            if on_result is not None:
                on_result(results[0])

        state = self.database.transaction(body, on_error, committed)
        if state is None:
            logger.debug("query queued behind the running transaction: %s", compiled.sql)
            return None
        if not state:
            logger.debug("query not completed: %s", compiled.sql)
            return None
        return results[0]

    def execute(
        self,
        query: Query,
        on_success: Optional[Callable[[List[dict]], Any]] = None,
        on_error: Optional[Callable[[EngineError], Any]] = None,
    ) -> Optional[ResultSet]:
        """Run a query in its own transaction; on_success gets the rows."""
        def deliver(result: ResultSet) -> None:
            if on_success is not None:
                on_success(result.rows)

        return self.run(query, deliver, on_error)

    def execute_one_value(
        self,
        query: Query,
        on_success: Optional[Callable[[Any], Any]] = None,
        on_error: Optional[Callable[[EngineError], Any]] = None,
    ) -> Any:
        """
        Run a query and return the first column of the first row
        (None if there are no rows, or the query was queued).
        """
        found: List[Any] = []

        def deliver(result: ResultSet) -> None:
            value = next(iter(result.rows[0].values()), None) if result.rows else None
            found.append(value)
            if on_success is not None:
                on_success(value)

        self.run(query, deliver, on_error)
        return found[0] if found else None

    def execute_in_transaction(
        self,
        tx: Transaction,
        query: Query,
        on_success: Optional[Callable[[Transaction, ResultSet], Any]] = None,
        on_error: Optional[Callable[[Transaction, EngineError], Any]] = None,
    ) -> Optional[ResultSet]:
        """Run a query inside a transaction the caller already opened."""
        if not isinstance(tx, Transaction):
            raise TypeError(f"need an open Transaction, got {type(tx).__name__}")
        compiled = _split(query)
        return tx.execute_sql(compiled.sql, list(compiled.values), on_success, on_error)
