"""
Tests for DbQuery and QueryExecutor - running compiled queries.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest

from mvc_store.config import StoreConfig
from mvc_store.database import Database
from mvc_store.executor import QueryExecutor
from mvc_store.models import CompiledQuery, EngineError, SqlClause, UnknownOperatorError
from mvc_store.observer import StoreObserver
from mvc_store.query import DbQuery


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield f.name
    os.unlink(f.name)


@pytest.fixture
def db(temp_db):
    """Create a connector with a few users."""
    database = Database(StoreConfig(name=temp_db), observer=StoreObserver())
    database.schema.add_table("user", [
        ["id", "INTEGER", "PRIMARY KEY AUTOINCREMENT"],
        ["name", "TEXT", ""],
        ["age", "INTEGER", ""],
        ["city", "TEXT", ""],
        ["dt_create", "", ""],
    ])
    database.init_db()
    database.insert_multi_rows("user", ["name", "age", "city"], [
        ["Ann", 34, "Berlin"],
        ["Bob", 17, "Berlin"],
        ["Cem", 52, "Hamburg"],
        ["Dana", 19, "berlin"],
    ])
    yield database
    database.close()


@pytest.fixture
def query(db):
    return DbQuery("user", db)


class TestSearch:
    """Test searching."""

    def test_search(self, query):
        """Test rows matching every clause."""
        rows = query.search({
            "filter": [["age", ">", 18], ["city", "=", "Berlin"]],
            "columns": ["name"],
            "order": ["name"],
        })
        # city is COLLATE NOCASE
        assert [row["name"] for row in rows] == ["Ann", "Dana"]

    def test_search_callback(self, query):
        """Test the success callback gets the rows."""
        seen = []
        query.search([["name", "=", "Cem"]], on_success=seen.append)
        assert seen[0][0]["age"] == 52

    def test_remembers_sql(self, query):
        """Test the last compiled query is kept."""
        query.search({"filter": [["age", "<", 18]], "columns": ["id"]})
        assert query.sql == "SELECT id FROM user WHERE (age < ?)"
        assert query.values == [18]

    def test_dates_decoded(self, query):
        """Test timestamp columns come back as datetimes."""
        row = query.search({"filter": [["name", "=", "Ann"]], "columns": ["dt_create"]})[0]
        assert isinstance(row["dt_create"], datetime)
        assert row["dt_create"].tzinfo == timezone.utc

    def test_or_group(self, query):
        """Test grouped OR clauses."""
        rows = query.search({
            "filter": ["(", ["age", "<", 18], ["age", ">", 50, "OR"], ")", ["city", "LIKE", "%burg"]],
            "columns": ["name"],
        })
        assert [row["name"] for row in rows] == ["Cem"]

    def test_sub_select(self, db, query):
        """Test another query embedded as a sub-select."""
        inner = DbQuery("user", db)
        inner.prepare_search({"filter": [["city", "=", "Hamburg"]], "columns": ["id"]})

        rows = query.search({"filter": [["id", "IN", inner.get_sql_clause()]], "columns": ["name"]})
        assert [row["name"] for row in rows] == ["Cem"]

    def test_filter_errors_before_engine(self, db, query):
        """Test invalid filters raise before any statement runs."""
        db.execute_sql(None, "SELECT 1")
        with pytest.raises(UnknownOperatorError):
            query.search([["age", "~", 1]])
        assert db.last_sql == "SELECT 1"

    def test_engine_error_callback(self, query):
        """Test engine errors go to the error callback."""
        errors = []
        result = query.search(
            {"filter": [["age", "=", SqlClause("no_such_function(?)", [1])]]},
            on_error=errors.append,
        )

        assert result is None
        assert isinstance(errors[0], EngineError)
        assert "no_such_function" in errors[0].sql


class TestCount:
    """Test counting."""

    def test_count(self, query):
        """Test COUNT(*) returns an int."""
        assert query.count([["city", "=", "berlin"]]) == 3
        assert query.count([]) == 4

    def test_count_callback(self, query):
        """Test the success callback gets the count."""
        seen = []
        query.count([["age", "BETWEEN", [18, 40]]], on_success=seen.append)
        assert seen == [2]


class TestDelete:
    """Test deleting."""

    def test_delete_search(self, query):
        """Test the number of deleted rows."""
        assert query.delete_search([["age", "<", 18]]) == 1
        assert query.count([]) == 3

    def test_delete_with_limit(self, query):
        """Test a limited delete."""
        assert query.delete_search({"filter": [["city", "=", "Berlin"]], "limit": 2}) == 2
        assert query.count([["city", "=", "Berlin"]]) == 1


class TestExecutor:
    """Test QueryExecutor."""

    def test_execute(self, db):
        """Test rows are handed to the callback."""
        seen = []
        result = QueryExecutor(db).execute(
            CompiledQuery("SELECT name FROM user WHERE age > ?", (50,)), on_success=seen.append
        )
        assert seen == [[{"name": "Cem"}]]
        assert len(result) == 1

    def test_execute_one_value(self, db):
        """Test the first column of the first row."""
        executor = QueryExecutor(db)
        assert executor.execute_one_value("SELECT MAX(age) FROM user") == 52
        assert executor.execute_one_value(CompiledQuery("SELECT id FROM user WHERE age > ?", (99,))) is None

    def test_execute_error(self, db):
        """Test engine errors are raised without a callback."""
        with pytest.raises(EngineError):
            QueryExecutor(db).execute("SELECT * FROM nowhere")

    def test_execute_in_transaction(self, db, query):
        """Test several statements in one transaction."""
        executor = QueryExecutor(db)

        def body(tx):
            executor.execute_in_transaction(tx, query.prepare_delete_search([["city", "=", "Hamburg"]]))
            executor.execute_in_transaction(tx, SqlClause("UPDATE user SET age = age + ?", [1]))

        db.transaction(body)

        assert query.count([]) == 3
        assert executor.execute_one_value("SELECT MIN(age) FROM user") == 18

    def test_execute_in_transaction_needs_tx(self, db):
        """Test a transaction handle is required."""
        with pytest.raises(TypeError):
            QueryExecutor(db).execute_in_transaction(None, "SELECT 1")


class TestInsideTransaction:
    """Test queries started from inside a running transaction."""

    def test_search(self, db, query):
        """Test the rows reach the callback once the transaction finished."""
        returned, found = [], []

        db.transaction(lambda tx: returned.append(query.search([["age", ">", 50]], found.append)))

        assert returned == [None]
        assert [row["name"] for row in found[0]] == ["Cem"]

    def test_count_and_delete(self, db, query):
        """Test count and delete_search deliver through their callbacks."""
        seen = []

        def body(tx):
            query.delete_search([["age", "<", 18]], seen.append)
            query.count([], seen.append)

        db.transaction(body)

        assert seen == [1, 3]

    def test_execute_one_value(self, db):
        """Test the scalar reaches the callback."""
        seen = []
        executor = QueryExecutor(db)

        db.transaction(lambda tx: executor.execute_one_value("SELECT COUNT(*) FROM user", seen.append))

        assert seen == [4]

    def test_sees_committed_writes(self, db, query):
        """Test a queued search runs after the running transaction committed."""
        found = []

        def body(tx):
            tx.execute_sql("INSERT INTO user (name, age) VALUES (?, ?)", ["Eve", 70])
            query.search([["age", ">", 60]], found.append)

        db.transaction(body)

        assert [row["name"] for row in found[0]] == ["Eve"]
