"""
Tests for DbBackup - dump and restore.
"""

import json
import os
import tempfile

import pytest

from mvc_store.backup import DbBackup, DumpData
from mvc_store.config import StoreConfig
from mvc_store.database import Database
from mvc_store.observer import StoreObserver


def make_database(path):
    database = Database(StoreConfig(name=path), observer=StoreObserver())
    database.schema.add_table("user", [
        ["id", "INTEGER", "PRIMARY KEY"],
        ["name", "TEXT", ""],
        ["age", "INTEGER", ""],
        ["city", "TEXT", ""],
    ], [["INDEX", "user_city", "city"]])
    database.schema.add_table("tag", [["id", "INTEGER", "PRIMARY KEY"], ["label", "TEXT", ""]])
    database.schema.add_view("adults", "SELECT id, name FROM user WHERE age >= 18")
    database.init_db()
    return database


@pytest.fixture
def temp_paths():
    """Create two temporary database files."""
    paths = []
    for _ in range(2):
        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            paths.append(f.name)
    yield paths
    for path in paths:
        os.unlink(path)


@pytest.fixture
def source(temp_paths):
    database = make_database(temp_paths[0])
    database.insert_multi_rows("user", ["id", "name", "age", "city"], [
        [1, "Ann", 34, "Berlin"],
        [2, "Bob", 17, "Hamburg"],
    ])
    database.insert_multi_rows("tag", ["id", "label"], [[1, "red"]])
    yield database
    database.close()


@pytest.fixture
def target(temp_paths):
    database = Database(StoreConfig(name=temp_paths[1]), observer=StoreObserver())
    yield database
    database.close()


class TestDump:
    """Test dumping."""

    def test_raw_dump(self, source):
        """Test the dump structure."""
        dump = DbBackup(source).dump(formatter="raw")

        assert isinstance(dump, DumpData)
        assert dump.tables == {"user": ["id", "name", "age", "city"], "tag": ["id", "label"]}
        assert dump.data["user"] == [[1, "Ann", 34, "Berlin"], [2, "Bob", 17, "Hamburg"]]
        assert dump.sql["tables"][0].startswith("CREATE TABLE IF NOT EXISTS user")
        assert dump.sql["indexes"] == ["CREATE INDEX IF NOT EXISTS user_city ON user (city);"]
        assert len(dump.sql["views"]) == 1
        assert dump.errors == {}

    def test_json_dump(self, source):
        """Test the JSON formatter."""
        text = DbBackup(source).dump()
        document = json.loads(text)

        assert set(document) == {"sql", "tables", "data", "errors"}
        assert document["data"]["tag"] == [[1, "red"]]

    def test_structure_only(self, source):
        """Test a dump without data."""
        dump = DbBackup(source).dump(formatter="raw", include_data=False)
        assert dump.data == {}

    def test_table_error(self, source):
        """Test a failing table is recorded and the dump continues."""
        source.execute_sql(None, "DROP TABLE tag")

        dump = DbBackup(source).dump(formatter="raw")

        assert "no such table" in dump.errors["tag"]
        assert len(dump.data["user"]) == 2

    def test_unknown_formatter(self, source):
        """Test unknown formatters."""
        with pytest.raises(ValueError):
            DbBackup(source).dump(formatter="xml")


class TestRestore:
    """Test restoring."""

    def test_round_trip(self, source, target):
        """Test a JSON dump restores into an empty database."""
        text = DbBackup(source).dump()

        result = DbBackup(target).restore(text)

        assert result.errors == {}
        rows = target.execute_sql(None, "SELECT name FROM adults").rows
        assert rows == [{"name": "Ann"}]
        assert target.execute_sql(None, "SELECT label FROM tag").rows == [{"label": "red"}]

    def test_insert_or_ignore(self, source):
        """Test restoring over existing rows keeps them."""
        dump = DbBackup(source).dump(formatter="raw")
        dump.data["user"][0][1] = "Changed"

        result = DbBackup(source).restore(dump)

        assert result.errors == {}
        assert source.execute_sql(None, "SELECT name FROM user WHERE id = 1").rows[0]["name"] == "Ann"

    def test_column_mismatch(self, source, target):
        """Test a table with other columns fails alone."""
        document = DbBackup(source).dump(formatter="raw").to_dict()
        document["tables"]["user"] = ["id", "name", "age"]
        document["data"]["user"] = [[1, "Ann", 34]]

        result = DbBackup(target).restore(document)

        assert "user" in result.errors
        assert "tag" not in result.errors
        assert target.execute_sql(None, "SELECT COUNT(*) AS n FROM user").rows[0]["n"] == 0
        assert target.execute_sql(None, "SELECT COUNT(*) AS n FROM tag").rows[0]["n"] == 1

    def test_short_rows(self, source, target):
        """Test rows with too few values fail their table."""
        dump = DbBackup(source).dump(formatter="raw")
        dump.data["user"] = [[1, "Ann", 34]]

        result = DbBackup(target).restore(dump)

        assert result.errors["user"].startswith("[")
        assert "tag" not in result.errors

    def test_missing_table(self, target):
        """Test data for a table without DDL."""
        dump = DumpData(tables={"ghost": ["id"]}, data={"ghost": [[1]]})

        result = DbBackup(target).restore(dump)

        assert "no such table" in result.errors["ghost"]


class TestDumpData:
    """Test the interchange document."""

    def test_json_round_trip(self):
        """Test JSON conversion."""
        dump = DumpData(tables={"t": ["a"]}, data={"t": [[1]]}, errors={"x": "[1]: boom"})
        assert DumpData.from_json(dump.to_json()) == dump
