"""
Tests for SchemaRegistry - table, column and index definitions.
"""

import pytest

from mvc_store.config import StoreConfig
from mvc_store.models import (
    ColumnDefinition,
    SchemaError,
    SchemaLockedError,
    UnknownColumnError,
    UnknownTableError,
)
from mvc_store.schema import SchemaRegistry, is_date_type, type_affinity


@pytest.fixture
def schema():
    """Create a registry with a user table."""
    registry = SchemaRegistry(StoreConfig(name=":memory:"))
    registry.add_table("user", [
        ["id", "INTEGER", "PRIMARY KEY AUTOINCREMENT"],
        ["name", "text", "NOT NULL"],
        ["age", "INTEGER", ""],
    ])
    return registry


class TestTypeAffinity:
    """Test the declared type to affinity mapping."""

    @pytest.mark.parametrize("declared,affinity", [
        ("INTEGER", "INTEGER"),
        ("BIGINT", "INTEGER"),
        ("VARCHAR(255)", "TEXT"),
        ("CLOB", "TEXT"),
        ("BLOB", "NONE"),
        ("DOUBLE PRECISION", "REAL"),
        ("FLOAT", "REAL"),
        ("DECIMAL(10,5)", "NUMERIC"),
        ("DATETIME", "NUMERIC"),
    ])
    def test_affinity(self, declared, affinity):
        """Test the substring rules."""
        assert type_affinity(declared) == affinity

    def test_int_before_char(self):
        """Test that INT wins over CHAR."""
        assert type_affinity("CHARINT") == "INTEGER"

    def test_date_type(self):
        """Test temporal type detection."""
        assert is_date_type("DATETIME")
        assert is_date_type("time")
        assert not is_date_type("TEXT")


class TestTables:
    """Test table registration."""

    def test_add_table(self, schema):
        """Test columns keep registration order."""
        assert schema.get_tables() == ["user"]
        assert schema.get_columns("user") == ["id", "name", "age"]

    def test_get_column_triple(self, schema):
        """Test reading one column definition."""
        assert schema.get_columns("user", "age") == ("age", "INTEGER", "")
        assert schema.get_columns("user", "missing") is None

    def test_auto_collate(self, schema):
        """Test text columns get the default collation."""
        assert schema.get_columns("user", "name") == ("name", "TEXT", "NOT NULL COLLATE NOCASE")

    def test_explicit_collate_kept(self):
        """Test that an explicit collation is not doubled."""
        registry = SchemaRegistry(StoreConfig(name=":memory:"))
        registry.add_table("t", [["code", "VARCHAR(10)", "COLLATE BINARY"]])
        assert registry.get_columns("t", "code")[2] == "COLLATE BINARY"

    def test_empty_name(self):
        """Test that table names are required."""
        with pytest.raises(SchemaError):
            SchemaRegistry().add_table("", [])

    def test_overwrite(self, schema):
        """Test re-adding a table replaces it."""
        schema.add_table("user", [["id", "INTEGER", ""]])
        assert schema.get_columns("user") == ["id"]

    def test_unknown_table(self, schema):
        """Test using a table that was never added."""
        with pytest.raises(UnknownTableError):
            schema.get_columns("missing")
        with pytest.raises(UnknownTableError):
            schema.set_columns("missing", [["a", "TEXT", ""]])

    def test_create_table_sql(self, schema):
        """Test the CREATE TABLE statement."""
        assert schema.sql_create_table("user") == (
            "CREATE TABLE IF NOT EXISTS user ("
            "id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "name TEXT NOT NULL COLLATE NOCASE, "
            "age INTEGER);"
        )

    def test_table_constraints(self):
        """Test table constraints in the DDL."""
        registry = SchemaRegistry(StoreConfig(name=":memory:"))
        registry.add_table("pair", [["a", "INTEGER", ""], ["b", "INTEGER", ""]], ["UNIQUE (a, b)"])
        assert registry.sql_create_table("pair").endswith("b INTEGER, UNIQUE (a, b));")


class TestColumns:
    """Test column registration."""

    def test_replace_keeps_position(self, schema):
        """Test a replaced column keeps its index."""
        schema.set_columns("user", ["name", "VARCHAR(40)", ""])
        assert schema.get_columns("user") == ["id", "name", "age"]
        assert schema.get_column_type("user", "name") == "VARCHAR(40)"

    def test_append(self, schema):
        """Test a new column is appended."""
        schema.set_columns("user", "email", ["TEXT", ""])
        assert schema.get_columns("user")[-1] == "email"

    def test_batch(self, schema):
        """Test a batch of columns."""
        schema.set_columns("user", [["a", "TEXT", ""], ColumnDefinition("b", "REAL")])
        assert schema.get_columns("user")[-2:] == ["a", "b"]

    def test_shorthand_needs_definitions(self, schema):
        """Test the name shorthand needs [type, constraints]."""
        with pytest.raises(SchemaError):
            schema.set_columns("user", "email", ["TEXT"])

    def test_exists(self, schema):
        """Test existence checks."""
        assert schema.table_exists("user")
        assert not schema.table_exists("missing")
        assert schema.column_exists("user", "age")
        assert not schema.column_exists("user", "missing")

    def test_check_columns(self, schema):
        """Test the first unknown column is named."""
        schema.check_columns("user", ["id", "age"])
        with pytest.raises(UnknownColumnError, match="nope"):
            schema.check_columns("user", ["id", "nope", "other"])


class TestIndexes:
    """Test index registration."""

    def test_index_from_constraint(self):
        """Test INDEX constraints move to the index registry."""
        registry = SchemaRegistry(StoreConfig(name=":memory:"))
        registry.add_table(
            "user",
            [["id", "INTEGER", ""], ["name", "TEXT", ""], ["age", "INTEGER", ""]],
            [["INDEX", "user_name_age", "name, age"], "CHECK (age >= 0)"],
        )

        assert registry.get_indexes() == ["user_name_age"]
        assert registry.get_tables("user").constraints == ["CHECK (age >= 0)"]
        assert registry.sql_create_index("user_name_age") == (
            "CREATE INDEX IF NOT EXISTS user_name_age ON user (name, age);"
        )

    def test_unique_index(self, schema):
        """Test a unique index from a column list."""
        schema.add_index("user_name", "user", ["name"], unique=True)
        assert schema.sql_create_index("user_name") == (
            "CREATE UNIQUE INDEX IF NOT EXISTS user_name ON user (name);"
        )

    def test_index_unknown_column(self, schema):
        """Test indexes are validated against the table."""
        with pytest.raises(UnknownColumnError):
            schema.add_index("bad", "user", "name, nope")


class TestTimestampColumns:
    """Test the auto timestamp columns."""

    def test_auto_columns(self):
        """Test timestamp columns are redefined with a default."""
        registry = SchemaRegistry(StoreConfig(name=":memory:"))
        registry.add_table("note", [
            ["id", "INTEGER", "PRIMARY KEY"],
            ["dt_create", "", ""],
            ["dt_change", "", ""],
        ])

        assert registry.get_columns("note", "dt_create") == (
            "dt_create", "INTEGER", "NOT NULL DEFAULT (STRFTIME('%s', 'NOW'))"
        )
        assert registry.is_date_column("note", "dt_create")
        assert registry.get_triggers() == ["note_dt_change_autoupdate"]
        assert "UPDATE note SET dt_change = STRFTIME('%s', 'NOW') WHERE id = new.id;" in (
            registry.sql_create_trigger("note_dt_change_autoupdate")
        )

    def test_text_timestamps(self):
        """Test TEXT timestamps use a local datetime default."""
        registry = SchemaRegistry(StoreConfig(name=":memory:", timestamp_type="TEXT"))
        registry.add_table("note", [["id", "INTEGER", ""], ["dt_create", "", ""]])

        column = registry.get_columns("note", "dt_create")
        assert "STRFTIME('%Y-%m-%d %H:%M:%S', 'NOW', 'LOCALTIME')" in column[2]
        assert registry.get_sql_column_type("note", "dt_create") == "TEXT"
        assert registry.get_triggers() == []

    def test_date_column_storage(self, schema):
        """Test temporal columns use the timestamp affinity."""
        schema.set_columns("user", "birthday", ["DATE", ""])
        assert schema.is_date_column("user", "birthday")
        assert schema.get_sql_column_type("user", "birthday") == "INTEGER"
        assert "birthday INTEGER" in schema.sql_create_table("user")


class TestViewsAndTriggers:
    """Test views and triggers."""

    def test_view(self, schema):
        """Test view DDL."""
        schema.add_view("adults", "SELECT id, name FROM user WHERE age >= 18")
        assert schema.sql_create_view("adults") == (
            "CREATE VIEW IF NOT EXISTS adults AS SELECT id, name FROM user WHERE age >= 18"
        )

    def test_trigger_owned_by_table(self, schema):
        """Test a trigger is listed on its table."""
        schema.add_trigger("user_log", "AFTER DELETE ON user BEGIN SELECT 1; END;", table="user")
        assert schema.get_tables("user").triggers == ["user_log"]

    def test_drop_sql(self):
        """Test DROP statements."""
        assert SchemaRegistry.sql_drop("view", "adults") == "DROP VIEW IF EXISTS adults;"


class TestLock:
    """Test the registry lock."""

    def test_locked_registry(self, schema):
        """Test every registration fails once locked."""
        schema.lock()

        assert schema.locked
        with pytest.raises(SchemaLockedError):
            schema.add_table("other", [["id", "INTEGER", ""]])
        with pytest.raises(SchemaLockedError):
            schema.set_columns("user", "email", ["TEXT", ""])
        with pytest.raises(SchemaLockedError):
            schema.add_index("user_age", "user", "age")

    def test_lookups_after_lock(self, schema):
        """Test reading still works when locked."""
        schema.lock()
        assert schema.get_columns("user") == ["id", "name", "age"]
