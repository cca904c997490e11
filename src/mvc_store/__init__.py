"""
mvc-store: SQLite persistence layer with a filter-array query compiler.

Filter arrays compile to parameterized SQL validated against a schema
registry; a versioned migration engine brings the schema up to date.
"""

from .models import (
    StoreError,
    ConfigError,
    SchemaError,
    UnknownTableError,
    UnknownColumnError,
    SchemaLockedError,
    FilterError,
    UnknownOperatorError,
    InvalidOperandError,
    UnsupportedFilterEntryError,
    UnencodableValueError,
    MigrationError,
    NonMonotonicVersionError,
    RegistrationClosedError,
    InvalidStateError,
    EngineError,
    DatabaseNotOpenError,
    ColumnDefinition,
    IndexDefinition,
    TableDefinition,
    SqlClause,
    FilterSpec,
    CompiledQuery,
)
from .config import StoreConfig
from .schema import SchemaRegistry, type_affinity
from .codec import ValueCodec
from .database import Database, Transaction, ResultSet
from .compiler import FilterCompiler, Bracket, RawClauseEntry, ColumnClause
from .executor import QueryExecutor
from .query import DbQuery
from .updater import MigrationEngine, UpdaterStatus, UpdaterType, UpdaterEvent
from .observer import StoreObserver, StoreEvent, get_observer
from .repository import TableRepository, Serializable, Awakenable, SaveAware, RemoveAware
from .backup import DbBackup, DumpData

__version__ = "0.1.0"
__all__ = [
    # Errors
    "StoreError",
    "ConfigError",
    "SchemaError",
    "UnknownTableError",
    "UnknownColumnError",
    "SchemaLockedError",
    "FilterError",
    "UnknownOperatorError",
    "InvalidOperandError",
    "UnsupportedFilterEntryError",
    "UnencodableValueError",
    "MigrationError",
    "NonMonotonicVersionError",
    "RegistrationClosedError",
    "InvalidStateError",
    "EngineError",
    "DatabaseNotOpenError",
    # Schema and queries
    "ColumnDefinition",
    "IndexDefinition",
    "TableDefinition",
    "SqlClause",
    "FilterSpec",
    "CompiledQuery",
    "StoreConfig",
    "SchemaRegistry",
    "type_affinity",
    "ValueCodec",
    "Database",
    "Transaction",
    "ResultSet",
    "FilterCompiler",
    "Bracket",
    "RawClauseEntry",
    "ColumnClause",
    "QueryExecutor",
    "DbQuery",
    # Migrations
    "MigrationEngine",
    "UpdaterStatus",
    "UpdaterType",
    "UpdaterEvent",
    # Events, storage, backup
    "StoreObserver",
    "StoreEvent",
    "get_observer",
    "TableRepository",
    "Serializable",
    "Awakenable",
    "SaveAware",
    "RemoveAware",
    "DbBackup",
    "DumpData",
]
