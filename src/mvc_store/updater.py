"""
MigrationEngine - drives the database schema to the latest version.

    updater = MigrationEngine(database)
    updater.add_init_function(create_latest_schema)
    updater.add_update_function(2, add_email_column)
    updater.add_update_function(0, add_login_index)   # auto: version 3
    updater.add_ready_function(start_app)
    updater.execute()

The applied versions are kept in a ledger table (one row per version,
append-only). Without a ledger the init functions run and the ledger
records the highest registered update version, so a fresh database is
current right away. With a ledger every update function above its
MAX(version) runs in ascending order, each in its own transaction
together with its ledger row.

Status: INIT -> EXECUTE -> READY -> DONE.
"""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, List, Optional

from .config import StoreConfig
from .database import Database, Transaction
from .models import (
    EngineError,
    InvalidStateError,
    NonMonotonicVersionError,
    RegistrationClosedError,
)
from .observer import StoreObserver

logger = logging.getLogger(__name__)

SQL_CREATE_LEDGER = (
    "CREATE TABLE IF NOT EXISTS {table} ("
    "version INTEGER NOT NULL, "
    "dt_applied INTEGER NOT NULL DEFAULT (STRFTIME('%s', 'NOW')))"
)
SQL_SELECT_VERSION = "SELECT MAX(version) AS version FROM {table}"
SQL_INSERT_VERSION = "INSERT INTO {table} (version) VALUES (?)"

# MAX(version) result when the ledger table doesn't exist
NO_LEDGER = object()


class UpdaterStatus(IntEnum):
    INIT = 0
    EXECUTE = 1
    READY = 2
    DONE = 3


class UpdaterType(Enum):
    UNKNOWN = "unknown"
    INIT = "init"
    UPDATE = "update"


class UpdaterEvent(Enum):
    EXECUTE = "execute"
    PROGRESS = "progress"
    READY = "ready"
    DONE = "done"


@dataclass
class MigrationFunction:
    """A registered init (version 0) or update function."""
    version: int
    action: Callable[[Transaction], Any]


ErrorHandler = Callable[[EngineError], Any]


class MigrationEngine:
    """
    Versioned, ordered migration runner.

    Args:
        database: Connector (its schema registry is locked on execute)
        config: Options (defaults to the connector's config)
        observer: Event observer (defaults to the connector's observer)
        error_handler: Receives migration errors; without one they are raised
    """

    def __init__(
        self,
        database: Database,
        config: Optional[StoreConfig] = None,
        observer: Optional[StoreObserver] = None,
        error_handler: Optional[ErrorHandler] = None,
    ):
        self.database = database
        self.config = config or database.config
        self.observer = observer or database.observer
        self.error_handler = error_handler

        self._init_functions: List[MigrationFunction] = []
        self._update_functions: List[MigrationFunction] = []
        self._ready_functions: List[Callable[[], Any]] = []

        self._status = UpdaterStatus.INIT
        self._type = UpdaterType.UNKNOWN
        self._version = 0
        self._error: Optional[EngineError] = None
        self._executed_once = False
        self._re_executing = False
        self._callback: Optional[Callable[["MigrationEngine"], Any]] = None

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    @property
    def status(self) -> UpdaterStatus:
        return self._status

    @property
    def type(self) -> UpdaterType:
        return self._type

    @property
    def version(self) -> int:
        """Schema version after the last execution (0 before)."""
        return self._version

    @property
    def error(self) -> Optional[EngineError]:
        """The error that halted the last execution, if any."""
        return self._error

    @property
    def version_table(self) -> str:
        return self.config.version_table

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    def add_init_function(self, action: Callable[[Transaction], Any]) -> "MigrationEngine":
        """Register a function that creates the latest schema on a fresh database."""
        self._check_registration("add_init_function")
        if callable(action):
            self._init_functions.append(MigrationFunction(0, action))
        return self

    def add_update_function(self, version: int, action: Callable[[Transaction], Any]) -> "MigrationEngine":
        """
        Register an update function.

        Args:
            version: Strictly increasing version; <= 0 uses the next version
            action: Called with the transaction of this version

        Raises:
            NonMonotonicVersionError: If version isn't above every registered version
            RegistrationClosedError: After execute()
        """
        self._check_registration("add_update_function")

        latest = self.max_update_version()
        if version is None or version <= 0:
            version = latest + 1
        if self._update_functions and version <= latest:
            raise NonMonotonicVersionError(
                f"new version ({version}) is lower or equal than the previous version ({latest}); "
                "use increasing version numbers"
            )

        if callable(action):
            self._update_functions.append(MigrationFunction(int(version), action))
        return self

    def add_ready_function(self, action: Callable[[], Any]) -> "MigrationEngine":
        """Register a function that runs once the schema is current."""
        self._check_registration("add_ready_function")
        if callable(action):
            self._ready_functions.append(action)
        return self

    def max_update_version(self) -> int:
        """Largest registered update version (0 without update functions)."""
        return self._update_functions[-1].version if self._update_functions else 0

    def _check_registration(self, method: str) -> None:
        if self._status > UpdaterStatus.INIT or self._executed_once:
            raise RegistrationClosedError(
                f"already in execution or executed; call {method}() before execute()"
            )

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def execute(self, callback: Optional[Callable[["MigrationEngine"], Any]] = None) -> bool:
        """
        Bring the schema to the latest version and run the ready functions.

        Args:
            callback: Called with the engine once DONE is reached

        Returns:
            True when DONE was reached, False if an error handler took an error

        Raises:
            InvalidStateError: If already executing or executed
            EngineError: On SQL failures without an error handler
        """
        if self._status > UpdaterStatus.INIT:
            raise InvalidStateError(
                f"can't execute in status {self._status.name}; use re_execute() after DONE"
            )
        if self.database.in_transaction:
            raise InvalidStateError("can't execute migrations inside a running transaction")

        self.database.schema.lock()
        self._callback = callback
        self._error = None
        self._type = UpdaterType.UNKNOWN
        self._set_status(UpdaterStatus.EXECUTE)
        self._emit(UpdaterEvent.EXECUTE)

        if not self._init_functions and not self._update_functions:
            logger.debug("nothing to migrate")
            return self._finish()

        stored = self._read_version()
        if stored is False:
            return False

        if stored is NO_LEDGER:
            logger.info("no version table '%s' found => type INIT", self.version_table)
            self._type = UpdaterType.INIT
            if not self._run_init():
                return False
        elif stored is None or int(stored) <= 0:
            if stored is not None and not self._update_functions:
                # init without update functions records version 0
                logger.info(
                    "version table '%s' records no update version => type INIT",
                    self.version_table,
                )
            else:
                logger.warning(
                    "version table '%s' is empty or corrupt (version %r) => type INIT",
                    self.version_table, stored,
                )
            self._type = UpdaterType.INIT
            if not self._transaction(
                lambda tx: tx.execute_sql(self.database.schema.sql_drop("TABLE", self.version_table))
            ):
                return False
            if not self._run_init():
                return False
        else:
            logger.info("found version number %s => type UPDATE", stored)
            self._type = UpdaterType.UPDATE
            self._version = int(stored)
            if not self._run_updates(self._version):
                return False

        return self._finish()

    def re_execute(self, callback: Optional[Callable[["MigrationEngine"], Any]] = None) -> bool:
        """
        Run execute() again, e.g. after the database was dropped.

        Events and ready functions are suppressed unless the config
        flags trigger_events_on_reexecute / recall_ready_functions_on_reexecute
        are set.
        """
        if self._status != UpdaterStatus.DONE:
            raise InvalidStateError(
                f"re_execute() needs status DONE, not {self._status.name}"
            )
        self._status = UpdaterStatus.INIT
        self._re_executing = True
        try:
            return self.execute(callback)
        finally:
            self._re_executing = False

    def _read_version(self) -> Any:
        """
        MAX(version) of the ledger (None for an empty ledger), NO_LEDGER
        without a ledger table, or False if a handled error halted.
        """
        state = {"missing": False, "version": None}
        failure: List[EngineError] = []

        def on_success(tx: Transaction, result) -> None:
            state["version"] = result.rows[0]["version"] if result.rows else None

        def on_error(tx: Transaction, error: EngineError) -> None:
            if "no such table" in error.message.lower():
                state["missing"] = True
            else:
                failure.append(error)

        def body(tx: Transaction) -> None:
            tx.execute_sql(
                SQL_SELECT_VERSION.format(table=self.version_table),
                on_success=on_success,
                on_error=on_error,
            )

        if not self._transaction(body):
            return False
        if failure:
            return self._fail(failure[0])
        if state["missing"]:
            return NO_LEDGER
        return state["version"]

    def _run_init(self) -> bool:
        version = self.max_update_version()

        def body(tx: Transaction) -> None:
            tx.execute_sql(SQL_CREATE_LEDGER.format(table=self.version_table))
            for step in self._init_functions:
                step.action(tx)
            tx.execute_sql(SQL_INSERT_VERSION.format(table=self.version_table), [version])

        if not self._transaction(body):
            return False

        self._version = version
        logger.info("initialized schema at version %s", version)
        self._emit(UpdaterEvent.PROGRESS, version=version, step=1, total=1, type=self._type.value)
        return True

    def _run_updates(self, stored: int) -> bool:
        pending = [step for step in self._update_functions if step.version > stored]
        total = len(pending)

        for position, step in enumerate(pending, start=1):
            def body(tx: Transaction, step: MigrationFunction = step) -> None:
                step.action(tx)
                tx.execute_sql(SQL_INSERT_VERSION.format(table=self.version_table), [step.version])

            if not self._transaction(body):
                return False

            self._version = step.version
            logger.info("updated schema to version %s (%d/%d)", step.version, position, total)
            self._emit(
                UpdaterEvent.PROGRESS,
                version=step.version, step=position, total=total, type=self._type.value,
            )
        return True

    def _finish(self) -> bool:
        self._set_status(UpdaterStatus.READY)
        self._emit(UpdaterEvent.READY, version=self._version)

        if not self._re_executing or self.config.recall_ready_functions_on_reexecute:
            for action in self._ready_functions:
                action()

        self._set_status(UpdaterStatus.DONE)
        self._executed_once = True
        self._emit(UpdaterEvent.DONE, version=self._version)

        if self._callback is not None:
            self._callback(self)
        return True

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _transaction(self, body: Callable[[Transaction], Any]) -> bool:
        errors: List[EngineError] = []
        if self.database.transaction(body, on_error=errors.append):
            return True
        return self._fail(errors[0] if errors else EngineError("transaction failed"))

    def _fail(self, error: EngineError) -> bool:
        """Halt in EXECUTE and hand the error to the handler (or raise it)."""
        self._error = error
        logger.error("migration halted in %s: %s", self._type.value, error)
        if self.error_handler is None:
            raise error
        self.error_handler(error)
        return False

    def _set_status(self, status: UpdaterStatus) -> None:
        self._status = status

    def _emit(self, event: UpdaterEvent, **payload: Any) -> None:
        if self._re_executing and not self.config.trigger_events_on_reexecute:
            return
        self.observer.emit(event.value, self, **payload)
