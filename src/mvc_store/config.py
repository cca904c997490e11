"""
StoreConfig - options for the connector, schema registry and updater.

Options can be given in code or loaded from a YAML file:

    store:
      name: app.db
      timestamp_type: TEXT
      version_table: _dbVersion
"""

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .models import ConfigError


@dataclass
class StoreConfig:
    """
    Connector options.

    Engine open metadata (name, version, display_name, database_size),
    schema auto magic (collation, timestamp columns), debugging and the
    migration engine's ledger and re-execution behaviour.
    """
    name: str = ""
    version: str = "0.0"
    display_name: str = ""
    database_size: int = 5 * 1024 * 1024
    auto_init: bool = False
    auto_collate: Optional[str] = "NOCASE"
    auto_collate_types: str = r"^(?:CHAR|VARCHAR|TEXT|CHARACTER)"
    drop_on_init: bool = False
    timestamp_create: Optional[str] = "dt_create"
    timestamp_change: Optional[str] = "dt_change"
    timestamp_type: str = "INTEGER"
    debug: bool = False
    version_table: str = "_dbVersion"
    trigger_events_on_reexecute: bool = False
    recall_ready_functions_on_reexecute: bool = False

    def validate(self) -> "StoreConfig":
        """
        Check the options needed to open a database.

        Raises:
            ConfigError: If name is empty or database_size is not positive
        """
        if not self.name:
            raise ConfigError("no database name; set StoreConfig.name")
        if not self.database_size or self.database_size <= 0:
            raise ConfigError("no database size; set StoreConfig.database_size")
        if not self.version_table:
            raise ConfigError("no version table; set StoreConfig.version_table")
        return self

    @property
    def label(self) -> str:
        """Human-readable database name."""
        return self.display_name or self.name

    def replace(self, **changes: Any) -> "StoreConfig":
        """Return a copy with some options changed."""
        unknown = set(changes) - _option_names()
        if unknown:
            raise ConfigError(f"unknown option(s): {', '.join(sorted(unknown))}")
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "StoreConfig":
        """
        Create from a mapping of options.

        Raises:
            ConfigError: For keys that are not options
        """
        unknown = set(options) - _option_names()
        if unknown:
            raise ConfigError(f"unknown option(s): {', '.join(sorted(unknown))}")
        return cls(**dict(options))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "StoreConfig":
        """
        Load options from a YAML file.

        The options may sit at the top level or below a `store:` key.
        """
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigError(f"config not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ConfigError(f"config must be a mapping: {config_path}")
        if isinstance(data.get("store"), dict):
            data = data["store"]
        return cls.from_dict(data)


def _option_names() -> set:
    return {f.name for f in dataclasses.fields(StoreConfig)}
