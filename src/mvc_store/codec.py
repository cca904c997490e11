"""
ValueCodec - converts Python values to and from bound SQL parameters.

SQLite knows no booleans and no dates. Booleans are stored as 0/1,
dates are bound as ISO-8601 strings and converted by SQL placeholders
into the configured timestamp representation:

    INTEGER  unix epoch seconds
    TEXT     engine local "YYYY-MM-DD HH:MM:SS"
    NUMERIC  julian day number
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional, Sequence, TYPE_CHECKING

from .models import UnencodableValueError
from .schema import type_affinity

if TYPE_CHECKING:
    from .schema import SchemaRegistry

# Julian day of the unix epoch; SQLite counts every day as exactly 86400 seconds
JULIAN_UNIX_EPOCH = 2440587.5
SECONDS_PER_DAY = 86400.0

TIMESTAMP_PLACEHOLDERS = {
    "INTEGER": "STRFTIME('%s', ?)",
    "TEXT": "STRFTIME('%Y-%m-%d %H:%M:%S', ?)",
    "NUMERIC": "STRFTIME('%J', ?)",
}

_PASS_THROUGH = (str, int, float, bytes, bytearray, memoryview)


class ValueCodec:
    """
    Encoder/decoder for bound values.

    Args:
        timestamp_type: Declared type of timestamp storage (default INTEGER)
    """

    def __init__(self, timestamp_type: str = "INTEGER"):
        self.timestamp_type = timestamp_type or "INTEGER"

    def encode(self, value: Any) -> Any:
        """
        Convert a value for binding.

        datetime/date -> ISO-8601 string, bool -> 0/1, None -> NULL,
        list/tuple -> list of encoded values, objects with their own
        string conversion -> str(value).

        Raises:
            UnencodableValueError: For mappings, sets and objects without
                a string conversion
        """
        if value is None:
            return None
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, _PASS_THROUGH):
            return value
        if isinstance(value, datetime):
            return _iso_utc(value)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, (list, tuple)):
            return [self.encode(item) for item in value]
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, (dict, set, frozenset)) or type(value).__str__ is object.__str__:
            raise UnencodableValueError(
                f"can't encode {type(value).__name__} without a string conversion: {value!r}"
            )
        return str(value)

    def encode_all(self, values: Sequence[Any]) -> List[Any]:
        return [self.encode(value) for value in values]

    def decode(self, raw: Any, affinity: Optional[str] = None) -> Any:
        """
        Convert a stored timestamp back to a datetime.

        Args:
            raw: Stored value
            affinity: Storage affinity (or declared type); defaults to
                the affinity of the configured timestamp type

        Returns:
            datetime, None for NULL, or 0 for the INTEGER "unset" value 0
        """
        if raw is None:
            return None

        storage = type_affinity(affinity or self.timestamp_type)

        if storage == "INTEGER":
            if raw == 0 or raw == "0":
                return 0
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        if storage == "TEXT":
            return datetime.fromisoformat(str(raw).strip().replace("/", "-"))
        if storage == "NUMERIC":
            seconds = (float(raw) - JULIAN_UNIX_EPOCH) * SECONDS_PER_DAY
            return datetime.fromtimestamp(seconds, tz=timezone.utc)

        raise ValueError(
            f"unknown timestamp type '{affinity or self.timestamp_type}' --> '{storage}'"
        )

    def placeholder(self, affinity: Optional[str] = None) -> str:
        """Placeholder that stores an ISO string in the given timestamp affinity."""
        storage = type_affinity(affinity or self.timestamp_type)
        if storage not in TIMESTAMP_PLACEHOLDERS:
            raise ValueError(f"unknown timestamp type '{affinity}' --> '{storage}'")
        return TIMESTAMP_PLACEHOLDERS[storage]

    def column_placeholders(
        self,
        schema: "SchemaRegistry",
        table: str,
        columns: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """'?' for every column, or the timestamp placeholder for temporal ones."""
        if columns is None:
            columns = schema.get_columns(table)
        else:
            schema.check_columns(table, list(columns))

        return [
            self.placeholder(schema.get_sql_column_type(table, column))
            if schema.is_date_column(table, column)
            else "?"
            for column in columns
        ]


def _iso_utc(value: datetime) -> str:
    """yyyy-mm-ddThh:mm:ss.mmmZ; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
