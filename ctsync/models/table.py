"""Pydantic models describing tracked tables and their destination shape."""

from collections.abc import Callable, Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ctsync.errors import UntrackableTableError

RowProjection = Callable[[Mapping[str, Any]], dict[str, Any]]


class ColumnType(str, Enum):
    """Destination column types and the default used in place of a null."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    BYTES = "bytes"

    @property
    def python_types(self) -> tuple[type, ...]:
        """Python types accepted for values of this column type."""
        return _PYTHON_TYPES[self]

    @property
    def default(self) -> Any:
        """Empty value substituted for nulls (the ``ISNULL(col, '')`` convention)."""
        return _DEFAULTS[self]

    def accepts(self, value: Any) -> bool:
        """Check whether a value has the right Python type for this column."""
        # bool is an int subclass; keep booleans out of numeric columns
        if isinstance(value, bool) and self is not ColumnType.BOOLEAN:
            return False
        # datetime is a date subclass; a DATE column would drop the time part
        if isinstance(value, datetime) and self is ColumnType.DATE:
            return False
        return isinstance(value, self.python_types)


_PYTHON_TYPES: dict[ColumnType, tuple[type, ...]] = {
    ColumnType.STRING: (str,),
    ColumnType.INTEGER: (int,),
    ColumnType.FLOAT: (float, int),
    ColumnType.DECIMAL: (Decimal, int),
    ColumnType.BOOLEAN: (bool,),
    ColumnType.DATE: (date,),
    ColumnType.DATETIME: (datetime,),
    ColumnType.BYTES: (bytes,),
}

# Empty string cast to a date type yields 1900-01-01
_DEFAULTS: dict[ColumnType, Any] = {
    ColumnType.STRING: "",
    ColumnType.INTEGER: 0,
    ColumnType.FLOAT: 0.0,
    ColumnType.DECIMAL: Decimal(0),
    ColumnType.BOOLEAN: False,
    ColumnType.DATE: date(1900, 1, 1),
    ColumnType.DATETIME: datetime(1900, 1, 1),
    ColumnType.BYTES: b"",
}


class ColumnSpec(BaseModel):
    """A destination column."""

    name: str = Field(default=..., min_length=1, description="Column name")
    type: ColumnType = Field(default=ColumnType.STRING, description="Column type")


class TrackedTable(BaseModel):
    """A source table registered for change tracking and its destination shape.

    ``columns`` lists the destination columns, key columns included. Columns of
    the source row that are not listed are dropped at staging time, which is how
    identifying fields are kept out of the destination. A custom ``projection``
    may reshape the source row before that happens.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(default=..., min_length=1, description="Source table name")
    primary_key: tuple[str, ...] = Field(default=..., description="Primary key column names")
    columns: tuple[ColumnSpec, ...] = Field(default=..., description="Destination columns")
    target_table: str = Field(default="", description="Destination table name")
    projection: RowProjection | None = Field(
        default=None, description="Optional source-row projection applied before staging"
    )

    @model_validator(mode="before")
    @classmethod
    def _prepare(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if not data.get("primary_key"):
            raise UntrackableTableError(
                f"Table {data.get('name')!r} has no primary key and cannot be change tracked"
            )
        if not data.get("target_table"):
            data = {**data, "target_table": f"Reporting{data.get('name', '')}"}
        return data

    @model_validator(mode="after")
    def _check_columns(self) -> "TrackedTable":
        names = [column.name for column in self.columns]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate destination columns for table {self.name}: {names}")
        missing = [key for key in self.primary_key if key not in names]
        if missing:
            raise ValueError(
                f"Primary key columns {missing} of table {self.name} are not destination columns"
            )
        return self

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    @property
    def value_columns(self) -> list[ColumnSpec]:
        """Destination columns that are not part of the primary key."""
        return [column for column in self.columns if column.name not in self.primary_key]

    def column(self, name: str) -> ColumnSpec:
        for column in self.columns:
            if column.name == name:
                return column
        raise KeyError(name)

    def key_of(self, row: Mapping[str, Any]) -> tuple[Any, ...]:
        """Extract the primary key tuple from a row."""
        return tuple(row[key] for key in self.primary_key)

    def project(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Apply the table projection, if any, to a source row."""
        if self.projection is None:
            return dict(row)
        return self.projection(row)


def drop_columns(*names: str) -> RowProjection:
    """Build a projection that removes the given columns from a row."""
    excluded = frozenset(names)

    def projection(row: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in row.items() if key not in excluded}

    return projection
