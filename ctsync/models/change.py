"""Pydantic models for change records, staged rows and watermarks."""

from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Operation(str, Enum):
    """Net change operation, using the change-tracking single-letter tags."""

    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"


def normalize_key(value: Any) -> tuple[Any, ...]:
    """Coerce a scalar or sequence primary key into a tuple."""
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return (value,)


class VersionMark(BaseModel):
    """Last synchronized version of a tracked table."""

    table_name: str = Field(default=..., min_length=1, description="Tracked table name")
    version: int = Field(default=..., ge=0, description="Last synchronized change version")


class ChangeRecord(BaseModel):
    """One net mutation reported by the change feed."""

    model_config = ConfigDict(frozen=True)

    primary_key: tuple[Any, ...] = Field(default=..., description="Primary key values")
    operation: Operation = Field(default=..., description="Net operation for the key")
    change_version: int = Field(default=..., ge=0, description="Version of the last change")
    creation_version: int | None = Field(
        default=None, ge=0, description="Version of the insert that created the row"
    )
    column_mask: frozenset[str] | None = Field(
        default=None, description="Columns changed by an update, None when unknown"
    )
    context: bytes | None = Field(default=None, description="Optional change context")
    payload: dict[str, Any] | None = Field(
        default=None, description="Row snapshot, never available for deletes"
    )

    @field_validator("primary_key", mode="before")
    @classmethod
    def _coerce_key(cls, value: Any) -> tuple[Any, ...]:
        return normalize_key(value)

    @model_validator(mode="after")
    def _delete_has_no_payload(self) -> "ChangeRecord":
        if self.operation is Operation.DELETE and self.payload is not None:
            raise ValueError("Delete change records cannot carry a payload")
        return self

    @classmethod
    def from_source_row(cls, row: Mapping[str, Any]) -> "ChangeRecord":
        """Build a record from a raw collaborator change row."""
        mask = row.get("column_mask")
        return cls(
            primary_key=row["primary_key"],
            operation=Operation(str(row["operation"]).strip().upper()),
            change_version=row["change_version"],
            creation_version=row.get("creation_version"),
            column_mask=frozenset(mask) if mask is not None else None,
            context=row.get("context"),
            payload=row.get("payload"),
        )

    def column_changed(self, column: str) -> bool:
        """Report whether a column is in the change mask.

        Without a mask (inserts, deletes, or untracked columns) every column is
        treated as changed.
        """
        if self.column_mask is None:
            return True
        return column in self.column_mask


class StagedRow(BaseModel):
    """A change record shaped for the destination table.

    ``values`` holds every destination column, nulls already replaced by the
    column default. It is ``None`` for deletes.
    """

    model_config = ConfigDict(frozen=True)

    primary_key: tuple[Any, ...] = Field(default=..., description="Primary key values")
    operation: Operation = Field(default=..., description="Operation to reconcile")
    change_version: int = Field(default=..., ge=0, description="Originating change version")
    values: dict[str, Any] | None = Field(default=None, description="Destination row image")
    demoted: bool = Field(
        default=False, description="True when an insert/update was demoted to a delete"
    )

    @model_validator(mode="after")
    def _values_match_operation(self) -> "StagedRow":
        if self.operation is Operation.DELETE:
            if self.values is not None:
                raise ValueError("Staged deletes carry no values")
        elif self.values is None:
            raise ValueError(f"Staged {self.operation.name.lower()} requires values")
        return self
