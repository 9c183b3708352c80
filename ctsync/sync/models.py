"""Data models for synchronization cycles."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CycleState(str, Enum):
    """States of one synchronization cycle."""

    IDLE = "idle"
    READ_WATERMARK = "read_watermark"
    FETCH_CHANGES = "fetch_changes"
    STAGE = "stage"
    RECONCILE = "reconcile"
    COMMIT_WATERMARK = "commit_watermark"
    FAILED = "failed"


class ReconcileResult(BaseModel):
    """Counts of target rows touched by one reconciliation."""

    inserted_count: int = Field(default=0, ge=0, description="Rows inserted into the target")
    updated_count: int = Field(default=0, ge=0, description="Rows overwritten in the target")
    deleted_count: int = Field(default=0, ge=0, description="Rows removed from the target")
    unchanged_count: int = Field(
        default=0, ge=0, description="Staged rows that were no-ops (replays, already removed)"
    )

    @property
    def total_changes(self) -> int:
        return self.inserted_count + self.updated_count + self.deleted_count


class CycleReport(BaseModel):
    """Report of one synchronization cycle."""

    table_name: str = Field(..., description="Tracked table that was synced")
    from_version: int | None = Field(
        default=None, description="Watermark at cycle start (exclusive lower bound)"
    )
    to_version: int | None = Field(
        default=None, description="Global version captured at cycle start (inclusive upper bound)"
    )
    final_state: CycleState = Field(default=CycleState.IDLE, description="State the cycle ended in")
    failed_stage: CycleState | None = Field(
        default=None, description="Stage that was running when the cycle failed"
    )
    changes_fetched: int = Field(default=0, ge=0, description="Change records read from the feed")
    rows_staged: int = Field(default=0, ge=0, description="Rows staged for reconciliation")
    rows_demoted: int = Field(
        default=0, ge=0, description="Inserts/updates demoted to deletes at staging"
    )
    inserted: int = Field(default=0, ge=0, description="Target rows inserted")
    updated: int = Field(default=0, ge=0, description="Target rows updated")
    deleted: int = Field(default=0, ge=0, description="Target rows deleted")
    unchanged: int = Field(default=0, ge=0, description="Staged rows with no effect")
    start_time: datetime = Field(..., description="Cycle start timestamp")
    end_time: datetime | None = Field(default=None, description="Cycle end timestamp")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Cycle duration in seconds")
    error_kind: str | None = Field(default=None, description="Exception class of the failure")
    error: str | None = Field(default=None, description="Failure message")

    @property
    def success(self) -> bool:
        """Check if the cycle committed its watermark."""
        return self.error_kind is None and self.final_state is CycleState.IDLE

    @property
    def total_changes(self) -> int:
        return self.inserted + self.updated + self.deleted
