"""Data models for the change-tracking sync service."""

from ctsync.models.change import ChangeRecord, Operation, StagedRow, VersionMark
from ctsync.models.config import (
    AppConfig,
    DatabaseConfig,
    LoggingConfig,
    SourceConfig,
    SyncConfig,
    TableConfig,
)
from ctsync.models.table import ColumnSpec, ColumnType, RowProjection, TrackedTable, drop_columns

__all__ = [
    "ChangeRecord",
    "Operation",
    "StagedRow",
    "VersionMark",
    "ColumnSpec",
    "ColumnType",
    "RowProjection",
    "TrackedTable",
    "drop_columns",
    "AppConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "SourceConfig",
    "SyncConfig",
    "TableConfig",
]
