"""Configuration models for the change-tracking sync service."""

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ctsync.models.table import ColumnSpec, TrackedTable


class DatabaseConfig(BaseModel):
    """Configuration for the store holding the ledger and target tables."""

    url: str = Field(default="sqlite:///ctsync.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Echo SQL statements to the log")


class SourceConfig(BaseModel):
    """Configuration for the change-tracking source."""

    type: Literal["sqlserver", "memory"] = Field(
        default="sqlserver", description="Source implementation"
    )
    url: str | None = Field(default=None, description="SQLAlchemy URL of the source database")
    schema_name: str = Field(default="dbo", description="Schema holding the tracked tables")


class SyncConfig(BaseModel):
    """Configuration for sync cycles."""

    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Time budget for one cycle's collaborator and reconcile work"
    )
    lock_timeout_seconds: float = Field(
        default=0.0, ge=0, description="How long to wait for a busy table before giving up"
    )
    max_retries: int = Field(
        default=3, ge=0, le=10, description="Retries for retryable cycle failures"
    )
    retry_base_delay: float = Field(default=1.0, ge=0, description="Initial retry delay in seconds")
    retry_max_delay: float = Field(default=60.0, ge=0, description="Maximum retry delay in seconds")


class TableConfig(BaseModel):
    """Configuration for one tracked table."""

    name: str = Field(default=..., min_length=1, description="Source table name")
    primary_key: list[str] = Field(default=..., min_length=1, description="Primary key columns")
    target_table: str | None = Field(default=None, description="Destination table name")
    columns: list[ColumnSpec] = Field(
        default=..., min_length=1, description="Destination columns, key columns included"
    )

    def to_tracked_table(self) -> TrackedTable:
        return TrackedTable(
            name=self.name,
            primary_key=tuple(self.primary_key),
            columns=tuple(self.columns),
            target_table=self.target_table or "",
        )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    This class uses pydantic-settings to load configuration from environment
    variables with the CTSYNC_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="CTSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    tables: list[TableConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def table_names(self) -> list[str]:
        return [table.name for table in self.tables]

    def tracked_tables(self) -> dict[str, TrackedTable]:
        return {table.name: table.to_tracked_table() for table in self.tables}
