"""Factory functions wiring sources, ledgers, targets and the orchestrator from configuration.

Developers can modify these functions to swap implementations without changing
other code.

Default implementations:
- Store: SQLAlchemy engine over ``database.url`` (SQLite file by default)
- Ledger: SqlVersionLedger, restricted to the configured table names
- Targets: SqlTargetTable per configured table
- Source: SqlServerChangeTrackingSource, or InMemoryChangeTrackingSource for demos
"""

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ctsync.models.config import AppConfig
from ctsync.models.table import TrackedTable
from ctsync.source.base import ChangeTrackingSource
from ctsync.source.memory import InMemoryChangeTrackingSource
from ctsync.source.sqlserver import SqlServerChangeTrackingSource
from ctsync.storage.ledger import SqlVersionLedger, VersionLedger
from ctsync.storage.target import SqlTargetTable, TargetTable
from ctsync.sync.orchestrator import SyncOrchestrator

log = structlog.stdlib.get_logger()


def get_engine(url: str, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine.

    Args:
        url: SQLAlchemy database URL
        echo: Echo SQL statements

    Returns:
        Engine instance

    Raises:
        ValueError: If url is empty
        RuntimeError: If the engine cannot be created
    """
    if not url or not url.strip():
        error_msg = "database url cannot be empty"
        log.error("get_engine_failed", error=error_msg)
        raise ValueError(error_msg)

    try:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)
    except Exception as e:
        log.error("get_engine_failed", error=str(e), error_type=type(e).__name__)
        raise RuntimeError(f"Failed to create database engine: {e}") from e

    log.info("engine_created", dialect=engine.dialect.name)
    return engine


def get_version_ledger(engine: Engine, allowed_tables: list[str]) -> VersionLedger:
    """Get the ledger implementation, creating its table if needed."""
    ledger = SqlVersionLedger(engine, allowed_tables=allowed_tables)
    ledger.create_schema()
    return ledger


def get_target_tables(engine: Engine, tables: dict[str, TrackedTable]) -> dict[str, TargetTable]:
    """Get one destination table per tracked table, creating them if needed."""
    targets: dict[str, TargetTable] = {}
    for name, tracked_table in tables.items():
        target = SqlTargetTable(engine, tracked_table)
        target.create_schema()
        targets[name] = target
    return targets


def get_source(config: AppConfig, tables: dict[str, TrackedTable]) -> ChangeTrackingSource:
    """Get the change-tracking source named by ``source.type``.

    Raises:
        ValueError: If the sqlserver source has no url
    """
    if config.source.type == "memory":
        log.warning("using_in_memory_source")
        source = InMemoryChangeTrackingSource()
        for tracked_table in tables.values():
            source.create_table(tracked_table.name, tracked_table.primary_key)
        return source

    if not config.source.url:
        error_msg = "source.url is required for the sqlserver source"
        log.error("get_source_failed", error=error_msg)
        raise ValueError(error_msg)

    engine = get_engine(config.source.url)
    return SqlServerChangeTrackingSource(engine, tables, schema_name=config.source.schema_name)


def get_orchestrator(config: AppConfig) -> SyncOrchestrator:
    """Build a SyncOrchestrator for every configured table."""
    tables = config.tracked_tables()
    engine = get_engine(config.database.url, echo=config.database.echo)
    return SyncOrchestrator(
        source=get_source(config, tables),
        ledger=get_version_ledger(engine, list(tables)),
        targets=get_target_tables(engine, tables),
        timeout_seconds=config.sync.timeout_seconds,
        lock_timeout_seconds=config.sync.lock_timeout_seconds,
    )
