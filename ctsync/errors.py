"""Error taxonomy for change-tracking synchronization."""

from typing import Any


class SyncError(Exception):
    """Base class for all synchronization errors."""

    retryable: bool = False


class LedgerError(SyncError):
    """Raised by version ledger operations."""


class UnregisteredTableError(LedgerError):
    """Raised when a table has never been seeded in the ledger."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Table is not registered in the version ledger: {table_name}")


class RegressionError(LedgerError):
    """Raised when a watermark would move backward."""

    def __init__(self, table_name: str, stored_version: int, attempted_version: int):
        self.table_name = table_name
        self.stored_version = stored_version
        self.attempted_version = attempted_version
        super().__init__(
            f"Refusing to move watermark for {table_name} backward: "
            f"{stored_version} -> {attempted_version}"
        )


class AlreadyRegisteredError(LedgerError):
    """Raised when a table is registered twice with different initial versions."""

    def __init__(self, table_name: str, stored_version: int, attempted_version: int):
        self.table_name = table_name
        self.stored_version = stored_version
        self.attempted_version = attempted_version
        super().__init__(
            f"Table {table_name} already registered at version {stored_version} "
            f"(attempted {attempted_version})"
        )


class TableNotAllowedError(LedgerError):
    """Raised when a table name is outside the ledger's allow-list."""

    def __init__(self, table_name: str):
        self.table_name = table_name
        super().__init__(f"Table is not in the tracked table allow-list: {table_name}")


class UntrackableTableError(SyncError):
    """Raised when a table has no usable primary key."""


class HistoryExpiredError(SyncError):
    """Raised when the requested range precedes the retained change history.

    The collaborator can no longer report individual changes for the range, so
    the table must be fully resynchronized.
    """

    requires_full_resync: bool = True

    def __init__(self, table_name: str, since_version: int, min_valid_version: int):
        self.table_name = table_name
        self.since_version = since_version
        self.min_valid_version = min_valid_version
        super().__init__(
            f"Change history for {table_name} expired: requested changes after version "
            f"{since_version}, oldest retained version is {min_valid_version}"
        )


class TransientSourceError(SyncError):
    """Raised for collaborator failures that are safe to retry."""

    retryable = True


class CycleTimeoutError(TransientSourceError):
    """Raised when a cycle exceeds its time budget."""


class SchemaMismatchError(SyncError):
    """Raised when a staged row does not fit the target schema."""

    def __init__(self, table_name: str, primary_key: Any, detail: str):
        self.table_name = table_name
        self.primary_key = primary_key
        self.detail = detail
        super().__init__(f"Schema mismatch for {table_name} key {primary_key!r}: {detail}")


class CycleInProgressError(SyncError):
    """Raised when another cycle already holds the table lock."""

    retryable = True


class CycleCancelledError(SyncError):
    """Raised when a cycle is cancelled between stages."""

    retryable = True


class CycleFailedError(SyncError):
    """Raised by the orchestrator when a cycle ends in the failed state.

    The original error is chained as ``__cause__`` and the failed cycle report
    is available as ``report``.
    """

    def __init__(self, report: Any, cause: Exception):
        self.report = report
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False)
        stage = report.failed_stage.value if report.failed_stage is not None else "full_resync"
        super().__init__(
            f"Sync cycle for {report.table_name} failed in {stage} "
            f"(versions {report.from_version}..{report.to_version}): "
            f"{type(cause).__name__}: {cause}"
        )


class SourceProtocolError(SyncError):
    """Raised when the change-tracking source returns data the engine cannot read."""
