"""Sync orchestration: one change-tracking cycle per call, per table."""

import threading
import uuid
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from functools import partial

import structlog

from ctsync.errors import (
    CycleCancelledError,
    CycleFailedError,
    CycleInProgressError,
    RegressionError,
    UnregisteredTableError,
)
from ctsync.models.change import ChangeRecord, StagedRow, VersionMark
from ctsync.source.base import ChangeTrackingSource
from ctsync.storage.ledger import VersionLedger
from ctsync.storage.target import TargetTable
from ctsync.sync.change_feed import ChangeFeed
from ctsync.sync.models import CycleReport, CycleState, ReconcileResult
from ctsync.sync.reconciler import Reconciler
from ctsync.sync.staging import StagingBuffer
from ctsync.utils.deadline import Deadline, call_with_deadline

log = structlog.stdlib.get_logger()


class CancellationToken:
    """Cooperative cancellation flag, checked between cycle stages."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, next_state: CycleState) -> None:
        if self.cancelled:
            raise CycleCancelledError(f"Cycle cancelled before {next_state.value}")


# Legal edges of the cycle state machine
TRANSITIONS: dict[CycleState, frozenset[CycleState]] = {
    CycleState.IDLE: frozenset({CycleState.READ_WATERMARK}),
    CycleState.READ_WATERMARK: frozenset({CycleState.FETCH_CHANGES, CycleState.FAILED}),
    CycleState.FETCH_CHANGES: frozenset({CycleState.STAGE, CycleState.FAILED}),
    CycleState.STAGE: frozenset({CycleState.RECONCILE, CycleState.FAILED}),
    CycleState.RECONCILE: frozenset({CycleState.COMMIT_WATERMARK, CycleState.FAILED}),
    CycleState.COMMIT_WATERMARK: frozenset({CycleState.IDLE, CycleState.FAILED}),
    CycleState.FAILED: frozenset(),
}


class SyncCycle:
    """State machine for one synchronization cycle of one table.

    Each stage method does the work of its state and returns the next state.
    The watermark is written only by ``commit_watermark``, which is reachable
    only after ``reconcile`` succeeds; a failure anywhere else leaves it at
    its pre-cycle value.
    """

    def __init__(
        self,
        table_name: str,
        source: ChangeTrackingSource,
        ledger: VersionLedger,
        feed: ChangeFeed,
        staging: StagingBuffer,
        reconciler: Reconciler,
        target: TargetTable,
        deadline: Deadline | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.table_name = table_name
        self._source = source
        self._ledger = ledger
        self._feed = feed
        self._staging = staging
        self._reconciler = reconciler
        self._target = target
        self._deadline = deadline
        self._cancel_token = cancel_token or CancellationToken()

        self.state = CycleState.IDLE
        self.report = CycleReport(table_name=table_name, start_time=datetime.now())
        self._records: Iterator[ChangeRecord] | None = None
        self._staged: list[StagedRow] | None = None
        self._result: ReconcileResult | None = None

        self._stages: dict[CycleState, Callable[[], CycleState]] = {
            CycleState.READ_WATERMARK: self.read_watermark,
            CycleState.FETCH_CHANGES: self.fetch_changes,
            CycleState.STAGE: self.stage,
            CycleState.RECONCILE: self.reconcile,
            CycleState.COMMIT_WATERMARK: self.commit_watermark,
        }

    def run(self) -> CycleReport:
        """
        Drive the cycle from Idle back to Idle.

        Returns:
            CycleReport of the completed cycle

        Raises:
            CycleFailedError: If any stage fails; the original error is the cause
        """
        self._transition(CycleState.READ_WATERMARK)
        while self.state is not CycleState.IDLE:
            stage = self._stages[self.state]
            try:
                self._cancel_token.raise_if_cancelled(self.state)
                next_state = stage()
            except Exception as e:
                raise self._fail(e) from e
            self._transition(next_state)

        self._finish()
        log.info(
            "sync_cycle_completed",
            from_version=self.report.from_version,
            to_version=self.report.to_version,
            inserted=self.report.inserted,
            updated=self.report.updated,
            deleted=self.report.deleted,
            unchanged=self.report.unchanged,
            duration_seconds=self.report.duration_seconds,
        )
        return self.report

    def read_watermark(self) -> CycleState:
        """Read the stored watermark and capture the upper bound for this cycle."""
        low = self._ledger.get_last_version(self.table_name)
        self.report.from_version = low
        high = call_with_deadline(
            self._deadline, "current_global_version", self._source.current_global_version
        )
        if high < low:
            raise RegressionError(self.table_name, low, high)
        self.report.to_version = high
        log.info("watermark_read", from_version=low, to_version=high)
        return CycleState.FETCH_CHANGES

    def fetch_changes(self) -> CycleState:
        self._records = self._feed.fetch_changes(
            self.table_name,
            self.report.from_version,
            self.report.to_version,
            deadline=self._deadline,
        )
        return CycleState.STAGE

    def stage(self) -> CycleState:
        fetched = 0

        def counted(records: Iterator[ChangeRecord]) -> Iterator[ChangeRecord]:
            nonlocal fetched
            for record in records:
                fetched += 1
                yield record

        lookup = partial(self._source.read_current_row, self.table_name)
        self._staged = self._staging.stage(counted(self._records), lookup, deadline=self._deadline)
        self.report.changes_fetched = fetched
        self.report.rows_staged = len(self._staged)
        self.report.rows_demoted = sum(1 for row in self._staged if row.demoted)
        return CycleState.RECONCILE

    def reconcile(self) -> CycleState:
        self._result = self._reconciler.reconcile(
            self._target, self._staged, deadline=self._deadline
        )
        self.report.inserted = self._result.inserted_count
        self.report.updated = self._result.updated_count
        self.report.deleted = self._result.deleted_count
        self.report.unchanged = self._result.unchanged_count
        return CycleState.COMMIT_WATERMARK

    def commit_watermark(self) -> CycleState:
        self._ledger.set_last_version(self.table_name, self.report.to_version)
        log.info("watermark_committed", version=self.report.to_version)
        return CycleState.IDLE

    def _transition(self, next_state: CycleState) -> None:
        if next_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal cycle transition {self.state.value} -> {next_state.value}"
            )
        log.debug("cycle_state_changed", previous=self.state.value, state=next_state.value)
        self.state = next_state

    def _finish(self) -> None:
        self.report.final_state = self.state
        self.report.end_time = datetime.now()
        self.report.duration_seconds = (
            self.report.end_time - self.report.start_time
        ).total_seconds()

    def _fail(self, error: Exception) -> CycleFailedError:
        failed_stage = self.state
        self.report.failed_stage = failed_stage
        self.report.error_kind = type(error).__name__
        self.report.error = str(error)
        self._transition(CycleState.FAILED)
        self._finish()
        log.error(
            "sync_cycle_failed",
            failed_stage=failed_stage.value,
            from_version=self.report.from_version,
            to_version=self.report.to_version,
            error_kind=self.report.error_kind,
            error=self.report.error,
            retryable=getattr(error, "retryable", False),
            requires_full_resync=getattr(error, "requires_full_resync", False),
        )
        return CycleFailedError(self.report, error)


class SyncOrchestrator:
    """Runs synchronization cycles for a fixed set of tracked tables.

    At most one cycle (or resync) runs per table at a time; different tables
    synchronize independently and may run on separate threads.
    """

    def __init__(
        self,
        source: ChangeTrackingSource,
        ledger: VersionLedger,
        targets: Mapping[str, TargetTable],
        timeout_seconds: float | None = 30.0,
        lock_timeout_seconds: float = 0.0,
        reconciler: Reconciler | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            source: Change-tracking collaborator
            ledger: Watermark store
            targets: Destination tables keyed by source table name
            timeout_seconds: Default time budget per cycle; None disables it
            lock_timeout_seconds: How long run_cycle waits for a busy table
            reconciler: Optional reconciler instance
        """
        self._source = source
        self._ledger = ledger
        self._targets = dict(targets)
        self._timeout_seconds = timeout_seconds
        self._lock_timeout_seconds = lock_timeout_seconds
        self._reconciler = reconciler or Reconciler()
        self._feed = ChangeFeed(source)
        self._staging = {
            name: StagingBuffer(target.tracked_table) for name, target in self._targets.items()
        }
        self._locks = {name: threading.Lock() for name in self._targets}

        log.info("sync_orchestrator_initialized", tables=sorted(self._targets))

    @property
    def table_names(self) -> list[str]:
        return sorted(self._targets)

    def register_table(self, table_name: str, initial_load: bool = False) -> VersionMark:
        """
        Seed a table's watermark at the source's current version.

        Already registered tables keep their watermark. With ``initial_load``
        the current source rows are copied into the target first; the version
        is captured before the copy, so changes made during it are replayed by
        the next cycle.

        Returns:
            The table's VersionMark

        Raises:
            CycleTimeoutError: If the source does not answer within the cycle time budget
        """
        self._target(table_name)
        with self._table_lock(table_name):
            if self._ledger.is_registered(table_name):
                version = self._ledger.get_last_version(table_name)
                log.info("table_already_registered", table_name=table_name, version=version)
                return VersionMark(table_name=table_name, version=version)

            with self._cycle_deadline(None) as deadline:
                version = call_with_deadline(
                    deadline, "current_global_version", self._source.current_global_version
                )
                if initial_load:
                    self._load_snapshot(table_name, version, deadline)
            self._ledger.register_table(table_name, version)
            return VersionMark(table_name=table_name, version=version)

    def run_cycle(
        self,
        table_name: str,
        cancel_token: CancellationToken | None = None,
        timeout_seconds: float | None = None,
    ) -> CycleReport:
        """
        Run one synchronization cycle for a table.

        Args:
            table_name: Tracked table to synchronize
            cancel_token: Optional token for cooperative cancellation
            timeout_seconds: Overrides the default cycle time budget

        Returns:
            CycleReport of the completed cycle

        Raises:
            UnregisteredTableError: If the table has no target
            CycleInProgressError: If another cycle holds the table
            CycleFailedError: If the cycle failed; the watermark is unchanged
        """
        target = self._target(table_name)
        cycle_id = uuid.uuid4().hex[:12]
        with structlog.contextvars.bound_contextvars(table_name=table_name, cycle_id=cycle_id):
            with self._table_lock(table_name), self._cycle_deadline(timeout_seconds) as deadline:
                log.info("sync_cycle_started")
                cycle = SyncCycle(
                    table_name=table_name,
                    source=self._source,
                    ledger=self._ledger,
                    feed=self._feed,
                    staging=self._staging[table_name],
                    reconciler=self._reconciler,
                    target=target,
                    deadline=deadline,
                    cancel_token=cancel_token,
                )
                return cycle.run()

    def full_resync(self, table_name: str, timeout_seconds: float | None = None) -> CycleReport:
        """
        Rebuild a table's target from the current source rows.

        This is the recovery for expired change history. The target contents
        are replaced atomically and the watermark moves to the version
        captured before the rows were read.

        Raises:
            CycleFailedError: If the resync fails; target and watermark are unchanged
        """
        self._target(table_name)
        with self._table_lock(table_name):
            report = CycleReport(table_name=table_name, start_time=datetime.now())
            log.info("full_resync_started", table_name=table_name)
            try:
                if self._ledger.is_registered(table_name):
                    report.from_version = self._ledger.get_last_version(table_name)
                with self._cycle_deadline(timeout_seconds) as deadline:
                    version = call_with_deadline(
                        deadline, "current_global_version", self._source.current_global_version
                    )
                    report.to_version = version
                    result = self._load_snapshot(table_name, version, deadline)
                if report.from_version is None:
                    self._ledger.register_table(table_name, version)
                else:
                    self._ledger.set_last_version(table_name, version)
            except Exception as e:
                report.error_kind = type(e).__name__
                report.error = str(e)
                report.final_state = CycleState.FAILED
                report.end_time = datetime.now()
                report.duration_seconds = (report.end_time - report.start_time).total_seconds()
                log.error(
                    "full_resync_failed",
                    table_name=table_name,
                    to_version=report.to_version,
                    error_kind=report.error_kind,
                    error=report.error,
                )
                raise CycleFailedError(report, e) from e

            report.rows_staged = result.inserted_count
            report.inserted = result.inserted_count
            report.deleted = result.deleted_count
            report.end_time = datetime.now()
            report.duration_seconds = (report.end_time - report.start_time).total_seconds()
            log.info(
                "full_resync_completed",
                table_name=table_name,
                version=version,
                rows=result.inserted_count,
                duration_seconds=report.duration_seconds,
            )
            return report

    def _load_snapshot(
        self, table_name: str, version: int, deadline: Deadline | None
    ) -> ReconcileResult:
        rows = call_with_deadline(deadline, "read_all_rows", self._source.read_all_rows, table_name)
        staged = self._staging[table_name].stage_snapshot(rows, version)
        return self._reconciler.replace_all(self._targets[table_name], staged, deadline=deadline)

    def _target(self, table_name: str) -> TargetTable:
        try:
            return self._targets[table_name]
        except KeyError:
            raise UnregisteredTableError(table_name) from None

    @contextmanager
    def _cycle_deadline(self, timeout_seconds: float | None) -> Iterator[Deadline | None]:
        seconds = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        if seconds is None:
            yield None
            return
        with Deadline(seconds) as deadline:
            yield deadline

    @contextmanager
    def _table_lock(self, table_name: str) -> Iterator[None]:
        lock = self._locks[table_name]
        if self._lock_timeout_seconds > 0:
            acquired = lock.acquire(timeout=self._lock_timeout_seconds)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            log.warning("sync_cycle_already_running", table_name=table_name)
            raise CycleInProgressError(f"A sync cycle for {table_name} is already running")
        try:
            yield
        finally:
            lock.release()
