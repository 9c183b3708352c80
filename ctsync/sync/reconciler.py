"""Reconciliation of staged rows into the destination table."""

from collections.abc import Iterable
from enum import Enum
from typing import Any

import structlog

from ctsync.errors import SchemaMismatchError
from ctsync.models.change import Operation, StagedRow
from ctsync.models.table import TrackedTable
from ctsync.storage.target import TargetTable
from ctsync.sync.models import ReconcileResult
from ctsync.utils.deadline import Deadline, check_deadline

log = structlog.stdlib.get_logger()


class Action(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


# (row exists in target, staged operation) -> action
POLICY: dict[tuple[bool, Operation], Action] = {
    (False, Operation.INSERT): Action.INSERT,
    (True, Operation.INSERT): Action.SKIP,
    (True, Operation.UPDATE): Action.UPDATE,
    (False, Operation.UPDATE): Action.INSERT,
    (True, Operation.DELETE): Action.DELETE,
    (False, Operation.DELETE): Action.SKIP,
}


class Reconciler:
    """Applies staged rows to a destination table, all or nothing.

    Every (exists, operation) combination has a defined action, so replaying
    a batch that was already applied leaves the target unchanged.
    """

    def reconcile(
        self,
        target: TargetTable,
        staged_rows: Iterable[StagedRow],
        deadline: Deadline | None = None,
    ) -> ReconcileResult:
        """
        Apply a staged batch inside one target transaction.

        Args:
            target: Destination table
            staged_rows: Staged rows, at most one per primary key
            deadline: Optional time budget; exceeding it rolls the batch back

        Returns:
            ReconcileResult with per-action counts

        Raises:
            SchemaMismatchError: If any row does not fit the target schema;
                nothing from the batch is applied
            CycleTimeoutError: If the deadline passes; nothing is applied
        """
        counts = {action: 0 for action in Action}
        tracked_table = target.tracked_table

        with target.transaction() as txn:
            for row in staged_rows:
                check_deadline(deadline, "reconcile")
                self._validate(tracked_table, row)

                exists = txn.get(row.primary_key) is not None
                action = POLICY[(exists, row.operation)]

                if action is Action.INSERT:
                    txn.insert(dict(row.values))
                elif action is Action.UPDATE:
                    txn.update(row.primary_key, dict(row.values))
                elif action is Action.DELETE:
                    txn.delete(row.primary_key)

                counts[action] += 1
                log.debug(
                    "staged_row_reconciled",
                    table_name=tracked_table.target_table,
                    primary_key=row.primary_key,
                    operation=row.operation.value,
                    action=action.value,
                )

        result = ReconcileResult(
            inserted_count=counts[Action.INSERT],
            updated_count=counts[Action.UPDATE],
            deleted_count=counts[Action.DELETE],
            unchanged_count=counts[Action.SKIP],
        )
        log.info(
            "reconciliation_completed",
            table_name=tracked_table.target_table,
            inserted=result.inserted_count,
            updated=result.updated_count,
            deleted=result.deleted_count,
            unchanged=result.unchanged_count,
        )
        return result

    def replace_all(
        self,
        target: TargetTable,
        staged_rows: Iterable[StagedRow],
        deadline: Deadline | None = None,
    ) -> ReconcileResult:
        """Replace the whole target contents with a staged snapshot, atomically."""
        tracked_table = target.tracked_table
        inserted = 0
        with target.transaction() as txn:
            deleted = txn.clear()
            for row in staged_rows:
                check_deadline(deadline, "replace_all")
                if row.operation is not Operation.INSERT:
                    raise ValueError(f"Snapshot rows must be inserts, got {row.operation.name}")
                self._validate(tracked_table, row)
                txn.insert(dict(row.values))
                inserted += 1

        log.info(
            "target_replaced",
            table_name=tracked_table.target_table,
            removed=deleted,
            inserted=inserted,
        )
        return ReconcileResult(inserted_count=inserted, deleted_count=deleted)

    @staticmethod
    def _validate(table: TrackedTable, row: StagedRow) -> None:
        """Check a staged row against the destination schema.

        Raises:
            SchemaMismatchError: On key arity, column set or value type mismatches
        """
        if len(row.primary_key) != len(table.primary_key):
            raise SchemaMismatchError(
                table.target_table,
                row.primary_key,
                f"expected {len(table.primary_key)} key values, got {len(row.primary_key)}",
            )
        for column_name, value in zip(table.primary_key, row.primary_key):
            _check_value(table, row, column_name, value)

        if row.values is None:
            return

        expected = set(table.column_names)
        actual = set(row.values)
        if actual != expected:
            raise SchemaMismatchError(
                table.target_table,
                row.primary_key,
                f"missing columns {sorted(expected - actual)}, "
                f"unexpected columns {sorted(actual - expected)}",
            )
        for column_name, value in row.values.items():
            _check_value(table, row, column_name, value)


def _check_value(table: TrackedTable, row: StagedRow, column_name: str, value: Any) -> None:
    column = table.column(column_name)
    if not column.type.accepts(value):
        raise SchemaMismatchError(
            table.target_table,
            row.primary_key,
            f"column {column_name} expects {column.type.value}, got {type(value).__name__}",
        )
