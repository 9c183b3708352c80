"""Staging: shape change records into destination rows for one cycle."""

from collections.abc import Callable, Iterable
from typing import Any

import structlog

from ctsync.models.change import ChangeRecord, Operation, StagedRow
from ctsync.models.table import TrackedTable
from ctsync.utils.deadline import Deadline, call_with_deadline

log = structlog.stdlib.get_logger()

SourceRowLookup = Callable[[tuple[Any, ...]], dict[str, Any] | None]


class StagingBuffer:
    """Materializes a change feed as staged rows for one tracked table.

    For inserts and updates the current source row is looked up, passed
    through the table projection, restricted to the destination columns and
    null-coalesced with per-type defaults. A row that no longer exists is
    staged as a delete, since the row being gone is the end state.
    """

    def __init__(self, tracked_table: TrackedTable):
        self._table = tracked_table

    def stage(
        self,
        change_records: Iterable[ChangeRecord],
        source_row_lookup: SourceRowLookup,
        deadline: Deadline | None = None,
    ) -> list[StagedRow]:
        """
        Stage change records.

        Duplicate primary keys are collapsed to the record with the highest
        change version before any lookups happen.

        Args:
            change_records: Records from the change feed (consumed once)
            source_row_lookup: Returns the current source row for a key, or None
            deadline: Optional time budget for the lookups

        Returns:
            Staged rows, at most one per primary key
        """
        latest: dict[tuple[Any, ...], ChangeRecord] = {}
        duplicates = 0
        for record in change_records:
            previous = latest.get(record.primary_key)
            if previous is not None:
                duplicates += 1
                log.warning(
                    "duplicate_change_record",
                    table_name=self._table.name,
                    primary_key=record.primary_key,
                    kept_version=max(previous.change_version, record.change_version),
                )
                if previous.change_version >= record.change_version:
                    continue
            latest[record.primary_key] = record

        staged = [self._stage_record(record, source_row_lookup, deadline) for record in latest.values()]
        demoted = sum(1 for row in staged if row.demoted)

        log.info(
            "changes_staged",
            table_name=self._table.name,
            staged=len(staged),
            demoted=demoted,
            duplicates=duplicates,
        )
        return staged

    def stage_snapshot(self, rows: Iterable[dict[str, Any]], version: int) -> list[StagedRow]:
        """Stage full source rows as inserts, for initial loads and resyncs."""
        staged: dict[tuple[Any, ...], StagedRow] = {}
        for row in rows:
            key = self._table.key_of(row)
            staged[key] = StagedRow(
                primary_key=key,
                operation=Operation.INSERT,
                change_version=version,
                values=self.shape_row(key, row),
            )
        return list(staged.values())

    def shape_row(self, primary_key: tuple[Any, ...], source_row: dict[str, Any]) -> dict[str, Any]:
        """Project a source row onto the destination columns, replacing nulls."""
        projected = self._table.project(source_row)
        values: dict[str, Any] = {}
        for column in self._table.columns:
            value = projected.get(column.name)
            values[column.name] = column.type.default if value is None else value
        # Keys come from the change record, not the row image
        for column_name, key_value in zip(self._table.primary_key, primary_key):
            values[column_name] = key_value
        return values

    def _stage_record(
        self,
        record: ChangeRecord,
        source_row_lookup: SourceRowLookup,
        deadline: Deadline | None,
    ) -> StagedRow:
        if record.operation is Operation.DELETE:
            return StagedRow(
                primary_key=record.primary_key,
                operation=Operation.DELETE,
                change_version=record.change_version,
            )

        source_row = call_with_deadline(
            deadline, "read_current_row", source_row_lookup, record.primary_key
        )
        if source_row is None:
            log.info(
                "row_demoted_to_delete",
                table_name=self._table.name,
                primary_key=record.primary_key,
                operation=record.operation.value,
                change_version=record.change_version,
            )
            return StagedRow(
                primary_key=record.primary_key,
                operation=Operation.DELETE,
                change_version=record.change_version,
                demoted=True,
            )

        return StagedRow(
            primary_key=record.primary_key,
            operation=record.operation,
            change_version=record.change_version,
            values=self.shape_row(record.primary_key, source_row),
        )
