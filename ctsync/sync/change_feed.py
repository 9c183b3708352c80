"""Change feed: net row changes of a tracked table between two versions."""

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from ctsync.errors import HistoryExpiredError, SourceProtocolError
from ctsync.models.change import ChangeRecord
from ctsync.source.base import ChangeTrackingSource
from ctsync.utils.deadline import Deadline, call_with_deadline, check_deadline

log = structlog.stdlib.get_logger()


class ChangeFeed:
    """Reads change records from a change-tracking source."""

    def __init__(self, source: ChangeTrackingSource):
        self._source = source

    def fetch_changes(
        self,
        table_name: str,
        since_version_exclusive: int,
        upto_version_inclusive: int,
        deadline: Deadline | None = None,
    ) -> Iterator[ChangeRecord]:
        """
        Return the net changes with ``since < change_version <= upto``.

        The history check and the collaborator query run immediately; records
        are then produced lazily, one pass only. Records are unordered across
        primary keys.

        Args:
            table_name: Tracked table to read
            since_version_exclusive: Watermark of the last completed sync
            upto_version_inclusive: Upper version bound captured for this cycle
            deadline: Optional time budget for the collaborator calls

        Returns:
            Single-pass iterator of ChangeRecord

        Raises:
            ValueError: If the range is inverted
            HistoryExpiredError: If history older than ``since`` was purged
            CycleTimeoutError: If the collaborator does not answer in time
        """
        if since_version_exclusive > upto_version_inclusive:
            raise ValueError(
                f"Invalid version range for {table_name}: "
                f"{since_version_exclusive} > {upto_version_inclusive}"
            )

        min_valid = call_with_deadline(
            deadline, "min_valid_version", self._source.min_valid_version, table_name
        )
        if since_version_exclusive < min_valid:
            log.error(
                "change_history_expired",
                table_name=table_name,
                since_version=since_version_exclusive,
                min_valid_version=min_valid,
            )
            raise HistoryExpiredError(table_name, since_version_exclusive, min_valid)

        log.info(
            "fetching_changes",
            table_name=table_name,
            since_version=since_version_exclusive,
            upto_version=upto_version_inclusive,
        )
        raw_changes = call_with_deadline(
            deadline,
            "query_changes",
            self._source.query_changes,
            table_name,
            since_version_exclusive,
            upto_version_inclusive,
        )
        return self._iter_records(
            table_name, raw_changes, since_version_exclusive, upto_version_inclusive, deadline
        )

    def _iter_records(
        self,
        table_name: str,
        raw_changes: Iterable[Mapping[str, Any]],
        since_version: int,
        upto_version: int,
        deadline: Deadline | None,
    ) -> Iterator[ChangeRecord]:
        count = 0
        for raw in raw_changes:
            check_deadline(deadline, "fetch_changes")
            try:
                record = ChangeRecord.from_source_row(raw)
            except (KeyError, ValueError, ValidationError) as e:
                log.error("malformed_change_row", table_name=table_name, error=str(e))
                raise SourceProtocolError(
                    f"Source returned a malformed change row for {table_name}: {e}"
                ) from e

            if not since_version < record.change_version <= upto_version:
                log.debug(
                    "change_outside_range_skipped",
                    table_name=table_name,
                    primary_key=record.primary_key,
                    change_version=record.change_version,
                )
                continue

            count += 1
            yield record

        log.info("changes_fetched", table_name=table_name, change_count=count)
