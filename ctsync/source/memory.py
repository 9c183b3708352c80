"""In-process change-tracking source.

Behaves like database change tracking: every statement bumps a global
version, history per key is retained until cleanup, and changes are reported
as one net operation per key.
"""

import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import structlog

from ctsync.errors import UntrackableTableError
from ctsync.models.change import Operation, normalize_key
from ctsync.source.base import ChangeTrackingSource, Key

log = structlog.stdlib.get_logger()


class _KeyHistory:
    """Retained change events for one primary key."""

    __slots__ = ("base_exists", "events")

    def __init__(self, base_exists: bool):
        # Existence of the row at the table's minimum valid version
        self.base_exists = base_exists
        self.events: list[tuple[int, Operation, frozenset[str] | None]] = []

    def exists_at(self, version: int) -> bool:
        exists = self.base_exists
        for event_version, operation, _ in self.events:
            if event_version > version:
                break
            exists = operation is not Operation.DELETE
        return exists


class _SourceTable:
    def __init__(self, name: str, primary_key: tuple[str, ...], min_valid_version: int):
        self.name = name
        self.primary_key = primary_key
        self.min_valid_version = min_valid_version
        self.rows: dict[Key, dict[str, Any]] = {}
        self.history: dict[Key, _KeyHistory] = {}

    def key_of(self, row: Mapping[str, Any]) -> Key:
        try:
            key = tuple(row[column] for column in self.primary_key)
        except KeyError as e:
            raise ValueError(f"Row for {self.name} is missing primary key column {e}") from e
        if any(value is None for value in key):
            raise ValueError(f"Primary key of {self.name} cannot contain nulls: {key!r}")
        return key

    def record(self, key: Key, version: int, operation: Operation, columns=None) -> None:
        history = self.history.get(key)
        if history is None:
            # No retained events, so the row's state now is its state at the
            # minimum valid version: present unless this is an insert
            history = self.history[key] = _KeyHistory(
                base_exists=operation is not Operation.INSERT
            )
        history.events.append((version, operation, columns))


class InMemoryChangeTrackingSource(ChangeTrackingSource):
    """Change-tracked tables held in memory, with mutation methods for tests and demos."""

    def __init__(self) -> None:
        self._version = 0
        self._tables: dict[str, _SourceTable] = {}
        self._lock = threading.RLock()

    # Mutation API

    def create_table(self, table_name: str, primary_key: Sequence[str]) -> None:
        """Create a table with change tracking enabled.

        Raises:
            UntrackableTableError: If no primary key columns are given
        """
        if not primary_key:
            raise UntrackableTableError(
                f"Cannot enable change tracking on {table_name}: table has no primary key"
            )
        with self._lock:
            if table_name in self._tables:
                raise ValueError(f"Table already exists: {table_name}")
            self._tables[table_name] = _SourceTable(
                table_name, tuple(primary_key), min_valid_version=self._version
            )
        log.info("source_table_created", table_name=table_name, primary_key=list(primary_key))

    def insert(self, table_name: str, *rows: Mapping[str, Any]) -> int:
        """Insert rows in one statement and return its version."""
        with self._lock:
            table = self._table(table_name)
            keyed = [(table.key_of(row), dict(row)) for row in rows]
            keys = [key for key, _ in keyed]
            if len(set(keys)) != len(keys):
                raise ValueError(f"Duplicate primary keys in insert into {table_name}")
            for key in keys:
                if key in table.rows:
                    raise ValueError(f"Primary key {key!r} already exists in {table_name}")
            version = self._next_version()
            for key, row in keyed:
                table.rows[key] = row
                table.record(key, version, Operation.INSERT)
            return version

    def update(self, table_name: str, primary_key: Any, values: Mapping[str, Any]) -> int:
        """Update one row's non-key columns and return the statement version."""
        with self._lock:
            table = self._table(table_name)
            key = normalize_key(primary_key)
            if key not in table.rows:
                raise KeyError(f"No row with key {key!r} in {table_name}")
            changed = set(values) & set(table.primary_key)
            if changed:
                raise ValueError(f"Primary key columns cannot be updated: {sorted(changed)}")
            version = self._next_version()
            table.rows[key].update(values)
            table.record(key, version, Operation.UPDATE, frozenset(values))
            return version

    def delete(self, table_name: str, *primary_keys: Any) -> int:
        """Delete rows in one statement and return its version."""
        with self._lock:
            table = self._table(table_name)
            keys = [normalize_key(value) for value in primary_keys]
            for key in keys:
                if key not in table.rows:
                    raise KeyError(f"No row with key {key!r} in {table_name}")
            version = self._next_version()
            for key in keys:
                del table.rows[key]
                table.record(key, version, Operation.DELETE)
            return version

    def cleanup(self, table_name: str, retain_after_version: int) -> None:
        """Purge history up to and including ``retain_after_version``.

        Afterwards the table's minimum valid version is ``retain_after_version``
        and syncs from an older watermark fail with history expired.
        """
        with self._lock:
            table = self._table(table_name)
            if retain_after_version <= table.min_valid_version:
                return
            retain_after_version = min(retain_after_version, self._version)
            for key in list(table.history):
                history = table.history[key]
                base_exists = history.exists_at(retain_after_version)
                history.events = [e for e in history.events if e[0] > retain_after_version]
                if not history.events:
                    del table.history[key]
                else:
                    history.base_exists = base_exists
            table.min_valid_version = retain_after_version
        log.info(
            "source_history_cleaned_up",
            table_name=table_name,
            min_valid_version=retain_after_version,
        )

    # ChangeTrackingSource

    def current_global_version(self) -> int:
        with self._lock:
            return self._version

    def min_valid_version(self, table_name: str) -> int:
        with self._lock:
            return self._table(table_name).min_valid_version

    def query_changes(
        self, table_name: str, since_version: int, upto_version: int
    ) -> Iterable[Mapping[str, Any]]:
        with self._lock:
            table = self._table(table_name)
            changes = [
                change
                for key, history in table.history.items()
                if (change := self._net_change(key, history, since_version, upto_version))
            ]
        return iter(changes)

    def read_current_row(self, table_name: str, primary_key: Key) -> dict[str, Any] | None:
        with self._lock:
            row = self._table(table_name).rows.get(normalize_key(primary_key))
            return dict(row) if row is not None else None

    def read_all_rows(self, table_name: str) -> Iterable[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._table(table_name).rows.values()]

    # Internals

    def _table(self, table_name: str) -> _SourceTable:
        try:
            return self._tables[table_name]
        except KeyError:
            raise KeyError(f"Table is not change tracked: {table_name}") from None

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    @staticmethod
    def _net_change(
        key: Key, history: _KeyHistory, since_version: int, upto_version: int
    ) -> dict[str, Any] | None:
        if not history.events:
            return None
        change_version = history.events[-1][0]
        # A key changed again after upto is deferred whole to a later range
        if change_version <= since_version or change_version > upto_version:
            return None

        existed = history.exists_at(since_version)
        exists = history.events[-1][1] is not Operation.DELETE
        if exists and existed:
            operation = Operation.UPDATE
        elif exists:
            operation = Operation.INSERT
        else:
            operation = Operation.DELETE

        creation_version = None
        for event_version, event_operation, _ in history.events:
            if event_operation is Operation.INSERT:
                creation_version = event_version

        column_mask = None
        recent = [event for event in history.events if event[0] > since_version]
        if operation is Operation.UPDATE and all(e[1] is Operation.UPDATE for e in recent):
            column_mask = frozenset().union(*(e[2] or frozenset() for e in recent))

        return {
            "primary_key": key,
            "operation": operation.value,
            "change_version": change_version,
            "creation_version": creation_version,
            "column_mask": column_mask,
            "context": None,
        }
