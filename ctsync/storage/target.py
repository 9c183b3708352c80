"""Destination tables written by reconciliation."""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    LargeBinary,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

from ctsync.models.table import ColumnType, TrackedTable

log = structlog.stdlib.get_logger()

Key = tuple[Any, ...]
Row = dict[str, Any]


class TargetTransaction(ABC):
    """Row operations on a destination table inside one transaction."""

    @abstractmethod
    def get(self, primary_key: Key) -> Row | None:
        """Return the row with this key, or None."""

    @abstractmethod
    def insert(self, row: Row) -> None:
        """Insert a full row."""

    @abstractmethod
    def update(self, primary_key: Key, values: Row) -> None:
        """Overwrite the non-key columns of an existing row."""

    @abstractmethod
    def delete(self, primary_key: Key) -> None:
        """Remove an existing row."""

    @abstractmethod
    def clear(self) -> int:
        """Remove every row, returning how many were removed."""


class TargetTable(ABC):
    """A destination table. Writes happen only through ``transaction()``.

    Changes made in a transaction become visible together when the ``with``
    block exits normally and are discarded when it raises.
    """

    def __init__(self, tracked_table: TrackedTable):
        self.tracked_table = tracked_table

    @property
    def name(self) -> str:
        return self.tracked_table.target_table

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager yielding a TargetTransaction."""

    @abstractmethod
    def rows(self) -> dict[Key, Row]:
        """Snapshot of all committed rows keyed by primary key."""


class _InMemoryTransaction(TargetTransaction):
    def __init__(self, rows: dict[Key, Row], tracked_table: TrackedTable):
        self._rows = rows
        self._tracked_table = tracked_table

    def get(self, primary_key: Key) -> Row | None:
        row = self._rows.get(primary_key)
        return dict(row) if row is not None else None

    def insert(self, row: Row) -> None:
        key = self._tracked_table.key_of(row)
        if key in self._rows:
            raise KeyError(f"Duplicate primary key {key!r} in {self._tracked_table.target_table}")
        self._rows[key] = dict(row)

    def update(self, primary_key: Key, values: Row) -> None:
        row = self._rows[primary_key]
        for column, value in values.items():
            if column not in self._tracked_table.primary_key:
                row[column] = value

    def delete(self, primary_key: Key) -> None:
        del self._rows[primary_key]

    def clear(self) -> int:
        removed = len(self._rows)
        self._rows.clear()
        return removed


class InMemoryTargetTable(TargetTable):
    """Destination table held in process memory.

    A transaction works on a private copy that replaces the committed rows
    only on success, so readers never observe a partially applied batch.
    """

    def __init__(self, tracked_table: TrackedTable):
        super().__init__(tracked_table)
        self._rows: dict[Key, Row] = {}
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()

    @contextmanager
    def transaction(self) -> Iterator[TargetTransaction]:
        with self._write_lock:
            with self._read_lock:
                working = {key: dict(row) for key, row in self._rows.items()}
            yield _InMemoryTransaction(working, self.tracked_table)
            with self._read_lock:
                self._rows = working

    def rows(self) -> dict[Key, Row]:
        with self._read_lock:
            return {key: dict(row) for key, row in self._rows.items()}


_SQL_TYPES = {
    ColumnType.STRING: lambda: String(4000),
    ColumnType.INTEGER: BigInteger,
    ColumnType.FLOAT: Float,
    ColumnType.DECIMAL: lambda: Numeric(38, 10),
    ColumnType.BOOLEAN: Boolean,
    ColumnType.DATE: Date,
    ColumnType.DATETIME: DateTime,
    ColumnType.BYTES: LargeBinary,
}


class _SqlTransaction(TargetTransaction):
    def __init__(self, conn: Connection, table: Table, tracked_table: TrackedTable):
        self._conn = conn
        self._table = table
        self._tracked_table = tracked_table

    def _key_clause(self, primary_key: Key):
        return and_(
            *(
                self._table.c[column] == value
                for column, value in zip(self._tracked_table.primary_key, primary_key)
            )
        )

    def get(self, primary_key: Key) -> Row | None:
        found = (
            self._conn.execute(select(self._table).where(self._key_clause(primary_key)))
            .mappings()
            .first()
        )
        return dict(found) if found is not None else None

    def insert(self, row: Row) -> None:
        self._conn.execute(insert(self._table).values(**row))

    def update(self, primary_key: Key, values: Row) -> None:
        non_key = {
            column: value
            for column, value in values.items()
            if column not in self._tracked_table.primary_key
        }
        if not non_key:
            return
        self._conn.execute(
            update(self._table).where(self._key_clause(primary_key)).values(**non_key)
        )

    def delete(self, primary_key: Key) -> None:
        self._conn.execute(delete(self._table).where(self._key_clause(primary_key)))

    def clear(self) -> int:
        return self._conn.execute(delete(self._table)).rowcount


class SqlTargetTable(TargetTable):
    """Destination table in a SQLAlchemy database; one DB transaction per batch."""

    def __init__(self, engine: Engine, tracked_table: TrackedTable):
        super().__init__(tracked_table)
        self._engine = engine
        self._metadata = MetaData()
        self._table = Table(
            tracked_table.target_table,
            self._metadata,
            *(
                Column(
                    column.name,
                    _SQL_TYPES[column.type](),
                    primary_key=column.name in tracked_table.primary_key,
                    autoincrement=False,
                    nullable=False,
                )
                for column in tracked_table.columns
            ),
        )
        log.info("sql_target_table_initialized", table=tracked_table.target_table)

    def create_schema(self) -> None:
        """Create the destination table if it does not exist."""
        self._metadata.create_all(self._engine, tables=[self._table])

    @contextmanager
    def transaction(self) -> Iterator[TargetTransaction]:
        with self._engine.begin() as conn:
            yield _SqlTransaction(conn, self._table, self.tracked_table)

    def rows(self) -> dict[Key, Row]:
        with self._engine.connect() as conn:
            found = conn.execute(select(self._table)).mappings().all()
        return {self.tracked_table.key_of(row): dict(row) for row in found}
