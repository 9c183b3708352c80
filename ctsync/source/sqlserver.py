"""SQL Server change tracking source.

Reads ``CHANGE_TRACKING_CURRENT_VERSION()``,
``CHANGE_TRACKING_MIN_VALID_VERSION()`` and ``CHANGETABLE(CHANGES ...)``
through SQLAlchemy. Change tracking must already be enabled on the database
and on every tracked table.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from ctsync.errors import TransientSourceError
from ctsync.models.table import TrackedTable
from ctsync.source.base import ChangeTrackingSource, Key

log = structlog.stdlib.get_logger()

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    """Bracket-quote an identifier, rejecting anything but plain names."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Unsupported SQL identifier: {name!r}")
    return f"[{name}]"


def build_changes_query(schema_name: str, table: TrackedTable) -> str:
    """Build the CHANGETABLE query for one tracked table.

    One ``<column>__changed`` flag is selected per non-key destination column,
    decoded from ``SYS_CHANGE_COLUMNS``.
    """
    qualified = f"{quote_identifier(schema_name)}.{quote_identifier(table.name)}"
    object_name = f"{schema_name}.{table.name}"
    key_columns = ", ".join(f"CT.{quote_identifier(key)}" for key in table.primary_key)
    # Names also land inside string literals; quote_identifier on the alias vets them
    mask_columns = "".join(
        ",\n       CASE WHEN CT.SYS_CHANGE_COLUMNS IS NULL THEN NULL"
        f" ELSE CHANGE_TRACKING_IS_COLUMN_IN_MASK(COLUMNPROPERTY(OBJECT_ID('{object_name}'),"
        f" '{column.name}', 'ColumnId'), CT.SYS_CHANGE_COLUMNS) END"
        f" AS {quote_identifier(column.name + '__changed')}"
        for column in table.value_columns
    )
    return (
        "SELECT CT.SYS_CHANGE_VERSION, CT.SYS_CHANGE_CREATION_VERSION, CT.SYS_CHANGE_OPERATION,\n"
        f"       CT.SYS_CHANGE_CONTEXT, {key_columns}{mask_columns}\n"
        f"FROM CHANGETABLE(CHANGES {qualified}, :since_version) AS CT\n"
        "WHERE CT.SYS_CHANGE_VERSION <= :upto_version"
    )


class SqlServerChangeTrackingSource(ChangeTrackingSource):
    """Change tracking collaborator backed by a SQL Server database."""

    def __init__(self, engine: Engine, tables: Mapping[str, TrackedTable], schema_name: str = "dbo"):
        """
        Initialize the source.

        Args:
            engine: SQLAlchemy engine connected to the source database
            tables: Tracked tables by name; only these can be queried
            schema_name: Schema holding the tracked tables
        """
        self._engine = engine
        self._tables = dict(tables)
        self._schema_name = schema_name
        quote_identifier(schema_name)
        log.info(
            "sqlserver_source_initialized",
            schema_name=schema_name,
            tables=sorted(self._tables),
        )

    def _table(self, table_name: str) -> TrackedTable:
        try:
            return self._tables[table_name]
        except KeyError:
            raise KeyError(f"Table is not configured for tracking: {table_name}") from None

    def _qualified(self, table: TrackedTable) -> str:
        return f"{quote_identifier(self._schema_name)}.{quote_identifier(table.name)}"

    def _execute(self, operation: str, statement: str, **params: Any) -> list[Mapping[str, Any]]:
        try:
            with self._engine.connect() as conn:
                return list(conn.execute(text(statement), params).mappings().all())
        except OperationalError as e:
            log.warning("sqlserver_source_error", operation=operation, error=str(e))
            raise TransientSourceError(f"{operation} failed: {e}") from e

    def current_global_version(self) -> int:
        rows = self._execute(
            "current_global_version",
            "SELECT CHANGE_TRACKING_CURRENT_VERSION() AS version",
        )
        version = rows[0]["version"]
        # NULL until the first tracked change is made
        return int(version) if version is not None else 0

    def min_valid_version(self, table_name: str) -> int:
        table = self._table(table_name)
        rows = self._execute(
            "min_valid_version",
            "SELECT CHANGE_TRACKING_MIN_VALID_VERSION(OBJECT_ID(:object_name)) AS version",
            object_name=f"{self._schema_name}.{table.name}",
        )
        version = rows[0]["version"]
        if version is None:
            raise TransientSourceError(
                f"Change tracking is not enabled on {self._schema_name}.{table.name}"
            )
        return int(version)

    def query_changes(
        self, table_name: str, since_version: int, upto_version: int
    ) -> Iterable[Mapping[str, Any]]:
        table = self._table(table_name)
        rows = self._execute(
            "query_changes",
            build_changes_query(self._schema_name, table),
            since_version=since_version,
            upto_version=upto_version,
        )
        return self._to_changes(table, rows)

    @staticmethod
    def _to_changes(
        table: TrackedTable, rows: list[Mapping[str, Any]]
    ) -> Iterable[Mapping[str, Any]]:
        for row in rows:
            mask = None
            flags = {column.name: row[f"{column.name}__changed"] for column in table.value_columns}
            if any(flag is not None for flag in flags.values()):
                mask = [name for name, flag in flags.items() if flag]
            yield {
                "primary_key": tuple(row[key] for key in table.primary_key),
                "operation": row["SYS_CHANGE_OPERATION"],
                "change_version": int(row["SYS_CHANGE_VERSION"]),
                "creation_version": (
                    int(row["SYS_CHANGE_CREATION_VERSION"])
                    if row["SYS_CHANGE_CREATION_VERSION"] is not None
                    else None
                ),
                "column_mask": mask,
                "context": row["SYS_CHANGE_CONTEXT"],
            }

    def read_current_row(self, table_name: str, primary_key: Key) -> dict[str, Any] | None:
        table = self._table(table_name)
        where = " AND ".join(
            f"{quote_identifier(key)} = :k{index}" for index, key in enumerate(table.primary_key)
        )
        params = {f"k{index}": value for index, value in enumerate(primary_key)}
        rows = self._execute(
            "read_current_row",
            f"SELECT * FROM {self._qualified(table)} WHERE {where}",
            **params,
        )
        return dict(rows[0]) if rows else None

    def read_all_rows(self, table_name: str) -> Iterable[dict[str, Any]]:
        table = self._table(table_name)
        rows = self._execute("read_all_rows", f"SELECT * FROM {self._qualified(table)}")
        return [dict(row) for row in rows]
