"""Version ledger: the persisted watermark of every tracked table."""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable

import structlog
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    MetaData,
    String,
    Table,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from ctsync.errors import (
    AlreadyRegisteredError,
    RegressionError,
    TableNotAllowedError,
    UnregisteredTableError,
)
from ctsync.models.change import VersionMark

log = structlog.stdlib.get_logger()


class VersionLedger(ABC):
    """Abstract store of per-table watermarks.

    Watermarks only move forward. A table must be registered (seeded with the
    version at which tracking began) before it can be read or advanced.
    """

    def __init__(self, allowed_tables: Iterable[str] | None = None):
        self._allowed_tables: frozenset[str] | None = (
            frozenset(allowed_tables) if allowed_tables is not None else None
        )

    def _check_allowed(self, table_name: str) -> None:
        if self._allowed_tables is not None and table_name not in self._allowed_tables:
            raise TableNotAllowedError(table_name)

    @abstractmethod
    def get_last_version(self, table_name: str) -> int:
        """Return the stored watermark.

        Raises:
            UnregisteredTableError: If the table was never registered
        """

    @abstractmethod
    def set_last_version(self, table_name: str, version: int) -> None:
        """Overwrite the stored watermark.

        Raises:
            UnregisteredTableError: If the table was never registered
            RegressionError: If ``version`` is lower than the stored watermark
        """

    @abstractmethod
    def register_table(self, table_name: str, initial_version: int) -> None:
        """Seed a table's watermark.

        Registering again with the same version is a no-op.

        Raises:
            AlreadyRegisteredError: If registered before with a different version
            TableNotAllowedError: If the table is outside the allow-list
        """

    @abstractmethod
    def is_registered(self, table_name: str) -> bool:
        """Check whether a table has a watermark."""

    @abstractmethod
    def marks(self) -> list[VersionMark]:
        """Return all stored watermarks."""


class InMemoryVersionLedger(VersionLedger):
    """Process-local ledger, for tests and ephemeral runs."""

    def __init__(self, allowed_tables: Iterable[str] | None = None):
        super().__init__(allowed_tables)
        self._versions: dict[str, int] = {}
        self._lock = threading.Lock()

    def get_last_version(self, table_name: str) -> int:
        with self._lock:
            if table_name not in self._versions:
                raise UnregisteredTableError(table_name)
            return self._versions[table_name]

    def set_last_version(self, table_name: str, version: int) -> None:
        with self._lock:
            if table_name not in self._versions:
                raise UnregisteredTableError(table_name)
            stored = self._versions[table_name]
            if version < stored:
                raise RegressionError(table_name, stored, version)
            self._versions[table_name] = version
        log.info("watermark_updated", table_name=table_name, previous_version=stored, version=version)

    def register_table(self, table_name: str, initial_version: int) -> None:
        self._check_allowed(table_name)
        if initial_version < 0:
            raise ValueError(f"initial_version must be non-negative, got {initial_version}")
        with self._lock:
            stored = self._versions.get(table_name)
            if stored is not None:
                if stored != initial_version:
                    raise AlreadyRegisteredError(table_name, stored, initial_version)
                return
            self._versions[table_name] = initial_version
        log.info("table_registered", table_name=table_name, initial_version=initial_version)

    def is_registered(self, table_name: str) -> bool:
        with self._lock:
            return table_name in self._versions

    def marks(self) -> list[VersionMark]:
        with self._lock:
            return [
                VersionMark(table_name=name, version=version)
                for name, version in sorted(self._versions.items())
            ]


class SqlVersionLedger(VersionLedger):
    """Ledger persisted in a ``change_tracking_version`` table.

    Layout: ``table_name`` (unique, restricted to the allow-list when one is
    given) and ``sys_change_version`` (64-bit integer).
    """

    TABLE_NAME: str = "change_tracking_version"

    def __init__(self, engine: Engine, allowed_tables: Iterable[str] | None = None):
        super().__init__(allowed_tables)
        self._engine = engine
        self._metadata = MetaData()
        constraints = []
        if self._allowed_tables:
            quoted = ", ".join(
                "'" + name.replace("'", "''") + "'" for name in sorted(self._allowed_tables)
            )
            constraints.append(
                CheckConstraint(
                    f"table_name IN ({quoted})",
                    name="chk_change_tracking_version_table_name",
                )
            )
        self._table = Table(
            self.TABLE_NAME,
            self._metadata,
            Column("table_name", String(255), nullable=False, unique=True),
            Column("sys_change_version", BigInteger, nullable=False),
            *constraints,
        )
        log.info("sql_version_ledger_initialized", table=self.TABLE_NAME)

    def create_schema(self) -> None:
        """Create the ledger table if it does not exist."""
        self._metadata.create_all(self._engine, tables=[self._table])

    def get_last_version(self, table_name: str) -> int:
        with self._engine.connect() as conn:
            version = conn.execute(
                select(self._table.c.sys_change_version).where(
                    self._table.c.table_name == table_name
                )
            ).scalar_one_or_none()
        if version is None:
            raise UnregisteredTableError(table_name)
        return int(version)

    def set_last_version(self, table_name: str, version: int) -> None:
        # Conditional update keeps the monotonic check and write in one statement
        with self._engine.begin() as conn:
            result = conn.execute(
                update(self._table)
                .where(self._table.c.table_name == table_name)
                .where(self._table.c.sys_change_version <= version)
                .values(sys_change_version=version)
            )
            if result.rowcount == 0:
                stored = conn.execute(
                    select(self._table.c.sys_change_version).where(
                        self._table.c.table_name == table_name
                    )
                ).scalar_one_or_none()
                if stored is None:
                    raise UnregisteredTableError(table_name)
                raise RegressionError(table_name, int(stored), version)
        log.info("watermark_updated", table_name=table_name, version=version)

    def register_table(self, table_name: str, initial_version: int) -> None:
        self._check_allowed(table_name)
        if initial_version < 0:
            raise ValueError(f"initial_version must be non-negative, got {initial_version}")
        try:
            with self._engine.begin() as conn:
                stored = conn.execute(
                    select(self._table.c.sys_change_version).where(
                        self._table.c.table_name == table_name
                    )
                ).scalar_one_or_none()
                if stored is None:
                    conn.execute(
                        insert(self._table).values(
                            table_name=table_name, sys_change_version=initial_version
                        )
                    )
                    log.info(
                        "table_registered", table_name=table_name, initial_version=initial_version
                    )
                    return
        except IntegrityError:
            # Lost a race with a concurrent registration; compare against the winner
            stored = self.get_last_version(table_name)
        if int(stored) != initial_version:
            raise AlreadyRegisteredError(table_name, int(stored), initial_version)

    def is_registered(self, table_name: str) -> bool:
        with self._engine.connect() as conn:
            found = conn.execute(
                select(self._table.c.table_name).where(self._table.c.table_name == table_name)
            ).first()
        return found is not None

    def marks(self) -> list[VersionMark]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(self._table.c.table_name, self._table.c.sys_change_version).order_by(
                    self._table.c.table_name
                )
            ).all()
        return [VersionMark(table_name=name, version=int(version)) for name, version in rows]
