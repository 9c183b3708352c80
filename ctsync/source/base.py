"""Interface of the change-tracking source the sync engine reads from."""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

Key = tuple[Any, ...]


class ChangeTrackingSource(ABC):
    """Abstract change-tracking collaborator.

    The source owns change capture, retention and version numbering. The sync
    engine only reads through these methods and never writes to the source.

    ``query_changes`` yields one mapping per changed key with these entries:

    - ``primary_key``: tuple of key values
    - ``operation``: ``"I"``, ``"U"`` or ``"D"``, the net change for the key
    - ``change_version``: version of the key's most recent change
    - ``creation_version``: version of the insert that created the row, or None
    - ``column_mask``: iterable of changed column names for updates, or None
    - ``context``: optional change context bytes
    """

    @abstractmethod
    def current_global_version(self) -> int:
        """Return the version of the most recent tracked change anywhere in the source."""

    @abstractmethod
    def min_valid_version(self, table_name: str) -> int:
        """Return the oldest version after which full change history is retained."""

    @abstractmethod
    def query_changes(
        self, table_name: str, since_version: int, upto_version: int
    ) -> Iterable[Mapping[str, Any]]:
        """Return net changes with ``since_version < change_version <= upto_version``."""

    @abstractmethod
    def read_current_row(self, table_name: str, primary_key: Key) -> dict[str, Any] | None:
        """Return the current row image, or None if the row does not exist."""

    @abstractmethod
    def read_all_rows(self, table_name: str) -> Iterable[dict[str, Any]]:
        """Return every current row, used for initial loads and full resyncs."""
