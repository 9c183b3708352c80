"""Change-tracking sources the sync engine reads from."""

from ctsync.source.base import ChangeTrackingSource
from ctsync.source.memory import InMemoryChangeTrackingSource
from ctsync.source.sqlserver import SqlServerChangeTrackingSource

__all__ = [
    "ChangeTrackingSource",
    "InMemoryChangeTrackingSource",
    "SqlServerChangeTrackingSource",
]
