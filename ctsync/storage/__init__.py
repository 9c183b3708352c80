"""Persistent state: version ledger and destination tables."""

from ctsync.storage.ledger import InMemoryVersionLedger, SqlVersionLedger, VersionLedger
from ctsync.storage.target import (
    InMemoryTargetTable,
    SqlTargetTable,
    TargetTable,
    TargetTransaction,
)

__all__ = [
    "InMemoryTargetTable",
    "InMemoryVersionLedger",
    "SqlTargetTable",
    "SqlVersionLedger",
    "TargetTable",
    "TargetTransaction",
    "VersionLedger",
]
