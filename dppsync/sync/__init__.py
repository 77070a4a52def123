"""Sync infrastructure for offline-first dppsync clients.

Local mutations are recorded in an append-only operation log, encrypted,
and exchanged with a relay (or a spreadsheet) through a cursor-based
push/pull protocol.
"""

from .crypto import KeyStore, SyncKey, generate_key, import_key, verify_key
from .engine import (
    MigrationMode,
    SyncEngine,
    SyncEvent,
    SyncOutcome,
    SyncResult,
    SyncStatus,
)
from .oplog import OperationLog
from .retry import RetryPolicy
from .sheets import GoogleSheetsWorksheet, SheetsTransport, Worksheet
from .tables import ReplicatedTable, TableSpec
from .transport import PullResult, PushResult, RelayTransport, SyncTransport

__all__ = [
    "GoogleSheetsWorksheet",
    "KeyStore",
    "MigrationMode",
    "OperationLog",
    "PullResult",
    "PushResult",
    "RelayTransport",
    "ReplicatedTable",
    "RetryPolicy",
    "SheetsTransport",
    "SyncEngine",
    "SyncEvent",
    "SyncKey",
    "SyncOutcome",
    "SyncResult",
    "SyncStatus",
    "SyncTransport",
    "TableSpec",
    "Worksheet",
    "generate_key",
    "import_key",
    "verify_key",
]
