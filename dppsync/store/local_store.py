"""Local SQLite storage for replicated tables, settings and sync state."""

import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..operation import Operation, OperationType, SyncMetadata, now_ms

logger = logging.getLogger(__name__)

# Transaction tag for writes made by the sync engine itself
SYNC_SOURCE = "sync"

# SQL schema for the client database
SCHEMA = """
-- Replicated rows, one JSON document per (table, key)
CREATE TABLE IF NOT EXISTS records (
    table_name TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER,
    PRIMARY KEY (table_name, key)
);

-- Operation log: append-only, seq is local insertion order
CREATE TABLE IF NOT EXISTS operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    client_id TEXT,
    table_name TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT NOT NULL,
    payload TEXT,
    timestamp INTEGER NOT NULL,
    server_timestamp INTEGER,
    key_hash TEXT,
    synced INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_operations_synced ON operations(synced);
CREATE INDEX IF NOT EXISTS idx_operations_client ON operations(client_id);
CREATE INDEX IF NOT EXISTS idx_operations_table ON operations(table_name);

CREATE TABLE IF NOT EXISTS sync_metadata (
    id TEXT PRIMARY KEY,
    last_server_cursor INTEGER NOT NULL DEFAULT 0,
    last_sync_timestamp INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT
);

-- Operations received for tables this client does not replicate yet
CREATE TABLE IF NOT EXISTS deferred_ops (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    op TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    received_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_deferred_table ON deferred_ops(table_name, timestamp);
"""

MutationHook = Callable[[str, OperationType, str, dict[str, Any]], None]


class LocalStore:
    """SQLite-backed table storage with explicit transactions.

    Every write made outside a ``source="sync"`` transaction is reported
    to the registered mutation hooks while the transaction is still open,
    so a captured operation commits or rolls back together with its row.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0
        self._tx_source: str | None = None
        self._hooks: list[MutationHook] = []

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; transaction() issues BEGIN/COMMIT itself
        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)

        logger.info(f"LocalStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._ensure_connected()

    # ==================== Transactions ====================

    @contextmanager
    def transaction(self, source: str | None = None) -> Iterator[sqlite3.Connection]:
        """Run a block of reads and writes atomically.

        Nested calls join the outermost transaction and inherit its source.

        Args:
            source: Tag for the writer; ``"sync"`` suppresses mutation capture.
        """
        conn = self._ensure_connected()
        outermost = self._tx_depth == 0
        if outermost:
            conn.execute("BEGIN IMMEDIATE")
            self._tx_source = source
        self._tx_depth += 1
        try:
            yield conn
        except BaseException:
            self._tx_depth -= 1
            if outermost:
                conn.execute("ROLLBACK")
                self._tx_source = None
            raise
        else:
            self._tx_depth -= 1
            if outermost:
                conn.execute("COMMIT")
                self._tx_source = None

    @property
    def in_sync_transaction(self) -> bool:
        return self._tx_depth > 0 and self._tx_source == SYNC_SOURCE

    def add_mutation_hook(self, hook: MutationHook) -> Callable[[], None]:
        """Register a callback invoked for every captured local write.

        Returns:
            A function that removes the hook again.
        """
        self._hooks.append(hook)

        def remove() -> None:
            if hook in self._hooks:
                self._hooks.remove(hook)

        return remove

    def _notify(self, table: str, op_type: OperationType, key: str, row: dict[str, Any]) -> None:
        if self.in_sync_transaction:
            return
        for hook in list(self._hooks):
            hook(table, op_type, key, row)

    # ==================== Table Operations ====================

    def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Fetch one row by key."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT data FROM records WHERE table_name = ? AND key = ?",
            (table, key),
        ).fetchone()
        return json.loads(row["data"]) if row else None

    def all(self, table: str) -> list[dict[str, Any]]:
        """All rows of a table, tombstones included, ordered by key."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT data FROM records WHERE table_name = ? ORDER BY key",
            (table,),
        )
        return [json.loads(row["data"]) for row in cursor]

    def items(self, table: str) -> list[tuple[str, dict[str, Any]]]:
        """(key, row) pairs of a table, ordered by key."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT key, data FROM records WHERE table_name = ? ORDER BY key",
            (table,),
        )
        return [(row["key"], json.loads(row["data"])) for row in cursor]

    def count(self, table: str) -> int:
        conn = self._ensure_connected()
        return conn.execute(
            "SELECT COUNT(*) FROM records WHERE table_name = ?", (table,)
        ).fetchone()[0]

    def put(self, table: str, key: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert or replace a row.

        Local writes are stamped with ``updatedAt`` and captured as a
        ``create`` (new key) or ``update`` operation.

        Returns:
            The stored row.
        """
        with self.transaction() as conn:
            capture = not self.in_sync_transaction
            stored = dict(row)
            if capture:
                stored["updatedAt"] = now_ms()

            existed = conn.execute(
                "SELECT 1 FROM records WHERE table_name = ? AND key = ?",
                (table, key),
            ).fetchone()
            self._write(conn, table, key, stored)

            op_type = OperationType.UPDATE if existed else OperationType.CREATE
            self._notify(table, op_type, key, stored)
        return stored

    def delete(self, table: str, key: str) -> dict[str, Any] | None:
        """Delete a row.

        Local deletes keep a tombstone (``deletedAt``) so the deletion can
        replicate; deletes inside a sync transaction remove the row.

        Returns:
            The tombstone, or None if the row did not exist.
        """
        with self.transaction() as conn:
            if self.in_sync_transaction:
                self.remove(table, key)
                return None

            existing = self.get(table, key)
            if existing is None:
                return None

            now = now_ms()
            tombstone = {**existing, "deletedAt": now, "updatedAt": now}
            self._write(conn, table, key, tombstone)
            self._notify(table, OperationType.DELETE, key, tombstone)
        return tombstone

    def remove(self, table: str, key: str) -> None:
        """Hard-delete a row without capturing an operation."""
        conn = self._ensure_connected()
        conn.execute(
            "DELETE FROM records WHERE table_name = ? AND key = ?", (table, key)
        )

    def clear_table(self, table: str) -> int:
        """Remove every row of a table without capturing operations."""
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM records WHERE table_name = ?", (table,))
        return cursor.rowcount

    def _write(self, conn: sqlite3.Connection, table: str, key: str, row: dict[str, Any]) -> None:
        updated_at = row.get("updatedAt")
        conn.execute(
            """
            INSERT INTO records (table_name, key, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(table_name, key) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (
                table,
                key,
                json.dumps(row),
                updated_at if isinstance(updated_at, int) else None,
            ),
        )

    # ==================== Settings ====================

    def get_setting(self, key: str, default: Any = None) -> Any:
        conn = self._ensure_connected()
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is None or row["value"] is None:
            return default
        return json.loads(row["value"])

    def set_setting(self, key: str, value: Any) -> None:
        conn = self._ensure_connected()
        conn.execute(
            "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )

    def delete_setting(self, key: str) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    # ==================== Sync Metadata ====================

    def get_metadata(self) -> SyncMetadata:
        """Load the singleton sync metadata row, defaulting to cursor 0."""
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT last_server_cursor, last_sync_timestamp FROM sync_metadata WHERE id = 'global'"
        ).fetchone()
        if row is None:
            return SyncMetadata()
        return SyncMetadata(
            last_server_cursor=row["last_server_cursor"],
            last_sync_timestamp=row["last_sync_timestamp"],
        )

    def put_metadata(self, metadata: SyncMetadata) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT OR REPLACE INTO sync_metadata (id, last_server_cursor, last_sync_timestamp)
            VALUES (?, ?, ?)
            """,
            (metadata.id, metadata.last_server_cursor, metadata.last_sync_timestamp),
        )

    def advance_cursor(self, cursor: int) -> bool:
        """Compare-and-set the server cursor to ``cursor`` if it is larger.

        Returns:
            True if the cursor moved, False if the update was rejected.
        """
        with self.transaction():
            current = self.get_metadata()
            if cursor <= current.last_server_cursor:
                logger.warning(
                    f"Rejected cursor update: {cursor} <= {current.last_server_cursor}"
                )
                return False
            self.put_metadata(
                SyncMetadata(last_server_cursor=cursor, last_sync_timestamp=now_ms())
            )
            logger.debug(f"Cursor advanced {current.last_server_cursor} -> {cursor}")
            return True

    def clear_metadata(self) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM sync_metadata")

    # ==================== Deferred Operations ====================

    def defer_operation(self, op: Operation) -> None:
        """Park an operation for a table this client does not know yet."""
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO deferred_ops (table_name, op, timestamp, received_at)
            VALUES (?, ?, ?, ?)
            """,
            (op.table, json.dumps(op.to_dict()), op.timestamp, now_ms()),
        )
        logger.info(f"Deferred operation {op.id} for unknown table: {op.table}")

    def deferred_tables(self) -> list[str]:
        conn = self._ensure_connected()
        cursor = conn.execute("SELECT DISTINCT table_name FROM deferred_ops ORDER BY table_name")
        return [row[0] for row in cursor]

    def deferred_operations(self, table: str) -> list[Operation]:
        """Deferred operations for ``table`` in timestamp order."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT op FROM deferred_ops WHERE table_name = ? ORDER BY timestamp, id",
            (table,),
        )
        return [Operation.from_dict(json.loads(row["op"])) for row in cursor]

    def delete_deferred(self, table: str) -> int:
        conn = self._ensure_connected()
        cursor = conn.execute("DELETE FROM deferred_ops WHERE table_name = ?", (table,))
        return cursor.rowcount

    def clear_deferred(self) -> None:
        conn = self._ensure_connected()
        conn.execute("DELETE FROM deferred_ops")
