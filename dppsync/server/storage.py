"""SQLite storage for the relay server's global operation sequence."""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from ..operation import Operation, now_ms

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    server_seq INTEGER PRIMARY KEY AUTOINCREMENT,
    client_op_id TEXT NOT NULL UNIQUE,
    client_id TEXT,
    table_name TEXT NOT NULL,
    type TEXT NOT NULL,
    key TEXT,
    payload TEXT,
    timestamp INTEGER NOT NULL,
    server_timestamp INTEGER NOT NULL,
    key_hash TEXT,
    received_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ops_client ON operations(client_id);
"""


class RelayStore:
    """Append-only operation store that assigns server sequence numbers.

    Pushes are linearized by a lock around a single transaction, so
    ``server_seq`` follows receipt order. Resubmitting an operation id is
    a no-op that reports the sequence it already has.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        if isinstance(self.db_path, Path):
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(SCHEMA)

        logger.info(f"RelayStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("RelayStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def push(self, ops: list[Operation], client_id: str | None = None) -> tuple[list[dict[str, Any]], int | None]:
        """Store a batch of operations.

        Args:
            ops: Operations as submitted (payloads are opaque).
            client_id: Fallback author for operations without ``clientId``.

        Returns:
            Tuple of per-operation acks (``{"id", "seq"}``) and the highest
            sequence among them, or None for an empty batch.
        """
        acks = []
        server_timestamp = now_ms()

        with self._lock:
            conn = self._ensure_connected()
            conn.execute("BEGIN IMMEDIATE")
            try:
                for op in ops:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO operations (
                            client_op_id, client_id, table_name, type, key, payload,
                            timestamp, server_timestamp, key_hash, received_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            op.id,
                            op.client_id or client_id,
                            op.table,
                            op.type.value,
                            op.key,
                            json.dumps(op.payload) if op.payload is not None else None,
                            op.timestamp,
                            server_timestamp,
                            op.key_hash,
                            now_ms(),
                        ),
                    )
                    seq = conn.execute(
                        "SELECT server_seq FROM operations WHERE client_op_id = ?",
                        (op.id,),
                    ).fetchone()[0]
                    acks.append({"id": op.id, "seq": seq})
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

        cursor = max((ack["seq"] for ack in acks), default=None)
        logger.debug(f"Stored {len(ops)} operations from {client_id}, cursor {cursor}")
        return acks, cursor

    def pull(
        self,
        cursor: int,
        exclude_client_id: str | None = None,
        limit: int = 1000,
    ) -> list[Operation]:
        """Operations with ``server_seq > cursor`` in ascending order."""
        conn = self._ensure_connected()
        if exclude_client_id:
            rows = conn.execute(
                """
                SELECT * FROM operations
                WHERE server_seq > ?
                  AND (client_id IS NULL OR client_id != ?)
                ORDER BY server_seq ASC
                LIMIT ?
                """,
                (cursor, exclude_client_id, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM operations
                WHERE server_seq > ?
                ORDER BY server_seq ASC
                LIMIT ?
                """,
                (cursor, limit),
            ).fetchall()

        return [self._row_to_operation(row) for row in rows]

    def count_pending(self, cursor: int, exclude_client_id: str | None = None) -> int:
        conn = self._ensure_connected()
        if exclude_client_id:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM operations
                WHERE server_seq > ?
                  AND (client_id IS NULL OR client_id != ?)
                """,
                (cursor, exclude_client_id),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(*) FROM operations WHERE server_seq > ?",
                (cursor,),
            ).fetchone()
        return row[0]

    def get_stats(self) -> dict[str, Any]:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT COUNT(*), MAX(server_seq), COUNT(DISTINCT client_id) FROM operations"
        ).fetchone()
        return {
            "total_operations": row[0],
            "max_seq": row[1] or 0,
            "client_count": row[2],
        }

    def _row_to_operation(self, row: sqlite3.Row) -> Operation:
        return Operation.from_dict(
            {
                "id": row["client_op_id"],
                "clientId": row["client_id"],
                "table": row["table_name"],
                "type": row["type"],
                "key": row["key"],
                "payload": json.loads(row["payload"]) if row["payload"] is not None else None,
                "timestamp": row["timestamp"],
                "serverTimestamp": row["server_timestamp"],
                "serverSeq": row["server_seq"],
                "keyHash": row["key_hash"],
            }
        )
