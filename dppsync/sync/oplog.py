"""Append-only operation log stored alongside the replicated tables.

Local mutations are appended unsynced and stay in the log after they are
pushed. Operations received from the server are recorded as already
synced, which makes replaying the same operation id a no-op.
"""

import json
import logging
import sqlite3
from typing import Any

from ..operation import Operation, OperationType
from ..store.local_store import LocalStore

logger = logging.getLogger(__name__)

_COLUMNS = (
    "seq, id, client_id, table_name, type, key, payload, "
    "timestamp, server_timestamp, key_hash, synced"
)


def _row_to_operation(row: sqlite3.Row) -> Operation:
    return Operation(
        id=row["id"],
        table=row["table_name"],
        type=OperationType(row["type"]),
        key=row["key"],
        payload=json.loads(row["payload"]) if row["payload"] is not None else None,
        timestamp=row["timestamp"],
        client_id=row["client_id"],
        server_timestamp=row["server_timestamp"],
        key_hash=row["key_hash"],
    )


class OperationLog:
    """Durable, ordered table of mutation records.

    Shares the connection of a :class:`LocalStore` so that operations and
    the row mutations that produced them commit in one transaction.
    """

    def __init__(self, store: LocalStore):
        self.store = store

    def _conn(self) -> sqlite3.Connection:
        return self.store.connection

    def _insert(self, op: Operation, synced: bool) -> bool:
        cursor = self._conn().execute(
            """
            INSERT OR IGNORE INTO operations (
                id, client_id, table_name, type, key, payload,
                timestamp, server_timestamp, key_hash, synced
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                op.id,
                op.client_id,
                op.table,
                op.type.value,
                op.key,
                json.dumps(op.payload) if op.payload is not None else None,
                op.timestamp,
                op.server_timestamp,
                op.key_hash,
                1 if synced else 0,
            ),
        )
        return cursor.rowcount > 0

    def append(self, op: Operation) -> Operation:
        """Append a locally produced operation, unsynced."""
        self._insert(op, synced=False)
        logger.debug(f"Appended {op.type.value} op {op.id} for {op.table}/{op.key}")
        return op

    def record_applied(self, op: Operation) -> bool:
        """Record a remote operation as applied and synced.

        Returns:
            False if an operation with the same id was already in the log.
        """
        return self._insert(op, synced=True)

    def contains(self, op_id: str) -> bool:
        row = self._conn().execute(
            "SELECT 1 FROM operations WHERE id = ?", (op_id,)
        ).fetchone()
        return row is not None

    def list_unsynced(
        self,
        client_id: str | None = None,
        tables: list[str] | None = None,
        limit: int | None = None,
    ) -> list[Operation]:
        """Unsynced operations in local insertion order.

        Args:
            client_id: Only operations authored by this client.
            tables: Only operations for these tables.
            limit: Maximum operations to return.
        """
        sql = f"SELECT {_COLUMNS} FROM operations WHERE synced = 0"
        params: list[Any] = []
        if client_id is not None:
            sql += " AND (client_id = ? OR client_id IS NULL)"
            params.append(client_id)
        if tables is not None:
            if not tables:
                return []
            sql += f" AND table_name IN ({','.join('?' * len(tables))})"
            params.extend(tables)
        sql += " ORDER BY seq ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        cursor = self._conn().execute(sql, params)
        return [_row_to_operation(row) for row in cursor]

    def count_unsynced(
        self,
        cursor: int | None = None,
        client_id: str | None = None,
        tables: list[str] | None = None,
    ) -> int:
        """Count unsynced operations, optionally only those after a local seq."""
        sql = "SELECT COUNT(*) FROM operations WHERE synced = 0"
        params: list[Any] = []
        if cursor is not None:
            sql += " AND seq > ?"
            params.append(cursor)
        if client_id is not None:
            sql += " AND (client_id = ? OR client_id IS NULL)"
            params.append(client_id)
        if tables is not None:
            if not tables:
                return 0
            sql += f" AND table_name IN ({','.join('?' * len(tables))})"
            params.extend(tables)
        return self._conn().execute(sql, params).fetchone()[0]

    def list_since(
        self, cursor: int, client_id: str | None = None, limit: int = 1000
    ) -> list[Operation]:
        """Operations with local seq greater than ``cursor``, oldest first."""
        sql = f"SELECT {_COLUMNS} FROM operations WHERE seq > ?"
        params: list[Any] = [cursor]
        if client_id is not None:
            sql += " AND client_id = ?"
            params.append(client_id)
        sql += " ORDER BY seq ASC LIMIT ?"
        params.append(limit)

        rows = self._conn().execute(sql, params)
        return [_row_to_operation(row) for row in rows]

    def mark_synced(self, op_ids: list[str]) -> int:
        """Mark operations as pushed.

        Returns:
            Number of operations updated.
        """
        if not op_ids:
            return 0

        placeholders = ",".join("?" * len(op_ids))
        cursor = self._conn().execute(
            f"UPDATE operations SET synced = 1 WHERE id IN ({placeholders}) AND synced = 0",
            op_ids,
        )
        logger.debug(f"Marked {cursor.rowcount} operations as synced")
        return cursor.rowcount

    def clear(self) -> None:
        """Drop the whole log (reset flows only)."""
        self._conn().execute("DELETE FROM operations")
        # Restart local insertion order
        self._conn().execute("DELETE FROM sqlite_sequence WHERE name = 'operations'")

    def get_stats(self) -> dict[str, Any]:
        """Counts of total, unsynced and per-table operations."""
        conn = self._conn()
        stats: dict[str, Any] = {
            "total_operations": conn.execute("SELECT COUNT(*) FROM operations").fetchone()[0],
            "unsynced_operations": conn.execute(
                "SELECT COUNT(*) FROM operations WHERE synced = 0"
            ).fetchone()[0],
        }
        cursor = conn.execute(
            "SELECT table_name, COUNT(*) FROM operations GROUP BY table_name"
        )
        stats["operations_by_table"] = {row[0]: row[1] for row in cursor}
        return stats
