"""Operation records: the unit of replication."""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import MalformedResponseError

# Table name used on the wire for sealed operations
ENCRYPTED_TABLE = "encrypted"


class OperationType(Enum):
    """Kind of row mutation an operation describes."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def now_ms() -> int:
    """Current wall clock in milliseconds."""
    return int(time.time() * 1000)


def new_operation_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Operation:
    """An immutable record of a single table mutation.

    ``payload`` holds either the row as JSON-compatible data or, once
    sealed for transport, an ``{"ciphertext", "iv"}`` envelope.
    """

    id: str
    table: str
    type: OperationType
    key: str
    payload: Any = None
    timestamp: int = field(default_factory=now_ms)
    client_id: str | None = None
    server_timestamp: int | None = None
    server_seq: int | None = None
    key_hash: str | None = None

    @classmethod
    def create(
        cls,
        table: str,
        op_type: OperationType,
        key: str,
        payload: Any,
        client_id: str | None = None,
    ) -> "Operation":
        """Build a fresh operation with a new id and the current timestamp."""
        return cls(
            id=new_operation_id(),
            table=table,
            type=op_type,
            key=key,
            payload=payload,
            timestamp=now_ms(),
            client_id=client_id,
        )

    @property
    def is_encrypted(self) -> bool:
        payload = self.payload
        return (
            self.table == ENCRYPTED_TABLE
            and isinstance(payload, dict)
            and "ciphertext" in payload
            and "iv" in payload
        )

    def evolve(self, **changes: Any) -> "Operation":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire form."""
        data: dict[str, Any] = {
            "id": self.id,
            "table": self.table,
            "type": self.type.value,
            "key": self.key,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }
        if self.client_id is not None:
            data["clientId"] = self.client_id
        if self.server_timestamp is not None:
            data["serverTimestamp"] = self.server_timestamp
        if self.server_seq is not None:
            data["serverSeq"] = self.server_seq
        if self.key_hash is not None:
            data["keyHash"] = self.key_hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Operation":
        """Parse the wire form.

        Raises:
            MalformedResponseError: If required fields are missing or invalid.
        """
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Operation must be an object, got {type(data).__name__}")
        try:
            server_ts = data.get("serverTimestamp")
            server_seq = data.get("serverSeq")
            return cls(
                id=str(data["id"]),
                table=str(data["table"]),
                type=OperationType(data["type"]),
                key=str(data["key"]),
                payload=data.get("payload"),
                timestamp=int(data.get("timestamp") or 0),
                client_id=data.get("clientId"),
                server_timestamp=int(server_ts) if server_ts else None,
                server_seq=int(server_seq) if server_seq is not None else None,
                key_hash=data.get("keyHash") or None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise MalformedResponseError(f"Invalid operation {data.get('id')!r}: {e}") from e


@dataclass
class SyncMetadata:
    """Per-client replication progress (singleton row ``global``)."""

    id: str = "global"
    last_server_cursor: int = 0
    last_sync_timestamp: int = 0
