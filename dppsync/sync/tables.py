"""Descriptors for the tables that replicate through the operation log."""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..operation import Operation, OperationType
from ..store.local_store import LocalStore

logger = logging.getLogger(__name__)


def _record_timestamp(row: dict[str, Any]) -> int | None:
    """Newest known write time of a stored row."""
    for field_name in ("serverTimestamp", "updatedAt"):
        value = row.get(field_name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


@dataclass(frozen=True)
class TableSpec:
    """A replicable table: its name and the row fields forming its key."""

    name: str
    key_fields: tuple[str, ...] = ("id",)

    def key_for(self, row: dict[str, Any]) -> str:
        """Derive the string key of a row.

        Compound keys are encoded as a JSON array of the field values.
        """
        try:
            values = [row[f] for f in self.key_fields]
        except KeyError as e:
            raise ValueError(f"Row for {self.name} is missing key field {e}") from e
        if len(values) == 1:
            return str(values[0])
        return json.dumps(values)

    def key_values(self, key: str) -> dict[str, Any]:
        """Inverse of :meth:`key_for`: the key fields encoded in ``key``."""
        if len(self.key_fields) == 1:
            return {self.key_fields[0]: key}
        try:
            values = json.loads(key)
        except json.JSONDecodeError:
            return {}
        if not isinstance(values, list):
            return {}
        return dict(zip(self.key_fields, values))

    # ---- local writes (captured) ----

    def put(self, store: LocalStore, row: dict[str, Any]) -> dict[str, Any]:
        return store.put(self.name, self.key_for(row), row)

    def delete(self, store: LocalStore, key: str) -> dict[str, Any] | None:
        return store.delete(self.name, key)

    # ---- reads ----

    def read_all(self, store: LocalStore) -> list[dict[str, Any]]:
        return store.all(self.name)

    def live_rows(self, store: LocalStore) -> list[tuple[str, dict[str, Any]]]:
        """(key, row) pairs that are not tombstoned."""
        return [(key, row) for key, row in store.items(self.name) if not row.get("deletedAt")]

    # ---- remote apply ----

    def apply(self, store: LocalStore, op: Operation) -> bool:
        """Apply a decrypted remote operation to this table.

        Must be called inside a ``source="sync"`` transaction so the write
        is not captured again.

        Returns:
            True if the table changed, False if the operation was stale.
        """
        if op.type is OperationType.DELETE:
            if isinstance(op.payload, dict):
                store.put(self.name, op.key, op.payload)
            else:
                store.remove(self.name, op.key)
            return True

        if not isinstance(op.payload, dict):
            logger.warning(f"Ignoring {op.type.value} op {op.id} for {self.name}: payload is not a row")
            return False

        existing = store.get(self.name, op.key)
        if existing is not None:
            existing_ts = _record_timestamp(existing)
            op_ts = op.server_timestamp or op.timestamp
            if existing_ts and existing_ts > op_ts:
                logger.debug(
                    f"Skipping stale op {op.id} for {self.name}/{op.key} "
                    f"({op_ts} < {existing_ts})"
                )
                return False

        row = dict(op.payload)
        for field_name, value in self.key_values(op.key).items():
            row.setdefault(field_name, value)

        store.put(self.name, op.key, row)
        return True


class ReplicatedTable(Enum):
    """The tables this application keeps in sync across clients."""

    TAGS = TableSpec("tags", ("id",))
    JOB_TAGS = TableSpec("jobTags", ("jobUrl", "tagId"))
    LINKS = TableSpec("links", ("id",))
    LINK_TAGS = TableSpec("linkTags", ("linkId", "tagId"))
    BLACKBOARD = TableSpec("blackboard", ("id",))

    @property
    def spec(self) -> TableSpec:
        return self.value

    @classmethod
    def specs(cls) -> list[TableSpec]:
        return [member.value for member in cls]

    @classmethod
    def lookup(cls, name: str) -> TableSpec | None:
        for member in cls:
            if member.value.name == name:
                return member.value
        return None
