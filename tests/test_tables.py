"""Tests for replicated table descriptors."""

import json

import pytest

from dppsync.operation import Operation, OperationType
from dppsync.store import SYNC_SOURCE, LocalStore
from dppsync.sync import ReplicatedTable, TableSpec


@pytest.fixture
def store():
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


def remote_op(op_type, key, payload, timestamp=1000, server_timestamp=None, table="tags"):
    return Operation(
        id=f"{op_type.value}-{key}-{timestamp}",
        table=table,
        type=op_type,
        key=key,
        payload=payload,
        timestamp=timestamp,
        server_timestamp=server_timestamp,
    )


class TestTableKeys:
    """Tests for key derivation."""

    def test_single_field_key(self):
        """Test that a single key field is used as-is."""
        assert TableSpec("tags").key_for({"id": 7, "name": "x"}) == "7"

    def test_compound_key(self):
        """Test that compound keys are encoded as a JSON array."""
        spec = ReplicatedTable.JOB_TAGS.spec
        key = spec.key_for({"jobUrl": "http://ci/job/a", "tagId": "t1"})

        assert json.loads(key) == ["http://ci/job/a", "t1"]
        assert spec.key_values(key) == {"jobUrl": "http://ci/job/a", "tagId": "t1"}

    def test_missing_key_field(self):
        """Test that rows without their key fields are rejected."""
        with pytest.raises(ValueError):
            ReplicatedTable.LINK_TAGS.spec.key_for({"linkId": "l1"})

    def test_lookup(self):
        """Test finding a descriptor by table name."""
        assert ReplicatedTable.lookup("blackboard") is ReplicatedTable.BLACKBOARD.spec
        assert ReplicatedTable.lookup("unknown") is None
        assert {s.name for s in ReplicatedTable.specs()} == {
            "tags", "jobTags", "links", "linkTags", "blackboard",
        }


class TestTableApply:
    """Tests for applying remote operations."""

    def test_create_then_update(self, store):
        """Test applying a create and a newer update."""
        spec = ReplicatedTable.TAGS.spec
        with store.transaction(source=SYNC_SOURCE):
            spec.apply(store, remote_op(OperationType.CREATE, "t1", {"name": "a"}, timestamp=1000))
            spec.apply(store, remote_op(OperationType.UPDATE, "t1", {"name": "b"}, timestamp=2000))

        row = store.get("tags", "t1")
        assert row["name"] == "b"
        assert row["id"] == "t1"

    def test_stale_update_is_skipped(self, store):
        """Test that an older operation does not overwrite a newer row."""
        spec = ReplicatedTable.TAGS.spec
        store.put("tags", "t1", {"id": "t1", "name": "local"})

        with store.transaction(source=SYNC_SOURCE):
            applied = spec.apply(store, remote_op(OperationType.UPDATE, "t1", {"name": "old"}, timestamp=1))

        assert applied is False
        assert store.get("tags", "t1")["name"] == "local"

    def test_server_timestamp_wins_over_client_timestamp(self, store):
        """Test that the server timestamp is used for staleness when present."""
        spec = ReplicatedTable.TAGS.spec
        with store.transaction(source=SYNC_SOURCE):
            store.put("tags", "t1", {"id": "t1", "name": "a", "updatedAt": 5000})
            applied = spec.apply(
                store,
                remote_op(OperationType.UPDATE, "t1", {"name": "b"}, timestamp=1, server_timestamp=6000),
            )

        assert applied is True
        assert store.get("tags", "t1")["name"] == "b"

    def test_delete_with_tombstone(self, store):
        """Test that a delete carrying a tombstone keeps it."""
        spec = ReplicatedTable.LINKS.spec
        with store.transaction(source=SYNC_SOURCE):
            spec.apply(store, remote_op(OperationType.CREATE, "l1", {"url": "x"}, table="links"))
            spec.apply(
                store,
                remote_op(OperationType.DELETE, "l1", {"id": "l1", "deletedAt": 99}, table="links"),
            )

        assert store.get("links", "l1")["deletedAt"] == 99
        assert spec.live_rows(store) == []

    def test_delete_without_payload_removes_row(self, store):
        """Test that a bare delete removes the row."""
        spec = ReplicatedTable.LINKS.spec
        with store.transaction(source=SYNC_SOURCE):
            spec.apply(store, remote_op(OperationType.CREATE, "l1", {"url": "x"}, table="links"))
            spec.apply(store, remote_op(OperationType.DELETE, "l1", None, table="links"))

        assert store.get("links", "l1") is None

    def test_non_row_payload_is_ignored(self, store):
        """Test that a create without a row payload changes nothing."""
        spec = ReplicatedTable.TAGS.spec
        with store.transaction(source=SYNC_SOURCE):
            assert spec.apply(store, remote_op(OperationType.CREATE, "t1", "oops")) is False

        assert store.get("tags", "t1") is None

    def test_live_rows_exclude_tombstones(self, store):
        """Test listing rows for re-publication."""
        spec = ReplicatedTable.TAGS.spec
        spec.put(store, {"id": "a"})
        spec.put(store, {"id": "b"})
        spec.delete(store, "b")

        assert [key for key, _ in spec.live_rows(store)] == ["a"]
        assert len(spec.read_all(store)) == 2
