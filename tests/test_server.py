"""Tests for the relay server."""

import threading

import pytest

from dppsync.config import ServerConfig
from dppsync.operation import Operation, OperationType

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


from fastapi.testclient import TestClient
from dppsync.server import RelayStore, create_app


@pytest.fixture
def relay_store():
    """Create an in-memory RelayStore."""
    store = RelayStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def client(relay_store):
    """Create a test client without access control."""
    return TestClient(create_app(ServerConfig(), relay_store))


def wire_op(op_id, client_id="client-a", key="k"):
    return {
        "id": op_id,
        "clientId": client_id,
        "table": "encrypted",
        "type": "create",
        "key": key,
        "payload": {"ciphertext": "Y2lwaGVy", "iv": "aXY="},
        "timestamp": 1000,
        "keyHash": "00ff00ff00ff00ff",
    }


class TestRelayStore:
    """Tests for RelayStore."""

    def test_push_assigns_increasing_sequence(self, relay_store):
        """Test that sequence numbers follow receipt order."""
        ops = [Operation.create("encrypted", OperationType.CREATE, str(i), None) for i in range(3)]

        acks, cursor = relay_store.push(ops, "client-a")

        assert [ack["seq"] for ack in acks] == [1, 2, 3]
        assert cursor == 3

    def test_duplicate_push_is_idempotent(self, relay_store):
        """Test at-least-once delivery: resubmitting keeps the original sequence."""
        op = Operation.create("encrypted", OperationType.CREATE, "k", {"x": 1})
        relay_store.push([op], "client-a")
        other = Operation.create("encrypted", OperationType.CREATE, "k2", {"x": 2})
        relay_store.push([other], "client-b")

        acks, cursor = relay_store.push([op], "client-a")

        assert acks == [{"id": op.id, "seq": 1}]
        assert cursor == 1
        assert relay_store.get_stats()["total_operations"] == 2

    def test_empty_push(self, relay_store):
        """Test pushing nothing."""
        assert relay_store.push([], "client-a") == ([], None)

    def test_pull_excludes_client_and_limits(self, relay_store):
        """Test pull filtering and ordering."""
        mine = Operation.create("encrypted", OperationType.CREATE, "a", None, client_id="client-a")
        theirs = [
            Operation.create("encrypted", OperationType.CREATE, str(i), None, client_id="client-b")
            for i in range(3)
        ]
        relay_store.push([mine])
        relay_store.push(theirs)

        pulled = relay_store.pull(0, exclude_client_id="client-a", limit=2)

        assert [op.id for op in pulled] == [theirs[0].id, theirs[1].id]
        assert [op.server_seq for op in pulled] == [2, 3]
        assert relay_store.count_pending(0, exclude_client_id="client-a") == 3
        assert relay_store.count_pending(2) == 2

    def test_concurrent_pushes_get_unique_sequences(self, tmp_path):
        """Test that pushes from several threads are linearized."""
        store = RelayStore(tmp_path / "relay.db")
        store.connect()

        def push_batch(n):
            ops = [
                Operation.create("encrypted", OperationType.CREATE, f"{n}-{i}", None, client_id=f"c{n}")
                for i in range(10)
            ]
            store.push(ops)

        threads = [threading.Thread(target=push_batch, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        seqs = [op.server_seq for op in store.pull(0, limit=100)]
        assert seqs == list(range(1, 41))
        store.close()


class TestSyncApi:
    """Tests for the HTTP API."""

    def test_health(self, client):
        """Test the health endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_push_then_pull_round_trip(self, client):
        """Test the 3-op scenario from another client's point of view."""
        response = client.post(
            "/api/sync/push",
            json={"ops": [wire_op(f"op-{i}") for i in range(3)], "clientId": "client-a"},
        )

        data = response.json()
        assert data["success"] is True
        assert data["count"] == 3
        assert data["cursor"] == 3
        assert [ack["id"] for ack in data["acks"]] == ["op-0", "op-1", "op-2"]

        pulled = client.get("/api/sync/pull", params={"cursor": 0, "clientId": "client-b"}).json()

        assert [op["id"] for op in pulled["ops"]] == ["op-0", "op-1", "op-2"]
        assert pulled["cursor"] == 3
        assert "serverSeq" not in pulled["ops"][0]
        assert pulled["ops"][0]["serverTimestamp"] > 0
        assert pulled["ops"][0]["keyHash"] == "00ff00ff00ff00ff"
        assert pulled["ops"][0]["payload"] == {"ciphertext": "Y2lwaGVy", "iv": "aXY="}

    def test_pull_excludes_own_ops(self, client):
        """Test loop prevention by clientId."""
        client.post("/api/sync/push", json={"ops": [wire_op("op-1")], "clientId": "client-a"})

        pulled = client.get("/api/sync/pull", params={"cursor": 0, "clientId": "client-a"}).json()

        assert pulled == {"ops": [], "cursor": 0}

    def test_pull_empty_keeps_cursor(self, client):
        """Test that an empty pull echoes the cursor."""
        pulled = client.get("/api/sync/pull", params={"cursor": 12}).json()

        assert pulled == {"ops": [], "cursor": 12}

    def test_pull_limit(self, client):
        """Test the optional page size."""
        client.post("/api/sync/push", json={"ops": [wire_op(f"op-{i}") for i in range(5)]})

        pulled = client.get("/api/sync/pull", params={"cursor": 1, "limit": 2}).json()

        assert [op["id"] for op in pulled["ops"]] == ["op-1", "op-2"]
        assert pulled["cursor"] == 3

    def test_client_id_from_header(self, client):
        """Test that X-Client-ID identifies the author when the body omits it."""
        op = wire_op("op-1")
        del op["clientId"]
        client.post("/api/sync/push", json={"ops": [op]}, headers={"X-Client-ID": "client-h"})

        pulled = client.get("/api/sync/pull", params={"cursor": 0, "clientId": "client-h"}).json()
        assert pulled["ops"] == []

    def test_pending(self, client):
        """Test the pending count endpoint."""
        client.post("/api/sync/push", json={"ops": [wire_op(f"op-{i}") for i in range(4)]})

        response = client.get("/api/sync/pending", params={"cursor": 1})

        assert response.json() == {"count": 3}

    @pytest.mark.parametrize(
        "body",
        [
            {"ops": "nope"},
            {"ops": [{"id": "x"}]},
            {"ops": [{**wire_op("x"), "type": "upsert"}]},
        ],
    )
    def test_invalid_push_is_400(self, client, body):
        """Test validation errors."""
        response = client.post("/api/sync/push", json=body)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid request"}

    def test_non_json_push_is_400(self, client):
        """Test an unparseable request body."""
        response = client.post(
            "/api/sync/push", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400


class TestAccessToken:
    """Tests for the optional access token."""

    @pytest.fixture
    def secured(self, relay_store):
        return TestClient(create_app(ServerConfig(access_token="s3cret"), relay_store))

    def test_missing_token_is_rejected(self, secured):
        """Test that API calls without the token get 401."""
        response = secured.get("/api/sync/pending")

        assert response.status_code == 401

    def test_wrong_token_is_rejected(self, secured):
        """Test that a mismatched token gets 401."""
        response = secured.get("/api/sync/pending", headers={"X-Access-Token": "nope"})

        assert response.status_code == 401

    def test_valid_token_is_accepted(self, secured):
        """Test that the configured token unlocks the API."""
        response = secured.get("/api/sync/pending", headers={"X-Access-Token": "s3cret"})

        assert response.status_code == 200
        assert response.json() == {"count": 0}

    def test_health_is_public(self, secured):
        """Test that the health check needs no token."""
        assert secured.get("/health").status_code == 200
