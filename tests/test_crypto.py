"""Tests for AES-GCM encryption of operations."""

import base64

import pytest

from dppsync.errors import DecryptionError, InvalidKeyError
from dppsync.operation import Operation, OperationType
from dppsync.store import LocalStore
from dppsync.sync.crypto import (
    KeyStore,
    SyncKey,
    decrypt,
    decrypt_operation,
    encrypt,
    encrypt_operation,
    export_key,
    fingerprint,
    generate_key,
    import_key,
    verify_key,
)


@pytest.fixture
def key():
    return generate_key()


class TestKeys:
    """Tests for key generation and import."""

    def test_export_import_round_trip(self, key):
        """Test sharing a key as base64."""
        exported = export_key(key)

        assert len(base64.b64decode(exported)) == 32
        assert import_key(exported) == key

    def test_import_rejects_bad_base64(self):
        """Test that garbage strings are rejected."""
        with pytest.raises(InvalidKeyError):
            import_key("not base64!!")

    def test_import_rejects_wrong_length(self):
        """Test that a 128-bit key is rejected."""
        with pytest.raises(InvalidKeyError):
            import_key(base64.b64encode(b"x" * 16).decode())

    def test_import_rejects_empty(self):
        """Test that empty input is rejected."""
        with pytest.raises(InvalidKeyError):
            import_key("")

    def test_fingerprint_is_stable(self, key):
        """Test the key fingerprint format."""
        fp = fingerprint(key)

        assert len(fp) == 16
        assert fp == fingerprint(SyncKey(key.raw))
        assert fp != fingerprint(generate_key())

    def test_verify_key(self, key):
        """Test verifying valid and invalid key strings."""
        assert verify_key(export_key(key)) is True
        assert verify_key("invalid") is False
        assert verify_key("") is False


class TestEncryption:
    """Tests for envelope encryption."""

    def test_round_trip(self, key):
        """Test decrypting what was encrypted."""
        data = {"id": "t1", "name": "ünïcode", "n": [1, 2, 3]}

        assert decrypt(encrypt(data, key), key) == data

    def test_fresh_iv_per_call(self, key):
        """Test that encrypting the same value twice differs."""
        first = encrypt({"a": 1}, key)
        second = encrypt({"a": 1}, key)

        assert first["iv"] != second["iv"]
        assert first["ciphertext"] != second["ciphertext"]
        assert len(base64.b64decode(first["iv"])) == 12

    def test_wrong_key_fails(self, key):
        """Test that another key cannot decrypt."""
        envelope = encrypt({"a": 1}, key)

        with pytest.raises(DecryptionError):
            decrypt(envelope, generate_key())

    def test_tampered_ciphertext_fails(self, key):
        """Test that modified ciphertext is detected."""
        envelope = encrypt({"a": 1}, key)
        raw = bytearray(base64.b64decode(envelope["ciphertext"]))
        raw[0] ^= 0xFF
        envelope["ciphertext"] = base64.b64encode(bytes(raw)).decode()

        with pytest.raises(DecryptionError):
            decrypt(envelope, key)

    @pytest.mark.parametrize("envelope", [None, {}, {"iv": "AAAA"}, {"iv": "!!", "ciphertext": "!!"}])
    def test_malformed_envelope_fails(self, key, envelope):
        """Test that malformed envelopes raise DecryptionError."""
        with pytest.raises(DecryptionError):
            decrypt(envelope, key)


class TestOperationSealing:
    """Tests for sealing whole operations."""

    def test_sealed_operation_hides_fields(self, key):
        """Test the wire form of an encrypted operation."""
        op = Operation.create("links", OperationType.UPDATE, "l1", {"url": "secret"}, client_id="c1")

        sealed = encrypt_operation(op, key)

        assert sealed.id == op.id
        assert sealed.client_id == "c1"
        assert sealed.table == "encrypted"
        assert sealed.type is OperationType.CREATE
        assert sealed.key == op.id
        assert set(sealed.payload) == {"ciphertext", "iv"}
        assert sealed.key_hash == fingerprint(key)
        assert "secret" not in str(sealed.to_dict())

    def test_open_sealed_operation(self, key):
        """Test restoring the original operation."""
        op = Operation.create("links", OperationType.DELETE, "l1", {"deletedAt": 5})

        opened = decrypt_operation(encrypt_operation(op, key), key)

        assert (opened.table, opened.type, opened.key, opened.payload) == (
            "links", OperationType.DELETE, "l1", {"deletedAt": 5},
        )
        assert opened.timestamp == op.timestamp

    def test_plaintext_passes_through(self, key):
        """Test that unsealed operations are returned unchanged."""
        op = Operation.create("tags", OperationType.CREATE, "t1", {"id": "t1"})

        assert decrypt_operation(op, key) is op

    def test_wrong_key_reports_operation_id(self, key):
        """Test that decryption failures carry the operation id."""
        sealed = encrypt_operation(Operation.create("tags", OperationType.CREATE, "t1", {}), key)

        with pytest.raises(DecryptionError) as exc_info:
            decrypt_operation(sealed, generate_key())

        assert exc_info.value.op_id == sealed.id


class TestKeyStore:
    """Tests for key persistence."""

    def test_save_load_clear(self, key):
        """Test storing the key in client settings."""
        store = LocalStore(":memory:")
        key_store = KeyStore(store)

        assert key_store.load() is None
        key_store.save(key)
        assert key_store.load() == key

        key_store.clear()
        assert key_store.load() is None
        store.close()
