"""End-to-end encryption of operations with AES-256-GCM.

The relay only ever sees sealed envelopes: the table, type, key and
payload of an operation are encrypted together and the operation is
shipped as an opaque ``encrypted`` record.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import DecryptionError, InvalidKeyError
from ..operation import ENCRYPTED_TABLE, Operation, OperationType
from ..store.local_store import LocalStore

logger = logging.getLogger(__name__)

KEY_BITS = 256
IV_BYTES = 12
KEY_SETTING = "sync_encryption_key"

_VERIFY_PAYLOAD = {"test": "verification"}


class SyncKey:
    """A symmetric AES-GCM key together with its raw bytes."""

    def __init__(self, raw: bytes):
        if len(raw) * 8 != KEY_BITS:
            raise InvalidKeyError(f"Sync key must be {KEY_BITS} bits, got {len(raw) * 8}")
        self._raw = raw
        self._aead = AESGCM(raw)

    @property
    def raw(self) -> bytes:
        return self._raw

    @property
    def aead(self) -> AESGCM:
        return self._aead

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SyncKey) and other._raw == self._raw

    def __hash__(self) -> int:
        return hash(self._raw)

    def __repr__(self) -> str:
        return f"SyncKey(fingerprint={fingerprint(self)})"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64_decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def generate_key() -> SyncKey:
    """Generate a new random 256-bit key."""
    return SyncKey(AESGCM.generate_key(bit_length=KEY_BITS))


def export_key(key: SyncKey) -> str:
    """Export a key as a base64 string for sharing between devices."""
    return _b64(key.raw)


def import_key(key_string: str) -> SyncKey:
    """Import a key from its base64 string form.

    Raises:
        InvalidKeyError: If the string is not base64 or has the wrong length.
    """
    if not isinstance(key_string, str) or not key_string.strip():
        raise InvalidKeyError("Sync key is empty")
    try:
        raw = _b64_decode(key_string.strip())
    except (binascii.Error, ValueError, UnicodeEncodeError) as e:
        raise InvalidKeyError(f"Sync key is not valid base64: {e}") from e
    return SyncKey(raw)


def fingerprint(key: SyncKey) -> str:
    """Short hash identifying the key generation (first 8 bytes of SHA-256)."""
    return hashlib.sha256(key.raw).digest()[:8].hex()


def encrypt(data: Any, key: SyncKey) -> dict[str, str]:
    """Encrypt JSON-serializable data under a fresh random IV.

    Returns:
        Envelope ``{"ciphertext": ..., "iv": ...}`` with base64 values.
    """
    iv = os.urandom(IV_BYTES)
    plaintext = json.dumps(data).encode("utf-8")
    ciphertext = key.aead.encrypt(iv, plaintext, None)
    return {"ciphertext": _b64(ciphertext), "iv": _b64(iv)}


def decrypt(envelope: dict[str, Any], key: SyncKey) -> Any:
    """Decrypt an envelope produced by :func:`encrypt`.

    Raises:
        DecryptionError: On tampered ciphertext, wrong key or malformed envelope.
    """
    if not isinstance(envelope, dict):
        raise DecryptionError("Envelope must be an object")
    try:
        iv = _b64_decode(envelope["iv"])
        ciphertext = _b64_decode(envelope["ciphertext"])
    except (KeyError, TypeError, AttributeError, binascii.Error, ValueError) as e:
        raise DecryptionError(f"Malformed envelope: {e}") from e

    try:
        plaintext = key.aead.decrypt(iv, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed: wrong key or tampered data") from e
    except ValueError as e:
        raise DecryptionError(f"Invalid envelope: {e}") from e

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"Decrypted payload is not JSON: {e}") from e


def verify_key(key_string: str) -> bool:
    """Check that a key string imports and round-trips a test payload."""
    try:
        key = import_key(key_string)
        return decrypt(encrypt(_VERIFY_PAYLOAD, key), key) == _VERIFY_PAYLOAD
    except (InvalidKeyError, DecryptionError):
        return False


def encrypt_operation(op: Operation, key: SyncKey) -> Operation:
    """Seal an operation for transport.

    The sensitive fields travel inside the envelope; on the wire the
    operation is an ``encrypted`` create keyed by its own id.
    """
    sealed = encrypt(
        {
            "table": op.table,
            "type": op.type.value,
            "key": op.key,
            "payload": op.payload,
        },
        key,
    )
    return op.evolve(
        table=ENCRYPTED_TABLE,
        type=OperationType.CREATE,
        key=op.id,
        payload=sealed,
        key_hash=fingerprint(key),
    )


def decrypt_operation(op: Operation, key: SyncKey) -> Operation:
    """Open a sealed operation; plaintext operations are returned unchanged.

    Raises:
        DecryptionError: If the envelope cannot be opened with ``key``.
    """
    if not op.is_encrypted:
        return op

    try:
        inner = decrypt(op.payload, key)
    except DecryptionError as e:
        raise DecryptionError(f"Cannot decrypt operation {op.id}: {e}", op_id=op.id) from e

    try:
        return op.evolve(
            table=str(inner["table"]),
            type=OperationType(inner["type"]),
            key=str(inner["key"]),
            payload=inner.get("payload"),
        )
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise DecryptionError(f"Decrypted operation {op.id} is malformed: {e}", op_id=op.id) from e


class KeyStore:
    """Persists the exported key string in the local settings table."""

    def __init__(self, store: LocalStore):
        self.store = store

    def save(self, key: SyncKey) -> None:
        self.store.set_setting(KEY_SETTING, export_key(key))
        logger.info(f"Stored sync key {fingerprint(key)}")

    def load(self) -> SyncKey | None:
        """Load the configured key, or None if no key is stored."""
        key_string = self.store.get_setting(KEY_SETTING)
        if not key_string:
            return None
        return import_key(key_string)

    def clear(self) -> None:
        self.store.delete_setting(KEY_SETTING)
