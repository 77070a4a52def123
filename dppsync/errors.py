"""Exception types raised by the sync stack."""


class SyncError(Exception):
    """Base class for all sync failures."""

    retryable: bool = False


class ConfigurationError(SyncError):
    """Required configuration (server URL, key, spreadsheet) is missing."""


class EncryptionKeyMissingError(ConfigurationError):
    """No encryption key is stored; syncing plaintext is never allowed."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Encryption key missing: generate or import a sync key "
            "before pushing or pulling"
        )


class InvalidKeyError(SyncError):
    """A key string could not be imported or failed verification."""


class DecryptionError(SyncError):
    """Ciphertext could not be authenticated with the given key."""

    def __init__(self, message: str, op_id: str | None = None):
        super().__init__(message)
        self.op_id = op_id


class MalformedResponseError(SyncError):
    """The server answered with a payload we cannot interpret."""


class TransportError(SyncError):
    """A push/pull/pending request failed at the transport level."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
