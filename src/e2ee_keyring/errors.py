"""
Exception classes for key management and message cryptography.

Cryptographic failures carry generic messages only. Callers must not rely on
the message text to tell tampering apart from a wrong key.
"""

from __future__ import annotations


class KeyringError(Exception):
    """Base exception for all keyring operations."""

    pass


class KeyGenerationError(KeyringError):
    """Entropy source or algorithm failure while creating key material."""

    pass


class EncryptionError(KeyringError):
    """Sealing or wrapping failed (malformed key, unsupported algorithm)."""

    pass


class DecryptionException(KeyringError):
    """Opening or unwrapping failed (wrong key, tampering, corruption)."""

    def __init__(self, message: str = "Decryption failed") -> None:
        super().__init__(message)


class ConflictError(KeyringError):
    """A write would leave two active records for the same key tuple."""

    pass


class RateLimitException(KeyringError):
    """Scheduled rotation exceeded the allowed frequency."""

    def __init__(self, message: str, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NegotiationError(KeyringError):
    """No algorithm is supported by every participant device."""

    pass


class KeyNotFoundError(KeyringError):
    """Key record or device not found in storage."""

    pass


class InvalidKeyStateError(KeyringError):
    """Key record is in an invalid state for the requested operation."""

    pass


class StorageError(KeyringError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


class SerializationError(KeyringError):
    """Serialization or deserialization error."""

    pass


class ConfigError(KeyringError):
    """Configuration error."""

    pass


class MigrationNotReadyError(KeyringError):
    """Legacy algorithm deactivation requested before the fleet is ready."""

    pass


class BackupOwnershipError(KeyringError):
    """Backup blob belongs to a different user than the one restoring it."""

    pass
