"""
Symmetric cryptographic primitives.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- EncryptedData: Sealed payload with IV, ciphertext and authentication tag
- AesGcmCipher: AES-256-GCM seal/open operations
- keyed_integrity / content_hash: HMAC and SHA-256 helpers for tamper
  detection and deduplication, independent of the AEAD tag
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import struct
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import DecryptionException, EncryptionError, KeyGenerationError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
IV_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)

_INTEGRITY_INFO = b"e2ee-keyring/integrity/v1"

KeyLike = Union["SecureKey", bytes, bytearray]


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise EncryptionError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(generate_symmetric_key())

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecureKey):
            return hmac.compare_digest(self._bytes, other._bytes)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(content_hash(bytes(self._bytes)))

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass
class EncryptedData:
    """
    Sealed payload container.

    `ciphertext` excludes the authentication tag, which is carried separately
    so the envelope can report it on its own.
    """

    iv: bytes  # 12 bytes
    ciphertext: bytes
    tag: bytes  # 16 bytes

    def to_aead_blob(self) -> bytes:
        """Industry-standard AEAD blob: iv || ciphertext || tag."""
        return self.iv + self.ciphertext + self.tag

    @classmethod
    def from_aead_blob(cls, blob: bytes) -> EncryptedData:
        """
        Parse from AEAD blob format: iv || ciphertext || tag.

        Raises:
            DecryptionException: If blob is too small
        """
        if len(blob) < IV_SIZE + TAG_SIZE:
            raise DecryptionException("Malformed sealed data")
        return cls(
            iv=blob[:IV_SIZE],
            ciphertext=blob[IV_SIZE:-TAG_SIZE],
            tag=blob[-TAG_SIZE:],
        )


def _key_bytes(key: KeyLike) -> bytes:
    if isinstance(key, SecureKey):
        return key.as_bytes()
    if isinstance(key, (bytes, bytearray)):
        return bytes(key)
    raise EncryptionError("Key must be SecureKey, bytes or bytearray")


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Every call to `encrypt` draws a fresh IV from the CSPRNG; no counter state
    is kept between calls or across restarts.
    """

    @staticmethod
    def encrypt(
        key: KeyLike,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> EncryptedData:
        """
        Encrypt plaintext with AES-256-GCM.

        Raises:
            EncryptionError: If key size is invalid or encryption fails
        """
        raw = _key_bytes(key)
        if len(raw) != AES_256_KEY_SIZE:
            raise EncryptionError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(raw)}"
            )
        if not isinstance(plaintext, (bytes, bytearray)):
            raise EncryptionError("Plaintext must be bytes")

        iv = generate_random_bytes(IV_SIZE)
        try:
            sealed = AESGCM(raw).encrypt(iv, bytes(plaintext), aad)
        except Exception as e:
            raise EncryptionError(f"Encryption error: {type(e).__name__}")

        return EncryptedData(iv=iv, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])

    @staticmethod
    def decrypt(
        key: KeyLike,
        encrypted: EncryptedData,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt and verify AES-256-GCM ciphertext.

        Raises:
            DecryptionException: On any failure, with a generic message
        """
        try:
            raw = _key_bytes(key)
        except EncryptionError:
            raise DecryptionException()
        if (
            len(raw) != AES_256_KEY_SIZE
            or len(encrypted.iv) != IV_SIZE
            or len(encrypted.tag) != TAG_SIZE
        ):
            raise DecryptionException()

        try:
            return AESGCM(raw).decrypt(
                encrypted.iv, encrypted.ciphertext + encrypted.tag, aad
            )
        except (InvalidTag, ValueError, TypeError):
            # Generic error to prevent oracle attacks
            raise DecryptionException()

    open = decrypt


def generate_random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Raises:
        KeyGenerationError: If the system entropy source is unavailable
    """
    try:
        return secrets.token_bytes(length)
    except (OSError, NotImplementedError) as e:
        raise KeyGenerationError(f"Entropy source unavailable: {e}")


def generate_symmetric_key() -> bytes:
    """Generate a random 256-bit symmetric key."""
    return generate_random_bytes(AES_256_KEY_SIZE)


def seal(
    plaintext: bytes, symmetric_key: KeyLike, aad: Optional[bytes] = None
) -> Tuple[bytes, bytes, bytes]:
    """Seal plaintext, returning (ciphertext, iv, tag)."""
    sealed = AesGcmCipher.encrypt(symmetric_key, plaintext, aad)
    return sealed.ciphertext, sealed.iv, sealed.tag


def open_sealed(
    ciphertext: bytes,
    iv: bytes,
    tag: bytes,
    symmetric_key: KeyLike,
    aad: Optional[bytes] = None,
) -> bytes:
    """Inverse of `seal`. The tag is verified before plaintext is returned."""
    return AesGcmCipher.decrypt(
        symmetric_key, EncryptedData(iv=iv, ciphertext=ciphertext, tag=tag), aad
    )


def _integrity_subkey(symmetric_key: KeyLike) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_INTEGRITY_INFO)
    return hkdf.derive(_key_bytes(symmetric_key))


def keyed_integrity(data: bytes, symmetric_key: KeyLike) -> bytes:
    """HMAC-SHA256 of `data` under a subkey derived from `symmetric_key`."""
    return hmac.new(_integrity_subkey(symmetric_key), data, hashlib.sha256).digest()


def verify_integrity(data: bytes, tag: bytes, symmetric_key: KeyLike) -> bool:
    """Constant-time check of a `keyed_integrity` tag."""
    return hmac.compare_digest(keyed_integrity(data, symmetric_key), tag)


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest used for deduplication and forensic records."""
    return hashlib.sha256(data).hexdigest()


def pack_fields(*parts: bytes) -> bytes:
    """Length-prefixed concatenation (4-byte big-endian length per part)."""
    return b"".join(struct.pack(">I", len(p)) + p for p in parts)


def unpack_fields(blob: bytes, count: int) -> List[bytes]:
    """Inverse of `pack_fields`. Raises ValueError on truncation or trailing data."""
    parts = []
    offset = 0
    for _ in range(count):
        if offset + 4 > len(blob):
            raise ValueError("truncated")
        (size,) = struct.unpack_from(">I", blob, offset)
        offset += 4
        if offset + size > len(blob):
            raise ValueError("truncated")
        parts.append(blob[offset : offset + size])
        offset += size
    if offset != len(blob):
        raise ValueError("trailing data")
    return parts


def b64e(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def b64d(encoded: str) -> bytes:
    """Strict base64 decode; raises ValueError on malformed input."""
    try:
        return base64.b64decode(encoded.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise ValueError(f"Invalid base64: {e}")
