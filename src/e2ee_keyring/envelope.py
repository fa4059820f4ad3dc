"""
Encrypted message envelope codec.

This module provides:
- EncryptedEnvelope: Wire/storage form of one encrypted message body
- encode_envelope: Seal a message (and optional extra fields) into an envelope
- decode_envelope / decode_extra_fields: Verify and open an envelope

Wire format (JSON-compatible):

    {
      "data": <base64 ciphertext || AEAD tag>,
      "iv": <base64 IV>,
      "hmac": <base64 integrity tag>,
      "timestamp": <unix seconds>,
      "nonce": <hex, 16 random bytes>,
      "extra": {<name>: {"data": ..., "iv": ...}}   # optional
    }

The `hmac` covers data, iv, nonce, timestamp and every extra field, so
re-stamping an old envelope with a new timestamp is detected as tampering.
"""

from __future__ import annotations

import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .crypto import (
    IV_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedData,
    KeyLike,
    b64d,
    b64e,
    keyed_integrity,
    pack_fields,
    verify_integrity,
)
from .errors import DecryptionException, SerializationError

ENVELOPE_NONCE_SIZE: int = 16
_INTEGRITY_DOMAIN = b"e2ee-keyring/envelope/v1"

FieldValue = Union[bytes, str]

_ENVELOPE_KEYS = frozenset({"data", "iv", "hmac", "timestamp", "nonce", "extra"})
_SEALED_FIELD_KEYS = frozenset({"data", "iv"})


def _to_bytes(value: FieldValue) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise SerializationError(f"Unsupported payload type: {type(value).__name__}")


@dataclass
class SealedField:
    """An extra field sealed with the message key under its own IV."""

    data: str  # base64 ciphertext || tag
    iv: str  # base64

    def to_dict(self) -> Dict[str, str]:
        return {"data": self.data, "iv": self.iv}


@dataclass
class EncryptedEnvelope:
    """Encrypted message body with integrity tag and forensic metadata."""

    data: str
    iv: str
    hmac: str
    timestamp: int
    nonce: str
    extra_fields: Dict[str, SealedField] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "data": self.data,
            "iv": self.iv,
            "hmac": self.hmac,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
        }
        if self.extra_fields:
            out["extra"] = {
                name: sealed.to_dict() for name, sealed in self.extra_fields.items()
            }
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EncryptedEnvelope:
        """
        Rebuild an envelope from its dict form.

        Raises:
            DecryptionException: If fields are missing, unknown or mistyped
        """
        if not set(data) <= _ENVELOPE_KEYS:
            raise DecryptionException("Malformed envelope")
        try:
            extra = {}
            for name, sealed in dict(data.get("extra") or {}).items():
                if set(sealed) != _SEALED_FIELD_KEYS:
                    raise ValueError("unexpected sealed field keys")
                extra[str(name)] = SealedField(data=str(sealed["data"]), iv=str(sealed["iv"]))
            timestamp = data["timestamp"]
            if isinstance(timestamp, bool) or not isinstance(timestamp, int):
                raise TypeError("timestamp must be an integer")
            envelope = cls(
                data=data["data"],
                iv=data["iv"],
                hmac=data["hmac"],
                timestamp=timestamp,
                nonce=data["nonce"],
                extra_fields=extra,
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            raise DecryptionException("Malformed envelope")
        for value in (envelope.data, envelope.iv, envelope.hmac, envelope.nonce):
            if not isinstance(value, str):
                raise DecryptionException("Malformed envelope")
        return envelope

    def to_json(self) -> str:
        """Serialize envelope to JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, json_str: str) -> EncryptedEnvelope:
        """Deserialize envelope from JSON string."""
        try:
            data = json.loads(json_str)
        except (TypeError, ValueError):
            raise DecryptionException("Malformed envelope")
        if not isinstance(data, dict):
            raise DecryptionException("Malformed envelope")
        return cls.from_dict(data)


def _seal_field(value: FieldValue, key: KeyLike) -> Tuple[bytes, bytes]:
    sealed = AesGcmCipher.encrypt(key, _to_bytes(value))
    return sealed.ciphertext + sealed.tag, sealed.iv


def _integrity_input(
    data: bytes,
    iv: bytes,
    nonce: bytes,
    timestamp: int,
    extra: Mapping[str, Tuple[bytes, bytes]],
) -> bytes:
    parts = [_INTEGRITY_DOMAIN, data, iv, nonce, str(timestamp).encode("ascii")]
    for name in sorted(extra):
        field_data, field_iv = extra[name]
        parts.extend([name.encode("utf-8"), field_data, field_iv])
    return pack_fields(*parts)


def encode_envelope(
    plaintext: FieldValue,
    symmetric_key: KeyLike,
    extra_fields: Optional[Mapping[str, FieldValue]] = None,
    timestamp: Optional[int] = None,
) -> EncryptedEnvelope:
    """
    Seal a message body into an envelope.

    Each extra field (voice transcript, waveform, file metadata, ...) is sealed
    independently with the same key and its own IV.

    Raises:
        EncryptionError: If the key is unusable
    """
    data, iv = _seal_field(plaintext, symmetric_key)
    sealed_extra = {
        name: _seal_field(value, symmetric_key)
        for name, value in (extra_fields or {}).items()
    }
    ts = int(time.time()) if timestamp is None else int(timestamp)
    nonce = secrets.token_bytes(ENVELOPE_NONCE_SIZE)

    tag = keyed_integrity(
        _integrity_input(data, iv, nonce, ts, sealed_extra), symmetric_key
    )

    return EncryptedEnvelope(
        data=b64e(data),
        iv=b64e(iv),
        hmac=b64e(tag),
        timestamp=ts,
        nonce=nonce.hex(),
        extra_fields={
            name: SealedField(data=b64e(d), iv=b64e(i))
            for name, (d, i) in sealed_extra.items()
        },
    )


def _verified_parts(
    envelope: EncryptedEnvelope, symmetric_key: KeyLike
) -> Tuple[bytes, bytes, Dict[str, Tuple[bytes, bytes]]]:
    """Decode every field and check the integrity tag before anything is opened."""
    try:
        data = b64d(envelope.data)
        iv = b64d(envelope.iv)
        tag = b64d(envelope.hmac)
        nonce = bytes.fromhex(envelope.nonce)
        extra = {
            name: (b64d(sealed.data), b64d(sealed.iv))
            for name, sealed in envelope.extra_fields.items()
        }
        ok = verify_integrity(
            _integrity_input(data, iv, nonce, int(envelope.timestamp), extra),
            tag,
            symmetric_key,
        )
    except Exception:
        raise DecryptionException()
    if not ok:
        raise DecryptionException()
    return data, iv, extra


def _open_field(data: bytes, iv: bytes, key: KeyLike) -> bytes:
    if len(iv) != IV_SIZE or len(data) < TAG_SIZE:
        raise DecryptionException()
    return AesGcmCipher.decrypt(
        key, EncryptedData(iv=iv, ciphertext=data[:-TAG_SIZE], tag=data[-TAG_SIZE:])
    )


def decode_envelope(envelope: EncryptedEnvelope, symmetric_key: KeyLike) -> bytes:
    """
    Verify the envelope's integrity tag, then open its body.

    Raises:
        DecryptionException: On any failure; no partial plaintext is returned
    """
    data, iv, _ = _verified_parts(envelope, symmetric_key)
    return _open_field(data, iv, symmetric_key)


def decode_extra_fields(
    envelope: EncryptedEnvelope, symmetric_key: KeyLike
) -> Dict[str, bytes]:
    """Verify the envelope and open all of its extra fields."""
    _, _, extra = _verified_parts(envelope, symmetric_key)
    return {name: _open_field(d, i, symmetric_key) for name, (d, i) in extra.items()}
