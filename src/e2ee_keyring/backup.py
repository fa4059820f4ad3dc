"""
Password-protected export of a user's key records.

Blob layout (JSON, UTF-8):

    {
        "version": 1,
        "user_id": "...",          # checked before any key derivation
        "kdf": "scrypt",
        "kdf_params": {"n": 32768, "r": 8, "p": 1},
        "salt": "<base64>",
        "created_at": <unix time>,
        "record_count": <int>,
        "iv": "<base64>",
        "data": "<base64 ciphertext || tag>"
    }

The ciphertext is AES-256-GCM under an scrypt-derived key, with the version,
user id and salt as associated data, so a header edited to point at another
user fails to decrypt. Key records hold public keys and wrapped keys only;
private keys never enter a backup.
"""

from __future__ import annotations

import json
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import UUID

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .algorithms import Algorithm
from .config import MAX_SCRYPT_N, KeyringConfig
from .crypto import (
    AES_256_KEY_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedData,
    b64d,
    b64e,
    generate_random_bytes,
    pack_fields,
)
from .errors import BackupOwnershipError, DecryptionException, SerializationError
from .logger import get_logger
from .models import KeyRecord

logger = get_logger(__name__)

BACKUP_VERSION = 1
SALT_SIZE = 16
SCRYPT_R = 8
SCRYPT_P = 1


def record_to_dict(record: KeyRecord) -> Dict[str, Any]:
    def iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "record_id": str(record.record_id),
        "conversation_id": record.conversation_id,
        "user_id": record.user_id,
        "device_id": record.device_id,
        "device_fingerprint": record.device_fingerprint,
        "wrapped_key": b64e(record.wrapped_key) if record.wrapped_key is not None else None,
        "wrapped_key_hash": record.wrapped_key_hash,
        "public_key": record.public_key,
        "key_version": record.version,
        "algorithm": record.algorithm.value,
        "key_strength": record.key_strength,
        "is_active": record.is_active,
        "revoked_at": iso(record.revoked_at),
        "revocation_reason": record.revocation_reason,
        "created_at": iso(record.created_at),
        "deleted_at": iso(record.deleted_at),
    }


def record_from_dict(data: Mapping[str, Any]) -> KeyRecord:
    """
    Raises:
        SerializationError: If a field is missing or malformed
    """

    def dt(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None

    try:
        wrapped = data.get("wrapped_key")
        return KeyRecord(
            record_id=UUID(data["record_id"]),
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            device_id=data["device_id"],
            device_fingerprint=data["device_fingerprint"],
            wrapped_key=b64d(wrapped) if wrapped is not None else None,
            wrapped_key_hash=data.get("wrapped_key_hash") or "",
            public_key=data["public_key"],
            version=int(data["key_version"]),
            algorithm=Algorithm.parse(data["algorithm"]),
            key_strength=int(data["key_strength"]),
            is_active=bool(data["is_active"]),
            revoked_at=dt(data.get("revoked_at")),
            revocation_reason=data.get("revocation_reason"),
            created_at=dt(data["created_at"]),
            deleted_at=dt(data.get("deleted_at")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"Malformed key record: {type(e).__name__}")


def _derive_key(password: str, salt: bytes, n: int) -> bytes:
    return Scrypt(salt=salt, length=AES_256_KEY_SIZE, n=n, r=SCRYPT_R, p=SCRYPT_P).derive(
        password.encode("utf-8")
    )


def _aad(version: int, user_id: str, salt: bytes) -> bytes:
    return pack_fields(str(version).encode(), user_id.encode("utf-8"), salt)


def export_key_backup(
    records: Iterable[KeyRecord],
    user_id: str,
    password: str,
    config: Optional[KeyringConfig] = None,
) -> bytes:
    """
    Encrypt `user_id`'s records under `password`.

    Records of other users are left out.
    """
    if not password:
        raise ValueError("Backup password must not be empty")
    config = config or KeyringConfig()

    own = [record_to_dict(r) for r in records if r.user_id == user_id]
    salt = generate_random_bytes(SALT_SIZE)
    key = _derive_key(password, salt, config.backup_scrypt_n)
    payload = json.dumps({"records": own}, separators=(",", ":")).encode("utf-8")
    encrypted = AesGcmCipher.encrypt(key, payload, _aad(BACKUP_VERSION, user_id, salt))

    blob = {
        "version": BACKUP_VERSION,
        "user_id": user_id,
        "kdf": "scrypt",
        "kdf_params": {"n": config.backup_scrypt_n, "r": SCRYPT_R, "p": SCRYPT_P},
        "salt": b64e(salt),
        "created_at": int(time.time()),
        "record_count": len(own),
        "iv": b64e(encrypted.iv),
        "data": b64e(encrypted.ciphertext + encrypted.tag),
    }
    logger.info("key backup exported user=%s records=%d", user_id, len(own))
    return json.dumps(blob).encode("utf-8")


def read_backup_header(blob: bytes) -> Dict[str, Any]:
    """
    Parse the cleartext part of a backup.

    Raises:
        SerializationError: If the blob is not a backup of a known version
    """
    try:
        header = json.loads(blob)
    except (TypeError, ValueError, UnicodeDecodeError):
        raise SerializationError("Backup is not valid JSON")
    if not isinstance(header, dict):
        raise SerializationError("Backup is not a JSON object")
    if header.get("version") != BACKUP_VERSION or header.get("kdf") != "scrypt":
        raise SerializationError("Unsupported backup version or KDF")
    for name in ("user_id", "salt", "iv", "data", "kdf_params"):
        if name not in header:
            raise SerializationError(f"Backup is missing {name}")
    return header


def restore_key_backup(blob: bytes, user_id: str, password: str) -> List[KeyRecord]:
    """
    Decrypt a backup for `user_id`.

    Raises:
        BackupOwnershipError: If the backup belongs to another user
        DecryptionException: If the password is wrong or the blob was altered
        SerializationError: If the blob is malformed
    """
    header = read_backup_header(blob)
    if header["user_id"] != user_id:
        logger.warning(
            "cross-user backup restore rejected owner=%s requester=%s",
            header["user_id"], user_id,
        )
        raise BackupOwnershipError("Backup belongs to a different user")

    try:
        salt = b64d(header["salt"])
        iv = b64d(header["iv"])
        sealed = b64d(header["data"])
        n = int(header["kdf_params"]["n"])
    except (KeyError, TypeError, ValueError):
        raise SerializationError("Malformed backup header")
    if not 2 <= n <= MAX_SCRYPT_N:
        raise SerializationError("Invalid KDF parameters")
    if len(sealed) < TAG_SIZE:
        raise DecryptionException()

    try:
        key = _derive_key(password, salt, n)
    except (ValueError, TypeError):
        raise SerializationError("Invalid KDF parameters")
    plaintext = AesGcmCipher.decrypt(
        key,
        EncryptedData(iv=iv, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:]),
        _aad(BACKUP_VERSION, user_id, salt),
    )

    try:
        entries = json.loads(plaintext)["records"]
    except (KeyError, TypeError, ValueError):
        raise SerializationError("Malformed backup payload")
    records = [record_from_dict(entry) for entry in entries]
    if any(r.user_id != user_id for r in records):
        raise BackupOwnershipError("Backup contains records of a different user")

    logger.info("key backup restored user=%s records=%d", user_id, len(records))
    return records
