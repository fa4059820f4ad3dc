"""
Key record lifecycle.

States: active -> inactive (superseded) and active -> revoked (terminal).
Soft deletion may follow either once key material must go.

Rotation keeps the superseded record and its wrapped key so ciphertext sealed
before the rotation stays readable; it never re-encrypts history. New
messages use only the new key, so the old key cannot open them.

Every transition that installs an active record goes through the repository's
atomic create or compare-and-swap, so the one-active-per-tuple check and the
write cannot interleave with a concurrent transition.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .asymmetric import fingerprint, public_key_strength, unwrap_symmetric_key, validate_public_key
from .errors import ConflictError, EncryptionError, InvalidKeyStateError
from .events import EventSink, KeyEvent, KeyEventType, NullEventSink
from .logger import get_logger
from .models import Device, KeyRecord, KeyState
from .rate_limit import Clock, SystemClock
from .storage import KeyRepository, Revocation

logger = get_logger(__name__)


class KeyLifecycle:
    """State machine over key records stored in a `KeyRepository`."""

    def __init__(
        self,
        repository: KeyRepository,
        events: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._events = events or NullEventSink()
        self._clock = clock or SystemClock()

    @property
    def repository(self) -> KeyRepository:
        return self._repository

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock.now(), tz=timezone.utc)

    def _build(
        self,
        conversation_id: str,
        user_id: str,
        device_id: str,
        public_key: str,
        wrapped_key: bytes,
        version: int,
    ) -> KeyRecord:
        try:
            algorithm = validate_public_key(public_key)
        except EncryptionError:
            raise InvalidKeyStateError("Record public key is malformed")
        return KeyRecord(
            conversation_id=conversation_id,
            user_id=user_id,
            device_id=device_id,
            device_fingerprint=fingerprint(public_key),
            wrapped_key=wrapped_key,
            public_key=public_key,
            algorithm=algorithm,
            key_strength=public_key_strength(public_key),
            version=version,
            is_active=True,
            created_at=self._now(),
        )

    async def create(
        self,
        conversation_id: str,
        device: Device,
        wrapped_key: bytes,
        public_key: Optional[str] = None,
    ) -> KeyRecord:
        """
        Create the active record for a device's tuple.

        `public_key` defaults to the device's current key; pass another key
        when the device holds one keypair per algorithm.

        Raises:
            ConflictError: If the tuple already has an active record
        """
        public_key = public_key or device.public_key
        draft = self._build(
            conversation_id, device.user_id, device.device_id, public_key, wrapped_key, 0
        )
        draft.version = await self._repository.latest_version(draft.key_tuple) + 1

        record = await self._repository.create(draft)
        logger.info("key record created tuple=%s version=%d", record.key_tuple, record.version)
        self._events.emit(
            KeyEvent(
                KeyEventType.KEY_CREATED,
                conversation_id,
                {
                    "device_id": record.device_id,
                    "algorithm": record.algorithm.value,
                    "version": record.version,
                },
            )
        )
        return record

    def _require_current(self, record: KeyRecord) -> None:
        if record.state in (KeyState.REVOKED, KeyState.DELETED):
            raise InvalidKeyStateError(
                f"Record {record.record_id} is {record.state.value}"
            )
        if not record.is_active:
            raise ConflictError(f"Record {record.record_id} is not the active record")

    async def rotate(
        self,
        old_record: KeyRecord,
        wrapped_key: bytes,
        public_key: Optional[str] = None,
    ) -> KeyRecord:
        """
        Supersede `old_record` with a new active record at version + 1.

        Raises:
            ConflictError: If `old_record` is stale (another rotation won)
            InvalidKeyStateError: If `old_record` is revoked or deleted
        """
        self._require_current(old_record)
        replacement = self._build(
            old_record.conversation_id,
            old_record.user_id,
            old_record.device_id,
            public_key or old_record.public_key,
            wrapped_key,
            old_record.version + 1,
        )
        if replacement.algorithm is not old_record.algorithm:
            raise InvalidKeyStateError("Rotation cannot change a record's algorithm")

        new_record = await self._repository.compare_and_swap_active(old_record, replacement)
        logger.info(
            "key record rotated tuple=%s version=%d->%d",
            old_record.key_tuple, old_record.version, new_record.version,
        )
        self._events.emit(
            KeyEvent(
                KeyEventType.KEY_ROTATED,
                old_record.conversation_id,
                {
                    "device_id": old_record.device_id,
                    "algorithm": old_record.algorithm.value,
                    "old_version": old_record.version,
                    "new_version": new_record.version,
                },
            )
        )
        return new_record

    async def revoke(
        self,
        record: KeyRecord,
        reason: str,
        wrapped_key: Optional[bytes] = None,
        public_key: Optional[str] = None,
    ) -> Optional[KeyRecord]:
        """
        Revoke `record` now and, when `wrapped_key` is given, install its
        replacement in the same atomic step.

        Without `wrapped_key` the tuple is left with no active record; used
        when the device itself is being cut off.
        """
        self._require_current(record)
        replacement = None
        if wrapped_key is not None:
            replacement = self._build(
                record.conversation_id,
                record.user_id,
                record.device_id,
                public_key or record.public_key,
                wrapped_key,
                record.version + 1,
            )
        new_record = await self._repository.compare_and_swap_active(
            record, replacement, Revocation(reason=reason, at=self._now())
        )
        logger.warning(
            "key record revoked tuple=%s version=%d reason=%s replaced=%s",
            record.key_tuple, record.version, reason, new_record is not None,
        )
        self._events.emit(
            KeyEvent(
                KeyEventType.KEY_REVOKED,
                record.conversation_id,
                {
                    "device_id": record.device_id,
                    "algorithm": record.algorithm.value,
                    "version": record.version,
                    "reason": reason,
                    "replacement_version": new_record.version if new_record else None,
                },
            )
        )
        return new_record

    async def deactivate(self, record: KeyRecord) -> KeyRecord:
        """Retire an active record without replacement (legacy algorithm cut-off)."""
        if record.state is KeyState.DELETED:
            raise InvalidKeyStateError(f"Record {record.record_id} is deleted")
        return await self._repository.deactivate(record.record_id)

    async def soft_delete(self, record: KeyRecord) -> KeyRecord:
        return await self._repository.soft_delete(record.record_id)

    async def erase(self, record: KeyRecord) -> bool:
        """Hard delete for explicit data-erasure requests."""
        logger.warning("key record erased record_id=%s", record.record_id)
        return await self._repository.hard_delete(record.record_id)

    @staticmethod
    def unwrap(record: KeyRecord, private_key: str) -> bytes:
        """
        Recover the conversation key from a record on the owning device.

        Inactive records stay usable for old ciphertext; revoked and deleted
        records are not.
        """
        if record.state in (KeyState.REVOKED, KeyState.DELETED) or record.wrapped_key is None:
            raise InvalidKeyStateError(
                f"Record {record.record_id} is {record.state.value}"
            )
        return unwrap_symmetric_key(record.wrapped_key, private_key)
