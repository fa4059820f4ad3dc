"""
Fan-out of a conversation key to participant devices.

Distribution tolerates per-device failure: a device with a malformed or
untrusted key is skipped with a warning and the others still get their
records. Only storage failures abort the whole operation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Mapping, NamedTuple, Optional, Sequence

from .asymmetric import validate_public_key, wrap_symmetric_key
from .errors import (
    ConflictError,
    EncryptionError,
    InvalidKeyStateError,
    KeyNotFoundError,
)
from .events import EventSink, KeyEvent, KeyEventType, NullEventSink
from .lifecycle import KeyLifecycle
from .logger import get_logger
from .models import Device, KeyRecord, KeyTuple, TrustState

logger = get_logger(__name__)


class ExistingRecordPolicy(Enum):
    """What `distribute` does for a device that already has an active record."""

    SKIP = "skip"
    ROTATE = "rotate"


class DistributionWarning(NamedTuple):
    device_id: str
    reason: str


@dataclass
class DistributionResult:
    """Outcome of one fan-out."""

    conversation_id: str
    created: List[KeyRecord] = field(default_factory=list)
    rotated: List[KeyRecord] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    warnings: List[DistributionWarning] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def records(self) -> List[KeyRecord]:
        """Records written by this call (created and rotated)."""
        return self.created + self.rotated

    def merge(self, other: DistributionResult) -> None:
        self.created.extend(other.created)
        self.rotated.extend(other.rotated)
        self.skipped.extend(other.skipped)
        self.warnings.extend(other.warnings)

    def __str__(self) -> str:
        return (
            f"{self.created_count} created, {len(self.rotated)} rotated, "
            f"{len(self.skipped)} skipped, {self.warning_count} warnings"
        )


class _Outcome(NamedTuple):
    kind: str  # created | rotated | skipped | warning
    device_id: str
    record: Optional[KeyRecord] = None
    reason: str = ""


class KeyDistributor:
    """Wraps conversation keys for devices and records them."""

    def __init__(
        self,
        lifecycle: KeyLifecycle,
        events: Optional[EventSink] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._repository = lifecycle.repository
        self._events = events or NullEventSink()

    async def _distribute_one(
        self,
        conversation_id: str,
        symmetric_key: bytes,
        device: Device,
        public_key: str,
        on_existing: ExistingRecordPolicy,
    ) -> _Outcome:
        if device.trust_state is not TrustState.TRUSTED:
            return _Outcome("warning", device.device_id, reason=f"device is {device.trust_state.value}")

        try:
            algorithm = validate_public_key(public_key)
        except EncryptionError:
            return _Outcome("warning", device.device_id, reason="malformed public key")
        if device.supported_algorithms and not device.supports(algorithm):
            return _Outcome(
                "warning",
                device.device_id,
                reason=f"{algorithm.value} not among declared algorithms",
            )

        key_tuple = KeyTuple(conversation_id, device.user_id, device.device_id, algorithm)
        try:
            existing = await self._repository.get_active(key_tuple)
            if existing is not None and on_existing is ExistingRecordPolicy.SKIP:
                return _Outcome("skipped", device.device_id, existing)

            wrapped = wrap_symmetric_key(symmetric_key, public_key)
            if existing is not None:
                record = await self._lifecycle.rotate(existing, wrapped, public_key)
                return _Outcome("rotated", device.device_id, record)
            record = await self._lifecycle.create(conversation_id, device, wrapped, public_key)
            return _Outcome("created", device.device_id, record)
        except (EncryptionError, ConflictError, InvalidKeyStateError) as e:
            return _Outcome("warning", device.device_id, reason=str(e))

    async def distribute(
        self,
        conversation_id: str,
        symmetric_key: bytes,
        devices: Sequence[Device],
        on_existing: ExistingRecordPolicy = ExistingRecordPolicy.SKIP,
        public_keys: Optional[Mapping[str, str]] = None,
    ) -> DistributionResult:
        """
        Wrap `symmetric_key` for every device and create its active record.

        `public_keys` overrides a device's registered key (by device id), for
        devices holding a separate keypair per algorithm.

        Raises:
            StorageError: If the repository is unavailable
        """
        public_keys = public_keys or {}
        outcomes = await asyncio.gather(
            *(
                self._distribute_one(
                    conversation_id,
                    symmetric_key,
                    device,
                    public_keys.get(device.device_id, device.public_key),
                    on_existing,
                )
                for device in devices
            )
        )

        result = DistributionResult(conversation_id=conversation_id)
        for outcome in outcomes:
            if outcome.kind == "created":
                result.created.append(outcome.record)
            elif outcome.kind == "rotated":
                result.rotated.append(outcome.record)
            elif outcome.kind == "skipped":
                result.skipped.append(outcome.device_id)
            else:
                result.warnings.append(DistributionWarning(outcome.device_id, outcome.reason))
                logger.warning(
                    "distribution skipped device conversation=%s device=%s reason=%s",
                    conversation_id, outcome.device_id, outcome.reason,
                )
                self._events.emit(
                    KeyEvent(
                        KeyEventType.DISTRIBUTION_WARNING,
                        conversation_id,
                        {"device_id": outcome.device_id, "reason": outcome.reason},
                    )
                )

        logger.info("key distributed conversation=%s %s", conversation_id, result)
        return result

    async def share_with_new_device(
        self,
        conversation_id: str,
        source_device: Device,
        source_private_key: str,
        new_device: Device,
    ) -> DistributionResult:
        """
        Give a newly added device the conversation key, recovered on an
        existing device with that device's private key.

        Raises:
            KeyNotFoundError: If the source device holds no usable record
            InvalidKeyStateError: If the source device is not trusted
        """
        if not source_device.is_trusted:
            raise InvalidKeyStateError(f"Source device {source_device.device_id} is not trusted")

        records = await self._repository.list_records(
            conversation_id=conversation_id,
            device_id=source_device.device_id,
            active_only=True,
        )
        target_algorithm = validate_public_key(new_device.public_key)
        records.sort(key=lambda r: r.algorithm is not target_algorithm)
        if not records:
            raise KeyNotFoundError(
                f"No active key for device {source_device.device_id} in {conversation_id}"
            )

        symmetric_key = self._lifecycle.unwrap(records[0], source_private_key)
        return await self.distribute(conversation_id, symmetric_key, [new_device])

    async def rekey_device(
        self,
        device: Device,
        new_public_key: str,
        conversation_keys: Mapping[str, bytes],
    ) -> DistributionResult:
        """
        Move a device that replaced its own keypair onto its new public key.

        Active records addressed to the old fingerprint are rotated onto the
        new key where the caller supplies the conversation key, otherwise
        deactivated (they remain valid for old ciphertext only).
        """
        algorithm = validate_public_key(new_public_key)
        rekeyed = device.with_public_key(new_public_key)
        await self._repository.update_device(rekeyed)

        result = DistributionResult(conversation_id="*")
        records = await self._repository.list_records(
            device_id=device.device_id, algorithm=algorithm, active_only=True
        )
        for record in records:
            if record.device_fingerprint == rekeyed.fingerprint:
                result.skipped.append(device.device_id)
                continue
            symmetric_key = conversation_keys.get(record.conversation_id)
            if symmetric_key is None:
                await self._lifecycle.deactivate(record)
                result.warnings.append(
                    DistributionWarning(
                        device.device_id,
                        f"no key supplied for {record.conversation_id}; record deactivated",
                    )
                )
                continue
            wrapped = wrap_symmetric_key(symmetric_key, new_public_key)
            result.rotated.append(await self._lifecycle.rotate(record, wrapped, new_public_key))

        logger.info(
            "device rekeyed device=%s fingerprint=%s %s",
            device.device_id, rekeyed.fingerprint, result,
        )
        return result

    async def revoke_device_access(
        self,
        device_id: str,
        reason: str,
        conversation_id: Optional[str] = None,
    ) -> List[KeyRecord]:
        """
        Revoke every active record of a device without replacement.

        Without `conversation_id` the device itself is marked revoked.
        """
        device = await self._repository.get_device(device_id)
        if device is None:
            raise KeyNotFoundError(f"Device {device_id}")

        records = await self._repository.list_records(
            conversation_id=conversation_id, device_id=device_id, active_only=True
        )
        revoked: List[KeyRecord] = []
        for record in records:
            await self._lifecycle.revoke(record, reason)
            revoked.append(record)

        if conversation_id is None:
            await self._repository.update_device(
                replace(device, trust_state=TrustState.REVOKED)
            )

        self._events.emit(
            KeyEvent(
                KeyEventType.DEVICE_REVOKED,
                conversation_id,
                {"device_id": device_id, "reason": reason, "records_revoked": len(revoked)},
            )
        )
        return revoked
