"""
Scheduled rotation and emergency revocation of conversation keys.

Rotation strategy:
1. Check the per-conversation rate limiter (scheduled rotation only)
2. Generate one fresh conversation key per algorithm in use
3. Rotate every active record of a trusted participant device onto it
4. Create records for participant devices that had none
5. Emit NEW_KEY_AVAILABLE for the delivery collaborator

Emergency revocation skips step 1, revokes instead of deactivating, and cuts
off compromised devices without a replacement record.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Collection, Dict, List, Optional

from .algorithms import Algorithm
from .asymmetric import validate_public_key, wrap_symmetric_key
from .crypto import generate_symmetric_key
from .distribution import DistributionWarning, KeyDistributor
from .errors import (
    ConflictError,
    EncryptionError,
    KeyNotFoundError,
    KeyringError,
    RateLimitException,
)
from .events import EventSink, KeyEvent, KeyEventType, NullEventSink
from .lifecycle import KeyLifecycle
from .logger import get_logger
from .models import Device, KeyRecord, TrustState
from .rate_limit import RotationRateLimiter

logger = get_logger(__name__)

_EMERGENCY_RETRIES = 3


class RotationStatus(Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


@dataclass
class RotationResult:
    """Tagged outcome of a rotation or revocation."""

    status: RotationStatus
    conversation_id: str
    new_keys: Dict[Algorithm, bytes] = field(default_factory=dict, repr=False)
    records: List[KeyRecord] = field(default_factory=list)
    retired: List[KeyRecord] = field(default_factory=list)
    warnings: List[DistributionWarning] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    error: Optional[str] = None
    retry_after: float = 0.0
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is RotationStatus.SUCCESS

    def key_for(self, algorithm: Algorithm) -> bytes:
        return self.new_keys[algorithm]

    def __str__(self) -> str:
        return (
            f"{self.status.value}: {len(self.records)} new, {len(self.retired)} retired, "
            f"{len(self.conflicts)} conflicts, {len(self.warnings)} warnings"
        )


def _public_key_for(record: KeyRecord, device: Device) -> str:
    """The device's current key when it serves the record's algorithm, else the record's."""
    try:
        if validate_public_key(device.public_key) is record.algorithm:
            return device.public_key
    except EncryptionError:
        pass
    return record.public_key


class RotationManager:
    """Rate-limited rotation and unthrottled emergency revocation."""

    def __init__(
        self,
        lifecycle: KeyLifecycle,
        distributor: KeyDistributor,
        limiter: RotationRateLimiter,
        events: Optional[EventSink] = None,
        revocation_target_seconds: float = 2.0,
    ) -> None:
        self._lifecycle = lifecycle
        self._repository = lifecycle.repository
        self._distributor = distributor
        self._limiter = limiter
        self._events = events or NullEventSink()
        self._revocation_target = revocation_target_seconds

    @property
    def limiter(self) -> RotationRateLimiter:
        return self._limiter

    async def _load(self, conversation_id: str):
        records = await self._repository.list_records(
            conversation_id=conversation_id, active_only=True
        )
        if not records:
            raise KeyNotFoundError(f"No active keys for conversation {conversation_id}")
        devices = {
            d.device_id: d
            for d in await self._repository.list_conversation_devices(conversation_id)
        }
        return records, devices

    def _announce(self, result: RotationResult, reason: str) -> None:
        self._events.emit(
            KeyEvent(
                KeyEventType.NEW_KEY_AVAILABLE,
                result.conversation_id,
                {
                    "reason": reason,
                    "algorithms": sorted(a.value for a in result.new_keys),
                    "devices": sorted({r.device_id for r in result.records}),
                    "versions": sorted({r.version for r in result.records}),
                },
            )
        )

    async def rotate_conversation(
        self,
        conversation_id: str,
        reason: str = "scheduled",
        rate_limited: bool = True,
    ) -> RotationResult:
        """
        Scheduled rotation of every active key in the conversation.

        Records of devices that are no longer trusted or no longer belong to a
        participant are deactivated without replacement. Membership-driven
        rotations pass `rate_limited=False`.
 The rate-limit slot is taken after the
        conversation is loaded and given back if every rotation conflicts.

        Raises:
            RateLimitException: Limit reached; nothing was changed
            ConflictError: Every rotation lost to a concurrent one
            KeyNotFoundError: The conversation has no active keys
        """
        records, devices = await self._load(conversation_id)
        slot = self._limiter.acquire(conversation_id) if rate_limited else None
        started = time.perf_counter()

        result = RotationResult(RotationStatus.SUCCESS, conversation_id)
        result.new_keys = {
            algorithm: generate_symmetric_key()
            for algorithm in sorted({r.algorithm for r in records}, key=lambda a: a.rank)
        }

        for record in records:
            device = devices.get(record.device_id)
            if device is None or not device.is_trusted:
                result.retired.append(await self._lifecycle.deactivate(record))
                result.warnings.append(
                    DistributionWarning(record.device_id, "device no longer trusted or participating")
                )
                continue

            public_key = _public_key_for(record, device)
            try:
                wrapped = wrap_symmetric_key(result.new_keys[record.algorithm], public_key)
                result.records.append(await self._lifecycle.rotate(record, wrapped, public_key))
                result.retired.append(await self._repository.get_record(record.record_id))
            except ConflictError:
                result.conflicts.append(record.device_id)
            except EncryptionError as e:
                result.warnings.append(DistributionWarning(record.device_id, str(e)))

        covered = {(r.device_id, r.algorithm) for r in records}
        for algorithm, key in result.new_keys.items():
            missing = [
                d for d in devices.values()
                if d.is_trusted
                and (d.device_id, algorithm) not in covered
                and _key_algorithm(d) is algorithm
            ]
            if missing:
                added = await self._distributor.distribute(conversation_id, key, missing)
                result.records.extend(added.created)
                result.warnings.extend(added.warnings)

        result.duration_seconds = time.perf_counter() - started
        if result.conflicts and not result.records:
            if slot is not None:
                self._limiter.release(conversation_id, slot)
            raise ConflictError(
                f"Rotation of {conversation_id} lost to a concurrent rotation"
            )

        logger.info(
            "conversation rotated conversation=%s reason=%s %s",
            conversation_id, reason, result,
        )
        self._announce(result, reason)
        return result

    async def try_rotate_conversation(
        self, conversation_id: str, reason: str = "scheduled"
    ) -> RotationResult:
        """`rotate_conversation` that reports failures as a tagged result."""
        try:
            return await self.rotate_conversation(conversation_id, reason)
        except RateLimitException as e:
            return RotationResult(
                RotationStatus.RATE_LIMITED,
                conversation_id,
                error=str(e),
                retry_after=e.retry_after,
            )
        except ConflictError as e:
            return RotationResult(RotationStatus.CONFLICT, conversation_id, error=str(e))
        except KeyringError as e:
            logger.error("rotation failed conversation=%s error=%s", conversation_id, e)
            return RotationResult(RotationStatus.FAILED, conversation_id, error=str(e))

    async def _revoke_with_retry(
        self,
        record: KeyRecord,
        reason: str,
        wrapped: Optional[bytes],
        public_key: Optional[str],
    ) -> Optional[KeyRecord]:
        """Revoke the tuple's active record, re-reading it if a rotation raced us."""
        current: Optional[KeyRecord] = record
        for _ in range(_EMERGENCY_RETRIES):
            try:
                await self._lifecycle.revoke(current, reason, wrapped, public_key)
                return await self._repository.get_record(current.record_id)
            except ConflictError:
                current = await self._repository.get_active(record.key_tuple)
                if current is None:
                    return None
        raise ConflictError(f"Could not revoke {record.key_tuple} after retries")

    async def emergency_revoke(
        self,
        conversation_id: str,
        reason: str,
        compromised_device_ids: Collection[str] = (),
    ) -> RotationResult:
        """
        Revoke every active key of the conversation immediately.

        Never rate limited. Uncompromised trusted devices receive a fresh key in
        the same atomic step as each revocation; compromised devices are cut
        off and marked revoked.
        """
        started = time.perf_counter()
        compromised = set(compromised_device_ids)
        records, devices = await self._load(conversation_id)

        result = RotationResult(RotationStatus.SUCCESS, conversation_id)
        result.new_keys = {
            algorithm: generate_symmetric_key() for algorithm in {r.algorithm for r in records}
        }

        for record in records:
            device = devices.get(record.device_id)
            cut_off = (
                record.device_id in compromised or device is None or not device.is_trusted
            )
            wrapped = public_key = None
            if not cut_off:
                public_key = _public_key_for(record, device)
                try:
                    wrapped = wrap_symmetric_key(result.new_keys[record.algorithm], public_key)
                except EncryptionError as e:
                    result.warnings.append(DistributionWarning(record.device_id, str(e)))
                    public_key = None

            revoked = await self._revoke_with_retry(record, reason, wrapped, public_key)
            if revoked is None:
                continue
            result.retired.append(revoked)
            if wrapped is not None:
                replacement = await self._repository.get_active(record.key_tuple)
                if replacement is not None:
                    result.records.append(replacement)

        for device_id in compromised:
            device = devices.get(device_id) or await self._repository.get_device(device_id)
            if device is not None and device.trust_state is not TrustState.REVOKED:
                await self._repository.update_device(
                    replace(device, trust_state=TrustState.REVOKED)
                )

        result.duration_seconds = time.perf_counter() - started
        if result.duration_seconds > self._revocation_target:
            logger.warning(
                "emergency revocation exceeded target conversation=%s duration=%.3fs target=%.3fs",
                conversation_id, result.duration_seconds, self._revocation_target,
            )
        logger.warning(
            "emergency revocation conversation=%s reason=%s compromised=%s %s",
            conversation_id, reason, sorted(compromised), result,
        )
        self._announce(result, reason)
        return result


def _key_algorithm(device: Device) -> Optional[Algorithm]:
    try:
        return validate_public_key(device.public_key)
    except EncryptionError:
        return None
