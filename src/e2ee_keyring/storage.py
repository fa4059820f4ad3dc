"""
Storage abstractions for key records and devices.

This module provides:
- KeyRepository: Abstract async repository the key services depend on
- InMemoryKeyRepository: asyncio-safe in-memory implementation
- Revocation: Revocation stamp applied by compare-and-swap

Every mutation that could produce two active records for one key tuple runs
its precondition check and its write inside a single atomic unit.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Set
from uuid import UUID

from .algorithms import Algorithm
from .errors import ConflictError, InvalidKeyStateError, KeyNotFoundError
from .models import Device, KeyRecord, KeyTuple, utcnow


@dataclass(frozen=True)
class Revocation:
    """Revocation stamp for a record being retired after compromise."""

    reason: str
    at: datetime


class KeyRepository(ABC):
    """
    Abstract storage interface for key records, devices and participants.

    All methods are async to support both in-memory and database backends.
    Records handed out are copies; mutate state only through this interface.
    """

    # -- key records: writes -------------------------------------------------

    @abstractmethod
    async def create(self, record: KeyRecord) -> KeyRecord:
        """
        Insert a new active record.

        Raises:
            ConflictError: If the tuple already has an active record or the
                version is not above every stored version for the tuple
        """
        ...

    @abstractmethod
    async def compare_and_swap_active(
        self,
        expected: KeyRecord,
        replacement: Optional[KeyRecord],
        revocation: Optional[Revocation] = None,
    ) -> Optional[KeyRecord]:
        """
        Retire `expected` and install `replacement` atomically.

        `replacement` may be None only when revoking.

        Raises:
            ConflictError: If `expected` is no longer the active record
        """
        ...

    @abstractmethod
    async def deactivate(self, record_id: UUID) -> KeyRecord:
        """Mark a record inactive (still usable for old ciphertext)."""
        ...

    @abstractmethod
    async def soft_delete(self, record_id: UUID) -> KeyRecord:
        """Drop key material, keep forensic hash and metadata."""
        ...

    @abstractmethod
    async def hard_delete(self, record_id: UUID) -> bool:
        """Erase a record entirely (data-erasure requests only)."""
        ...

    # -- key records: reads --------------------------------------------------

    @abstractmethod
    async def get_record(self, record_id: UUID) -> Optional[KeyRecord]:
        ...

    @abstractmethod
    async def get_active(self, key_tuple: KeyTuple) -> Optional[KeyRecord]:
        ...

    @abstractmethod
    async def latest_version(self, key_tuple: KeyTuple) -> int:
        """Highest stored version for the tuple, 0 when none exist."""
        ...

    @abstractmethod
    async def list_records(
        self,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        algorithm: Optional[Algorithm] = None,
        active_only: bool = False,
    ) -> List[KeyRecord]:
        ...

    # -- devices and participants ---------------------------------------------

    @abstractmethod
    async def register_device(self, device: Device) -> None:
        """Insert or replace a device."""
        ...

    @abstractmethod
    async def get_device(self, device_id: str) -> Optional[Device]:
        ...

    @abstractmethod
    async def list_user_devices(self, user_id: str) -> List[Device]:
        ...

    @abstractmethod
    async def add_participant(self, conversation_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        ...

    @abstractmethod
    async def list_participants(self, conversation_id: str) -> List[str]:
        ...

    async def update_device(self, device: Device) -> None:
        """Replace a stored device."""
        if await self.get_device(device.device_id) is None:
            raise KeyNotFoundError(f"Device {device.device_id}")
        await self.register_device(device)

    async def list_conversation_devices(self, conversation_id: str) -> List[Device]:
        """All devices of every participant of the conversation."""
        devices: List[Device] = []
        for user_id in await self.list_participants(conversation_id):
            devices.extend(await self.list_user_devices(user_id))
        return devices


class InMemoryKeyRepository(KeyRepository):
    """
    In-memory repository for tests and single-process deployments.

    Uses asyncio.Lock for safe concurrent access. Records and devices are
    copied on the way in and out.
    """

    def __init__(self) -> None:
        self._records: Dict[UUID, KeyRecord] = {}
        self._devices: Dict[str, Device] = {}
        self._participants: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    # -- helpers (call with lock held) ----------------------------------------

    def _active_for(self, key_tuple: KeyTuple) -> Optional[KeyRecord]:
        for record in self._records.values():
            if record.is_active and record.key_tuple == key_tuple:
                return record
        return None

    def _max_version(self, key_tuple: KeyTuple) -> int:
        versions = [r.version for r in self._records.values() if r.key_tuple == key_tuple]
        return max(versions, default=0)

    def _check_insertable(self, record: KeyRecord) -> None:
        if not record.is_active:
            raise InvalidKeyStateError("New records must be active")
        if record.record_id in self._records:
            raise ConflictError(f"Record {record.record_id} already exists")
        if self._active_for(record.key_tuple) is not None:
            raise ConflictError(f"Active record already exists for {record.key_tuple}")
        if record.version <= self._max_version(record.key_tuple):
            raise ConflictError(
                f"Version {record.version} is not above stored versions for {record.key_tuple}"
            )

    def _require(self, record_id: UUID) -> KeyRecord:
        record = self._records.get(record_id)
        if record is None:
            raise KeyNotFoundError(f"Key record {record_id}")
        return record

    # -- key records -----------------------------------------------------------

    async def create(self, record: KeyRecord) -> KeyRecord:
        async with self._lock:
            self._check_insertable(record)
            self._records[record.record_id] = record.copy()
            return record.copy()

    async def compare_and_swap_active(
        self,
        expected: KeyRecord,
        replacement: Optional[KeyRecord],
        revocation: Optional[Revocation] = None,
    ) -> Optional[KeyRecord]:
        if replacement is None and revocation is None:
            raise InvalidKeyStateError("A replacement is required unless revoking")
        if replacement is not None and replacement.key_tuple != expected.key_tuple:
            raise InvalidKeyStateError("Replacement must belong to the same key tuple")

        async with self._lock:
            current = self._active_for(expected.key_tuple)
            if current is None or current.record_id != expected.record_id:
                raise ConflictError(
                    f"Record {expected.record_id} is no longer active for {expected.key_tuple}"
                )

            retired = current.copy(is_active=False)
            if revocation is not None:
                retired = retired.copy(
                    revoked_at=revocation.at, revocation_reason=revocation.reason
                )

            if replacement is not None:
                if replacement.version <= self._max_version(replacement.key_tuple):
                    raise ConflictError(
                        f"Version {replacement.version} is not above stored versions"
                    )
                if replacement.record_id in self._records:
                    raise ConflictError(f"Record {replacement.record_id} already exists")

            self._records[retired.record_id] = retired
            if replacement is None:
                return None
            self._records[replacement.record_id] = replacement.copy(is_active=True)
            return replacement.copy(is_active=True)

    async def deactivate(self, record_id: UUID) -> KeyRecord:
        async with self._lock:
            record = self._require(record_id).copy(is_active=False)
            self._records[record_id] = record
            return record.copy()

    async def soft_delete(self, record_id: UUID) -> KeyRecord:
        async with self._lock:
            record = self._require(record_id).copy(
                is_active=False, wrapped_key=None, deleted_at=utcnow()
            )
            self._records[record_id] = record
            return record.copy()

    async def hard_delete(self, record_id: UUID) -> bool:
        async with self._lock:
            return self._records.pop(record_id, None) is not None

    async def get_record(self, record_id: UUID) -> Optional[KeyRecord]:
        async with self._lock:
            record = self._records.get(record_id)
            return record.copy() if record else None

    async def get_active(self, key_tuple: KeyTuple) -> Optional[KeyRecord]:
        async with self._lock:
            record = self._active_for(key_tuple)
            return record.copy() if record else None

    async def latest_version(self, key_tuple: KeyTuple) -> int:
        async with self._lock:
            return self._max_version(key_tuple)

    async def list_records(
        self,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        algorithm: Optional[Algorithm] = None,
        active_only: bool = False,
    ) -> List[KeyRecord]:
        async with self._lock:
            out = [
                r.copy()
                for r in self._records.values()
                if (conversation_id is None or r.conversation_id == conversation_id)
                and (user_id is None or r.user_id == user_id)
                and (device_id is None or r.device_id == device_id)
                and (algorithm is None or r.algorithm is algorithm)
                and (not active_only or r.is_active)
            ]
        out.sort(key=lambda r: (str(r.key_tuple), r.version))
        return out

    # -- devices and participants ---------------------------------------------

    async def register_device(self, device: Device) -> None:
        async with self._lock:
            self._devices[device.device_id] = replace(device)

    async def get_device(self, device_id: str) -> Optional[Device]:
        async with self._lock:
            device = self._devices.get(device_id)
            return replace(device) if device is not None else None

    async def list_user_devices(self, user_id: str) -> List[Device]:
        async with self._lock:
            return [replace(d) for d in self._devices.values() if d.user_id == user_id]

    async def add_participant(self, conversation_id: str, user_id: str) -> None:
        async with self._lock:
            self._participants.setdefault(conversation_id, set()).add(user_id)

    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        async with self._lock:
            self._participants.get(conversation_id, set()).discard(user_id)

    async def list_participants(self, conversation_id: str) -> List[str]:
        async with self._lock:
            return sorted(self._participants.get(conversation_id, set()))
