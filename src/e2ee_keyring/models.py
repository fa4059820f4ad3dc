"""
Data structures shared by the repository and the key services.

This module provides:
- KeyTuple: (conversation, user, device, algorithm) identity of a key slot
- KeyRecord: One wrapped symmetric key for one KeyTuple
- Device: A user's endpoint with its public key and capabilities
- ConversationKeyState: Derived view of active records in a conversation
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Set
from uuid import UUID, uuid4

from .algorithms import Algorithm, AlgorithmFamily
from .asymmetric import fingerprint
from .crypto import content_hash


class KeyState(Enum):
    """Lifecycle state of a key record."""

    ACTIVE = "active"  # Current key for the tuple (seal + open)
    INACTIVE = "inactive"  # Superseded by rotation or migration (open only)
    REVOKED = "revoked"  # Compromise response, terminal
    DELETED = "deleted"  # Soft-deleted, key material gone

    def __str__(self) -> str:
        return self.value


class TrustState(Enum):
    """Device trust state."""

    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    REVOKED = "revoked"

    def __str__(self) -> str:
        return self.value


class KeyTuple(NamedTuple):
    """Identity of a key slot. At most one active record exists per tuple."""

    conversation_id: str
    user_id: str
    device_id: str
    algorithm: Algorithm

    def __str__(self) -> str:
        return (
            f"{self.conversation_id}/{self.user_id}/{self.device_id}/"
            f"{self.algorithm.value}"
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeyRecord:
    """
    Wrapped conversation key for one device.

    Records are append-only: rotation and revocation flip `is_active` and the
    revocation fields but never replace `wrapped_key`.
    """

    conversation_id: str
    user_id: str
    device_id: str
    device_fingerprint: str
    wrapped_key: Optional[bytes]
    public_key: str
    algorithm: Algorithm
    key_strength: int
    version: int = 1
    is_active: bool = True
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    record_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None
    wrapped_key_hash: str = ""

    def __post_init__(self) -> None:
        if not self.wrapped_key_hash and self.wrapped_key is not None:
            self.wrapped_key_hash = content_hash(self.wrapped_key)

    @property
    def key_tuple(self) -> KeyTuple:
        return KeyTuple(self.conversation_id, self.user_id, self.device_id, self.algorithm)

    @property
    def state(self) -> KeyState:
        if self.deleted_at is not None:
            return KeyState.DELETED
        if self.revoked_at is not None:
            return KeyState.REVOKED
        return KeyState.ACTIVE if self.is_active else KeyState.INACTIVE

    @property
    def key_version(self) -> int:
        """Persisted column name for `version`."""
        return self.version

    def copy(self, **changes) -> KeyRecord:
        return replace(self, **changes)

    def __repr__(self) -> str:
        return (
            f"KeyRecord({self.key_tuple}, v{self.version}, {self.state.value}, "
            f"fpr={self.device_fingerprint})"
        )


@dataclass
class Device:
    """A named endpoint belonging to one user."""

    device_id: str
    user_id: str
    public_key: str
    supported_algorithms: FrozenSet[Algorithm] = frozenset()
    quantum_ready: bool = False
    trust_state: TrustState = TrustState.TRUSTED
    name: str = ""

    def __post_init__(self) -> None:
        self.supported_algorithms = Algorithm.parse_many(self.supported_algorithms)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)

    @property
    def is_trusted(self) -> bool:
        return self.trust_state is TrustState.TRUSTED

    def supports(self, algorithm: Algorithm) -> bool:
        return algorithm in self.supported_algorithms

    def supports_family(self, family: AlgorithmFamily) -> bool:
        return any(a.family is family for a in self.supported_algorithms)

    def with_public_key(self, public_key: str) -> Device:
        """Copy of this device after it replaced its own keypair."""
        return replace(self, public_key=public_key)


@dataclass
class ConversationKeyState:
    """Active key records of a conversation, grouped by device."""

    conversation_id: str
    records: List[KeyRecord] = field(default_factory=list)

    @classmethod
    def from_records(
        cls, conversation_id: str, records: Iterable[KeyRecord]
    ) -> ConversationKeyState:
        return cls(
            conversation_id=conversation_id,
            records=[
                r for r in records
                if r.conversation_id == conversation_id and r.is_active
            ],
        )

    def by_device(self) -> Dict[str, List[KeyRecord]]:
        out: Dict[str, List[KeyRecord]] = {}
        for record in self.records:
            out.setdefault(record.device_id, []).append(record)
        return out

    def algorithms_for(self, device_id: str) -> Set[Algorithm]:
        return {r.algorithm for r in self.records if r.device_id == device_id}

    def algorithms(self) -> Set[Algorithm]:
        return {r.algorithm for r in self.records}

    def devices_with(self, algorithm: Algorithm) -> Set[str]:
        return {r.device_id for r in self.records if r.algorithm is algorithm}

    def devices_with_family(self, family: AlgorithmFamily) -> Set[str]:
        return {r.device_id for r in self.records if r.algorithm.family is family}

    def active_record(self, device_id: str, algorithm: Algorithm) -> Optional[KeyRecord]:
        for record in self.records:
            if record.device_id == device_id and record.algorithm is algorithm:
                return record
        return None

    @property
    def is_coexisting(self) -> bool:
        """True when more than one algorithm family is active at once."""
        return len({a.family for a in self.algorithms()}) > 1
