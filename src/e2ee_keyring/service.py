"""
Conversation key service.

This module provides:
- ConversationKeyService: Main API wiring repository, lifecycle, distribution,
  rotation, negotiation and the message codec together
- ConversationStart: Result of starting a conversation

Architecture:
- **Repository**: Stores devices, participants and wrapped key records
  (in memory or PostgreSQL); never sees a conversation key or private key
- **Devices**: Hold private keys and unwrap their own records
- **Caller**: Receives each new conversation key once, to seal messages

Key hierarchy:
- Device keypair (RSA-OAEP, ML-KEM or hybrid) -> wraps the conversation key
- Conversation key (AES-256) -> seals message envelopes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Collection, Iterable, List, Mapping, Optional, Union

from .algorithms import LEGACY_ALGORITHM, Algorithm, AlgorithmFamily
from .asymmetric import KeyPair, generate_asymmetric_keypair, validate_public_key
from .backup import export_key_backup, restore_key_backup
from .config import KeyringConfig
from .crypto import generate_symmetric_key
from .distribution import DistributionResult, DistributionWarning, KeyDistributor
from .envelope import EncryptedEnvelope, FieldValue, decode_envelope, encode_envelope
from .errors import EncryptionError, KeyGenerationError, KeyNotFoundError
from .events import EventSink, LoggingEventSink
from .lifecycle import KeyLifecycle
from .logger import configure_logging, get_logger
from .models import ConversationKeyState, Device
from .negotiation import (
    AlgorithmCoordinator,
    KeyPairProvider,
    MigrationResult,
    MigrationStrategy,
    ReadinessReport,
    negotiate,
)
from .rate_limit import Clock, RateLimitStore, RotationRateLimiter, SystemClock
from .rotation import RotationManager, RotationResult
from .storage import InMemoryKeyRepository, KeyRepository

logger = get_logger(__name__)

EnvelopeLike = Union[EncryptedEnvelope, Mapping[str, Any], str]


@dataclass
class ConversationStart:
    """Result of start_conversation operation."""

    conversation_id: str
    algorithm: Algorithm
    symmetric_key: bytes = field(repr=False)
    distribution: DistributionResult

    @property
    def warnings(self) -> List[DistributionWarning]:
        return self.distribution.warnings


class ConversationKeyService:
    """
    End-to-end encryption key service.

    Provides the main API for conversation key management on top of any
    KeyRepository.
    """

    def __init__(
        self,
        repository: KeyRepository,
        config: Optional[KeyringConfig] = None,
        events: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
        rate_limit_store: Optional[RateLimitStore] = None,
    ) -> None:
        """
        Initialize service with a repository.

        Args:
            repository: Storage backend for devices and key records
            config: Runtime settings (defaults when omitted)
            events: Consumer of key events (structured logging when omitted)
            clock: Time source for record timestamps and rate limiting
            rate_limit_store: Shared rotation counter store, for multi-worker setups
        """
        self._repository = repository
        self._config = config or KeyringConfig()
        self._events = events or LoggingEventSink()
        clock = clock or SystemClock()

        self._lifecycle = KeyLifecycle(repository, self._events, clock)
        self._distributor = KeyDistributor(self._lifecycle, self._events)
        self._limiter = RotationRateLimiter(
            limit=self._config.rotation_limit,
            window_seconds=self._config.rotation_window_seconds,
            clock=clock,
            store=rate_limit_store,
        )
        self._rotation = RotationManager(
            self._lifecycle,
            self._distributor,
            self._limiter,
            self._events,
            revocation_target_seconds=self._config.revocation_target_seconds,
        )
        self._coordinator = AlgorithmCoordinator(
            self._distributor,
            self._lifecycle,
            self._events,
            require_operational_flag=self._config.require_operational_readiness,
        )

    @classmethod
    async def new(
        cls,
        repository: Optional[KeyRepository] = None,
        config: Optional[KeyringConfig] = None,
        events: Optional[EventSink] = None,
    ) -> ConversationKeyService:
        """
        Initialize service (async factory method).

        Without a repository, connects to `config.database_url` when set and
        falls back to an in-memory repository otherwise.

        Raises:
            StorageError: If the database is unreachable
        """
        config = config or KeyringConfig()
        configure_logging(config.log_level_value)
        if repository is None:
            if config.database_url:
                from .postgres_storage import PostgresKeyRepository

                repository = await PostgresKeyRepository.connect(config.database_url)
                await repository.ensure_schema()
            else:
                repository = InMemoryKeyRepository()
        return cls(repository, config, events)

    @property
    def repository(self) -> KeyRepository:
        return self._repository

    @property
    def config(self) -> KeyringConfig:
        return self._config

    @property
    def lifecycle(self) -> KeyLifecycle:
        return self._lifecycle

    @property
    def distributor(self) -> KeyDistributor:
        return self._distributor

    @property
    def rotation(self) -> RotationManager:
        return self._rotation

    @property
    def coordinator(self) -> AlgorithmCoordinator:
        return self._coordinator

    # =========================================================================
    # Devices
    # =========================================================================

    def generate_device_keypair(self, algorithm: Algorithm = LEGACY_ALGORITHM) -> KeyPair:
        """
        Generate a keypair for a device, RSA sized from the configuration.

        Normally run on the device itself; the private key must stay there.
        """
        try:
            algorithm = Algorithm.parse(algorithm)
        except ValueError as e:
            raise KeyGenerationError(str(e))
        if algorithm.family is AlgorithmFamily.POST_QUANTUM:
            return generate_asymmetric_keypair(algorithm)
        return generate_asymmetric_keypair(algorithm, self._config.rsa_bits)

    def _migration_keypair(self, device: Device, algorithm: Algorithm) -> KeyPair:
        return self.generate_device_keypair(algorithm)

    async def register_device(self, device: Device) -> Device:
        """
        Register (or replace) a device after checking its public key.

        Raises:
            EncryptionError: If the public key is malformed
        """
        algorithm = validate_public_key(device.public_key)
        if device.supported_algorithms and not device.supports(algorithm):
            raise EncryptionError(
                f"Device {device.device_id} key is {algorithm.value}, not a declared algorithm"
            )
        await self._repository.register_device(device)
        logger.info(
            "device registered device=%s user=%s algorithm=%s",
            device.device_id, device.user_id, algorithm.value,
        )
        return device

    async def rekey_device(
        self,
        device_id: str,
        new_public_key: str,
        conversation_keys: Mapping[str, bytes],
    ) -> DistributionResult:
        device = await self._repository.get_device(device_id)
        if device is None:
            raise KeyNotFoundError(f"Device {device_id}")
        return await self._distributor.rekey_device(device, new_public_key, conversation_keys)

    async def revoke_device(self, device_id: str, reason: str) -> int:
        """Cut a device off from every conversation; returns records revoked."""
        return len(await self._distributor.revoke_device_access(device_id, reason))

    # =========================================================================
    # Conversations
    # =========================================================================

    async def start_conversation(
        self,
        conversation_id: str,
        participant_user_ids: Iterable[str],
    ) -> ConversationStart:
        """
        Register participants, negotiate an algorithm and distribute a fresh
        conversation key to every trusted device.

        Negotiation only considers algorithms some device holds a registered
        key for. Devices whose registered key is not for the negotiated
        algorithm are skipped with a warning.

        Raises:
            KeyNotFoundError: If the participants have no trusted devices
            NegotiationError: If the devices share no algorithm
            EncryptionError: If no device ends up holding the new key
        """
        for user_id in participant_user_ids:
            await self._repository.add_participant(conversation_id, user_id)

        devices = [
            d for d in await self._repository.list_conversation_devices(conversation_id)
            if d.is_trusted
        ]
        if not devices:
            raise KeyNotFoundError(f"No trusted devices in conversation {conversation_id}")

        key_algorithms = {}
        for device in devices:
            try:
                key_algorithms[device.device_id] = validate_public_key(device.public_key)
            except EncryptionError:
                key_algorithms[device.device_id] = None
        held = {a for a in key_algorithms.values() if a is not None}
        if not held:
            raise EncryptionError(f"No device in conversation {conversation_id} has a usable key")

        # Only negotiate over algorithms somebody can actually unwrap
        usable = [
            (d.supported_algorithms or {LEGACY_ALGORITHM}) & held for d in devices
        ]
        algorithm = negotiate(s for s in usable if s)
        matching, mismatched = [], []
        for device in devices:
            key_algorithm = key_algorithms[device.device_id]
            (matching if key_algorithm is algorithm else mismatched).append(device)

        symmetric_key = generate_symmetric_key()
        distribution = await self._distributor.distribute(conversation_id, symmetric_key, matching)
        distribution.warnings.extend(
            DistributionWarning(d.device_id, f"registered key is not {algorithm.value}")
            for d in mismatched
        )
        if not distribution.records:
            raise EncryptionError(
                f"Conversation {conversation_id} key was not distributed to any device"
            )

        logger.info(
            "conversation started conversation=%s algorithm=%s %s",
            conversation_id, algorithm.value, distribution,
        )
        return ConversationStart(conversation_id, algorithm, symmetric_key, distribution)

    async def add_participant(
        self,
        conversation_id: str,
        user_id: str,
        symmetric_key: bytes,
    ) -> DistributionResult:
        """Add a user and wrap the current conversation key for their devices."""
        await self._repository.add_participant(conversation_id, user_id)
        devices = await self._repository.list_user_devices(user_id)
        return await self._distributor.distribute(conversation_id, symmetric_key, devices)

    async def remove_participant(self, conversation_id: str, user_id: str) -> RotationResult:
        """
        Remove a user and rotate so their devices cannot read new messages.

        Membership changes are not rate limited, and the removed devices are
        not marked compromised.
        """
        await self._repository.remove_participant(conversation_id, user_id)
        return await self._rotation.rotate_conversation(
            conversation_id, f"participant {user_id} removed", rate_limited=False
        )

    async def conversation_state(self, conversation_id: str) -> ConversationKeyState:
        records = await self._repository.list_records(
            conversation_id=conversation_id, active_only=True
        )
        return ConversationKeyState.from_records(conversation_id, records)

    async def recover_key(
        self,
        conversation_id: str,
        device_id: str,
        private_key: str,
        algorithm: Optional[Algorithm] = None,
    ) -> bytes:
        """
        Unwrap the device's active conversation key.

        Raises:
            KeyNotFoundError: If the device has no active record
            DecryptionException: If `private_key` does not match the record
        """
        records = await self._repository.list_records(
            conversation_id=conversation_id,
            device_id=device_id,
            algorithm=algorithm,
            active_only=True,
        )
        if not records:
            raise KeyNotFoundError(f"No active key for device {device_id} in {conversation_id}")
        records.sort(key=lambda r: r.algorithm.rank, reverse=True)
        return self._lifecycle.unwrap(records[0], private_key)

    # =========================================================================
    # Rotation, revocation and migration
    # =========================================================================

    async def rotate(self, conversation_id: str, reason: str = "scheduled") -> RotationResult:
        """Rate-limited rotation; see `RotationManager.rotate_conversation`."""
        return await self._rotation.rotate_conversation(conversation_id, reason)

    async def try_rotate(self, conversation_id: str, reason: str = "scheduled") -> RotationResult:
        return await self._rotation.try_rotate_conversation(conversation_id, reason)

    async def emergency_revoke(
        self,
        conversation_id: str,
        reason: str,
        compromised_device_ids: Collection[str] = (),
    ) -> RotationResult:
        return await self._rotation.emergency_revoke(
            conversation_id, reason, compromised_device_ids
        )

    async def assess_readiness(
        self,
        conversation_id: str,
        family: AlgorithmFamily = AlgorithmFamily.POST_QUANTUM,
    ) -> ReadinessReport:
        return await self._coordinator.assess_readiness(conversation_id, family)

    async def migrate(
        self,
        conversation_id: str,
        strategy: MigrationStrategy = MigrationStrategy.GRADUAL,
        target: Optional[Algorithm] = None,
        keypair_provider: Optional[KeyPairProvider] = None,
    ) -> MigrationResult:
        return await self._coordinator.migrate(
            conversation_id,
            strategy,
            target,
            keypair_provider or self._migration_keypair,
        )

    async def deactivate_legacy(self, conversation_id: str, force: bool = False):
        return await self._coordinator.deactivate_legacy(conversation_id, force=force)

    # =========================================================================
    # Messages
    # =========================================================================

    @staticmethod
    def encrypt_message(
        plaintext: FieldValue,
        symmetric_key: bytes,
        extra_fields: Optional[Mapping[str, FieldValue]] = None,
    ) -> EncryptedEnvelope:
        return encode_envelope(plaintext, symmetric_key, extra_fields)

    @staticmethod
    def decrypt_message(envelope: EnvelopeLike, symmetric_key: bytes) -> bytes:
        """
        Open an envelope given as an object, a dict or a JSON string.

        Raises:
            DecryptionException: On any failure
        """
        if isinstance(envelope, str):
            envelope = EncryptedEnvelope.from_json(envelope)
        elif not isinstance(envelope, EncryptedEnvelope):
            envelope = EncryptedEnvelope.from_dict(envelope)
        return decode_envelope(envelope, symmetric_key)

    # =========================================================================
    # Backup
    # =========================================================================

    async def export_backup(self, user_id: str, password: str) -> bytes:
        records = await self._repository.list_records(user_id=user_id)
        return export_key_backup(records, user_id, password, self._config)

    @staticmethod
    def restore_backup(blob: bytes, user_id: str, password: str):
        return restore_key_backup(blob, user_id, password)

    async def close(self) -> None:
        close = getattr(self._repository, "close", None)
        if close is not None:
            await close()

