"""
E2EE Keyring

Key management and message cryptography for end-to-end encrypted
conversations, with classical, post-quantum and hybrid key wrapping.

Overview
--------
- **Conversation keys** are AES-256 keys that seal message envelopes
- **Key records** hold a conversation key wrapped for one device's public key
  (RSA-OAEP, ML-KEM or a hybrid of both); at most one is active per
  (conversation, user, device, algorithm)
- **Devices** keep their private keys; the repository only ever stores
  public keys and wrapped keys

Quick Start
-----------
```python
import asyncio
from e2ee_keyring import ConversationKeyService, Device

async def main():
    service = await ConversationKeyService.new()

    alice_keys = service.generate_device_keypair()
    bob_keys = service.generate_device_keypair()
    await service.register_device(Device("alice-phone", "alice", alice_keys.public_key))
    await service.register_device(Device("bob-laptop", "bob", bob_keys.public_key))

    # Negotiate an algorithm and wrap a fresh key for every device
    started = await service.start_conversation("conv-1", ["alice", "bob"])
    envelope = service.encrypt_message("hello", started.symmetric_key)

    # Bob recovers the key with his private key and opens the message
    key = await service.recover_key("conv-1", "bob-laptop", bob_keys.private_key)
    assert service.decrypt_message(envelope.to_json(), key) == b"hello"

    # Rotate: new messages are unreadable with the old key
    rotated = await service.rotate("conv-1")

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM envelopes** with a keyed integrity tag over every field
- **Append-only key records** with versioned rotation and revocation
- **Rate-limited rotation** and unthrottled emergency revocation
- **Algorithm negotiation** and coexisting classical/post-quantum migration
- **PostgreSQL storage** with transactional one-active-record enforcement
- **Password-protected backups** of a user's key records

Modules
-------
- `crypto`: AES-256-GCM, integrity and encoding primitives
- `algorithms`: Algorithm identifiers and families
- `asymmetric`: Keypairs and symmetric key wrapping
- `envelope`: Message envelope codec
- `models`: Key records, devices and conversation state
- `storage`: Repository interface and in-memory backend
- `postgres_storage`: PostgreSQL repository
- `lifecycle`: Key record state machine
- `distribution`: Per-device key fan-out
- `rate_limit`: Injectable clock and rotation limiter
- `rotation`: Rotation and emergency revocation
- `negotiation`: Negotiation, readiness and migration
- `backup`: Key record export and restore
- `events`: Key lifecycle events
- `config`: Environment configuration
- `logger`: JSON logging setup
- `service`: High-level conversation key service
- `errors`: Error types and exception classes
"""

__version__ = "0.1.0"

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    IV_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedData,
    SecureKey,
    generate_random_bytes,
    generate_symmetric_key,
    open_sealed,
    seal,
)

from .algorithms import (
    LEGACY_ALGORITHM,
    Algorithm,
    AlgorithmFamily,
)

from .asymmetric import (
    KeyPair,
    generate_asymmetric_keypair,
    unwrap_symmetric_key,
    validate_public_key,
    wrap_symmetric_key,
)

from .envelope import (
    EncryptedEnvelope,
    decode_envelope,
    decode_extra_fields,
    encode_envelope,
)

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    BackupOwnershipError,
    ConfigError,
    ConflictError,
    DecryptionException,
    EncryptionError,
    InvalidKeyStateError,
    KeyGenerationError,
    KeyNotFoundError,
    KeyringError,
    MigrationNotReadyError,
    NegotiationError,
    RateLimitException,
    SerializationError,
    StorageError,
)

# ============================================================================
# Model and Storage Exports
# ============================================================================

from .models import (
    ConversationKeyState,
    Device,
    KeyRecord,
    KeyState,
    KeyTuple,
    TrustState,
)

from .storage import (
    InMemoryKeyRepository,
    KeyRepository,
    Revocation,
)

from .postgres_storage import PostgresKeyRepository

# ============================================================================
# Key Service Exports
# ============================================================================

from .events import (
    EventSink,
    InMemoryEventSink,
    KeyEvent,
    KeyEventType,
    LoggingEventSink,
)

from .rate_limit import (
    ManualClock,
    RotationRateLimiter,
    SystemClock,
)

from .lifecycle import KeyLifecycle

from .distribution import (
    DistributionResult,
    DistributionWarning,
    ExistingRecordPolicy,
    KeyDistributor,
)

from .rotation import (
    RotationManager,
    RotationResult,
    RotationStatus,
)

from .negotiation import (
    AlgorithmCoordinator,
    MigrationResult,
    MigrationStrategy,
    ReadinessReport,
    negotiate,
)

from .backup import (
    export_key_backup,
    read_backup_header,
    restore_key_backup,
)

from .config import KeyringConfig
from .logger import configure_logging, get_logger

from .service import (
    ConversationKeyService,
    ConversationStart,
)

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "IV_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedData",
    "SecureKey",
    "generate_random_bytes",
    "generate_symmetric_key",
    "seal",
    "open_sealed",
    # Algorithms and wrapping
    "Algorithm",
    "AlgorithmFamily",
    "LEGACY_ALGORITHM",
    "KeyPair",
    "generate_asymmetric_keypair",
    "validate_public_key",
    "wrap_symmetric_key",
    "unwrap_symmetric_key",
    # Envelope
    "EncryptedEnvelope",
    "encode_envelope",
    "decode_envelope",
    "decode_extra_fields",
    # Errors
    "KeyringError",
    "KeyGenerationError",
    "EncryptionError",
    "DecryptionException",
    "ConflictError",
    "RateLimitException",
    "NegotiationError",
    "KeyNotFoundError",
    "InvalidKeyStateError",
    "StorageError",
    "SerializationError",
    "ConfigError",
    "MigrationNotReadyError",
    "BackupOwnershipError",
    # Models and storage
    "KeyRecord",
    "KeyState",
    "KeyTuple",
    "Device",
    "TrustState",
    "ConversationKeyState",
    "KeyRepository",
    "InMemoryKeyRepository",
    "PostgresKeyRepository",
    "Revocation",
    # Key services
    "KeyEvent",
    "KeyEventType",
    "EventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
    "ManualClock",
    "SystemClock",
    "RotationRateLimiter",
    "KeyLifecycle",
    "KeyDistributor",
    "DistributionResult",
    "DistributionWarning",
    "ExistingRecordPolicy",
    "RotationManager",
    "RotationResult",
    "RotationStatus",
    "AlgorithmCoordinator",
    "MigrationResult",
    "MigrationStrategy",
    "ReadinessReport",
    "negotiate",
    "export_key_backup",
    "restore_key_backup",
    "read_backup_header",
    "KeyringConfig",
    "configure_logging",
    "get_logger",
    "ConversationKeyService",
    "ConversationStart",
]
