"""
Pytest configuration and fixtures for e2ee_keyring tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, Optional, Tuple

import asyncpg
import pytest
from dotenv import load_dotenv

from e2ee_keyring import (
    Algorithm,
    AlgorithmFamily,
    AlgorithmCoordinator,
    ConversationKeyService,
    Device,
    InMemoryEventSink,
    InMemoryKeyRepository,
    KeyDistributor,
    KeyLifecycle,
    KeyPair,
    KeyringConfig,
    ManualClock,
    PostgresKeyRepository,
    RotationManager,
    RotationRateLimiter,
    generate_asymmetric_keypair,
)

TEST_RSA_BITS = 2048

KeyPairFactory = Callable[..., KeyPair]


@pytest.fixture(scope="session")
def keypairs() -> KeyPairFactory:
    """
    Session-wide keypair cache: `keypairs(algorithm, name)` returns the same
    pair for the same arguments. RSA keys use the minimum size for speed.
    """
    cache: Dict[Tuple[Algorithm, str], KeyPair] = {}

    def get(algorithm: Algorithm = Algorithm.RSA_OAEP, name: str = "default") -> KeyPair:
        if (algorithm, name) not in cache:
            strength = None if algorithm.family is AlgorithmFamily.POST_QUANTUM else TEST_RSA_BITS
            cache[(algorithm, name)] = generate_asymmetric_keypair(algorithm, strength)
        return cache[(algorithm, name)]

    return get


@pytest.fixture
def repository() -> InMemoryKeyRepository:
    """Create an in-memory repository instance for testing."""
    return InMemoryKeyRepository()


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> KeyringConfig:
    return KeyringConfig(rsa_bits=TEST_RSA_BITS, backup_scrypt_n=2**10)


@pytest.fixture
def lifecycle(repository, events, clock) -> KeyLifecycle:
    return KeyLifecycle(repository, events, clock)


@pytest.fixture
def distributor(lifecycle, events) -> KeyDistributor:
    return KeyDistributor(lifecycle, events)


@pytest.fixture
def limiter(clock) -> RotationRateLimiter:
    return RotationRateLimiter(limit=3, window_seconds=60.0, clock=clock)


@pytest.fixture
def rotation(lifecycle, distributor, limiter, events) -> RotationManager:
    return RotationManager(lifecycle, distributor, limiter, events)


@pytest.fixture
def coordinator(distributor, lifecycle, events) -> AlgorithmCoordinator:
    return AlgorithmCoordinator(distributor, lifecycle, events)


@pytest.fixture
def service(repository, config, events, clock) -> ConversationKeyService:
    return ConversationKeyService(repository, config, events, clock)


@pytest.fixture
def make_device(repository, keypairs):
    """
    Register a device and return it with its keypair.

    `await make_device("alice-phone", "alice", Algorithm.RSA_OAEP)`
    """

    async def make(
        device_id: str,
        user_id: str,
        algorithm: Algorithm = Algorithm.RSA_OAEP,
        supported: Optional[set] = None,
        quantum_ready: bool = False,
        conversation_id: Optional[str] = None,
    ) -> Tuple[Device, KeyPair]:
        pair = keypairs(algorithm, device_id)
        device = Device(
            device_id=device_id,
            user_id=user_id,
            public_key=pair.public_key,
            supported_algorithms=supported if supported is not None else {algorithm},
            quantum_ready=quantum_ready,
        )
        await repository.register_device(device)
        if conversation_id is not None:
            await repository.add_participant(conversation_id, user_id)
        return device, pair

    return make


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    yield pool

    await pool.close()


@pytest.fixture
async def postgres_repository(pg_pool: asyncpg.Pool) -> PostgresKeyRepository:
    """Create a PostgreSQL repository with a fresh schema for testing."""
    repo = PostgresKeyRepository(pg_pool)
    await repo.ensure_schema()
    await repo.truncate()
    return repo
