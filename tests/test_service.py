"""
End-to-end tests for ConversationKeyService.
"""

from __future__ import annotations

import pytest

from e2ee_keyring import (
    Algorithm,
    ConversationKeyService,
    DecryptionException,
    Device,
    EncryptionError,
    InMemoryKeyRepository,
    KeyGenerationError,
    KeyNotFoundError,
    KeyringConfig,
    RateLimitException,
    RotationStatus,
)


async def _register(service, keypairs, device_id, user_id, algorithm=Algorithm.RSA_OAEP, **kwargs):
    pair = keypairs(algorithm, device_id)
    device = Device(device_id, user_id, pair.public_key, supported_algorithms={algorithm}, **kwargs)
    await service.register_device(device)
    return pair


@pytest.fixture
async def chat(service, keypairs):
    """Alice and Bob each with one device, talking in conv-1."""
    alice = await _register(service, keypairs, "alice-phone", "alice")
    bob = await _register(service, keypairs, "bob-laptop", "bob")
    start = await service.start_conversation("conv-1", ["alice", "bob"])
    return {"alice": alice, "bob": bob, "start": start}


async def test_hello_world(service, chat):
    key = chat["start"].symmetric_key
    bob = chat["bob"]

    bob_key = await service.recover_key("conv-1", "bob-laptop", bob.private_key)
    assert bob_key == key
    hello = service.encrypt_message("hello", key)
    assert service.decrypt_message(hello.to_json(), bob_key) == b"hello"

    rotated = await service.rotate("conv-1")
    new_key = rotated.key_for(Algorithm.RSA_OAEP)
    assert await service.recover_key("conv-1", "bob-laptop", bob.private_key) == new_key

    world = service.encrypt_message("world", new_key)
    with pytest.raises(DecryptionException):
        service.decrypt_message(world.to_dict(), key)
    assert service.decrypt_message(world, new_key) == b"world"
    assert service.decrypt_message(hello, key) == b"hello"


async def test_start_conversation(chat):
    start = chat["start"]
    assert start.algorithm is Algorithm.RSA_OAEP
    assert start.distribution.created_count == 2
    assert start.warnings == []
    assert "symmetric_key" not in repr(start)


async def test_start_warns_for_mismatched_key(service, keypairs):
    await _register(service, keypairs, "alice-phone", "alice")
    pair = keypairs(Algorithm.ML_KEM_768, "bob-laptop")
    await service.register_device(
        Device("bob-laptop", "bob", pair.public_key, supported_algorithms={"RSA-OAEP", "ML-KEM-768"})
    )

    start = await service.start_conversation("conv-1", ["alice", "bob"])

    assert start.algorithm is Algorithm.RSA_OAEP
    assert [w.device_id for w in start.warnings] == ["bob-laptop"]


async def test_start_negotiates_over_registered_keys(service, keypairs):
    # Clients advertise ML-KEM but still hold RSA keys
    pairs = {}
    for device_id, user_id in (("alice-phone", "alice"), ("bob-laptop", "bob")):
        pairs[device_id] = keypairs(Algorithm.RSA_OAEP, device_id)
        await service.register_device(
            Device(
                device_id, user_id, pairs[device_id].public_key,
                supported_algorithms={"RSA-OAEP", "ML-KEM-768"},
            )
        )

    start = await service.start_conversation("conv-1", ["alice", "bob"])

    assert start.algorithm is Algorithm.RSA_OAEP
    assert start.distribution.created_count == 2
    assert start.warnings == []
    bob_key = await service.recover_key("conv-1", "bob-laptop", pairs["bob-laptop"].private_key)
    assert bob_key == start.symmetric_key


async def test_start_raises_when_nobody_gets_the_key(service, chat):
    with pytest.raises(EncryptionError):
        await service.start_conversation("conv-1", ["alice", "bob"])


async def test_start_without_devices(service):
    with pytest.raises(KeyNotFoundError):
        await service.start_conversation("conv-1", ["nobody"])


async def test_register_rejects_undeclared_algorithm(service, keypairs):
    pair = keypairs(Algorithm.ML_KEM_512, "liar")
    with pytest.raises(EncryptionError):
        await service.register_device(
            Device("liar", "eve", pair.public_key, supported_algorithms={"RSA-OAEP"})
        )


async def test_rate_limit_via_service(service, chat):
    for _ in range(3):
        await service.rotate("conv-1")
    with pytest.raises(RateLimitException):
        await service.rotate("conv-1")
    assert (await service.try_rotate("conv-1")).status is RotationStatus.RATE_LIMITED


async def test_add_participant(service, chat, keypairs):
    carol = await _register(service, keypairs, "carol-tablet", "carol")

    result = await service.add_participant("conv-1", "carol", chat["start"].symmetric_key)

    assert result.created_count == 1
    assert await service.recover_key("conv-1", "carol-tablet", carol.private_key) == chat["start"].symmetric_key


async def test_remove_participant(service, chat, repository):
    for _ in range(3):
        await service.rotate("conv-1")

    result = await service.remove_participant("conv-1", "bob")

    assert result.ok
    assert [r.device_id for r in result.records] == ["alice-phone"]
    with pytest.raises(KeyNotFoundError):
        await service.recover_key("conv-1", "bob-laptop", chat["bob"].private_key)
    assert (await repository.get_device("bob-laptop")).is_trusted


async def test_revoke_device(service, chat):
    assert await service.revoke_device("bob-laptop", "lost") == 1
    with pytest.raises(KeyNotFoundError):
        await service.recover_key("conv-1", "bob-laptop", chat["bob"].private_key)


async def test_emergency_revoke(service, chat):
    result = await service.emergency_revoke("conv-1", "leak", ["bob-laptop"])

    new_key = result.key_for(Algorithm.RSA_OAEP)
    assert await service.recover_key("conv-1", "alice-phone", chat["alice"].private_key) == new_key
    with pytest.raises(KeyNotFoundError):
        await service.recover_key("conv-1", "bob-laptop", chat["bob"].private_key)


async def test_rekey_device(service, chat, keypairs):
    replacement = keypairs(Algorithm.RSA_OAEP, "alice-phone-v2")
    key = chat["start"].symmetric_key

    await service.rekey_device("alice-phone", replacement.public_key, {"conv-1": key})

    assert await service.recover_key("conv-1", "alice-phone", replacement.private_key) == key


async def test_migration_flow(service, keypairs):
    devices = (("alice-phone", "alice"), ("bob-laptop", "bob"))
    for device_id, user_id in devices:
        await _register(service, keypairs, device_id, user_id)
    await service.start_conversation("conv-1", ["alice", "bob"])

    # Both devices later ship a client that speaks ML-KEM
    for device_id, user_id in devices:
        pair = keypairs(Algorithm.RSA_OAEP, device_id)
        await service.register_device(
            Device(
                device_id, user_id, pair.public_key,
                supported_algorithms={"RSA-OAEP", "ML-KEM-768"},
                quantum_ready=True,
            )
        )

    assert (await service.assess_readiness("conv-1")).overall_ready
    result = await service.migrate(
        "conv-1", keypair_provider=lambda d, a: keypairs(a, d.device_id)
    )
    state = await service.conversation_state("conv-1")
    assert state.is_coexisting

    pq_key = await service.recover_key(
        "conv-1", "bob-laptop", result.keypairs["bob-laptop"].private_key, Algorithm.ML_KEM_768
    )
    assert pq_key == result.symmetric_key

    await service.deactivate_legacy("conv-1")
    assert (await service.conversation_state("conv-1")).algorithms() == {Algorithm.ML_KEM_768}


async def test_backup_roundtrip(service, chat):
    blob = await service.export_backup("alice", "hunter2")
    restored = service.restore_backup(blob, "alice", "hunter2")

    assert [r.device_id for r in restored] == ["alice-phone"]


def test_generate_device_keypair_uses_config(service):
    pair = service.generate_device_keypair()
    assert pair.algorithm is Algorithm.RSA_OAEP
    assert pair.key_strength == 2048


def test_generate_device_keypair_unknown_algorithm(service):
    with pytest.raises(KeyGenerationError):
        service.generate_device_keypair("DES-CBC")


async def test_new_uses_memory_without_database():
    service = await ConversationKeyService.new(config=KeyringConfig(rsa_bits=2048))
    assert isinstance(service.repository, InMemoryKeyRepository)
    await service.close()
