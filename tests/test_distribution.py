"""
Tests for per-device key distribution.
"""

from __future__ import annotations

import pytest

from e2ee_keyring import (
    Algorithm,
    Device,
    ExistingRecordPolicy,
    InvalidKeyStateError,
    KeyEventType,
    KeyNotFoundError,
    KeyState,
    TrustState,
    generate_symmetric_key,
)


async def _alice_and_bob(make_device):
    alice = await make_device("alice-phone", "alice", conversation_id="conv-1")
    bob = await make_device("bob-laptop", "bob", conversation_id="conv-1")
    return alice, bob


class TestDistribute:
    async def test_creates_record_per_device(self, distributor, lifecycle, make_device):
        (alice, alice_pair), (bob, bob_pair) = await _alice_and_bob(make_device)
        key = generate_symmetric_key()

        result = await distributor.distribute("conv-1", key, [alice, bob])

        assert result.created_count == 2
        assert result.warning_count == 0
        by_device = {r.device_id: r for r in result.created}
        assert lifecycle.unwrap(by_device["alice-phone"], alice_pair.private_key) == key
        assert lifecycle.unwrap(by_device["bob-laptop"], bob_pair.private_key) == key

    async def test_bad_device_does_not_stop_others(self, distributor, make_device, events):
        (alice, _), (bob, _) = await _alice_and_bob(make_device)
        broken = Device("broken", "carol", "RSA-OAEP:AAAA")
        revoked = Device("old-phone", "dave", alice.public_key, trust_state=TrustState.REVOKED)

        result = await distributor.distribute(
            "conv-1", generate_symmetric_key(), [alice, broken, revoked, bob]
        )

        assert result.created_count == 2
        assert {w.device_id for w in result.warnings} == {"broken", "old-phone"}
        assert len(events.of_type(KeyEventType.DISTRIBUTION_WARNING)) == 2
        assert "2 created" in str(result)

    async def test_undeclared_algorithm_is_warning(self, distributor, keypairs):
        pair = keypairs(Algorithm.ML_KEM_512, "liar")
        device = Device("liar", "eve", pair.public_key, supported_algorithms={"RSA-OAEP"})

        result = await distributor.distribute("conv-1", generate_symmetric_key(), [device])

        assert result.created_count == 0
        assert "not among declared algorithms" in result.warnings[0].reason

    async def test_repeat_is_skipped_by_default(self, distributor, make_device, repository):
        (alice, _), _ = await _alice_and_bob(make_device)
        await distributor.distribute("conv-1", generate_symmetric_key(), [alice])

        again = await distributor.distribute("conv-1", generate_symmetric_key(), [alice])

        assert again.created_count == 0
        assert again.skipped == ["alice-phone"]
        assert len(await repository.list_records(device_id="alice-phone")) == 1

    async def test_repeat_can_rotate(self, distributor, make_device, repository, lifecycle):
        (alice, pair), _ = await _alice_and_bob(make_device)
        await distributor.distribute("conv-1", generate_symmetric_key(), [alice])
        new_key = generate_symmetric_key()

        again = await distributor.distribute(
            "conv-1", new_key, [alice], on_existing=ExistingRecordPolicy.ROTATE
        )

        assert [r.version for r in again.rotated] == [2]
        active = await repository.list_records(device_id="alice-phone", active_only=True)
        assert len(active) == 1
        assert lifecycle.unwrap(active[0], pair.private_key) == new_key

    async def test_public_key_override(self, distributor, make_device, keypairs, lifecycle):
        (alice, _), _ = await _alice_and_bob(make_device)
        alice = Device(
            alice.device_id,
            alice.user_id,
            alice.public_key,
            supported_algorithms={Algorithm.RSA_OAEP, Algorithm.ML_KEM_768},
        )
        pq = keypairs(Algorithm.ML_KEM_768, "alice-pq")
        key = generate_symmetric_key()

        result = await distributor.distribute(
            "conv-1", key, [alice], public_keys={"alice-phone": pq.public_key}
        )

        record = result.created[0]
        assert record.algorithm is Algorithm.ML_KEM_768
        assert lifecycle.unwrap(record, pq.private_key) == key


class TestNewDevice:
    async def test_share_with_new_device(self, distributor, make_device, lifecycle):
        (alice, alice_pair), _ = await _alice_and_bob(make_device)
        key = generate_symmetric_key()
        await distributor.distribute("conv-1", key, [alice])
        tablet, tablet_pair = await make_device("alice-tablet", "alice")

        result = await distributor.share_with_new_device(
            "conv-1", alice, alice_pair.private_key, tablet
        )

        assert lifecycle.unwrap(result.created[0], tablet_pair.private_key) == key

    async def test_source_without_record(self, distributor, make_device):
        (alice, alice_pair), (bob, _) = await _alice_and_bob(make_device)
        with pytest.raises(KeyNotFoundError):
            await distributor.share_with_new_device("conv-1", alice, alice_pair.private_key, bob)

    async def test_untrusted_source(self, distributor, make_device):
        (alice, alice_pair), (bob, _) = await _alice_and_bob(make_device)
        untrusted = Device(alice.device_id, alice.user_id, alice.public_key, trust_state=TrustState.UNTRUSTED)
        with pytest.raises(InvalidKeyStateError):
            await distributor.share_with_new_device("conv-1", untrusted, alice_pair.private_key, bob)


class TestRekey:
    async def test_rekey_rotates_supplied_conversations(
        self, distributor, make_device, keypairs, repository, lifecycle
    ):
        (alice, _), _ = await _alice_and_bob(make_device)
        key_1, key_2 = generate_symmetric_key(), generate_symmetric_key()
        await distributor.distribute("conv-1", key_1, [alice])
        await distributor.distribute("conv-2", key_2, [alice])
        replacement = keypairs(Algorithm.RSA_OAEP, "alice-phone-v2")

        result = await distributor.rekey_device(alice, replacement.public_key, {"conv-1": key_1})

        assert [r.conversation_id for r in result.rotated] == ["conv-1"]
        assert len(result.warnings) == 1
        active = await repository.list_records(device_id="alice-phone", active_only=True)
        assert [r.conversation_id for r in active] == ["conv-1"]
        assert lifecycle.unwrap(active[0], replacement.private_key) == key_1
        assert (await repository.get_device("alice-phone")).public_key == replacement.public_key


class TestRevokeDevice:
    async def test_revoke_device_everywhere(self, distributor, make_device, repository, events):
        (alice, _), _ = await _alice_and_bob(make_device)
        await distributor.distribute("conv-1", generate_symmetric_key(), [alice])
        await distributor.distribute("conv-2", generate_symmetric_key(), [alice])

        revoked = await distributor.revoke_device_access("alice-phone", "lost")

        assert len(revoked) == 2
        assert not await repository.list_records(device_id="alice-phone", active_only=True)
        states = {r.state for r in await repository.list_records(device_id="alice-phone")}
        assert states == {KeyState.REVOKED}
        assert (await repository.get_device("alice-phone")).trust_state is TrustState.REVOKED
        assert events.of_type(KeyEventType.DEVICE_REVOKED)

    async def test_revoke_in_one_conversation_keeps_trust(self, distributor, make_device, repository):
        (alice, _), _ = await _alice_and_bob(make_device)
        await distributor.distribute("conv-1", generate_symmetric_key(), [alice])
        await distributor.distribute("conv-2", generate_symmetric_key(), [alice])

        await distributor.revoke_device_access("alice-phone", "left", conversation_id="conv-1")

        active = await repository.list_records(device_id="alice-phone", active_only=True)
        assert [r.conversation_id for r in active] == ["conv-2"]
        assert (await repository.get_device("alice-phone")).is_trusted

    async def test_unknown_device(self, distributor):
        with pytest.raises(KeyNotFoundError):
            await distributor.revoke_device_access("ghost", "lost")
