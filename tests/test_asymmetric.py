"""
Tests for algorithm identifiers, keypairs and key wrapping.
"""

from __future__ import annotations

import pytest

from e2ee_keyring import (
    Algorithm,
    AlgorithmFamily,
    DecryptionException,
    EncryptionError,
    KeyGenerationError,
    generate_asymmetric_keypair,
    generate_symmetric_key,
    unwrap_symmetric_key,
    validate_public_key,
    wrap_symmetric_key,
)
from e2ee_keyring.asymmetric import fingerprint, public_key_strength

ALL_ALGORITHMS = list(Algorithm)


class TestAlgorithm:
    def test_families(self):
        assert Algorithm.RSA_OAEP.family is AlgorithmFamily.CLASSICAL
        assert Algorithm.ML_KEM_768.family is AlgorithmFamily.POST_QUANTUM
        assert Algorithm.HYBRID_RSA_MLKEM768.family is AlgorithmFamily.HYBRID
        assert not AlgorithmFamily.CLASSICAL.quantum_resistant
        assert AlgorithmFamily.HYBRID.quantum_resistant

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("RSA-OAEP", Algorithm.RSA_OAEP),
            ("rsa-4096", Algorithm.RSA_OAEP),
            ("RSA-4096-OAEP", Algorithm.RSA_OAEP),
            ("ml-kem-1024", Algorithm.ML_KEM_1024),
            ("kyber768", Algorithm.ML_KEM_768),
            ("hybrid", Algorithm.HYBRID_RSA_MLKEM768),
            ("HYBRID-RSA4096-MLKEM768", Algorithm.HYBRID_RSA_MLKEM768),
        ],
    )
    def test_parse_aliases(self, raw, expected):
        assert Algorithm.parse(raw) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError):
            Algorithm.parse("DES")

    def test_parse_many_drops_unknown(self):
        assert Algorithm.parse_many(["rsa", "DES", "ML-KEM-512"]) == {
            Algorithm.RSA_OAEP,
            Algorithm.ML_KEM_512,
        }

    def test_hybrid_ranks_highest(self):
        assert max(Algorithm, key=lambda a: a.rank) is Algorithm.HYBRID_RSA_MLKEM768


class TestKeyPairs:
    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS, ids=lambda a: a.value)
    def test_wrap_unwrap(self, keypairs, algorithm):
        pair = keypairs(algorithm)
        key = generate_symmetric_key()

        wrapped = wrap_symmetric_key(key, pair.public_key)
        assert wrapped != key
        assert unwrap_symmetric_key(wrapped, pair.private_key) == key

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS, ids=lambda a: a.value)
    def test_public_key_describes_algorithm(self, keypairs, algorithm):
        pair = keypairs(algorithm)
        assert pair.public_key.startswith(algorithm.value + ":")
        assert validate_public_key(pair.public_key) is algorithm

    @pytest.mark.parametrize("algorithm", ALL_ALGORITHMS, ids=lambda a: a.value)
    def test_wrong_private_key(self, keypairs, algorithm):
        key = generate_symmetric_key()
        wrapped = wrap_symmetric_key(key, keypairs(algorithm, "owner").public_key)

        with pytest.raises(DecryptionException):
            unwrap_symmetric_key(wrapped, keypairs(algorithm, "intruder").private_key)

    def test_wrapping_is_randomized(self, keypairs):
        pair = keypairs(Algorithm.ML_KEM_768)
        key = generate_symmetric_key()
        assert wrap_symmetric_key(key, pair.public_key) != wrap_symmetric_key(key, pair.public_key)

    def test_tampered_wrapped_key(self, keypairs):
        pair = keypairs(Algorithm.HYBRID_RSA_MLKEM768)
        wrapped = bytearray(wrap_symmetric_key(generate_symmetric_key(), pair.public_key))
        wrapped[-1] ^= 0x01

        with pytest.raises(DecryptionException):
            unwrap_symmetric_key(bytes(wrapped), pair.private_key)

    def test_strengths(self, keypairs):
        assert keypairs(Algorithm.RSA_OAEP).key_strength == 2048
        assert public_key_strength(keypairs(Algorithm.RSA_OAEP).public_key) == 2048
        assert keypairs(Algorithm.ML_KEM_1024).key_strength == 1024

    def test_rsa_below_minimum(self):
        with pytest.raises(KeyGenerationError):
            generate_asymmetric_keypair(Algorithm.RSA_OAEP, 1024)

    def test_unknown_algorithm(self):
        with pytest.raises(KeyGenerationError):
            generate_asymmetric_keypair("DES-CBC")

    def test_ml_kem_strength_mismatch(self):
        with pytest.raises(KeyGenerationError):
            generate_asymmetric_keypair(Algorithm.ML_KEM_512, 768)

    def test_fingerprint_is_stable(self, keypairs):
        pair = keypairs(Algorithm.ML_KEM_512)
        assert pair.fingerprint == fingerprint(pair.public_key)
        assert len(pair.fingerprint) == 32
        assert pair.fingerprint != keypairs(Algorithm.ML_KEM_512, "other").fingerprint

    def test_private_key_not_in_repr(self, keypairs):
        pair = keypairs(Algorithm.ML_KEM_512)
        assert pair.private_key not in repr(pair)


class TestValidation:
    @pytest.mark.parametrize(
        "public_key",
        [
            "",
            "no-separator",
            "RSA-OAEP:not base64!",
            "RSA-OAEP:AAAA",
            "ML-KEM-768:AAAA",
            "UNKNOWN:AAAA",
        ],
    )
    def test_malformed_public_keys(self, public_key):
        with pytest.raises(EncryptionError):
            validate_public_key(public_key)
        with pytest.raises(EncryptionError):
            wrap_symmetric_key(generate_symmetric_key(), public_key)

    def test_expected_algorithm_mismatch(self, keypairs):
        with pytest.raises(EncryptionError):
            validate_public_key(keypairs(Algorithm.ML_KEM_512).public_key, Algorithm.RSA_OAEP)

    def test_wrap_rejects_short_key(self, keypairs):
        with pytest.raises(EncryptionError):
            wrap_symmetric_key(b"short", keypairs(Algorithm.RSA_OAEP).public_key)
