"""
Tests for symmetric primitives.
"""

from __future__ import annotations

import pytest

from e2ee_keyring import (
    AES_256_KEY_SIZE,
    IV_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    DecryptionException,
    EncryptedData,
    EncryptionError,
    SecureKey,
    generate_symmetric_key,
    open_sealed,
    seal,
)
from e2ee_keyring.crypto import (
    b64d,
    b64e,
    content_hash,
    keyed_integrity,
    pack_fields,
    unpack_fields,
    verify_integrity,
)


class TestSecureKey:
    def test_generate_is_32_bytes(self):
        assert len(SecureKey.generate()) == AES_256_KEY_SIZE

    def test_equality_is_by_value(self):
        raw = generate_symmetric_key()
        assert SecureKey(raw) == SecureKey(raw)
        assert SecureKey(raw) != SecureKey(generate_symmetric_key())

    def test_repr_hides_material(self):
        raw = generate_symmetric_key()
        assert raw.hex() not in repr(SecureKey(raw))

    def test_rejects_non_bytes(self):
        with pytest.raises(EncryptionError):
            SecureKey("not bytes")


class TestAesGcmCipher:
    def test_encrypt_decrypt(self):
        key = SecureKey.generate()
        encrypted = AesGcmCipher.encrypt(key, b"payload")

        assert len(encrypted.iv) == IV_SIZE
        assert len(encrypted.tag) == TAG_SIZE
        assert AesGcmCipher.decrypt(key, encrypted) == b"payload"

    def test_aad_must_match(self):
        key = generate_symmetric_key()
        encrypted = AesGcmCipher.encrypt(key, b"payload", aad=b"conv-1")

        assert AesGcmCipher.decrypt(key, encrypted, aad=b"conv-1") == b"payload"
        with pytest.raises(DecryptionException):
            AesGcmCipher.decrypt(key, encrypted, aad=b"conv-2")

    def test_wrong_key(self):
        encrypted = AesGcmCipher.encrypt(generate_symmetric_key(), b"payload")
        with pytest.raises(DecryptionException):
            AesGcmCipher.decrypt(generate_symmetric_key(), encrypted)

    def test_invalid_key_size(self):
        with pytest.raises(EncryptionError):
            AesGcmCipher.encrypt(b"short", b"payload")

    def test_aead_blob_roundtrip(self):
        key = generate_symmetric_key()
        encrypted = AesGcmCipher.encrypt(key, b"payload")
        restored = EncryptedData.from_aead_blob(encrypted.to_aead_blob())
        assert AesGcmCipher.decrypt(key, restored) == b"payload"

    def test_decryption_error_message_is_generic(self):
        encrypted = AesGcmCipher.encrypt(generate_symmetric_key(), b"secret payload")
        with pytest.raises(DecryptionException) as exc_info:
            AesGcmCipher.decrypt(generate_symmetric_key(), encrypted)
        assert str(exc_info.value) == "Decryption failed"


class TestSeal:
    def test_seal_and_open(self):
        key = generate_symmetric_key()
        ciphertext, iv, tag = seal(b"hello", key)
        assert open_sealed(ciphertext, iv, tag, key) == b"hello"

    def test_ivs_are_fresh(self):
        key = generate_symmetric_key()
        ivs = {seal(b"same", key)[1] for _ in range(50)}
        assert len(ivs) == 50

    @pytest.mark.parametrize("part", ["ciphertext", "iv", "tag"])
    def test_tampering_fails(self, part):
        key = generate_symmetric_key()
        sealed = dict(zip(("ciphertext", "iv", "tag"), seal(b"hello world", key)))
        flipped = bytearray(sealed[part])
        flipped[0] ^= 0x01
        sealed[part] = bytes(flipped)

        with pytest.raises(DecryptionException):
            open_sealed(sealed["ciphertext"], sealed["iv"], sealed["tag"], key)


class TestHelpers:
    def test_keyed_integrity(self):
        key = generate_symmetric_key()
        tag = keyed_integrity(b"data", key)

        assert verify_integrity(b"data", tag, key)
        assert not verify_integrity(b"datA", tag, key)
        assert not verify_integrity(b"data", tag, generate_symmetric_key())

    def test_content_hash_is_sha256_hex(self):
        assert content_hash(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_pack_fields(self):
        parts = [b"", b"a", b"\x00" * 300]
        assert unpack_fields(pack_fields(*parts), 3) == parts

    def test_unpack_rejects_truncation_and_trailing_data(self):
        blob = pack_fields(b"abc", b"def")
        with pytest.raises(ValueError):
            unpack_fields(blob[:-1], 2)
        with pytest.raises(ValueError):
            unpack_fields(blob + b"x", 2)

    def test_b64d_is_strict(self):
        assert b64d(b64e(b"\xff\x00")) == b"\xff\x00"
        with pytest.raises(ValueError):
            b64d("not base64!")
