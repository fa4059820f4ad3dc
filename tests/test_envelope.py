"""
Tests for the message envelope codec.
"""

from __future__ import annotations

import json

import pytest

from e2ee_keyring import (
    DecryptionException,
    EncryptedEnvelope,
    decode_envelope,
    decode_extra_fields,
    encode_envelope,
    generate_symmetric_key,
)
from e2ee_keyring.crypto import b64d, b64e


@pytest.fixture
def key() -> bytes:
    return generate_symmetric_key()


def _flip_b64(value: str) -> str:
    raw = bytearray(b64d(value))
    raw[0] ^= 0x01
    return b64e(bytes(raw))


class TestRoundTrip:
    @pytest.mark.parametrize(
        "plaintext",
        [b"", b"hello", "héllo wörld ✓".encode("utf-8"), bytes(range(256)), b"x" * 100_000],
        ids=["empty", "ascii", "unicode", "binary", "large"],
    )
    def test_encode_decode(self, key, plaintext):
        assert decode_envelope(encode_envelope(plaintext, key), key) == plaintext

    def test_str_payload_is_utf8(self, key):
        assert decode_envelope(encode_envelope("héllo", key), key) == "héllo".encode("utf-8")

    def test_json_roundtrip(self, key):
        envelope = encode_envelope(b"over the wire", key)
        restored = EncryptedEnvelope.from_json(envelope.to_json())
        assert restored == envelope
        assert decode_envelope(restored, key) == b"over the wire"

    def test_wire_fields(self, key):
        data = encode_envelope(b"hello", key, timestamp=1_700_000_000).to_dict()

        assert set(data) == {"data", "iv", "hmac", "timestamp", "nonce"}
        assert data["timestamp"] == 1_700_000_000
        assert len(bytes.fromhex(data["nonce"])) == 16
        assert len(b64d(data["iv"])) == 12

    def test_extra_fields(self, key):
        envelope = encode_envelope(
            b"voice note", key, extra_fields={"transcript": "hi there", "waveform": b"\x01\x02"}
        )
        assert decode_envelope(envelope, key) == b"voice note"
        assert decode_extra_fields(envelope, key) == {
            "transcript": b"hi there",
            "waveform": b"\x01\x02",
        }
        assert "extra" in envelope.to_dict()


class TestNonDeterminism:
    def test_same_input_differs(self, key):
        first = encode_envelope(b"same", key)
        second = encode_envelope(b"same", key)
        assert first.data != second.data
        assert first.iv != second.iv

    def test_fifty_distinct_ivs(self, key):
        ivs = {encode_envelope(b"same", key).iv for _ in range(50)}
        assert len(ivs) == 50


class TestTamperDetection:
    @pytest.mark.parametrize("field_name", ["data", "iv", "hmac"])
    def test_flipped_byte(self, key, field_name):
        data = encode_envelope(b"hello world", key).to_dict()
        data[field_name] = _flip_b64(data[field_name])

        with pytest.raises(DecryptionException):
            decode_envelope(EncryptedEnvelope.from_dict(data), key)

    def test_every_ciphertext_byte(self, key):
        data = encode_envelope(b"short", key).to_dict()
        raw = b64d(data["data"])
        for i in range(len(raw)):
            tampered = bytearray(raw)
            tampered[i] ^= 0x80
            with pytest.raises(DecryptionException):
                decode_envelope(EncryptedEnvelope.from_dict({**data, "data": b64e(bytes(tampered))}), key)

    def test_restamped_timestamp(self, key):
        data = encode_envelope(b"hello", key).to_dict()
        data["timestamp"] += 1
        with pytest.raises(DecryptionException):
            decode_envelope(EncryptedEnvelope.from_dict(data), key)

    def test_replaced_nonce(self, key):
        data = encode_envelope(b"hello", key).to_dict()
        data["nonce"] = "00" * 16
        with pytest.raises(DecryptionException):
            decode_envelope(EncryptedEnvelope.from_dict(data), key)

    def test_swapped_extra_field(self, key):
        envelope = encode_envelope(b"body", key, extra_fields={"a": b"1", "b": b"2"})
        data = envelope.to_dict()
        data["extra"]["a"], data["extra"]["b"] = data["extra"]["b"], data["extra"]["a"]
        with pytest.raises(DecryptionException):
            decode_extra_fields(EncryptedEnvelope.from_dict(data), key)

    def test_unknown_field(self, key):
        data = encode_envelope(b"hello", key).to_dict()
        data["injected"] = "x"
        with pytest.raises(DecryptionException):
            decode_envelope(EncryptedEnvelope.from_dict(data), key)

    def test_wrong_key(self, key):
        envelope = encode_envelope(b"hello", key)
        with pytest.raises(DecryptionException):
            decode_envelope(envelope, generate_symmetric_key())


class TestMalformed:
    @pytest.mark.parametrize(
        "data",
        [
            {},
            {"data": "", "iv": "", "hmac": ""},
            {"data": "AA==", "iv": "AA==", "hmac": "AA==", "timestamp": "1", "nonce": "00"},
            {"data": "AA==", "iv": "AA==", "hmac": "AA==", "timestamp": True, "nonce": "00"},
            {"data": 1, "iv": "AA==", "hmac": "AA==", "timestamp": 1, "nonce": "00"},
            {"data": "AA==", "iv": "AA==", "hmac": "AA==", "timestamp": 1, "nonce": "00", "injected": "x"},
            {
                "data": "AA==", "iv": "AA==", "hmac": "AA==", "timestamp": 1, "nonce": "00",
                "extra": {"a": {"data": "AA==", "iv": "AA==", "tag": "AA=="}},
            },
            {
                "data": "AA==", "iv": "AA==", "hmac": "AA==", "timestamp": 1, "nonce": "00",
                "extra": {"a": {"data": "AA=="}},
            },
        ],
    )
    def test_from_dict_rejects(self, data):
        with pytest.raises(DecryptionException):
            EncryptedEnvelope.from_dict(data)

    @pytest.mark.parametrize("raw", ["not json", "[]", json.dumps({"data": "x"})])
    def test_from_json_rejects(self, raw):
        with pytest.raises(DecryptionException):
            EncryptedEnvelope.from_json(raw)

    def test_garbage_fields_fail_closed(self, key):
        envelope = EncryptedEnvelope(
            data="!!", iv="!!", hmac="!!", timestamp=0, nonce="zz"
        )
        with pytest.raises(DecryptionException):
            decode_envelope(envelope, key)
