"""
Asymmetric key generation and symmetric-key wrapping.

Public and private keys travel as self-describing strings of the form
``"<ALGORITHM-ID>:<base64 body>"`` so a key can always be matched to the
algorithm that produced it.

Wrapping schemes:
- RSA-OAEP: RSA-OAEP(SHA-256) over the 32-byte conversation key
- ML-KEM-*: encapsulate, HKDF(shared secret) -> KEK, AES-GCM(KEK, key)
- HYBRID-RSA-MLKEM768: RSA-OAEP(random secret) and ML-KEM-768 encapsulation,
  HKDF(secret || shared secret) -> KEK, AES-GCM(KEK, key). Breaking either
  half alone does not recover the KEK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from kyber_py.ml_kem import ML_KEM_512, ML_KEM_768, ML_KEM_1024

from .algorithms import Algorithm
from .crypto import (
    AES_256_KEY_SIZE,
    AesGcmCipher,
    EncryptedData,
    b64d,
    b64e,
    content_hash,
    generate_random_bytes,
    pack_fields,
    unpack_fields,
)
from .errors import DecryptionException, EncryptionError, KeyGenerationError

MIN_RSA_BITS: int = 2048
DEFAULT_RSA_BITS: int = 4096

_ML_KEM = {
    Algorithm.ML_KEM_512: ML_KEM_512,
    Algorithm.ML_KEM_768: ML_KEM_768,
    Algorithm.ML_KEM_1024: ML_KEM_1024,
}

# FIPS 203 encapsulation key sizes
_EK_SIZES = {
    Algorithm.ML_KEM_512: 800,
    Algorithm.ML_KEM_768: 1184,
    Algorithm.ML_KEM_1024: 1568,
}

_HYBRID_KEM = Algorithm.ML_KEM_768

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


@dataclass(frozen=True)
class KeyPair:
    """Generated asymmetric key pair. The private key never leaves its device."""

    algorithm: Algorithm
    public_key: str
    private_key: str = field(repr=False)
    key_strength: int

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)


# =============================================================================
# Encoding helpers
# =============================================================================


def _encode(algorithm: Algorithm, body: bytes) -> str:
    return f"{algorithm.value}:{b64e(body)}"


def _decode(encoded: str) -> Tuple[Algorithm, bytes]:
    """Split a self-describing key string. Raises ValueError when malformed."""
    if not isinstance(encoded, str) or ":" not in encoded:
        raise ValueError("not a self-describing key")
    prefix, body = encoded.split(":", 1)
    return Algorithm(prefix), b64d(body)


def _derive_kek(secret: bytes, algorithm: Algorithm) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=AES_256_KEY_SIZE,
        salt=None,
        info=b"e2ee-keyring/wrap/" + algorithm.value.encode("ascii"),
    )
    return hkdf.derive(secret)


# =============================================================================
# Key generation
# =============================================================================


def _generate_rsa(bits: int) -> rsa.RSAPrivateKey:
    if bits < MIN_RSA_BITS:
        raise KeyGenerationError(
            f"RSA key size {bits} below minimum {MIN_RSA_BITS}"
        )
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=bits)
    except Exception as e:
        raise KeyGenerationError(f"RSA key generation failed: {e}")


def _rsa_public_der(key: rsa.RSAPrivateKey) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _rsa_private_der(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _generate_kem(algorithm: Algorithm) -> Tuple[bytes, bytes]:
    try:
        return _ML_KEM[algorithm].keygen()
    except Exception as e:
        raise KeyGenerationError(f"{algorithm.value} key generation failed: {e}")


def generate_asymmetric_keypair(
    algorithm: Algorithm = Algorithm.RSA_OAEP,
    strength: Optional[int] = None,
) -> KeyPair:
    """
    Generate a key pair sized to the requested security level.

    For RSA (and the RSA half of the hybrid scheme) `strength` is the modulus
    size in bits. ML-KEM parameter sets are fixed by the algorithm, so a
    `strength` that disagrees with the parameter set is rejected.

    Raises:
        KeyGenerationError: On an unknown algorithm, entropy failure, or an
            undersized or mismatched strength
    """
    try:
        algorithm = Algorithm.parse(algorithm)
    except ValueError as e:
        raise KeyGenerationError(str(e))

    if algorithm is Algorithm.RSA_OAEP:
        bits = strength or DEFAULT_RSA_BITS
        key = _generate_rsa(bits)
        return KeyPair(
            algorithm=algorithm,
            public_key=_encode(algorithm, _rsa_public_der(key)),
            private_key=_encode(algorithm, _rsa_private_der(key)),
            key_strength=bits,
        )

    if algorithm is Algorithm.HYBRID_RSA_MLKEM768:
        key = _generate_rsa(strength or DEFAULT_RSA_BITS)
        ek, dk = _generate_kem(_HYBRID_KEM)
        return KeyPair(
            algorithm=algorithm,
            public_key=_encode(algorithm, pack_fields(_rsa_public_der(key), ek)),
            private_key=_encode(algorithm, pack_fields(_rsa_private_der(key), dk)),
            key_strength=algorithm.nominal_strength,
        )

    if strength is not None and strength != algorithm.nominal_strength:
        raise KeyGenerationError(
            f"{algorithm.value} has fixed strength {algorithm.nominal_strength}"
        )
    ek, dk = _generate_kem(algorithm)
    return KeyPair(
        algorithm=algorithm,
        public_key=_encode(algorithm, ek),
        private_key=_encode(algorithm, dk),
        key_strength=algorithm.nominal_strength,
    )


# =============================================================================
# Public key inspection
# =============================================================================


def _load_rsa_public(der: bytes) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(der)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("not an RSA key")
    if key.key_size < MIN_RSA_BITS:
        raise ValueError("RSA key too small")
    return key


def _parse_public(public_key: str) -> Tuple[Algorithm, object, Optional[bytes]]:
    """Returns (algorithm, rsa_public_or_None, kem_ek_or_None)."""
    algorithm, body = _decode(public_key)
    if algorithm is Algorithm.RSA_OAEP:
        return algorithm, _load_rsa_public(body), None
    if algorithm is Algorithm.HYBRID_RSA_MLKEM768:
        rsa_der, ek = unpack_fields(body, 2)
        if len(ek) != _EK_SIZES[_HYBRID_KEM]:
            raise ValueError("bad encapsulation key size")
        return algorithm, _load_rsa_public(rsa_der), ek
    if len(body) != _EK_SIZES[algorithm]:
        raise ValueError("bad encapsulation key size")
    return algorithm, None, body


def validate_public_key(
    public_key: str, expected: Optional[Algorithm] = None
) -> Algorithm:
    """
    Check that a public key is well-formed and return its algorithm.

    Raises:
        EncryptionError: If malformed or not of the `expected` algorithm
    """
    try:
        algorithm, _, _ = _parse_public(public_key)
    except Exception:
        raise EncryptionError("Malformed or unsupported public key")
    if expected is not None and algorithm is not expected:
        raise EncryptionError(
            f"Public key algorithm {algorithm.value} does not match {expected.value}"
        )
    return algorithm


def public_key_strength(public_key: str) -> int:
    """Key strength in bits as recorded on key records."""
    algorithm, rsa_key, _ = _parse_public(public_key)
    if algorithm is Algorithm.RSA_OAEP:
        return rsa_key.key_size
    return algorithm.nominal_strength


def fingerprint(public_key: str) -> str:
    """Deterministic fingerprint of an encoded public key (32 hex chars)."""
    return content_hash(public_key.encode("ascii"))[:32]


# =============================================================================
# Wrapping
# =============================================================================


def _wrap_with_kek(kek: bytes, symmetric_key: bytes, algorithm: Algorithm) -> bytes:
    return AesGcmCipher.encrypt(
        kek, symmetric_key, algorithm.value.encode("ascii")
    ).to_aead_blob()


def wrap_symmetric_key(symmetric_key: bytes, public_key: str) -> bytes:
    """
    Wrap a 32-byte symmetric key for the holder of `public_key`.

    Output is randomized; wrapping the same key twice gives different bytes.

    Raises:
        EncryptionError: On malformed key material or unsupported algorithm
    """
    if len(symmetric_key) != AES_256_KEY_SIZE:
        raise EncryptionError("Symmetric key must be 32 bytes")
    try:
        algorithm, rsa_key, ek = _parse_public(public_key)
    except Exception:
        raise EncryptionError("Malformed or unsupported public key")

    try:
        if algorithm is Algorithm.RSA_OAEP:
            return rsa_key.encrypt(bytes(symmetric_key), _OAEP)

        if algorithm is Algorithm.HYBRID_RSA_MLKEM768:
            classical_secret = generate_random_bytes(AES_256_KEY_SIZE)
            rsa_ct = rsa_key.encrypt(classical_secret, _OAEP)
            shared, kem_ct = _ML_KEM[_HYBRID_KEM].encaps(ek)
            kek = _derive_kek(classical_secret + shared, algorithm)
            return pack_fields(rsa_ct, kem_ct, _wrap_with_kek(kek, symmetric_key, algorithm))

        shared, kem_ct = _ML_KEM[algorithm].encaps(ek)
        kek = _derive_kek(shared, algorithm)
        return pack_fields(kem_ct, _wrap_with_kek(kek, symmetric_key, algorithm))
    except EncryptionError:
        raise
    except Exception:
        raise EncryptionError(f"Key wrapping failed for {algorithm.value}")


def unwrap_symmetric_key(wrapped: bytes, private_key: str) -> bytes:
    """
    Recover a wrapped symmetric key with the device's private key.

    Raises:
        DecryptionException: Wrong private key, tampering or malformed input
    """
    try:
        algorithm, body = _decode(private_key)

        if algorithm is Algorithm.RSA_OAEP:
            key = serialization.load_der_private_key(body, password=None)
            symmetric_key = key.decrypt(bytes(wrapped), _OAEP)

        elif algorithm is Algorithm.HYBRID_RSA_MLKEM768:
            rsa_der, dk = unpack_fields(body, 2)
            rsa_ct, kem_ct, sealed = unpack_fields(bytes(wrapped), 3)
            key = serialization.load_der_private_key(rsa_der, password=None)
            classical_secret = key.decrypt(rsa_ct, _OAEP)
            shared = _ML_KEM[_HYBRID_KEM].decaps(dk, kem_ct)
            kek = _derive_kek(classical_secret + shared, algorithm)
            symmetric_key = AesGcmCipher.decrypt(
                kek, EncryptedData.from_aead_blob(sealed), algorithm.value.encode("ascii")
            )

        else:
            kem_ct, sealed = unpack_fields(bytes(wrapped), 2)
            shared = _ML_KEM[algorithm].decaps(body, kem_ct)
            kek = _derive_kek(shared, algorithm)
            symmetric_key = AesGcmCipher.decrypt(
                kek, EncryptedData.from_aead_blob(sealed), algorithm.value.encode("ascii")
            )
    except Exception:
        raise DecryptionException()

    if len(symmetric_key) != AES_256_KEY_SIZE:
        raise DecryptionException()
    return symmetric_key
