"""
Closed set of key-wrapping algorithms and their family classification.

Negotiation and readiness checks only ever compare `Algorithm` members and
their `AlgorithmFamily`; free-form capability strings are parsed once at the
edge with `Algorithm.parse`.
"""

from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Iterable


class AlgorithmFamily(Enum):
    """Algorithm family used for readiness and migration decisions."""

    CLASSICAL = "classical"
    POST_QUANTUM = "post_quantum"
    HYBRID = "hybrid"

    def __str__(self) -> str:
        return self.value

    @property
    def quantum_resistant(self) -> bool:
        return self is not AlgorithmFamily.CLASSICAL


class Algorithm(Enum):
    """Key-wrapping algorithm identifier (embedded in public keys)."""

    RSA_OAEP = "RSA-OAEP"
    ML_KEM_512 = "ML-KEM-512"
    ML_KEM_768 = "ML-KEM-768"
    ML_KEM_1024 = "ML-KEM-1024"
    HYBRID_RSA_MLKEM768 = "HYBRID-RSA-MLKEM768"

    def __str__(self) -> str:
        return self.value

    @property
    def family(self) -> AlgorithmFamily:
        if self is Algorithm.RSA_OAEP:
            return AlgorithmFamily.CLASSICAL
        if self is Algorithm.HYBRID_RSA_MLKEM768:
            return AlgorithmFamily.HYBRID
        return AlgorithmFamily.POST_QUANTUM

    @property
    def rank(self) -> int:
        """Relative strength used to pick the strongest common algorithm."""
        return _RANK[self]

    @property
    def nominal_strength(self) -> int:
        """Default `key_strength` value (bits) recorded for this algorithm."""
        return _NOMINAL_STRENGTH[self]

    @classmethod
    def parse(cls, value: "str | Algorithm") -> Algorithm:
        """
        Parse an algorithm identifier or a legacy capability string.

        Raises:
            ValueError: If the value names no known algorithm
        """
        if isinstance(value, Algorithm):
            return value
        key = str(value).strip().upper()
        try:
            return cls(key)
        except ValueError:
            pass
        alias = _ALIASES.get(key)
        if alias is None:
            raise ValueError(f"Unknown algorithm: {value!r}")
        return alias

    @classmethod
    def parse_many(cls, values: Iterable["str | Algorithm"]) -> FrozenSet[Algorithm]:
        """Parse capabilities, silently dropping identifiers this build doesn't know."""
        parsed = set()
        for value in values:
            try:
                parsed.add(cls.parse(value))
            except ValueError:
                continue
        return frozenset(parsed)


LEGACY_ALGORITHM = Algorithm.RSA_OAEP

_RANK = {
    Algorithm.RSA_OAEP: 10,
    Algorithm.ML_KEM_512: 20,
    Algorithm.ML_KEM_768: 30,
    Algorithm.ML_KEM_1024: 40,
    Algorithm.HYBRID_RSA_MLKEM768: 50,
}

_NOMINAL_STRENGTH = {
    Algorithm.RSA_OAEP: 4096,
    Algorithm.ML_KEM_512: 512,
    Algorithm.ML_KEM_768: 768,
    Algorithm.ML_KEM_1024: 1024,
    Algorithm.HYBRID_RSA_MLKEM768: 768,
}

_ALIASES = {
    "RSA": Algorithm.RSA_OAEP,
    "RSA-2048": Algorithm.RSA_OAEP,
    "RSA-3072": Algorithm.RSA_OAEP,
    "RSA-4096": Algorithm.RSA_OAEP,
    "RSA-4096-OAEP": Algorithm.RSA_OAEP,
    "KYBER512": Algorithm.ML_KEM_512,
    "KYBER768": Algorithm.ML_KEM_768,
    "KYBER1024": Algorithm.ML_KEM_1024,
    "HYBRID": Algorithm.HYBRID_RSA_MLKEM768,
    "HYBRID-RSA4096-MLKEM768": Algorithm.HYBRID_RSA_MLKEM768,
}
