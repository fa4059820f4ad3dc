"""
Environment-driven configuration.

Values are read from the process environment after loading an optional
`.env` file:

    DATABASE_URL                        PostgreSQL DSN for PostgresKeyRepository
    E2EE_ROTATION_LIMIT                 scheduled rotations allowed per window (3)
    E2EE_ROTATION_WINDOW_SECONDS        rolling window length (60)
    E2EE_RSA_BITS                       classical modulus size (4096)
    E2EE_REQUIRE_OPERATIONAL_READINESS  readiness needs the device flag too (true)
    E2EE_BACKUP_SCRYPT_N                scrypt cost for key backups (2**15)
    E2EE_REVOCATION_TARGET_SECONDS      emergency revocation latency target (2.0)
    E2EE_LOG_LEVEL                      package log level (INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .asymmetric import MIN_RSA_BITS
from .errors import ConfigError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


# Upper bound on the scrypt cost, also enforced on restored backup headers
MAX_SCRYPT_N = 2**20


@dataclass(frozen=True)
class KeyringConfig:
    """Runtime settings for the key services."""

    database_url: Optional[str] = None
    rotation_limit: int = 3
    rotation_window_seconds: float = 60.0
    rsa_bits: int = 4096
    require_operational_readiness: bool = True
    backup_scrypt_n: int = 2**15
    revocation_target_seconds: float = 2.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.rsa_bits < MIN_RSA_BITS:
            raise ConfigError(f"rsa_bits must be >= {MIN_RSA_BITS}")
        if self.rotation_limit < 1:
            raise ConfigError("rotation_limit must be >= 1")
        if self.rotation_window_seconds <= 0:
            raise ConfigError("rotation_window_seconds must be positive")
        n = self.backup_scrypt_n
        if n < 2 or n & (n - 1):
            raise ConfigError("backup_scrypt_n must be a power of two")
        if n > MAX_SCRYPT_N:
            raise ConfigError(f"backup_scrypt_n must be <= {MAX_SCRYPT_N}")
        if logging.getLevelName(self.log_level.upper()) not in (
            logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL
        ):
            raise ConfigError(f"Unknown log level: {self.log_level}")

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None,
    ) -> KeyringConfig:
        """
        Build configuration from environment variables.

        When `env` is None the process environment is used, after loading
        `dotenv_path` (or a `.env` found from the working directory).

        Raises:
            ConfigError: On unparsable or out-of-range values
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        return cls(
            database_url=env.get("DATABASE_URL") or None,
            rotation_limit=_int(env, "E2EE_ROTATION_LIMIT", 3),
            rotation_window_seconds=_float(env, "E2EE_ROTATION_WINDOW_SECONDS", 60.0),
            rsa_bits=_int(env, "E2EE_RSA_BITS", 4096, minimum=MIN_RSA_BITS),
            require_operational_readiness=_bool(
                env, "E2EE_REQUIRE_OPERATIONAL_READINESS", True
            ),
            backup_scrypt_n=_int(env, "E2EE_BACKUP_SCRYPT_N", 2**15, minimum=2),
            revocation_target_seconds=_float(env, "E2EE_REVOCATION_TARGET_SECONDS", 2.0),
            log_level=env.get("E2EE_LOG_LEVEL", "INFO"),
        )
