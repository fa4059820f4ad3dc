"""
PostgreSQL backend for the key repository.

This module provides:
- PostgresKeyRepository: asyncpg-backed KeyRepository
- SCHEMA: DDL applied by `ensure_schema`

Atomicity:
- Every write that can install an active record runs in one transaction that
  first takes a transaction-scoped advisory lock on the key tuple, then reads
  and checks the current active record, then writes
- A partial unique index on (conversation, user, device, algorithm) WHERE
  is_active backs the check, so even a writer bypassing this class cannot
  leave two active records for one tuple
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional
from uuid import UUID

import asyncpg

from .algorithms import Algorithm
from .errors import ConflictError, InvalidKeyStateError, KeyNotFoundError, StorageError
from .logger import get_logger
from .models import Device, KeyRecord, KeyTuple, TrustState
from .storage import KeyRepository, Revocation

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS e2ee_devices (
    device_id            TEXT PRIMARY KEY,
    user_id              TEXT NOT NULL,
    public_key           TEXT NOT NULL,
    supported_algorithms TEXT[] NOT NULL DEFAULT '{}',
    quantum_ready        BOOLEAN NOT NULL DEFAULT FALSE,
    trust_state          TEXT NOT NULL DEFAULT 'trusted',
    name                 TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS e2ee_devices_user_idx ON e2ee_devices (user_id);

CREATE TABLE IF NOT EXISTS e2ee_participants (
    conversation_id TEXT NOT NULL,
    user_id         TEXT NOT NULL,
    PRIMARY KEY (conversation_id, user_id)
);

CREATE TABLE IF NOT EXISTS e2ee_key_records (
    record_id          UUID PRIMARY KEY,
    conversation_id    TEXT NOT NULL,
    user_id            TEXT NOT NULL,
    device_id          TEXT NOT NULL,
    device_fingerprint TEXT NOT NULL,
    wrapped_key        BYTEA,
    wrapped_key_hash   TEXT NOT NULL DEFAULT '',
    public_key         TEXT NOT NULL,
    key_version        INTEGER NOT NULL CHECK (key_version >= 1),
    algorithm          TEXT NOT NULL,
    key_strength       INTEGER NOT NULL,
    is_active          BOOLEAN NOT NULL,
    revoked_at         TIMESTAMPTZ,
    revocation_reason  TEXT,
    created_at         TIMESTAMPTZ NOT NULL,
    deleted_at         TIMESTAMPTZ,
    UNIQUE (conversation_id, user_id, device_id, algorithm, key_version)
);
CREATE UNIQUE INDEX IF NOT EXISTS e2ee_key_records_one_active
    ON e2ee_key_records (conversation_id, user_id, device_id, algorithm)
    WHERE is_active;
CREATE INDEX IF NOT EXISTS e2ee_key_records_device_idx
    ON e2ee_key_records (device_id);
"""

_RECORD_COLUMNS = """
    record_id, conversation_id, user_id, device_id, device_fingerprint,
    wrapped_key, wrapped_key_hash, public_key, key_version, algorithm,
    key_strength, is_active, revoked_at, revocation_reason, created_at, deleted_at
"""

_TUPLE_WHERE = "conversation_id = $1 AND user_id = $2 AND device_id = $3 AND algorithm = $4"


def _tuple_args(key_tuple: KeyTuple) -> tuple:
    return (
        key_tuple.conversation_id,
        key_tuple.user_id,
        key_tuple.device_id,
        key_tuple.algorithm.value,
    )


@contextmanager
def _db_errors(action: str) -> Iterator[None]:
    """Map driver failures onto the repository's error types."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise ConflictError(f"Failed to {action}: {e.constraint_name or 'unique violation'}")
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
        raise StorageError(f"Failed to {action}: {e}")


class PostgresKeyRepository(KeyRepository):
    """
    PostgreSQL key repository.

    Wrapped keys are stored as-is; the database never sees a conversation key
    or a private key.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL repository.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str, **pool_kwargs) -> PostgresKeyRepository:
        """
        Create a pool for `dsn` and wrap it (async factory method).

        Raises:
            StorageError: If the database is unreachable
        """
        with _db_errors("connect"):
            pool = await asyncpg.create_pool(dsn, **pool_kwargs)
        if pool is None:
            raise StorageError("Failed to create connection pool")
        return cls(pool)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def close(self) -> None:
        await self._pool.close()

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with _db_errors("create schema"):
            await self._pool.execute(SCHEMA)
        logger.info("database schema ensured")

    # -- key records: writes -------------------------------------------------

    @staticmethod
    async def _lock_tuple(conn: asyncpg.Connection, key_tuple: KeyTuple) -> None:
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", str(key_tuple))

    @staticmethod
    async def _max_version(conn: asyncpg.Connection, key_tuple: KeyTuple) -> int:
        value = await conn.fetchval(
            f"SELECT COALESCE(MAX(key_version), 0) FROM e2ee_key_records WHERE {_TUPLE_WHERE}",
            *_tuple_args(key_tuple),
        )
        return int(value)

    @staticmethod
    async def _insert(conn: asyncpg.Connection, record: KeyRecord) -> None:
        await conn.execute(
            f"""
            INSERT INTO e2ee_key_records ({_RECORD_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            """,
            record.record_id,
            record.conversation_id,
            record.user_id,
            record.device_id,
            record.device_fingerprint,
            record.wrapped_key,
            record.wrapped_key_hash,
            record.public_key,
            record.version,
            record.algorithm.value,
            record.key_strength,
            record.is_active,
            record.revoked_at,
            record.revocation_reason,
            record.created_at,
            record.deleted_at,
        )

    async def create(self, record: KeyRecord) -> KeyRecord:
        """
        Insert a new active record.

        Args:
            record: Record to insert, with is_active set

        Returns:
            The stored record
        """
        if not record.is_active:
            raise InvalidKeyStateError("New records must be active")

        with _db_errors("create key record"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await self._lock_tuple(conn, record.key_tuple)
                    active = await conn.fetchval(
                        f"SELECT record_id FROM e2ee_key_records WHERE {_TUPLE_WHERE} AND is_active",
                        *_tuple_args(record.key_tuple),
                    )
                    if active is not None:
                        raise ConflictError(f"Active record already exists for {record.key_tuple}")
                    if record.version <= await self._max_version(conn, record.key_tuple):
                        raise ConflictError(
                            f"Version {record.version} is not above stored versions for {record.key_tuple}"
                        )
                    await self._insert(conn, record)
        return record.copy()

    async def compare_and_swap_active(
        self,
        expected: KeyRecord,
        replacement: Optional[KeyRecord],
        revocation: Optional[Revocation] = None,
    ) -> Optional[KeyRecord]:
        """
        Retire `expected` and install `replacement` in one transaction.

        Args:
            expected: Record the caller believes is active
            replacement: New active record, or None when revoking
            revocation: Revocation stamp for `expected`

        Returns:
            The installed replacement, or None
        """
        if replacement is None and revocation is None:
            raise InvalidKeyStateError("A replacement is required unless revoking")
        if replacement is not None and replacement.key_tuple != expected.key_tuple:
            raise InvalidKeyStateError("Replacement must belong to the same key tuple")

        with _db_errors("swap active key record"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await self._lock_tuple(conn, expected.key_tuple)
                    current = await conn.fetchval(
                        f"""
                        SELECT record_id FROM e2ee_key_records
                        WHERE {_TUPLE_WHERE} AND is_active
                        FOR UPDATE
                        """,
                        *_tuple_args(expected.key_tuple),
                    )
                    if current != expected.record_id:
                        raise ConflictError(
                            f"Record {expected.record_id} is no longer active for {expected.key_tuple}"
                        )

                    await conn.execute(
                        """
                        UPDATE e2ee_key_records
                        SET is_active = FALSE,
                            revoked_at = COALESCE($2, revoked_at),
                            revocation_reason = COALESCE($3, revocation_reason)
                        WHERE record_id = $1
                        """,
                        expected.record_id,
                        revocation.at if revocation else None,
                        revocation.reason if revocation else None,
                    )
                    if replacement is None:
                        return None

                    if replacement.version <= await self._max_version(conn, replacement.key_tuple):
                        raise ConflictError(
                            f"Version {replacement.version} is not above stored versions"
                        )
                    installed = replacement.copy(is_active=True)
                    await self._insert(conn, installed)
        return installed.copy()

    async def _update_returning(self, action: str, query: str, record_id: UUID) -> KeyRecord:
        with _db_errors(action):
            row = await self._pool.fetchrow(query, record_id)
        if row is None:
            raise KeyNotFoundError(f"Key record {record_id}")
        return self._row_to_record(row)

    async def deactivate(self, record_id: UUID) -> KeyRecord:
        return await self._update_returning(
            "deactivate key record",
            f"UPDATE e2ee_key_records SET is_active = FALSE WHERE record_id = $1 RETURNING {_RECORD_COLUMNS}",
            record_id,
        )

    async def soft_delete(self, record_id: UUID) -> KeyRecord:
        return await self._update_returning(
            "soft delete key record",
            f"""
            UPDATE e2ee_key_records
            SET is_active = FALSE, wrapped_key = NULL, deleted_at = NOW()
            WHERE record_id = $1
            RETURNING {_RECORD_COLUMNS}
            """,
            record_id,
        )

    async def hard_delete(self, record_id: UUID) -> bool:
        with _db_errors("delete key record"):
            deleted = await self._pool.fetchval(
                "DELETE FROM e2ee_key_records WHERE record_id = $1 RETURNING record_id",
                record_id,
            )
        return deleted is not None

    # -- key records: reads --------------------------------------------------

    async def get_record(self, record_id: UUID) -> Optional[KeyRecord]:
        with _db_errors("get key record"):
            row = await self._pool.fetchrow(
                f"SELECT {_RECORD_COLUMNS} FROM e2ee_key_records WHERE record_id = $1",
                record_id,
            )
        return self._row_to_record(row) if row else None

    async def get_active(self, key_tuple: KeyTuple) -> Optional[KeyRecord]:
        with _db_errors("get active key record"):
            row = await self._pool.fetchrow(
                f"SELECT {_RECORD_COLUMNS} FROM e2ee_key_records WHERE {_TUPLE_WHERE} AND is_active",
                *_tuple_args(key_tuple),
            )
        return self._row_to_record(row) if row else None

    async def latest_version(self, key_tuple: KeyTuple) -> int:
        with _db_errors("get latest key version"):
            async with self._pool.acquire() as conn:
                return await self._max_version(conn, key_tuple)

    async def list_records(
        self,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        algorithm: Optional[Algorithm] = None,
        active_only: bool = False,
    ) -> List[KeyRecord]:
        filters = {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "device_id": device_id,
            "algorithm": algorithm.value if algorithm else None,
        }
        clauses, args = [], []
        for column, value in filters.items():
            if value is not None:
                args.append(value)
                clauses.append(f"{column} = ${len(args)}")
        if active_only:
            clauses.append("is_active")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with _db_errors("list key records"):
            rows = await self._pool.fetch(
                f"""
                SELECT {_RECORD_COLUMNS} FROM e2ee_key_records {where}
                ORDER BY conversation_id, user_id, device_id, algorithm, key_version
                """,
                *args,
            )
        return [self._row_to_record(row) for row in rows]

    # -- devices and participants ---------------------------------------------

    async def register_device(self, device: Device) -> None:
        with _db_errors("register device"):
            await self._pool.execute(
                """
                INSERT INTO e2ee_devices
                    (device_id, user_id, public_key, supported_algorithms, quantum_ready, trust_state, name)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (device_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    public_key = EXCLUDED.public_key,
                    supported_algorithms = EXCLUDED.supported_algorithms,
                    quantum_ready = EXCLUDED.quantum_ready,
                    trust_state = EXCLUDED.trust_state,
                    name = EXCLUDED.name
                """,
                device.device_id,
                device.user_id,
                device.public_key,
                sorted(a.value for a in device.supported_algorithms),
                device.quantum_ready,
                device.trust_state.value,
                device.name,
            )

    async def get_device(self, device_id: str) -> Optional[Device]:
        with _db_errors("get device"):
            row = await self._pool.fetchrow(
                "SELECT * FROM e2ee_devices WHERE device_id = $1", device_id
            )
        return self._row_to_device(row) if row else None

    async def list_user_devices(self, user_id: str) -> List[Device]:
        with _db_errors("list devices"):
            rows = await self._pool.fetch(
                "SELECT * FROM e2ee_devices WHERE user_id = $1 ORDER BY device_id", user_id
            )
        return [self._row_to_device(row) for row in rows]

    async def add_participant(self, conversation_id: str, user_id: str) -> None:
        with _db_errors("add participant"):
            await self._pool.execute(
                "INSERT INTO e2ee_participants (conversation_id, user_id) VALUES ($1, $2) "
                "ON CONFLICT DO NOTHING",
                conversation_id,
                user_id,
            )

    async def remove_participant(self, conversation_id: str, user_id: str) -> None:
        with _db_errors("remove participant"):
            await self._pool.execute(
                "DELETE FROM e2ee_participants WHERE conversation_id = $1 AND user_id = $2",
                conversation_id,
                user_id,
            )

    async def list_participants(self, conversation_id: str) -> List[str]:
        with _db_errors("list participants"):
            rows = await self._pool.fetch(
                "SELECT user_id FROM e2ee_participants WHERE conversation_id = $1 ORDER BY user_id",
                conversation_id,
            )
        return [row["user_id"] for row in rows]

    async def truncate(self) -> None:
        """Remove every row (test helper)."""
        with _db_errors("truncate tables"):
            await self._pool.execute(
                "TRUNCATE TABLE e2ee_key_records, e2ee_devices, e2ee_participants"
            )

    # -- row conversion ---------------------------------------------------------

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> KeyRecord:
        """Convert database row to KeyRecord."""
        wrapped = row["wrapped_key"]
        return KeyRecord(
            record_id=row["record_id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            device_id=row["device_id"],
            device_fingerprint=row["device_fingerprint"],
            wrapped_key=bytes(wrapped) if wrapped is not None else None,
            wrapped_key_hash=row["wrapped_key_hash"],
            public_key=row["public_key"],
            version=row["key_version"],
            algorithm=Algorithm.parse(row["algorithm"]),
            key_strength=row["key_strength"],
            is_active=row["is_active"],
            revoked_at=row["revoked_at"],
            revocation_reason=row["revocation_reason"],
            created_at=row["created_at"],
            deleted_at=row["deleted_at"],
        )

    @staticmethod
    def _row_to_device(row: asyncpg.Record) -> Device:
        """Convert database row to Device."""
        return Device(
            device_id=row["device_id"],
            user_id=row["user_id"],
            public_key=row["public_key"],
            supported_algorithms=frozenset(row["supported_algorithms"] or ()),
            quantum_ready=row["quantum_ready"],
            trust_state=TrustState(row["trust_state"]),
            name=row["name"],
        )
