"""PostgreSQL crash store adapter.

Implements CrashStorePort using PostgreSQL with asyncpg for async access.
Provides ACID guarantees for group state with scalability for production use.
"""

import asyncio
import logging
from datetime import datetime

import asyncpg

from crashbucket.core.errors import GroupConflictError, GroupNotFoundError
from crashbucket.core.models import (
    Crash,
    CrashGroup,
    DecodeOutcome,
    GroupStatus,
    MergePlan,
    truncate_message,
)
from crashbucket.core.ports import CrashStorePort

from .codec import (
    decode_breadcrumbs,
    decode_context,
    decode_device_info,
    decode_timestamp,
    encode_breadcrumbs,
    encode_context,
    encode_device_info,
    to_utc,
)

logger = logging.getLogger(__name__)

_GROUP_COLUMNS = (
    "id, app_id, fingerprint, exception_class, exception_message, "
    "first_seen, last_seen, occurrences, status"
)

_INCREMENT_GROUP = """
UPDATE crash_groups
SET occurrences = occurrences + 1,
    last_seen = GREATEST(last_seen, $1)
WHERE id = $2
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgreSQLCrashStore(CrashStorePort):
    """PostgreSQL-backed crash store with connection pooling and async access."""

    def __init__(self, dsn: str, pool_size: int = 10):
        """Initialize PostgreSQL store with connection pooling.

        Args:
            dsn: PostgreSQL connection URL.
            pool_size: Number of connections to maintain in the pool.
        """
        self.dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._pool_size = pool_size
        self._schema_lock = asyncio.Lock()
        self._schema_initialized = False

    async def _init_pool(self) -> asyncpg.Pool:
        """Initialize the connection pool on first use."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=1,
                max_size=self._pool_size,
            )
        return self._pool

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _init_schema(self) -> asyncpg.Pool:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        Uses dedicated _schema_lock to avoid contention with pool operations.
        """
        # Check first without lock to avoid unnecessary locking
        if self._schema_initialized:
            assert self._pool is not None
            return self._pool

        async with self._schema_lock:
            pool = await self._init_pool()
            if self._schema_initialized:
                return pool

            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS crash_groups (
                        id TEXT PRIMARY KEY,
                        app_id TEXT NOT NULL,
                        fingerprint TEXT NOT NULL,
                        exception_class TEXT,
                        exception_message VARCHAR(1000),
                        first_seen TIMESTAMPTZ NOT NULL,
                        last_seen TIMESTAMPTZ NOT NULL,
                        occurrences INTEGER NOT NULL DEFAULT 1,
                        status TEXT NOT NULL DEFAULT 'open',
                        CONSTRAINT uq_crash_groups_app_fingerprint UNIQUE (app_id, fingerprint)
                    )
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS crashes (
                        seq BIGSERIAL UNIQUE,
                        id TEXT PRIMARY KEY,
                        app_id TEXT NOT NULL,
                        group_id TEXT NOT NULL
                            REFERENCES crash_groups(id) ON DELETE CASCADE,
                        version_code INTEGER,
                        stacktrace_raw TEXT NOT NULL,
                        stacktrace_decoded TEXT,
                        decoded_at TIMESTAMPTZ,
                        decode_error TEXT,
                        created_at TIMESTAMPTZ NOT NULL,
                        thread TEXT,
                        is_fatal BOOLEAN NOT NULL DEFAULT TRUE,
                        context_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                        breadcrumbs_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                        device_info_json JSONB
                    )
                    """
                )
                await conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_groups_app_first_seen "
                    "ON crash_groups(app_id, first_seen)"
                )
                await conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_crashes_group "
                    "ON crashes(group_id, created_at DESC)"
                )

            self._schema_initialized = True
            return pool

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def find_group(self, app_id: str, fingerprint: str) -> CrashGroup | None:
        """Look up the group for a fingerprint within one application."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_GROUP_COLUMNS} FROM crash_groups "
                "WHERE app_id = $1 AND fingerprint = $2",
                app_id,
                fingerprint,
            )
        return self._row_to_group(row) if row is not None else None

    async def get_group(self, group_id: str) -> CrashGroup | None:
        """Look up a group by its ID."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_GROUP_COLUMNS} FROM crash_groups WHERE id = $1", group_id
            )
        return self._row_to_group(row) if row is not None else None

    async def list_groups(self, app_id: str) -> list[CrashGroup]:
        """All groups of an application, oldest first."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_GROUP_COLUMNS} FROM crash_groups WHERE app_id = $1 "
                "ORDER BY first_seen ASC, id ASC",
                app_id,
            )
        return [self._row_to_group(row) for row in rows]

    async def insert_group(self, group: CrashGroup) -> None:
        """Persist a brand-new group, relying on the unique constraint for races."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            await self._insert_group_row(conn, group)

    async def increment_group(self, group_id: str, event_time: datetime) -> bool:
        """Add one occurrence and max-merge last_seen in a single statement."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            status = await conn.execute(_INCREMENT_GROUP, to_utc(event_time), group_id)
        return _affected(status) > 0

    async def set_group_status(self, group_id: str, status: GroupStatus) -> bool:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE crash_groups SET status = $1 WHERE id = $2", status.value, group_id
            )
        return _affected(result) > 0

    async def update_group_signature(
        self,
        group_id: str,
        exception_class: str | None,
        exception_message: str | None,
    ) -> bool:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE crash_groups SET exception_class = $1, exception_message = $2 "
                "WHERE id = $3",
                exception_class,
                truncate_message(exception_message),
                group_id,
            )
        return _affected(result) > 0

    async def rekey_group(
        self,
        group_id: str,
        fingerprint: str,
        exception_class: str | None,
        exception_message: str | None,
    ) -> bool:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    UPDATE crash_groups
                    SET fingerprint = $1, exception_class = $2, exception_message = $3
                    WHERE id = $4
                    RETURNING app_id
                    """,
                    fingerprint,
                    exception_class,
                    truncate_message(exception_message),
                    group_id,
                )
            except asyncpg.UniqueViolationError as e:
                app_id = await conn.fetchval(
                    "SELECT app_id FROM crash_groups WHERE id = $1", group_id
                )
                raise GroupConflictError(app_id or "", fingerprint) from e
        return row is not None

    async def merge_groups(self, plan: MergePlan) -> int:
        """Collapse a partition into its target inside one transaction.

        Member rows are locked first so concurrent increments either land
        before the aggregates are read or wait for the merge to commit.
        """
        member_ids = [plan.target_id, *plan.duplicate_ids]
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    "SELECT id, app_id, first_seen, last_seen, occurrences "
                    "FROM crash_groups WHERE id = ANY($1::text[]) ORDER BY id FOR UPDATE",
                    member_ids,
                )
                target = next((r for r in rows if r["id"] == plan.target_id), None)
                if target is None:
                    raise GroupNotFoundError(plan.target_id)
                app_id = target["app_id"]

                holder = await conn.fetchval(
                    "SELECT id FROM crash_groups WHERE app_id = $1 AND fingerprint = $2 "
                    "AND NOT (id = ANY($3::text[]))",
                    app_id,
                    plan.fingerprint,
                    member_ids,
                )
                if holder is not None:
                    raise GroupConflictError(app_id, plan.fingerprint)

                first_seen = min(r["first_seen"] for r in rows)
                last_seen = max(r["last_seen"] for r in rows)
                occurrences = sum(r["occurrences"] for r in rows)

                moved = 0
                if plan.duplicate_ids:
                    duplicates = list(plan.duplicate_ids)
                    moved = _affected(
                        await conn.execute(
                            "UPDATE crashes SET group_id = $1 WHERE group_id = ANY($2::text[])",
                            plan.target_id,
                            duplicates,
                        )
                    )
                    await conn.execute(
                        "DELETE FROM crash_groups WHERE id = ANY($1::text[])", duplicates
                    )

                await conn.execute(
                    """
                    UPDATE crash_groups
                    SET fingerprint = $1, exception_class = $2, exception_message = $3,
                        first_seen = $4, last_seen = $5, occurrences = $6, status = $7
                    WHERE id = $8
                    """,
                    plan.fingerprint,
                    plan.exception_class,
                    plan.exception_message,
                    first_seen,
                    last_seen,
                    occurrences,
                    plan.status.value,
                    plan.target_id,
                )
        return moved

    async def delete_group(self, group_id: str) -> bool:
        """Delete a group; crashes go with it through ON DELETE CASCADE."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM crash_groups WHERE id = $1", group_id)
        return _affected(result) > 0

    # ------------------------------------------------------------------
    # Crashes
    # ------------------------------------------------------------------

    async def insert_crash(self, crash: Crash) -> None:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            try:
                await self._insert_crash_row(conn, crash)
            except asyncpg.ForeignKeyViolationError as e:
                raise GroupNotFoundError(crash.group_id) from e

    async def record_crash(self, crash: Crash) -> bool:
        """Count the crash against its group and insert it in one transaction."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # The row lock taken here keeps a concurrent merge from
                # deleting the group before the crash row lands
                status = await conn.execute(
                    _INCREMENT_GROUP, to_utc(crash.created_at), crash.group_id
                )
                if _affected(status) == 0:
                    return False
                await self._insert_crash_row(conn, crash)
        return True

    async def insert_group_with_crash(self, group: CrashGroup, crash: Crash) -> None:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._insert_group_row(conn, group)
                await self._insert_crash_row(conn, crash)

    @staticmethod
    async def _insert_group_row(conn: asyncpg.Connection, group: CrashGroup) -> None:
        try:
            await conn.execute(
                f"INSERT INTO crash_groups ({_GROUP_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                group.id,
                group.app_id,
                group.fingerprint,
                group.exception_class,
                group.exception_message,
                to_utc(group.first_seen),
                to_utc(group.last_seen),
                group.occurrences,
                group.status.value,
            )
        except asyncpg.UniqueViolationError as e:
            raise GroupConflictError(group.app_id, group.fingerprint) from e

    @staticmethod
    async def _insert_crash_row(conn: asyncpg.Connection, crash: Crash) -> None:
        await conn.execute(
            """
            INSERT INTO crashes
            (id, app_id, group_id, version_code, stacktrace_raw,
             stacktrace_decoded, decoded_at, decode_error, created_at,
             thread, is_fatal, context_json, breadcrumbs_json, device_info_json)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                    $12::jsonb, $13::jsonb, $14::jsonb)
            """,
            crash.id,
            crash.app_id,
            crash.group_id,
            crash.version_code,
            crash.stacktrace_raw,
            crash.stacktrace_decoded,
            to_utc(crash.decoded_at) if crash.decoded_at else None,
            crash.decode_error,
            to_utc(crash.created_at),
            crash.thread,
            crash.is_fatal,
            encode_context(crash.context),
            encode_breadcrumbs(crash.breadcrumbs),
            encode_device_info(crash.device_info),
        )

    async def get_crash(self, crash_id: str) -> Crash | None:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM crashes WHERE id = $1", crash_id)
        return self._row_to_crash(row) if row is not None else None

    async def get_representative_crash(self, group_id: str) -> Crash | None:
        """The first crash stored for the group (lowest seq)."""
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM crashes WHERE group_id = $1 ORDER BY seq ASC LIMIT 1",
                group_id,
            )
        return self._row_to_crash(row) if row is not None else None

    async def list_crashes(self, group_id: str, limit: int = 20) -> list[Crash]:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM crashes WHERE group_id = $1 "
                "ORDER BY created_at DESC, seq DESC LIMIT $2",
                group_id,
                limit,
            )
        return [self._row_to_crash(row) for row in rows]

    async def count_crashes(self, group_id: str) -> int:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM crashes WHERE group_id = $1", group_id
            )
        return int(count or 0)

    async def update_crash_decode(self, crash_id: str, outcome: DecodeOutcome) -> bool:
        pool = await self._init_schema()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE crashes SET stacktrace_decoded = $1, decoded_at = $2, "
                "decode_error = $3 WHERE id = $4",
                outcome.decoded_text,
                to_utc(outcome.decoded_at) if outcome.decoded_at else None,
                outcome.error,
                crash_id,
            )
        return _affected(result) > 0

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_group(row: asyncpg.Record) -> CrashGroup:
        return CrashGroup(
            id=row["id"],
            app_id=row["app_id"],
            fingerprint=row["fingerprint"],
            exception_class=row["exception_class"],
            exception_message=row["exception_message"],
            first_seen=decode_timestamp(row["first_seen"]),
            last_seen=decode_timestamp(row["last_seen"]),
            occurrences=row["occurrences"],
            status=GroupStatus(row["status"]),
        )

    @staticmethod
    def _row_to_crash(row: asyncpg.Record) -> Crash:
        return Crash(
            id=row["id"],
            app_id=row["app_id"],
            group_id=row["group_id"],
            version_code=row["version_code"],
            stacktrace_raw=row["stacktrace_raw"],
            created_at=decode_timestamp(row["created_at"]),
            stacktrace_decoded=row["stacktrace_decoded"],
            decoded_at=decode_timestamp(row["decoded_at"]),
            decode_error=row["decode_error"],
            thread=row["thread"],
            is_fatal=row["is_fatal"],
            context=decode_context(row["context_json"]),
            breadcrumbs=decode_breadcrumbs(row["breadcrumbs_json"]),
            device_info=decode_device_info(row["device_info_json"]),
        )
