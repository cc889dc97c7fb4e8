"""SQLite crash store adapter.

Implements CrashStorePort using SQLite with aiosqlite for async access.
Provides ACID guarantees for group state with zero operational overhead.

Connections run in autocommit mode; multi-statement operations open an
explicit ``BEGIN IMMEDIATE`` transaction so concurrent writers serialize
on SQLite's write lock instead of failing half way.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

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
    encode_timestamp,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS crash_groups (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        fingerprint TEXT NOT NULL,
        exception_class TEXT,
        exception_message TEXT,
        first_seen TEXT NOT NULL,
        last_seen TEXT NOT NULL,
        occurrences INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'open',
        UNIQUE (app_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS crashes (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        group_id TEXT NOT NULL REFERENCES crash_groups(id) ON DELETE CASCADE,
        version_code INTEGER,
        stacktrace_raw TEXT NOT NULL,
        stacktrace_decoded TEXT,
        decoded_at TEXT,
        decode_error TEXT,
        created_at TEXT NOT NULL,
        thread TEXT,
        is_fatal INTEGER NOT NULL DEFAULT 1,
        context_json TEXT NOT NULL DEFAULT '{}',
        breadcrumbs_json TEXT NOT NULL DEFAULT '[]',
        device_info_json TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_groups_app_first_seen ON crash_groups(app_id, first_seen)",
    "CREATE INDEX IF NOT EXISTS idx_crashes_group ON crashes(group_id, created_at)",
)

_GROUP_COLUMNS = (
    "id, app_id, fingerprint, exception_class, exception_message, "
    "first_seen, last_seen, occurrences, status"
)

_INCREMENT_GROUP = """
UPDATE crash_groups
SET occurrences = occurrences + 1,
    last_seen = MAX(last_seen, ?)
WHERE id = ?
"""


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class SQLiteCrashStore(CrashStorePort):
    """SQLite-backed crash store with connection pooling and async access."""

    def __init__(self, db_path: str, pool_size: int = 5, busy_timeout: float = 30.0):
        """Initialize SQLite store with connection pooling.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of connections to maintain in the pool.
            busy_timeout: Seconds a writer waits for SQLite's write lock.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._busy_timeout = busy_timeout
        self._schema_lock = asyncio.Lock()
        self._schema_initialized = False

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        conn = await aiosqlite.connect(
            str(self.db_path), timeout=self._busy_timeout, isolation_level=None
        )
        conn.row_factory = aiosqlite.Row
        # Enable foreign keys (per connection in SQLite)
        await conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        await self._init_schema()
        conn = await self._get_connection()
        try:
            yield conn
        finally:
            await self._return_connection(conn)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._connection() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def _init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        """
        if self._schema_initialized:
            return

        async with self._schema_lock:
            # Check again after acquiring lock to prevent race
            if self._schema_initialized:
                return

            conn = await self._get_connection()
            try:
                await conn.execute("PRAGMA journal_mode = WAL")
                for statement in _SCHEMA:
                    await conn.execute(statement)
                self._schema_initialized = True
            finally:
                await self._return_connection(conn)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def find_group(self, app_id: str, fingerprint: str) -> CrashGroup | None:
        """Look up the group for a fingerprint within one application."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM crash_groups WHERE app_id = ? AND fingerprint = ?",
                (app_id, fingerprint),
            )
            row = await cursor.fetchone()
        return self._row_to_group(row) if row is not None else None

    async def get_group(self, group_id: str) -> CrashGroup | None:
        """Look up a group by its ID."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM crash_groups WHERE id = ?", (group_id,)
            )
            row = await cursor.fetchone()
        return self._row_to_group(row) if row is not None else None

    async def list_groups(self, app_id: str) -> list[CrashGroup]:
        """All groups of an application, oldest first."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                f"SELECT {_GROUP_COLUMNS} FROM crash_groups WHERE app_id = ? "
                "ORDER BY first_seen ASC, id ASC",
                (app_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_group(row) for row in rows]

    async def insert_group(self, group: CrashGroup) -> None:
        """Persist a brand-new group, relying on the unique index for races."""
        async with self._connection() as conn:
            await self._insert_group_row(conn, group)

    async def increment_group(self, group_id: str, event_time: datetime) -> bool:
        """Add one occurrence and max-merge last_seen in a single statement."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                _INCREMENT_GROUP, (encode_timestamp(event_time), group_id)
            )
            return cursor.rowcount > 0

    async def set_group_status(self, group_id: str, status: GroupStatus) -> bool:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "UPDATE crash_groups SET status = ? WHERE id = ?",
                (status.value, group_id),
            )
            return cursor.rowcount > 0

    async def update_group_signature(
        self,
        group_id: str,
        exception_class: str | None,
        exception_message: str | None,
    ) -> bool:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "UPDATE crash_groups SET exception_class = ?, exception_message = ? "
                "WHERE id = ?",
                (exception_class, truncate_message(exception_message), group_id),
            )
            return cursor.rowcount > 0

    async def rekey_group(
        self,
        group_id: str,
        fingerprint: str,
        exception_class: str | None,
        exception_message: str | None,
    ) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT app_id FROM crash_groups WHERE id = ?", (group_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return False
            try:
                await conn.execute(
                    "UPDATE crash_groups SET fingerprint = ?, exception_class = ?, "
                    "exception_message = ? WHERE id = ?",
                    (fingerprint, exception_class, truncate_message(exception_message), group_id),
                )
            except aiosqlite.IntegrityError as e:
                raise GroupConflictError(row["app_id"], fingerprint) from e
        return True

    async def merge_groups(self, plan: MergePlan) -> int:
        """Collapse a partition into its target inside one transaction."""
        member_ids = (plan.target_id, *plan.duplicate_ids)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "SELECT app_id FROM crash_groups WHERE id = ?", (plan.target_id,)
            )
            target = await cursor.fetchone()
            if target is None:
                raise GroupNotFoundError(plan.target_id)
            app_id = target["app_id"]

            cursor = await conn.execute(
                "SELECT id FROM crash_groups WHERE app_id = ? AND fingerprint = ? "
                f"AND id NOT IN ({_placeholders(len(member_ids))})",
                (app_id, plan.fingerprint, *member_ids),
            )
            if await cursor.fetchone() is not None:
                raise GroupConflictError(app_id, plan.fingerprint)

            cursor = await conn.execute(
                "SELECT MIN(first_seen), MAX(last_seen), SUM(occurrences) FROM crash_groups "
                f"WHERE id IN ({_placeholders(len(member_ids))})",
                member_ids,
            )
            first_seen, last_seen, occurrences = await cursor.fetchone()

            moved = 0
            if plan.duplicate_ids:
                dup_marks = _placeholders(len(plan.duplicate_ids))
                cursor = await conn.execute(
                    f"UPDATE crashes SET group_id = ? WHERE group_id IN ({dup_marks})",
                    (plan.target_id, *plan.duplicate_ids),
                )
                moved = cursor.rowcount
                await conn.execute(
                    f"DELETE FROM crash_groups WHERE id IN ({dup_marks})",
                    plan.duplicate_ids,
                )

            await conn.execute(
                """
                UPDATE crash_groups
                SET fingerprint = ?, exception_class = ?, exception_message = ?,
                    first_seen = ?, last_seen = ?, occurrences = ?, status = ?
                WHERE id = ?
                """,
                (
                    plan.fingerprint,
                    plan.exception_class,
                    plan.exception_message,
                    first_seen,
                    last_seen,
                    occurrences,
                    plan.status.value,
                    plan.target_id,
                ),
            )
        return moved

    async def delete_group(self, group_id: str) -> bool:
        """Delete a group; crashes go with it through ON DELETE CASCADE."""
        async with self._connection() as conn:
            cursor = await conn.execute("DELETE FROM crash_groups WHERE id = ?", (group_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Crashes
    # ------------------------------------------------------------------

    async def insert_crash(self, crash: Crash) -> None:
        async with self._connection() as conn:
            try:
                await self._insert_crash_row(conn, crash)
            except aiosqlite.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise GroupNotFoundError(crash.group_id) from e
                raise

    async def record_crash(self, crash: Crash) -> bool:
        """Count the crash against its group and insert it in one transaction."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                _INCREMENT_GROUP, (encode_timestamp(crash.created_at), crash.group_id)
            )
            if cursor.rowcount == 0:
                return False
            await self._insert_crash_row(conn, crash)
        return True

    async def insert_group_with_crash(self, group: CrashGroup, crash: Crash) -> None:
        async with self._transaction() as conn:
            await self._insert_group_row(conn, group)
            await self._insert_crash_row(conn, crash)

    @staticmethod
    async def _insert_group_row(conn: aiosqlite.Connection, group: CrashGroup) -> None:
        try:
            await conn.execute(
                f"INSERT INTO crash_groups ({_GROUP_COLUMNS}) VALUES ({_placeholders(9)})",
                (
                    group.id,
                    group.app_id,
                    group.fingerprint,
                    group.exception_class,
                    group.exception_message,
                    encode_timestamp(group.first_seen),
                    encode_timestamp(group.last_seen),
                    group.occurrences,
                    group.status.value,
                ),
            )
        except aiosqlite.IntegrityError as e:
            raise GroupConflictError(group.app_id, group.fingerprint) from e

    @staticmethod
    async def _insert_crash_row(conn: aiosqlite.Connection, crash: Crash) -> None:
        await conn.execute(
            """
            INSERT INTO crashes
            (id, app_id, group_id, version_code, stacktrace_raw,
             stacktrace_decoded, decoded_at, decode_error, created_at,
             thread, is_fatal, context_json, breadcrumbs_json, device_info_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                crash.id,
                crash.app_id,
                crash.group_id,
                crash.version_code,
                crash.stacktrace_raw,
                crash.stacktrace_decoded,
                encode_timestamp(crash.decoded_at) if crash.decoded_at else None,
                crash.decode_error,
                encode_timestamp(crash.created_at),
                crash.thread,
                1 if crash.is_fatal else 0,
                encode_context(crash.context),
                encode_breadcrumbs(crash.breadcrumbs),
                encode_device_info(crash.device_info),
            ),
        )

    async def get_crash(self, crash_id: str) -> Crash | None:
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT * FROM crashes WHERE id = ?", (crash_id,))
            row = await cursor.fetchone()
        return self._row_to_crash(row) if row is not None else None

    async def get_representative_crash(self, group_id: str) -> Crash | None:
        """The first crash stored for the group (lowest rowid)."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM crashes WHERE group_id = ? ORDER BY rowid ASC LIMIT 1",
                (group_id,),
            )
            row = await cursor.fetchone()
        return self._row_to_crash(row) if row is not None else None

    async def list_crashes(self, group_id: str, limit: int = 20) -> list[Crash]:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM crashes WHERE group_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (group_id, limit),
            )
            rows = await cursor.fetchall()
        return [self._row_to_crash(row) for row in rows]

    async def count_crashes(self, group_id: str) -> int:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM crashes WHERE group_id = ?", (group_id,)
            )
            row = await cursor.fetchone()
        return int(row[0])

    async def update_crash_decode(self, crash_id: str, outcome: DecodeOutcome) -> bool:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "UPDATE crashes SET stacktrace_decoded = ?, decoded_at = ?, decode_error = ? "
                "WHERE id = ?",
                (
                    outcome.decoded_text,
                    encode_timestamp(outcome.decoded_at) if outcome.decoded_at else None,
                    outcome.error,
                    crash_id,
                ),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_group(row: aiosqlite.Row) -> CrashGroup:
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
    def _row_to_crash(row: aiosqlite.Row) -> Crash:
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
            is_fatal=bool(row["is_fatal"]),
            context=decode_context(row["context_json"]),
            breadcrumbs=decode_breadcrumbs(row["breadcrumbs_json"]),
            device_info=decode_device_info(row["device_info_json"]),
        )
