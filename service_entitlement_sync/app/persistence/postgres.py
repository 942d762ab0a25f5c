"""
PostgreSQL persistence layer for entitlement synchronization.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import NotFoundError, StoreError, StoreUnavailableError, TransientStoreError
from shared.logging import get_logger
from ..sync.models import Assignment, AssignmentSource, ItemKind, MutationOutcome, UserRecord
from .base import EntitlementStore


@dataclass(frozen=True)
class _KindTables:
    items: str
    assignments: str
    links: str
    column: str


_TABLES = {
    ItemKind.PROGRAM: _KindTables("programs", "program_assignments", "user_type_program_links", "program_id"),
    ItemKind.COURSE: _KindTables("courses", "course_assignments", "user_type_course_links", "course_id"),
}

# Failures a fresh attempt can clear
_TRANSIENT_ERRORS = (
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)


def _rowcount(status: str) -> int:
    """Parse the row count out of a command status such as ``DELETE 3``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


async def _init_connection(conn):
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgreSQLEntitlementStore(EntitlementStore):
    """asyncpg-backed store.

    The connection of the innermost open transaction is kept in a context
    variable so that every store call made inside ``transaction()`` runs on it;
    nested transactions become savepoints.
    """

    name = "postgres"

    def __init__(self, dsn: str, min_pool_size: int = 2, max_pool_size: int = 10,
                 command_timeout: float = 30.0):
        self.dsn = dsn
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self.logger = get_logger("entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None
        self._conn_var: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"postgres_store_conn_{id(self)}", default=None
        )

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
                init=_init_connection,
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise StoreUnavailableError(f"PostgreSQL start failed: {e}") from e

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS user_types (
                    id VARCHAR(255) PRIMARY KEY,
                    name VARCHAR(255),
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id VARCHAR(255) PRIMARY KEY,
                    user_type_id VARCHAR(255) REFERENCES user_types(id) ON DELETE SET NULL,
                    profile JSONB NOT NULL DEFAULT '{}',
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_users_user_type ON users(user_type_id);
            """)

            for tables in _TABLES.values():
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {tables.items} (
                        id VARCHAR(255) PRIMARY KEY
                    );
                """)
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {tables.assignments} (
                        user_id VARCHAR(255) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        {tables.column} VARCHAR(255) NOT NULL REFERENCES {tables.items}(id) ON DELETE CASCADE,
                        source VARCHAR(16) NOT NULL CHECK (source IN ('manual', 'usertype')),
                        is_active BOOLEAN NOT NULL DEFAULT TRUE,
                        assigned_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                        assigned_by VARCHAR(255),
                        PRIMARY KEY (user_id, {tables.column}, source)
                    );
                """)
                await conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{tables.assignments}_item
                    ON {tables.assignments}({tables.column});
                """)
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {tables.links} (
                        user_type_id VARCHAR(255) NOT NULL REFERENCES user_types(id) ON DELETE CASCADE,
                        {tables.column} VARCHAR(255) NOT NULL REFERENCES {tables.items}(id) ON DELETE CASCADE,
                        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                        PRIMARY KEY (user_type_id, {tables.column})
                    );
                """)

    # Connection and transaction scope

    @asynccontextmanager
    async def _translate_errors(self):
        try:
            yield
        except _TRANSIENT_ERRORS as e:
            self.logger.warning("Transient PostgreSQL failure", error_type=type(e).__name__, error=str(e))
            raise TransientStoreError(str(e), {"error_type": type(e).__name__}) from e
        except asyncpg.PostgresError as e:
            self.logger.error("PostgreSQL operation failed", error_type=type(e).__name__, error=str(e))
            raise StoreError(str(e), {"error_type": type(e).__name__}) from e

    @asynccontextmanager
    async def _connection(self):
        current = self._conn_var.get()
        if current is not None:
            async with self._translate_errors():
                yield current
            return

        if self.pool is None:
            raise StoreUnavailableError("PostgreSQL pool is not started")

        async with self._translate_errors():
            async with self.pool.acquire() as conn:
                yield conn

    @asynccontextmanager
    async def transaction(self):
        async with self._connection() as conn:
            token = self._conn_var.set(conn)
            try:
                async with conn.transaction():
                    yield
            finally:
                self._conn_var.reset(token)

    def _assignment_from_row(self, kind: ItemKind, row) -> Assignment:
        return Assignment(
            user_id=row["user_id"],
            item_id=row["item_id"],
            kind=kind,
            source=AssignmentSource(row["source"]),
            is_active=row["is_active"],
            assigned_at=row["assigned_at"],
            assigned_by=row["assigned_by"],
        )

    # AssignmentStore

    async def find_assignments(self, kind, *, user_ids=None, item_ids=None, source=None, active=None):
        tables = _TABLES[kind]
        clauses: List[str] = []
        args: List[Any] = []

        if user_ids is not None:
            args.append(list(user_ids))
            clauses.append(f"user_id = ANY(${len(args)}::varchar[])")
        if item_ids is not None:
            args.append(list(item_ids))
            clauses.append(f"{tables.column} = ANY(${len(args)}::varchar[])")
        if source is not None:
            args.append(source.value)
            clauses.append(f"source = ${len(args)}")
        if active is not None:
            args.append(active)
            clauses.append(f"is_active = ${len(args)}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                SELECT user_id, {tables.column} AS item_id, source, is_active, assigned_at, assigned_by
                FROM {tables.assignments}
                {where}
                ORDER BY user_id, {tables.column}, source
            """, *args)

        return [self._assignment_from_row(kind, row) for row in rows]

    async def set_assignment_state(self, kind, user_id, item_id, source, *, active, assigned_by=None):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            if active:
                row = await conn.fetchrow(f"""
                    INSERT INTO {tables.assignments} AS a
                        (user_id, {tables.column}, source, is_active, assigned_at, assigned_by)
                    VALUES ($1, $2, $3, TRUE, NOW(), $4)
                    ON CONFLICT (user_id, {tables.column}, source) DO UPDATE SET
                        is_active = TRUE,
                        assigned_at = NOW(),
                        assigned_by = EXCLUDED.assigned_by
                    WHERE a.is_active = FALSE
                    RETURNING (xmax = 0) AS inserted
                """, user_id, item_id, source.value, assigned_by)

                if row is None:
                    return MutationOutcome.UNCHANGED
                return MutationOutcome.CREATED if row["inserted"] else MutationOutcome.REACTIVATED

            result = await conn.execute(f"""
                UPDATE {tables.assignments} SET is_active = FALSE
                WHERE user_id = $1 AND {tables.column} = $2 AND source = $3 AND is_active = TRUE
            """, user_id, item_id, source.value)

        return MutationOutcome.DEACTIVATED if _rowcount(result) else MutationOutcome.UNCHANGED

    async def ensure_user_assignments(self, kind, user_id, item_ids, source, assigned_by=None):
        item_ids = list(dict.fromkeys(item_ids))
        if not item_ids:
            return []

        tables = _TABLES[kind]
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                INSERT INTO {tables.assignments} AS a
                    (user_id, {tables.column}, source, is_active, assigned_at, assigned_by)
                SELECT $1, item_id, $3, TRUE, NOW(), $4
                FROM unnest($2::varchar[]) AS item_id
                ON CONFLICT (user_id, {tables.column}, source) DO UPDATE SET
                    is_active = TRUE,
                    assigned_at = NOW(),
                    assigned_by = EXCLUDED.assigned_by
                WHERE a.is_active = FALSE
                RETURNING a.{tables.column} AS item_id
            """, user_id, item_ids, source.value, assigned_by)

        return [row["item_id"] for row in rows]

    async def delete_assignments(self, kind, *, source, user_ids=None, item_ids=None):
        tables = _TABLES[kind]
        clauses = ["source = $1"]
        args: List[Any] = [source.value]

        if user_ids is not None:
            args.append(list(user_ids))
            clauses.append(f"user_id = ANY(${len(args)}::varchar[])")
        if item_ids is not None:
            args.append(list(item_ids))
            clauses.append(f"{tables.column} = ANY(${len(args)}::varchar[])")

        async with self._connection() as conn:
            result = await conn.execute(f"""
                DELETE FROM {tables.assignments} WHERE {' AND '.join(clauses)}
            """, *args)

        return _rowcount(result)

    async def ensure_member_assignments(self, kind, user_type_id, item_id, assigned_by=None):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                INSERT INTO {tables.assignments} AS a
                    (user_id, {tables.column}, source, is_active, assigned_at, assigned_by)
                SELECT u.id, $2, 'usertype', TRUE, NOW(), $3
                FROM users u
                WHERE u.user_type_id = $1
                ON CONFLICT (user_id, {tables.column}, source) DO UPDATE SET
                    is_active = TRUE,
                    assigned_at = NOW(),
                    assigned_by = EXCLUDED.assigned_by
                WHERE a.is_active = FALSE
                RETURNING a.user_id
            """, user_type_id, item_id, assigned_by)

        return [row["user_id"] for row in rows]

    async def delete_member_assignments(self, kind, user_type_id, item_ids):
        item_ids = list(item_ids)
        if not item_ids:
            return []

        tables = _TABLES[kind]
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                DELETE FROM {tables.assignments} a
                USING users u
                WHERE a.user_id = u.id
                  AND u.user_type_id = $1
                  AND a.{tables.column} = ANY($2::varchar[])
                  AND a.source = 'usertype'
                RETURNING a.user_id
            """, user_type_id, item_ids)

        return [row["user_id"] for row in rows]

    async def delete_all_user_assignments(self, user_ids):
        user_ids = list(user_ids)
        deleted = 0
        async with self._connection() as conn:
            for tables in _TABLES.values():
                result = await conn.execute(f"""
                    DELETE FROM {tables.assignments} WHERE user_id = ANY($1::varchar[])
                """, user_ids)
                deleted += _rowcount(result)
        return deleted

    # TypeLinkStore

    async def get_linked_item_ids(self, kind, user_type_id):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                SELECT {tables.column} AS item_id FROM {tables.links}
                WHERE user_type_id = $1
                ORDER BY {tables.column}
            """, user_type_id)
        return [row["item_id"] for row in rows]

    async def link_exists(self, kind, user_type_id, item_id):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            return await conn.fetchval(f"""
                SELECT EXISTS (
                    SELECT 1 FROM {tables.links} WHERE user_type_id = $1 AND {tables.column} = $2
                )
            """, user_type_id, item_id)

    async def create_link(self, kind, user_type_id, item_id):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            result = await conn.execute(f"""
                INSERT INTO {tables.links} (user_type_id, {tables.column})
                VALUES ($1, $2)
                ON CONFLICT (user_type_id, {tables.column}) DO NOTHING
            """, user_type_id, item_id)
        return _rowcount(result) > 0

    async def delete_link(self, kind, user_type_id, item_id):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            result = await conn.execute(f"""
                DELETE FROM {tables.links} WHERE user_type_id = $1 AND {tables.column} = $2
            """, user_type_id, item_id)
        return _rowcount(result) > 0

    async def delete_links_for_type(self, user_type_id):
        deleted = 0
        async with self._connection() as conn:
            for tables in _TABLES.values():
                result = await conn.execute(f"""
                    DELETE FROM {tables.links} WHERE user_type_id = $1
                """, user_type_id)
                deleted += _rowcount(result)
        return deleted

    # UserDirectory

    def _user_from_row(self, row) -> UserRecord:
        return UserRecord(
            user_id=row["id"],
            user_type_id=row["user_type_id"],
            profile=dict(row["profile"] or {}),
            updated_at=row["updated_at"],
        )

    async def get_user(self, user_id):
        async with self._connection() as conn:
            row = await conn.fetchrow("""
                SELECT id, user_type_id, profile, updated_at FROM users WHERE id = $1
            """, user_id)
        return self._user_from_row(row) if row else None

    async def existing_user_ids(self, user_ids):
        async with self._connection() as conn:
            rows = await conn.fetch("""
                SELECT id FROM users WHERE id = ANY($1::varchar[])
            """, list(user_ids))
        return {row["id"] for row in rows}

    async def list_member_ids(self, user_type_id):
        async with self._connection() as conn:
            rows = await conn.fetch("""
                SELECT id FROM users WHERE user_type_id = $1 ORDER BY id
            """, user_type_id)
        return [row["id"] for row in rows]

    async def update_user(self, user_id, updates):
        fields = dict(updates)
        reassign = "user_type_id" in fields
        user_type_id = fields.pop("user_type_id", None)

        async with self._connection() as conn:
            row = await conn.fetchrow("""
                UPDATE users SET
                    profile = profile || $2::jsonb,
                    user_type_id = CASE WHEN $3 THEN $4 ELSE user_type_id END,
                    updated_at = NOW()
                WHERE id = $1
                RETURNING id, user_type_id, profile, updated_at
            """, user_id, fields, reassign, user_type_id)

        if row is None:
            raise NotFoundError("User", user_id)
        return self._user_from_row(row)

    async def delete_users(self, user_ids):
        async with self._connection() as conn:
            result = await conn.execute("""
                DELETE FROM users WHERE id = ANY($1::varchar[])
            """, list(dict.fromkeys(user_ids)))
        return _rowcount(result)

    async def user_type_exists(self, user_type_id):
        async with self._connection() as conn:
            return await conn.fetchval("""
                SELECT EXISTS (SELECT 1 FROM user_types WHERE id = $1)
            """, user_type_id)

    async def detach_members(self, user_type_id):
        async with self._connection() as conn:
            rows = await conn.fetch("""
                UPDATE users SET user_type_id = NULL, updated_at = NOW()
                WHERE user_type_id = $1
                RETURNING id
            """, user_type_id)
        return sorted(row["id"] for row in rows)

    async def delete_user_type(self, user_type_id):
        async with self._connection() as conn:
            result = await conn.execute("""
                DELETE FROM user_types WHERE id = $1
            """, user_type_id)
        return _rowcount(result) > 0

    async def existing_item_ids(self, kind, item_ids):
        tables = _TABLES[kind]
        async with self._connection() as conn:
            rows = await conn.fetch(f"""
                SELECT id FROM {tables.items} WHERE id = ANY($1::varchar[])
            """, list(item_ids))
        return {row["id"] for row in rows}

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            self.logger.error("Database health check failed", error=str(e))
            return False

    async def get_stats(self) -> Dict[str, Any]:
        """Get assignment statistics."""
        stats: Dict[str, Any] = {"backend": self.name}
        async with self._connection() as conn:
            stats["users"] = await conn.fetchval("SELECT COUNT(*) FROM users")
            stats["user_types"] = await conn.fetchval("SELECT COUNT(*) FROM user_types")
            for kind, tables in _TABLES.items():
                row = await conn.fetchrow(f"""
                    SELECT
                        COUNT(*) AS total,
                        COUNT(*) FILTER (WHERE is_active = TRUE) AS active,
                        COUNT(*) FILTER (WHERE source = 'usertype') AS inherited
                    FROM {tables.assignments}
                """)
                stats[f"{kind.value}_assignments"] = row["total"]
                stats[f"{kind.value}_active_assignments"] = row["active"]
                stats[f"{kind.value}_inherited_assignments"] = row["inherited"]
                stats[f"{kind.value}_links"] = await conn.fetchval(f"SELECT COUNT(*) FROM {tables.links}")
        return stats
