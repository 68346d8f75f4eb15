from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation, StorageUnavailable
from keyward.storage.memory import PRINCIPAL_MUTABLE_FIELDS, PROJECT_MUTABLE_FIELDS
from keyward.storage.models import (
    LoginRecord,
    Principal,
    PrincipalStatus,
    Project,
    ProjectPolicy,
    ProjectRole,
    Scope,
    Session,
    VerificationState,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS project (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    owner_id TEXT NOT NULL,
    api_key TEXT NOT NULL UNIQUE,
    api_secret_hash TEXT NOT NULL,
    policy JSONB NOT NULL,
    team JSONB NOT NULL DEFAULT '{}'::jsonb,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    total_users BIGINT NOT NULL DEFAULT 0,
    total_logins BIGINT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    deleted_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS project_owner_idx ON project (owner_id) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS principal (
    id TEXT PRIMARY KEY,
    scope_key TEXT NOT NULL,
    project_id TEXT,
    email TEXT NOT NULL,
    username TEXT,
    password_hash TEXT,
    password_algo TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    suspended_until TIMESTAMPTZ,
    verification TEXT NOT NULL DEFAULT 'unverified',
    verification_token_hash TEXT,
    verification_expires_at TIMESTAMPTZ,
    reset_token_hash TEXT,
    reset_expires_at TIMESTAMPTZ,
    failed_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TIMESTAMPTZ,
    profile JSONB NOT NULL DEFAULT '{}'::jsonb,
    login_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    last_login_at TIMESTAMPTZ,
    last_active_at TIMESTAMPTZ,
    deleted_at TIMESTAMPTZ
);
CREATE UNIQUE INDEX IF NOT EXISTS principal_scope_email
    ON principal (scope_key, email) WHERE deleted_at IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS principal_scope_username
    ON principal (scope_key, username) WHERE deleted_at IS NULL AND username IS NOT NULL;
CREATE INDEX IF NOT EXISTS principal_reset_token_idx
    ON principal (reset_token_hash) WHERE reset_token_hash IS NOT NULL;

CREATE TABLE IF NOT EXISTS principal_session (
    id TEXT PRIMARY KEY,
    principal_id TEXT NOT NULL REFERENCES principal (id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    user_agent TEXT,
    ip_addr TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    last_active_at TIMESTAMPTZ,
    seq BIGSERIAL
);
CREATE INDEX IF NOT EXISTS principal_session_owner_idx ON principal_session (principal_id, seq);
"""

# Attempts reset to 1 when the previous lock has run out; an active lock is
# never extended. All CASE arms read the pre-update row, and the row lock
# taken by UPDATE serializes concurrent failures for the same principal.
_FAILED_ATTEMPT_SQL = """
UPDATE principal SET
    failed_attempts = CASE
        WHEN %(locking)s AND locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
        ELSE failed_attempts + 1
    END,
    locked_until = CASE
        WHEN NOT %(locking)s THEN locked_until
        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
        WHEN locked_until IS NULL AND failed_attempts + 1 >= %(max_attempts)s THEN %(until)s
        ELSE locked_until
    END,
    updated_at = %(now)s
WHERE id = %(id)s AND deleted_at IS NULL
RETURNING *
"""

_RECORD_LOGIN_SQL = """
UPDATE principal SET
    login_history = (
        SELECT COALESCE(jsonb_agg(entry ORDER BY ord), '[]'::jsonb)
        FROM (
            SELECT entry, ord
            FROM jsonb_array_elements(login_history || %(entry)s::jsonb)
                WITH ORDINALITY AS t(entry, ord)
            ORDER BY ord DESC
            LIMIT %(limit)s
        ) recent
    ),
    last_login_at = %(at)s,
    last_active_at = %(at)s,
    updated_at = %(at)s
WHERE id = %(id)s AND deleted_at IS NULL
"""

_COLUMN_ENCODERS = {
    "status": lambda v: PrincipalStatus(v).value,
    "verification": lambda v: VerificationState(v).value,
    "profile": lambda v: json.dumps(v or {}),
    "policy": lambda v: json.dumps(v.to_dict()),
    "team": lambda v: json.dumps({pid: int(role) for pid, role in (v or {}).items()}),
}


class PostgresStore:
    """Postgres-backed store. Every multi-statement operation is one transaction."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
                # milliseconds; a cancelled statement raises QueryCanceled
                "options": f"-c statement_timeout={int(timeout * 1000)}",
            },
        )

    async def init(self) -> None:
        try:
            await self.pool.open(wait=True, timeout=self.timeout)
        except PoolTimeout as exc:
            raise StorageUnavailable("postgres unreachable", {"dsn_host": self._host()}) from exc
        async with self._connect() as conn:
            await conn.execute(SCHEMA_SQL)
        self.logger.info("postgres_store_ready", host=self._host())

    async def close(self) -> None:
        await self.pool.close()

    def _host(self) -> str:
        return self.dsn.rsplit("@", 1)[-1]

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[Any]:
        """Borrow a pooled connection; the block commits or rolls back as a unit."""
        try:
            async with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("storage unavailable") from exc

    # -- principals --------------------------------------------------------

    async def create_principal(self, principal: Principal) -> Principal:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO principal (
                        id, scope_key, project_id, email, username, password_hash,
                        password_algo, status, suspended_until, verification,
                        verification_token_hash, verification_expires_at,
                        failed_attempts, locked_until, profile, login_history,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, '[]', %s, %s)
                    """,
                    (
                        principal.id,
                        principal.scope.key,
                        principal.project_id,
                        principal.email,
                        principal.username,
                        principal.password_hash,
                        principal.password_algo,
                        principal.status.value,
                        principal.suspended_until,
                        principal.verification.value,
                        principal.verification_token_hash,
                        principal.verification_expires_at,
                        principal.failed_attempts,
                        principal.locked_until,
                        json.dumps(principal.profile or {}),
                        principal.created_at,
                        principal.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise self._identity_violation(exc) from exc
        return principal

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM principal WHERE id = %s AND deleted_at IS NULL",
                (principal_id,),
            )
            row = await cur.fetchone()
            if not row:
                return None
            sessions = await self._load_sessions(conn, principal_id)
        return self._principal_from_row(row, sessions)

    async def find_principal(
        self,
        scope: Scope,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Optional[Principal]:
        if email is not None:
            column, value = "email", email
        elif username is not None:
            column, value = "username", username
        else:
            raise ValueError("email or username is required")
        query = sql.SQL(
            "SELECT * FROM principal WHERE scope_key = %s AND {} = %s AND deleted_at IS NULL"
        ).format(sql.Identifier(column))
        return await self._fetch_principal(query, (scope.key, value))

    async def find_principal_by_verification_token(
        self, scope: Scope, token_hash: str
    ) -> Optional[Principal]:
        return await self._fetch_principal(
            """
            SELECT * FROM principal
            WHERE scope_key = %s AND verification_token_hash = %s AND deleted_at IS NULL
            """,
            (scope.key, token_hash),
        )

    async def list_principals(self, scope: Scope, *, limit: int = 100) -> List[Principal]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM principal WHERE scope_key = %s AND deleted_at IS NULL
                ORDER BY created_at LIMIT %s
                """,
                (scope.key, limit),
            )
            rows = await cur.fetchall()
        return [self._principal_from_row(row, []) for row in rows]

    async def update_principal(
        self, principal_id: str, *, now: datetime, **changes: Any
    ) -> Optional[Principal]:
        unknown = set(changes) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {', '.join(sorted(unknown))}")
        assignments, params = self._assignments(changes)
        query = sql.SQL(
            "UPDATE principal SET {}, updated_at = %s WHERE id = %s AND deleted_at IS NULL RETURNING *"
        ).format(assignments)
        try:
            return await self._fetch_principal(query, (*params, now, principal_id), with_sessions=True)
        except errors.UniqueViolation as exc:
            raise self._identity_violation(exc) from exc

    async def set_password(
        self, principal_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> Optional[Principal]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE principal SET password_hash = %s, password_algo = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL RETURNING *
                """,
                (password_hash, password_algo, now, principal_id),
            )
            row = await cur.fetchone()
            if not row:
                return None
            await conn.execute(
                "DELETE FROM principal_session WHERE principal_id = %s", (principal_id,)
            )
        return self._principal_from_row(row, [])

    async def rehash_password(
        self, principal_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE principal SET password_hash = %s, password_algo = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                """,
                (password_hash, password_algo, now, principal_id),
            )

    async def consume_reset_token(
        self,
        scope: Scope,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        *,
        now: datetime,
    ) -> Optional[Principal]:
        async with self._connect() as conn:
            # The WHERE clause is re-checked after the row lock, so only one
            # concurrent reset can match the token.
            cur = await conn.execute(
                """
                UPDATE principal SET
                    password_hash = %s, password_algo = %s,
                    reset_token_hash = NULL, reset_expires_at = NULL, updated_at = %s
                WHERE scope_key = %s AND reset_token_hash = %s AND reset_expires_at > %s
                  AND deleted_at IS NULL
                RETURNING *
                """,
                (password_hash, password_algo, now, scope.key, token_hash, now),
            )
            row = await cur.fetchone()
            if not row:
                return None
            await conn.execute(
                "DELETE FROM principal_session WHERE principal_id = %s", (row["id"],)
            )
        return self._principal_from_row(row, [])

    async def record_failed_attempt(
        self,
        principal_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_minutes: int,
        locking_enabled: bool,
    ) -> Optional[Principal]:
        params = {
            "id": principal_id,
            "now": now,
            "locking": locking_enabled,
            "max_attempts": max_attempts,
            "until": now + timedelta(minutes=lockout_minutes),
        }
        return await self._fetch_principal(_FAILED_ATTEMPT_SQL, params)

    async def clear_failed_attempts(
        self, principal_id: str, *, now: datetime
    ) -> Optional[Principal]:
        return await self._fetch_principal(
            """
            UPDATE principal SET failed_attempts = 0, locked_until = NULL, updated_at = %s
            WHERE id = %s AND deleted_at IS NULL RETURNING *
            """,
            (now, principal_id),
        )

    async def add_session(
        self, principal_id: str, session: Session, *, max_sessions: int, now: datetime
    ) -> List[str]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT id FROM principal WHERE id = %s AND deleted_at IS NULL FOR UPDATE",
                (principal_id,),
            )
            if not await cur.fetchone():
                raise ConstraintViolation("principal not found", {"field": "principal_id"})
            await conn.execute(
                "DELETE FROM principal_session WHERE principal_id = %s AND expires_at <= %s",
                (principal_id, now),
            )
            await conn.execute(
                """
                INSERT INTO principal_session (
                    id, principal_id, token_hash, created_at, expires_at,
                    user_agent, ip_addr, active, last_active_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    principal_id,
                    session.token_hash,
                    session.created_at,
                    session.expires_at,
                    session.user_agent,
                    session.ip_addr,
                    session.active,
                    session.last_active_at,
                ),
            )
            cur = await conn.execute(
                """
                DELETE FROM principal_session WHERE id IN (
                    SELECT id FROM principal_session WHERE principal_id = %s
                    ORDER BY seq DESC OFFSET %s
                )
                RETURNING id
                """,
                (principal_id, max_sessions),
            )
            evicted = [row["id"] for row in await cur.fetchall()]
            await conn.execute(
                "UPDATE principal SET updated_at = %s WHERE id = %s", (now, principal_id)
            )
        return evicted

    async def get_session(self, principal_id: str, session_id: str) -> Optional[Session]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM principal_session WHERE principal_id = %s AND id = %s",
                (principal_id, session_id),
            )
            row = await cur.fetchone()
        return self._session_from_row(row) if row else None

    async def touch_session(self, principal_id: str, session_id: str, *, now: datetime) -> None:
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE principal_session SET last_active_at = %s WHERE principal_id = %s AND id = %s",
                (now, principal_id, session_id),
            )
            await conn.execute(
                "UPDATE principal SET last_active_at = %s, updated_at = %s WHERE id = %s",
                (now, now, principal_id),
            )

    async def revoke_session(
        self, principal_id: str, session_id: str, *, now: datetime
    ) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM principal_session WHERE principal_id = %s AND id = %s",
                (principal_id, session_id),
            )
            removed = cur.rowcount > 0
            if removed:
                await conn.execute(
                    "UPDATE principal SET updated_at = %s WHERE id = %s", (now, principal_id)
                )
        return removed

    async def revoke_all_sessions(self, principal_id: str, *, now: datetime) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM principal_session WHERE principal_id = %s", (principal_id,)
            )
            count = cur.rowcount
            await conn.execute(
                "UPDATE principal SET updated_at = %s WHERE id = %s", (now, principal_id)
            )
        return count

    async def record_login(
        self, principal_id: str, record: LoginRecord, *, history_limit: int
    ) -> None:
        entry = {
            "at": record.at.isoformat(),
            "ip_addr": record.ip_addr,
            "user_agent": record.user_agent,
            "success": record.success,
        }
        async with self._connect() as conn:
            await conn.execute(
                _RECORD_LOGIN_SQL,
                {
                    "entry": json.dumps([entry]),
                    "limit": history_limit,
                    "at": record.at,
                    "id": principal_id,
                },
            )

    async def tombstone_principal(self, principal_id: str, *, now: datetime) -> Optional[Principal]:
        suffix = f".deleted.{int(now.timestamp())}"
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE principal SET
                    email = email || %s,
                    username = CASE WHEN username IS NULL THEN NULL ELSE username || %s END,
                    status = 'inactive',
                    reset_token_hash = NULL,
                    verification_token_hash = NULL,
                    deleted_at = %s,
                    updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (suffix, suffix, now, now, principal_id),
            )
            row = await cur.fetchone()
            if not row:
                return None
            await conn.execute(
                "DELETE FROM principal_session WHERE principal_id = %s", (principal_id,)
            )
        return self._principal_from_row(row, [])

    async def deactivate_scope(self, scope: Scope, *, now: datetime) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE principal SET status = 'inactive', updated_at = %s
                WHERE scope_key = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (now, scope.key),
            )
            ids = [row["id"] for row in await cur.fetchall()]
            if ids:
                await conn.execute(
                    "DELETE FROM principal_session WHERE principal_id = ANY(%s)", (ids,)
                )
        return len(ids)

    # -- projects ----------------------------------------------------------

    async def create_project(self, project: Project) -> Project:
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO project (
                        id, name, description, owner_id, api_key, api_secret_hash,
                        policy, team, is_active, total_users, total_logins,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        project.id,
                        project.name,
                        project.description,
                        project.owner_id,
                        project.api_key,
                        project.api_secret_hash,
                        _COLUMN_ENCODERS["policy"](project.policy),
                        _COLUMN_ENCODERS["team"](project.team),
                        project.is_active,
                        project.total_users,
                        project.total_logins,
                        project.created_at,
                        project.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("api key already exists", {"field": "api_key"}) from exc
        return project

    async def get_project(self, project_id: str) -> Optional[Project]:
        return await self._fetch_project(
            "SELECT * FROM project WHERE id = %s AND deleted_at IS NULL", (project_id,)
        )

    async def get_project_by_api_key(self, api_key: str) -> Optional[Project]:
        return await self._fetch_project(
            "SELECT * FROM project WHERE api_key = %s AND deleted_at IS NULL", (api_key,)
        )

    async def list_projects(self, principal_id: str) -> List[Project]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT * FROM project
                WHERE deleted_at IS NULL AND (owner_id = %s OR team ? %s)
                ORDER BY created_at
                """,
                (principal_id, principal_id),
            )
            rows = await cur.fetchall()
        return [self._project_from_row(row) for row in rows]

    async def update_project(
        self, project_id: str, *, now: datetime, **changes: Any
    ) -> Optional[Project]:
        unknown = set(changes) - PROJECT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported project fields: {', '.join(sorted(unknown))}")
        assignments, params = self._assignments(changes)
        query = sql.SQL(
            "UPDATE project SET {}, updated_at = %s WHERE id = %s AND deleted_at IS NULL RETURNING *"
        ).format(assignments)
        try:
            return await self._fetch_project(query, (*params, now, project_id))
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("api key already exists", {"field": "api_key"}) from exc

    async def increment_project_stats(
        self, project_id: str, *, users: int = 0, logins: int = 0
    ) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE project SET total_users = total_users + %s, total_logins = total_logins + %s
                WHERE id = %s
                """,
                (users, logins, project_id),
            )

    async def delete_owned_projects(self, owner_id: str, *, now: datetime) -> List[str]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE project SET is_active = FALSE, deleted_at = %s, updated_at = %s
                WHERE owner_id = %s AND deleted_at IS NULL
                RETURNING id
                """,
                (now, now, owner_id),
            )
            return [row["id"] for row in await cur.fetchall()]

    # -- helpers -----------------------------------------------------------

    async def _fetch_principal(
        self, query: Any, params: Any, *, with_sessions: bool = False
    ) -> Optional[Principal]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            row = await cur.fetchone()
            if not row:
                return None
            sessions = await self._load_sessions(conn, row["id"]) if with_sessions else []
        return self._principal_from_row(row, sessions)

    async def _fetch_project(self, query: Any, params: Any) -> Optional[Project]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            row = await cur.fetchone()
        return self._project_from_row(row) if row else None

    async def _load_sessions(self, conn: Any, principal_id: str) -> List[Session]:
        cur = await conn.execute(
            "SELECT * FROM principal_session WHERE principal_id = %s ORDER BY seq",
            (principal_id,),
        )
        return [self._session_from_row(row) for row in await cur.fetchall()]

    @staticmethod
    def _assignments(changes: Dict[str, Any]) -> tuple[sql.Composed, list]:
        parts = []
        params = []
        for column, value in changes.items():
            parts.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
            encoder = _COLUMN_ENCODERS.get(column)
            params.append(encoder(value) if encoder else value)
        return sql.SQL(", ").join(parts), params

    @staticmethod
    def _identity_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        field = "username" if "username" in constraint else "email"
        return ConstraintViolation(f"{field} already exists", {"field": field})

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            token_hash=row["token_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            active=bool(row.get("active", True)),
            last_active_at=row.get("last_active_at"),
        )

    @staticmethod
    def _principal_from_row(row: Dict[str, Any], sessions: List[Session]) -> Principal:
        history = row.get("login_history") or []
        if isinstance(history, str):
            history = json.loads(history)
        profile = row.get("profile") or {}
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Principal(
            id=row["id"],
            scope=Scope.from_key(row["scope_key"]),
            email=row["email"],
            username=row.get("username"),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            status=PrincipalStatus(row.get("status") or "active"),
            suspended_until=row.get("suspended_until"),
            verification=VerificationState(row.get("verification") or "unverified"),
            verification_token_hash=row.get("verification_token_hash"),
            verification_expires_at=row.get("verification_expires_at"),
            reset_token_hash=row.get("reset_token_hash"),
            reset_expires_at=row.get("reset_expires_at"),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=row.get("locked_until"),
            sessions=sessions,
            login_history=[
                LoginRecord(
                    at=datetime.fromisoformat(entry["at"]),
                    ip_addr=entry.get("ip_addr"),
                    user_agent=entry.get("user_agent"),
                    success=entry.get("success", True),
                )
                for entry in history
            ],
            profile=profile,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_login_at=row.get("last_login_at"),
            last_active_at=row.get("last_active_at"),
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _project_from_row(row: Dict[str, Any]) -> Project:
        policy = row.get("policy") or {}
        if isinstance(policy, str):
            policy = json.loads(policy)
        team = row.get("team") or {}
        if isinstance(team, str):
            team = json.loads(team)
        return Project(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            owner_id=row["owner_id"],
            api_key=row["api_key"],
            api_secret_hash=row["api_secret_hash"],
            policy=ProjectPolicy.from_dict(policy),
            is_active=bool(row.get("is_active", True)),
            team={pid: ProjectRole(int(role)) for pid, role in team.items()},
            total_users=int(row.get("total_users") or 0),
            total_logins=int(row.get("total_logins") or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )
