from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation
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

# Fields callers may change through update_principal. Password, lock state
# and sessions have dedicated atomic operations.
PRINCIPAL_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "username",
        "status",
        "suspended_until",
        "verification",
        "verification_token_hash",
        "verification_expires_at",
        "reset_token_hash",
        "reset_expires_at",
        "profile",
        "last_active_at",
    }
)

PROJECT_MUTABLE_FIELDS = frozenset(
    {"name", "description", "api_key", "api_secret_hash", "policy", "is_active", "team"}
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every operation runs under one re-entrant lock, which gives the same
    per-principal atomicity the Postgres store gets from row-level updates.
    Callers always receive copies; mutating a returned object changes nothing.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.projects: Dict[str, Project] = {}
        # RLock so helpers can re-acquire inside an operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    async def init(self) -> None:
        self.logger.info(
            "memory_store_ready",
            principals=len(self.principals),
            projects=len(self.projects),
            persistent=self.fs_root is not None,
        )

    async def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # -- principals --------------------------------------------------------

    async def create_principal(self, principal: Principal) -> Principal:
        with self._data_lock:
            self._check_identity(principal.scope, principal.email, principal.username)
            stored = copy.deepcopy(principal)
            self.principals[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    async def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self._live(principal_id)
            return copy.deepcopy(principal) if principal else None

    async def find_principal(
        self,
        scope: Scope,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Optional[Principal]:
        if email is None and username is None:
            raise ValueError("email or username is required")
        with self._data_lock:
            for principal in self._in_scope(scope):
                if email is not None and principal.email == email:
                    return copy.deepcopy(principal)
                if username is not None and principal.username == username:
                    return copy.deepcopy(principal)
        return None

    async def find_principal_by_verification_token(
        self, scope: Scope, token_hash: str
    ) -> Optional[Principal]:
        with self._data_lock:
            for principal in self._in_scope(scope):
                if principal.verification_token_hash == token_hash:
                    return copy.deepcopy(principal)
        return None

    async def list_principals(self, scope: Scope, *, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            matches = sorted(self._in_scope(scope), key=lambda p: p.created_at)
            return [copy.deepcopy(p) for p in matches[:limit]]

    async def update_principal(
        self, principal_id: str, *, now: datetime, **changes: Any
    ) -> Optional[Principal]:
        unknown = set(changes) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return None
            if "email" in changes or "username" in changes:
                self._check_identity(
                    principal.scope,
                    changes.get("email") if changes.get("email") != principal.email else None,
                    changes.get("username")
                    if changes.get("username") != principal.username
                    else None,
                )
            for key, value in changes.items():
                setattr(principal, key, copy.deepcopy(value))
            principal.updated_at = now
            self._persist_state()
            return copy.deepcopy(principal)

    async def set_password(
        self, principal_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return None
            principal.password_hash = password_hash
            principal.password_algo = password_algo
            principal.sessions = []
            principal.updated_at = now
            self._persist_state()
            return copy.deepcopy(principal)

    async def rehash_password(
        self, principal_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> None:
        """Swap in a hash with upgraded parameters without touching sessions."""
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is not None:
                principal.password_hash = password_hash
                principal.password_algo = password_algo
                principal.updated_at = now
                self._persist_state()

    async def consume_reset_token(
        self,
        scope: Scope,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        *,
        now: datetime,
    ) -> Optional[Principal]:
        with self._data_lock:
            for principal in self._in_scope(scope):
                if principal.reset_token_hash != token_hash:
                    continue
                if principal.reset_expires_at is None or principal.reset_expires_at <= now:
                    return None
                principal.password_hash = password_hash
                principal.password_algo = password_algo
                principal.reset_token_hash = None
                principal.reset_expires_at = None
                principal.sessions = []
                principal.updated_at = now
                self._persist_state()
                return copy.deepcopy(principal)
        return None

    async def record_failed_attempt(
        self,
        principal_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_minutes: int,
        locking_enabled: bool,
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return None
            if not locking_enabled:
                principal.failed_attempts += 1
            elif principal.locked_until is not None and principal.locked_until <= now:
                # Previous lock ran out: start a fresh count
                principal.failed_attempts = 1
                principal.locked_until = None
            else:
                principal.failed_attempts += 1
                if principal.locked_until is None and principal.failed_attempts >= max_attempts:
                    principal.locked_until = now + timedelta(minutes=lockout_minutes)
            principal.updated_at = now
            self._persist_state()
            return copy.deepcopy(principal)

    async def clear_failed_attempts(
        self, principal_id: str, *, now: datetime
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return None
            principal.failed_attempts = 0
            principal.locked_until = None
            principal.updated_at = now
            self._persist_state()
            return copy.deepcopy(principal)

    async def add_session(
        self, principal_id: str, session: Session, *, max_sessions: int, now: datetime
    ) -> List[str]:
        """Append a session and evict the oldest ones beyond ``max_sessions``.

        Expired entries are pruned first. Returns the ids of evicted sessions.
        """
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                raise ConstraintViolation("principal not found", {"field": "principal_id"})
            principal.sessions = [s for s in principal.sessions if s.expires_at > now]
            principal.sessions.append(copy.deepcopy(session))
            evicted: List[str] = []
            while len(principal.sessions) > max_sessions:
                evicted.append(principal.sessions.pop(0).id)
            principal.updated_at = now
            self._persist_state()
            return evicted

    async def get_session(self, principal_id: str, session_id: str) -> Optional[Session]:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return None
            for session in principal.sessions:
                if session.id == session_id:
                    return copy.deepcopy(session)
        return None

    async def touch_session(self, principal_id: str, session_id: str, *, now: datetime) -> None:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return
            for session in principal.sessions:
                if session.id == session_id:
                    session.last_active_at = now
            principal.last_active_at = now
            principal.updated_at = now
            self._persist_state()

    async def revoke_session(
        self, principal_id: str, session_id: str, *, now: datetime
    ) -> bool:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return False
            remaining = [s for s in principal.sessions if s.id != session_id]
            removed = len(remaining) != len(principal.sessions)
            principal.sessions = remaining
            if removed:
                principal.updated_at = now
                self._persist_state()
            return removed

    async def revoke_all_sessions(self, principal_id: str, *, now: datetime) -> int:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return 0
            count = len(principal.sessions)
            principal.sessions = []
            principal.updated_at = now
            self._persist_state()
            return count

    async def record_login(
        self, principal_id: str, record: LoginRecord, *, history_limit: int
    ) -> None:
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return
            principal.login_history.append(copy.deepcopy(record))
            principal.login_history = principal.login_history[-history_limit:]
            principal.last_login_at = record.at
            principal.last_active_at = record.at
            principal.updated_at = record.at
            self._persist_state()

    async def tombstone_principal(self, principal_id: str, *, now: datetime) -> Optional[Principal]:
        """Soft-delete and release the email/username for reuse."""
        with self._data_lock:
            principal = self._live(principal_id)
            if principal is None:
                return None
            suffix = f".deleted.{int(now.timestamp())}"
            principal.email = principal.email + suffix
            if principal.username:
                principal.username = principal.username + suffix
            principal.status = PrincipalStatus.INACTIVE
            principal.sessions = []
            principal.reset_token_hash = None
            principal.verification_token_hash = None
            principal.deleted_at = now
            principal.updated_at = now
            self._persist_state()
            return copy.deepcopy(principal)

    async def deactivate_scope(self, scope: Scope, *, now: datetime) -> int:
        """Deactivate every principal in ``scope`` and drop their sessions."""
        with self._data_lock:
            count = 0
            for principal in self._in_scope(scope):
                principal.status = PrincipalStatus.INACTIVE
                principal.sessions = []
                principal.updated_at = now
                count += 1
            self._persist_state()
            return count

    # -- projects ----------------------------------------------------------

    async def create_project(self, project: Project) -> Project:
        with self._data_lock:
            if any(p.api_key == project.api_key for p in self.projects.values()):
                raise ConstraintViolation("api key already exists", {"field": "api_key"})
            stored = copy.deepcopy(project)
            self.projects[stored.id] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    async def get_project(self, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
            if project is None or project.deleted_at is not None:
                return None
            return copy.deepcopy(project)

    async def get_project_by_api_key(self, api_key: str) -> Optional[Project]:
        with self._data_lock:
            for project in self.projects.values():
                if project.api_key == api_key and project.deleted_at is None:
                    return copy.deepcopy(project)
        return None

    async def list_projects(self, principal_id: str) -> List[Project]:
        with self._data_lock:
            matches = [
                p
                for p in self.projects.values()
                if p.deleted_at is None and p.has_access(principal_id)
            ]
            matches.sort(key=lambda p: p.created_at)
            return [copy.deepcopy(p) for p in matches]

    async def update_project(
        self, project_id: str, *, now: datetime, **changes: Any
    ) -> Optional[Project]:
        unknown = set(changes) - PROJECT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported project fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            project = self.projects.get(project_id)
            if project is None or project.deleted_at is not None:
                return None
            if "api_key" in changes and any(
                p.api_key == changes["api_key"] and p.id != project_id
                for p in self.projects.values()
            ):
                raise ConstraintViolation("api key already exists", {"field": "api_key"})
            for key, value in changes.items():
                setattr(project, key, copy.deepcopy(value))
            project.updated_at = now
            self._persist_state()
            return copy.deepcopy(project)

    async def increment_project_stats(
        self, project_id: str, *, users: int = 0, logins: int = 0
    ) -> None:
        with self._data_lock:
            project = self.projects.get(project_id)
            if project is None:
                return
            project.total_users += users
            project.total_logins += logins
            self._persist_state()

    async def delete_owned_projects(self, owner_id: str, *, now: datetime) -> List[str]:
        with self._data_lock:
            removed: List[str] = []
            for project in self.projects.values():
                if project.owner_id == owner_id and project.deleted_at is None:
                    project.is_active = False
                    project.deleted_at = now
                    project.updated_at = now
                    removed.append(project.id)
            self._persist_state()
            return removed

    # -- helpers -----------------------------------------------------------

    def _live(self, principal_id: str) -> Optional[Principal]:
        principal = self.principals.get(principal_id)
        if principal is None or principal.deleted_at is not None:
            return None
        return principal

    def _in_scope(self, scope: Scope) -> List[Principal]:
        return [
            p
            for p in self.principals.values()
            if p.scope == scope and p.deleted_at is None
        ]

    def _check_identity(
        self, scope: Scope, email: Optional[str], username: Optional[str]
    ) -> None:
        for existing in self._in_scope(scope):
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "keyward_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "projects": [self._serialize_project(p) for p in self.projects.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.projects = {
            p["id"]: self._deserialize_project(p) for p in data.get("projects", [])
        }
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_principal(self, principal: Principal) -> Dict[str, Any]:
        return {
            "id": principal.id,
            "scope": principal.scope.key,
            "email": principal.email,
            "username": principal.username,
            "password_hash": principal.password_hash,
            "password_algo": principal.password_algo,
            "status": principal.status.value,
            "suspended_until": self._dt(principal.suspended_until),
            "verification": principal.verification.value,
            "verification_token_hash": principal.verification_token_hash,
            "verification_expires_at": self._dt(principal.verification_expires_at),
            "reset_token_hash": principal.reset_token_hash,
            "reset_expires_at": self._dt(principal.reset_expires_at),
            "failed_attempts": principal.failed_attempts,
            "locked_until": self._dt(principal.locked_until),
            "sessions": [
                {
                    "id": s.id,
                    "token_hash": s.token_hash,
                    "created_at": self._dt(s.created_at),
                    "expires_at": self._dt(s.expires_at),
                    "user_agent": s.user_agent,
                    "ip_addr": s.ip_addr,
                    "active": s.active,
                    "last_active_at": self._dt(s.last_active_at),
                }
                for s in principal.sessions
            ],
            "login_history": [
                {
                    "at": self._dt(r.at),
                    "ip_addr": r.ip_addr,
                    "user_agent": r.user_agent,
                    "success": r.success,
                }
                for r in principal.login_history
            ],
            "profile": principal.profile,
            "created_at": self._dt(principal.created_at),
            "updated_at": self._dt(principal.updated_at),
            "last_login_at": self._dt(principal.last_login_at),
            "last_active_at": self._dt(principal.last_active_at),
            "deleted_at": self._dt(principal.deleted_at),
        }

    def _deserialize_principal(self, data: Dict[str, Any]) -> Principal:
        return Principal(
            id=data["id"],
            scope=Scope.from_key(data["scope"]),
            email=data["email"],
            username=data.get("username"),
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            status=PrincipalStatus(data.get("status", "active")),
            suspended_until=self._parse_dt(data.get("suspended_until")),
            verification=VerificationState(data.get("verification", "unverified")),
            verification_token_hash=data.get("verification_token_hash"),
            verification_expires_at=self._parse_dt(data.get("verification_expires_at")),
            reset_token_hash=data.get("reset_token_hash"),
            reset_expires_at=self._parse_dt(data.get("reset_expires_at")),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._parse_dt(data.get("locked_until")),
            sessions=[
                Session(
                    id=s["id"],
                    token_hash=s["token_hash"],
                    created_at=self._parse_dt(s["created_at"]),
                    expires_at=self._parse_dt(s["expires_at"]),
                    user_agent=s.get("user_agent"),
                    ip_addr=s.get("ip_addr"),
                    active=s.get("active", True),
                    last_active_at=self._parse_dt(s.get("last_active_at")),
                )
                for s in data.get("sessions", [])
            ],
            login_history=[
                LoginRecord(
                    at=self._parse_dt(r["at"]),
                    ip_addr=r.get("ip_addr"),
                    user_agent=r.get("user_agent"),
                    success=r.get("success", True),
                )
                for r in data.get("login_history", [])
            ],
            profile=data.get("profile") or {},
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data["updated_at"]),
            last_login_at=self._parse_dt(data.get("last_login_at")),
            last_active_at=self._parse_dt(data.get("last_active_at")),
            deleted_at=self._parse_dt(data.get("deleted_at")),
        )

    def _serialize_project(self, project: Project) -> Dict[str, Any]:
        return {
            "id": project.id,
            "name": project.name,
            "description": project.description,
            "owner_id": project.owner_id,
            "api_key": project.api_key,
            "api_secret_hash": project.api_secret_hash,
            "policy": project.policy.to_dict(),
            "is_active": project.is_active,
            "team": {pid: int(role) for pid, role in project.team.items()},
            "total_users": project.total_users,
            "total_logins": project.total_logins,
            "created_at": self._dt(project.created_at),
            "updated_at": self._dt(project.updated_at),
            "deleted_at": self._dt(project.deleted_at),
        }

    def _deserialize_project(self, data: Dict[str, Any]) -> Project:
        return Project(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            owner_id=data["owner_id"],
            api_key=data["api_key"],
            api_secret_hash=data["api_secret_hash"],
            policy=ProjectPolicy.from_dict(data.get("policy")),
            is_active=data.get("is_active", True),
            team={pid: ProjectRole(role) for pid, role in (data.get("team") or {}).items()},
            total_users=int(data.get("total_users", 0)),
            total_logins=int(data.get("total_logins", 0)),
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data["updated_at"]),
            deleted_at=self._parse_dt(data.get("deleted_at")),
        )
