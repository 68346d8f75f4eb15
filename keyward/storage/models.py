from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Scope:
    """Namespace a principal or operation belongs to.

    Platform principals share one global namespace; project principals are
    namespaced by their project id, so identity uniqueness is per project.
    """

    project_id: Optional[str] = None

    @classmethod
    def platform(cls) -> "Scope":
        return cls()

    @classmethod
    def project(cls, project_id: str) -> "Scope":
        if not project_id:
            raise ValueError("project scope requires a project id")
        return cls(project_id=project_id)

    @property
    def is_platform(self) -> bool:
        return self.project_id is None

    @property
    def tag(self) -> str:
        return "platform" if self.is_platform else "project"

    @property
    def key(self) -> str:
        return "platform" if self.is_platform else f"project:{self.project_id}"

    @classmethod
    def from_key(cls, key: str) -> "Scope":
        if key == "platform":
            return cls.platform()
        prefix, _, project_id = key.partition(":")
        if prefix != "project" or not project_id:
            raise ValueError(f"invalid scope key: {key}")
        return cls.project(project_id)


class PrincipalStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"


class ProjectRole(IntEnum):
    """Ordered team roles; a higher role satisfies any lower requirement."""

    MEMBER = 1
    ADMIN = 2
    OWNER = 3

    @classmethod
    def parse(cls, value: str | int | "ProjectRole") -> "ProjectRole":
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.upper()]
            except KeyError as exc:
                raise ValueError(f"unknown project role: {value}") from exc
        return cls(int(value))


@dataclass
class Session:
    """One refresh-token grant. Only a hash of the refresh token is kept."""

    id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    active: bool = True
    last_active_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.active and self.expires_at > now


@dataclass
class LoginRecord:
    at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True


@dataclass
class Principal:
    id: str
    scope: Scope
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    suspended_until: Optional[datetime] = None
    verification: VerificationState = VerificationState.UNVERIFIED
    verification_token_hash: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    sessions: List[Session] = field(default_factory=list)
    login_history: List[LoginRecord] = field(default_factory=list)
    profile: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        scope: Scope,
        email: str,
        *,
        username: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> "Principal":
        ts = now or utcnow()
        return cls(
            id=new_id(),
            scope=scope,
            email=normalize_email(email),
            username=username,
            profile=dict(profile or {}),
            created_at=ts,
            updated_at=ts,
        )

    @property
    def project_id(self) -> Optional[str]:
        return self.scope.project_id

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_verified(self) -> bool:
        return self.verification == VerificationState.VERIFIED

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def is_suspended(self, now: datetime) -> bool:
        if self.status != PrincipalStatus.SUSPENDED:
            return False
        return self.suspended_until is None or self.suspended_until > now

    def live_sessions(self, now: datetime) -> List[Session]:
        return [s for s in self.sessions if s.is_live(now)]

    def public_view(self) -> Dict[str, Any]:
        """Serializable view without password, token hashes or sessions."""
        return {
            "id": self.id,
            "scope": self.scope.tag,
            "project_id": self.project_id,
            "email": self.email,
            "username": self.username,
            "status": self.status.value,
            "suspended_until": _iso(self.suspended_until),
            "verification": self.verification.value,
            "email_verified": self.is_verified,
            "profile": dict(self.profile),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_login_at": _iso(self.last_login_at),
            "last_active_at": _iso(self.last_active_at),
        }


@dataclass(frozen=True)
class ProjectPolicy:
    """Per-project auth rules. Instances are immutable for a whole operation."""

    allow_signup: bool = True
    require_email_verification: bool = True
    min_password_length: int = 6
    require_uppercase: bool = False
    require_lowercase: bool = False
    require_numbers: bool = False
    require_special_chars: bool = False
    session_timeout_minutes: int = 15
    max_sessions: int = 5
    enable_account_locking: bool = True
    max_login_attempts: int = 5
    lockout_duration_minutes: int = 120

    # (low, high) inclusive bounds for numeric settings
    BOUNDS = {
        "min_password_length": (4, 128),
        "session_timeout_minutes": (5, 1440),
        "max_sessions": (1, 20),
        "max_login_attempts": (3, 10),
        "lockout_duration_minutes": (5, 1440),
    }

    def validate(self) -> "ProjectPolicy":
        for name, (low, high) in self.BOUNDS.items():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer")
            if not low <= value <= high:
                raise ValueError(f"{name} must be between {low} and {high}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectPolicy":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def with_changes(self, **changes: Any) -> "ProjectPolicy":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"unknown policy fields: {', '.join(sorted(unknown))}")
        merged = {**self.to_dict(), **changes}
        return type(self)(**merged).validate()


@dataclass
class Project:
    id: str
    name: str
    owner_id: str
    api_key: str
    api_secret_hash: str
    policy: ProjectPolicy = field(default_factory=ProjectPolicy)
    description: Optional[str] = None
    is_active: bool = True
    team: Dict[str, ProjectRole] = field(default_factory=dict)
    total_users: int = 0
    total_logins: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def role_of(self, principal_id: str) -> Optional[ProjectRole]:
        if principal_id == self.owner_id:
            return ProjectRole.OWNER
        return self.team.get(principal_id)

    def has_access(self, principal_id: str, required: ProjectRole = ProjectRole.MEMBER) -> bool:
        role = self.role_of(principal_id)
        return role is not None and role >= required

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner_id": self.owner_id,
            "api_key": self.api_key,
            "policy": self.policy.to_dict(),
            "is_active": self.is_active,
            "team": {pid: role.name.lower() for pid, role in self.team.items()},
            "stats": {"total_users": self.total_users, "total_logins": self.total_logins},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
