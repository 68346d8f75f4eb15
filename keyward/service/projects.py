from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from keyward.logging import get_logger
from keyward.service.errors import (
    ForbiddenError,
    NotFoundError,
    ProjectInactive,
    ProjectNotFound,
    ValidationError,
    surface_transient,
)
from keyward.service.tokens import generate_api_key, generate_api_secret
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    Principal,
    Project,
    ProjectPolicy,
    ProjectRole,
    Scope,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

_KEY_ATTEMPTS = 3


class ProjectStore(Protocol):
    async def create_project(self, project: Project) -> Project: ...

    async def get_project(self, project_id: str) -> Optional[Project]: ...

    async def get_project_by_api_key(self, api_key: str) -> Optional[Project]: ...

    async def list_projects(self, principal_id: str) -> List[Project]: ...

    async def update_project(
        self, project_id: str, *, now: datetime, **changes: Any
    ) -> Optional[Project]: ...

    async def increment_project_stats(
        self, project_id: str, *, users: int = 0, logins: int = 0
    ) -> None: ...

    async def delete_owned_projects(self, owner_id: str, *, now: datetime) -> List[str]: ...

    async def deactivate_scope(self, scope: Scope, *, now: datetime) -> int: ...


@dataclass
class IssuedKeys:
    """A project together with its API secret, shown once and never stored raw."""

    project: Project
    api_secret: str


def hash_api_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class ProjectService:
    """Project lifecycle plus the API-key lookup the auth workflow depends on."""

    def __init__(
        self, store: ProjectStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    async def resolve_api_key(self, api_key: str) -> Project:
        """Project for ``api_key``; unknown keys and disabled projects are distinct errors."""
        if not api_key:
            raise ProjectNotFound()
        project = await self.store.get_project_by_api_key(api_key.strip())
        if project is None:
            raise ProjectNotFound()
        if not project.is_active:
            raise ProjectInactive()
        return project

    async def get_active_project(self, project_id: str) -> Project:
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound()
        if not project.is_active:
            raise ProjectInactive()
        return project

    async def record_signup(self, project_id: str) -> None:
        await self.store.increment_project_stats(project_id, users=1)

    async def record_login(self, project_id: str) -> None:
        await self.store.increment_project_stats(project_id, logins=1)

    @surface_transient
    async def create_project(
        self,
        owner: Principal,
        name: str,
        *,
        description: Optional[str] = None,
        policy: Optional[Dict[str, Any]] = None,
    ) -> IssuedKeys:
        if not owner.scope.is_platform:
            raise ForbiddenError("only platform accounts can own projects")
        name = (name or "").strip()
        if not name or len(name) > 100:
            raise ValidationError("project name must be 1-100 characters")
        resolved = self._policy(ProjectPolicy(), policy or {})
        now = self._clock()
        for _ in range(_KEY_ATTEMPTS):
            secret = generate_api_secret()
            project = Project(
                id=new_id(),
                name=name,
                description=description,
                owner_id=owner.id,
                api_key=generate_api_key(),
                api_secret_hash=hash_api_secret(secret),
                policy=resolved,
                created_at=now,
                updated_at=now,
            )
            try:
                created = await self.store.create_project(project)
            except ConstraintViolation:
                logger.warning("api_key_collision", owner_id=owner.id)
                continue
            logger.info("project_created", project_id=created.id, owner_id=owner.id)
            return IssuedKeys(project=created, api_secret=secret)
        raise ValidationError("could not allocate a unique api key")

    @surface_transient
    async def list_projects(self, principal: Principal) -> List[Project]:
        return await self.store.list_projects(principal.id)

    @surface_transient
    async def require_access(
        self, project_id: str, principal_id: str, role: ProjectRole = ProjectRole.MEMBER
    ) -> Project:
        project = await self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound()
        if not project.has_access(principal_id, role):
            raise ForbiddenError("insufficient project role", detail={"required": role.name.lower()})
        return project

    @surface_transient
    async def regenerate_keys(self, project_id: str, actor_id: str) -> IssuedKeys:
        await self.require_access(project_id, actor_id, ProjectRole.OWNER)
        for _ in range(_KEY_ATTEMPTS):
            secret = generate_api_secret()
            try:
                updated = await self.store.update_project(
                    project_id,
                    now=self._clock(),
                    api_key=generate_api_key(),
                    api_secret_hash=hash_api_secret(secret),
                )
            except ConstraintViolation:
                continue
            if updated is None:
                raise ProjectNotFound()
            logger.info("project_keys_regenerated", project_id=project_id)
            return IssuedKeys(project=updated, api_secret=secret)
        raise ValidationError("could not allocate a unique api key")

    @surface_transient
    async def update_policy(
        self, project_id: str, actor_id: str, changes: Dict[str, Any]
    ) -> Project:
        project = await self.require_access(project_id, actor_id, ProjectRole.ADMIN)
        policy = self._policy(project.policy, changes)
        updated = await self.store.update_project(project_id, now=self._clock(), policy=policy)
        if updated is None:
            raise ProjectNotFound()
        logger.info("project_policy_updated", project_id=project_id, fields=sorted(changes))
        return updated

    @surface_transient
    async def set_team_role(
        self, project_id: str, actor_id: str, member_id: str, role: Optional[ProjectRole]
    ) -> Project:
        """Grant ``role`` to ``member_id``, or remove them when ``role`` is None."""
        project = await self.require_access(project_id, actor_id, ProjectRole.ADMIN)
        if member_id == project.owner_id:
            raise ValidationError("the owner's role cannot be changed")
        if role == ProjectRole.OWNER:
            raise ValidationError("a project has exactly one owner")
        team = dict(project.team)
        if role is None:
            if team.pop(member_id, None) is None:
                raise NotFoundError("team member not found")
        else:
            team[member_id] = role
        updated = await self.store.update_project(project_id, now=self._clock(), team=team)
        if updated is None:
            raise ProjectNotFound()
        return updated

    @surface_transient
    async def deactivate_project(self, project_id: str, actor_id: str) -> Project:
        await self.require_access(project_id, actor_id, ProjectRole.OWNER)
        updated = await self.store.update_project(project_id, now=self._clock(), is_active=False)
        if updated is None:
            raise ProjectNotFound()
        logger.info("project_deactivated", project_id=project_id)
        return updated

    async def retire_owner(self, owner_id: str) -> List[str]:
        """Soft-delete an owner's projects and deactivate their end users."""
        now = self._clock()
        removed = await self.store.delete_owned_projects(owner_id, now=now)
        for project_id in removed:
            count = await self.store.deactivate_scope(Scope.project(project_id), now=now)
            logger.info("project_retired", project_id=project_id, principals=count)
        return removed

    @staticmethod
    def _policy(base: ProjectPolicy, changes: Dict[str, Any]) -> ProjectPolicy:
        try:
            return base.with_changes(**changes)
        except (TypeError, ValueError) as exc:
            raise ValidationError(str(exc), detail={"field": "policy"}) from exc
