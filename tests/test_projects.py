"""Project lifecycle: creation, API keys, policy updates and team roles."""

import pytest

from keyward.service.errors import (
    ForbiddenError,
    NotFoundError,
    ProjectInactive,
    ProjectNotFound,
    ValidationError,
)
from keyward.service.projects import hash_api_secret
from keyward.storage.models import ProjectRole, Scope


@pytest.fixture
def owner(runtime):
    async def _owner(email="owner@example.com"):
        result = await runtime.auth.signup(email=email, password="owner-pass-1")
        return result.principal

    return _owner


async def test_create_project_issues_key_and_hashed_secret(runtime, owner):
    principal = await owner()
    issued = await runtime.projects.create_project(
        principal, "  Storefront ", description="shop", policy={"max_sessions": 3}
    )
    project = issued.project

    assert project.name == "Storefront"
    assert project.owner_id == principal.id
    assert project.api_key.startswith("ak_")
    assert issued.api_secret.startswith("as_")
    assert project.api_secret_hash == hash_api_secret(issued.api_secret)
    assert project.policy.max_sessions == 3
    assert project.policy.require_email_verification
    assert (await runtime.projects.resolve_api_key(project.api_key)).id == project.id


async def test_project_principals_cannot_own_projects(runtime, make_project):
    project, _ = await make_project(require_email_verification=False)
    member = await runtime.auth.signup(
        email="m@example.com", password="secret-1", api_key=project.api_key
    )
    with pytest.raises(ForbiddenError):
        await runtime.projects.create_project(member.principal, "Nested")


@pytest.mark.parametrize("name", ["", "   ", "x" * 101])
async def test_project_name_is_validated(runtime, owner, name):
    principal = await owner()
    with pytest.raises(ValidationError):
        await runtime.projects.create_project(principal, name)


async def test_policy_bounds_are_enforced(runtime, owner, make_project):
    principal = await owner("bounds@example.com")
    with pytest.raises(ValidationError):
        await runtime.projects.create_project(principal, "Bad", policy={"max_sessions": 50})
    with pytest.raises(ValidationError):
        await runtime.projects.create_project(principal, "Bad", policy={"colour": "blue"})

    project, result = await make_project()
    updated = await runtime.projects.update_policy(
        project.id, result.principal.id, {"max_login_attempts": 3, "require_numbers": True}
    )
    assert updated.policy.max_login_attempts == 3
    assert updated.policy.require_numbers
    with pytest.raises(ValidationError):
        await runtime.projects.update_policy(
            project.id, result.principal.id, {"session_timeout_minutes": 1}
        )


async def test_regenerate_keys_retires_the_old_key(runtime, make_project):
    project, owner_result = await make_project()
    issued = await runtime.projects.regenerate_keys(project.id, owner_result.principal.id)

    assert issued.project.api_key != project.api_key
    assert issued.project.api_secret_hash == hash_api_secret(issued.api_secret)
    with pytest.raises(ProjectNotFound):
        await runtime.projects.resolve_api_key(project.api_key)
    assert (await runtime.projects.resolve_api_key(issued.project.api_key)).id == project.id


async def test_team_roles_gate_management(runtime, make_project, owner):
    project, owner_result = await make_project()
    owner_id = owner_result.principal.id
    admin = await owner("admin@example.com")
    viewer = await owner("viewer@example.com")

    await runtime.projects.set_team_role(project.id, owner_id, admin.id, ProjectRole.ADMIN)
    await runtime.projects.set_team_role(project.id, admin.id, viewer.id, ProjectRole.MEMBER)

    # Members can see the project but not change it
    listed = await runtime.projects.list_projects(viewer)
    assert [p.id for p in listed] == [project.id]
    with pytest.raises(ForbiddenError) as excinfo:
        await runtime.projects.update_policy(project.id, viewer.id, {"max_sessions": 2})
    assert excinfo.value.detail == {"required": "admin"}

    # Only the owner rotates keys or deactivates
    with pytest.raises(ForbiddenError):
        await runtime.projects.regenerate_keys(project.id, admin.id)

    with pytest.raises(ValidationError):
        await runtime.projects.set_team_role(project.id, admin.id, owner_id, None)
    with pytest.raises(ValidationError):
        await runtime.projects.set_team_role(project.id, owner_id, admin.id, ProjectRole.OWNER)

    updated = await runtime.projects.set_team_role(project.id, owner_id, viewer.id, None)
    assert viewer.id not in updated.team
    with pytest.raises(NotFoundError):
        await runtime.projects.set_team_role(project.id, owner_id, viewer.id, None)


async def test_deactivate_blocks_the_api_key(runtime, make_project):
    project, owner_result = await make_project()
    deactivated = await runtime.projects.deactivate_project(project.id, owner_result.principal.id)
    assert not deactivated.is_active

    with pytest.raises(ProjectInactive):
        await runtime.projects.resolve_api_key(project.api_key)
    with pytest.raises(ProjectInactive):
        await runtime.projects.get_active_project(project.id)


async def test_retire_owner_removes_projects_and_deactivates_users(runtime, make_project, store):
    project, owner_result = await make_project(require_email_verification=False)
    user = await runtime.auth.signup(
        email="u@example.com", password="secret-1", api_key=project.api_key
    )

    removed = await runtime.projects.retire_owner(owner_result.principal.id)
    assert removed == [project.id]
    assert await store.get_project(project.id) is None
    principals = await store.list_principals(Scope.project(project.id))
    assert [p.id for p in principals] == [user.principal.id]
    assert principals[0].status.value == "inactive"


async def test_unknown_project(runtime, owner):
    principal = await owner()
    with pytest.raises(ProjectNotFound):
        await runtime.projects.require_access("missing", principal.id)
    with pytest.raises(ProjectNotFound):
        await runtime.projects.resolve_api_key("")
