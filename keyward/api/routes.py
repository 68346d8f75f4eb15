from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from keyward.api.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PolicyFields,
    PrincipalStatusRequest,
    ProfileFields,
    ProjectCreateRequest,
    RefreshRequest,
    ResetPasswordRequest,
    SignupRequest,
    TeamRoleRequest,
    VerifyEmailRequest,
)
from keyward.logging import get_logger
from keyward.service.auth import AuthContext
from keyward.service.errors import ForbiddenError, InvalidToken, RateLimitedError
from keyward.service.runtime import Runtime, check_rate_limit
from keyward.storage.models import PrincipalStatus, ProjectRole, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_RATE_WINDOW_SECONDS = 60


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")) -> Optional[str]:
    """Project API key; absent means the platform namespace."""
    return x_api_key.strip() if x_api_key else None


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidToken("missing bearer token")
    return await runtime.auth.authenticate(token.strip())


async def get_platform_principal(
    principal: AuthContext = Depends(get_principal),
) -> AuthContext:
    if not principal.scope.is_platform:
        raise ForbiddenError("platform account required")
    return principal


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, response: Response) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, _RATE_WINDOW_SECONDS
    )
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": reset_seconds})


def _client(request: Request) -> dict:
    return {
        "ip_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _session_view(session: Session) -> dict:
    return {
        "id": session.id,
        "created_at": session.created_at.isoformat(),
        "expires_at": session.expires_at.isoformat(),
        "last_active_at": session.last_active_at.isoformat() if session.last_active_at else None,
        "user_agent": session.user_agent,
        "ip_addr": session.ip_addr,
    }


@router.get("/health", response_model=Envelope, tags=["meta"])
async def health():
    return Envelope(status="ok", data={"healthy": True})


# -- credential lifecycle ----------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    api_key: Optional[str] = Depends(get_api_key),
    runtime: Runtime = Depends(get_runtime),
):
    """Register a principal in the platform or, with ``X-API-Key``, a project."""
    await _enforce_rate_limit(
        runtime,
        f"signup:{api_key or 'platform'}:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        response,
    )
    result = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        username=body.username,
        profile=body.profile.model_dump(exclude_none=True) if body.profile else None,
        api_key=api_key,
        **_client(request),
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    api_key: Optional[str] = Depends(get_api_key),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"login:{api_key or 'platform'}:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        response,
    )
    result = await runtime.auth.login(
        body.identifier, body.password, api_key=api_key, **_client(request)
    )
    return Envelope(status="ok", data=result.to_dict())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, runtime: Runtime = Depends(get_runtime)):
    """Mint a new access token; the refresh token is returned unchanged."""
    grant = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data={
            "access_token": grant.access_token,
            "token_type": "bearer",
            "expires_at": grant.expires_at.isoformat(),
        },
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.auth.logout(principal, body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    count = await runtime.auth.logout_all(principal)
    return Envelope(status="ok", data={"revoked": count})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    sessions = await runtime.auth.list_sessions(principal)
    return Envelope(status="ok", data={"sessions": [_session_view(s) for s in sessions]})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.revoke_session(principal, session_id)
    return Envelope(status="ok", data={"revoked": True})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the password; every session of the principal ends with it."""
    await runtime.auth.change_password(principal, body.current_password, body.new_password)
    return Envelope(status="ok", data={"password_changed": True})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: EmailRequest,
    response: Response,
    api_key: Optional[str] = Depends(get_api_key),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"reset:{api_key or 'platform'}:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        response,
    )
    await runtime.auth.forgot_password(body.email, api_key=api_key)
    return Envelope(
        status="ok",
        data={"message": "If the address is registered, a reset link has been sent."},
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    api_key: Optional[str] = Depends(get_api_key),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.reset_password(body.token, body.new_password, api_key=api_key)
    return Envelope(status="ok", data={"password_reset": True})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(
    body: VerifyEmailRequest,
    api_key: Optional[str] = Depends(get_api_key),
    runtime: Runtime = Depends(get_runtime),
):
    principal = await runtime.auth.verify_email(body.token, api_key=api_key)
    return Envelope(status="ok", data={"principal": principal.public_view()})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailRequest,
    response: Response,
    api_key: Optional[str] = Depends(get_api_key),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(
        runtime,
        f"verify:{api_key or 'platform'}:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        response,
    )
    await runtime.auth.resend_verification(body.email, api_key=api_key)
    return Envelope(
        status="ok",
        data={"message": "If the address awaits verification, a new link has been sent."},
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    record = await runtime.auth.get_profile(principal)
    return Envelope(status="ok", data={"principal": record.public_view()})


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(
    body: ProfileFields,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Merge the given profile fields; an explicit null removes a field."""
    record = await runtime.auth.update_profile(principal, body.model_dump(exclude_unset=True))
    return Envelope(status="ok", data={"principal": record.public_view()})


@router.post("/auth/delete-account", response_model=Envelope, tags=["auth"])
async def delete_account(
    body: DeleteAccountRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.delete_account(principal, body.password)
    return Envelope(status="ok", data={"deleted": True})


# -- projects ------------------------------------------------------------------


@router.post("/projects", response_model=Envelope, status_code=201, tags=["projects"])
async def create_project(
    body: ProjectCreateRequest,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Create a project; the API secret is shown in this response only."""
    owner = await runtime.auth.get_profile(principal)
    issued = await runtime.projects.create_project(
        owner,
        body.name,
        description=body.description,
        policy=body.policy.changes() if body.policy else None,
    )
    return Envelope(
        status="ok",
        data={"project": issued.project.public_view(), "api_secret": issued.api_secret},
    )


@router.get("/projects", response_model=Envelope, tags=["projects"])
async def list_projects(
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    owner = await runtime.auth.get_profile(principal)
    projects = await runtime.projects.list_projects(owner)
    return Envelope(status="ok", data={"projects": [p.public_view() for p in projects]})


@router.get("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def get_project(
    project_id: str,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    project = await runtime.projects.require_access(project_id, principal.principal_id)
    return Envelope(status="ok", data={"project": project.public_view()})


@router.patch("/projects/{project_id}/policy", response_model=Envelope, tags=["projects"])
async def update_policy(
    project_id: str,
    body: PolicyFields,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    project = await runtime.projects.update_policy(
        project_id, principal.principal_id, body.changes()
    )
    return Envelope(status="ok", data={"project": project.public_view()})


@router.post("/projects/{project_id}/keys", response_model=Envelope, tags=["projects"])
async def regenerate_keys(
    project_id: str,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    issued = await runtime.projects.regenerate_keys(project_id, principal.principal_id)
    return Envelope(
        status="ok",
        data={"project": issued.project.public_view(), "api_secret": issued.api_secret},
    )


@router.put("/projects/{project_id}/team", response_model=Envelope, tags=["projects"])
async def set_team_role(
    project_id: str,
    body: TeamRoleRequest,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    role = ProjectRole.parse(body.role) if body.role else None
    project = await runtime.projects.set_team_role(
        project_id, principal.principal_id, body.member_id, role
    )
    return Envelope(status="ok", data={"project": project.public_view()})


@router.post("/projects/{project_id}/deactivate", response_model=Envelope, tags=["projects"])
async def deactivate_project(
    project_id: str,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    project = await runtime.projects.deactivate_project(project_id, principal.principal_id)
    return Envelope(status="ok", data={"project": project.public_view()})


@router.get("/projects/{project_id}/principals", response_model=Envelope, tags=["projects"])
async def list_project_principals(
    project_id: str,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    members = await runtime.auth.list_project_principals(principal, project_id)
    return Envelope(status="ok", data={"principals": [m.public_view() for m in members]})


@router.patch(
    "/projects/{project_id}/principals/{principal_id}/status",
    response_model=Envelope,
    tags=["projects"],
)
async def set_principal_status(
    project_id: str,
    principal_id: str,
    body: PrincipalStatusRequest,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    updated = await runtime.auth.set_status(
        principal,
        project_id,
        principal_id,
        PrincipalStatus(body.status),
        suspended_until=body.suspended_until,
    )
    return Envelope(status="ok", data={"principal": updated.public_view()})


@router.post(
    "/projects/{project_id}/principals/{principal_id}/verify",
    response_model=Envelope,
    tags=["projects"],
)
async def verify_principal(
    project_id: str,
    principal_id: str,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    updated = await runtime.auth.mark_verified(principal, project_id, principal_id)
    return Envelope(status="ok", data={"principal": updated.public_view()})


@router.post(
    "/projects/{project_id}/principals/{principal_id}/unlock",
    response_model=Envelope,
    tags=["projects"],
)
async def unlock_principal(
    project_id: str,
    principal_id: str,
    principal: AuthContext = Depends(get_platform_principal),
    runtime: Runtime = Depends(get_runtime),
):
    updated = await runtime.auth.unlock(principal, project_id, principal_id)
    return Envelope(status="ok", data={"principal": updated.public_view()})
