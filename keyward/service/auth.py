from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from keyward.config import Settings
from keyward.logging import email_ref, get_logger
from keyward.service.credentials import CredentialStore, enforce_password_policy
from keyward.service.email import PASSWORD_RESET, VERIFICATION, WELCOME, EmailDispatcher
from keyward.service.errors import (
    AccountSuspended,
    DuplicateIdentity,
    EmailNotVerified,
    ForbiddenError,
    InvalidCredentials,
    InvalidToken,
    NotFoundError,
    SignupDisabled,
    ValidationError,
    surface_transient,
)
from keyward.service.lockout import LockoutEngine
from keyward.service.projects import ProjectService
from keyward.service.sessions import SessionRegistry
from keyward.service.tokens import (
    AccessGrant,
    TokenClaims,
    TokenPair,
    TokenService,
    generate_opaque_token,
    hash_opaque_token,
)
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
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

PROFILE_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "display_name",
        "avatar",
        "bio",
        "phone_number",
        "date_of_birth",
        "company",
        "website",
        "preferences",
        "custom_fields",
    }
)


@dataclass
class AuthContext:
    """Identity established from a verified access token."""

    principal_id: str
    scope: Scope
    token_id: Optional[str] = None


@dataclass
class PolicyContext:
    """The scope and policy one operation runs under, read once up front."""

    scope: Scope
    policy: ProjectPolicy
    project: Optional[Project] = None

    @property
    def app_name(self) -> Optional[str]:
        return self.project.name if self.project else None


@dataclass
class AuthResult:
    principal: Principal
    tokens: TokenPair
    needs_verification: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal.public_view(),
            "tokens": self.tokens.to_dict(),
            "needs_verification": self.needs_verification,
        }


class AuthService:
    """Signup, login and credential lifecycle for platform and project principals.

    One engine serves both scopes. Each operation takes an optional project
    API key; without one it runs against the platform namespace and the
    platform policy from settings.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: TokenService,
        lockout: LockoutEngine,
        sessions: SessionRegistry,
        projects: ProjectService,
        *,
        settings: Settings,
        email: Optional[EmailDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.tokens = tokens
        self.lockout = lockout
        self.sessions = sessions
        self.projects = projects
        self.settings = settings
        self.email = email
        self._clock = clock or utcnow

    # -- policy resolution -------------------------------------------------

    async def resolve_policy(self, api_key: Optional[str] = None) -> PolicyContext:
        if api_key is None:
            return PolicyContext(scope=Scope.platform(), policy=self.settings.platform_policy())
        project = await self.projects.resolve_api_key(api_key)
        return PolicyContext(scope=Scope.project(project.id), policy=project.policy, project=project)

    async def _policy_for_scope(self, scope: Scope) -> PolicyContext:
        if scope.is_platform:
            return PolicyContext(scope=scope, policy=self.settings.platform_policy())
        project = await self.projects.get_active_project(scope.project_id)
        return PolicyContext(scope=scope, policy=project.policy, project=project)

    async def _access_ttl_for(self, claims: TokenClaims) -> int:
        ctx = await self._policy_for_scope(claims.scope)
        return ctx.policy.session_timeout_minutes

    # -- signup / login ----------------------------------------------------

    @surface_transient
    async def signup(
        self,
        *,
        email: str,
        password: str,
        username: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        ctx = await self.resolve_policy(api_key)
        if not ctx.policy.allow_signup:
            raise SignupDisabled()
        email = normalize_email(email)
        taken = await self.credentials.identity_taken(ctx.scope, email, username)
        if taken:
            raise DuplicateIdentity(taken)
        enforce_password_policy(password, ctx.policy)

        now = self._clock()
        principal = Principal.new(
            ctx.scope, email, username=username, profile=self._clean_profile(profile), now=now
        )
        verification_token = None
        if ctx.policy.require_email_verification:
            verification_token = generate_opaque_token()
            principal.verification = VerificationState.PENDING
            principal.verification_token_hash = hash_opaque_token(verification_token)
            principal.verification_expires_at = now + timedelta(
                minutes=self.settings.verification_token_ttl_minutes
            )
        else:
            principal.verification = VerificationState.VERIFIED
        principal = await self.credentials.create(principal, password)

        tokens = await self._open_session(principal, ctx, user_agent=user_agent, ip_addr=ip_addr)
        if ctx.project:
            await self.projects.record_signup(ctx.project.id)
        if verification_token:
            self._notify(principal.email, VERIFICATION, ctx, token=verification_token, expires_in="24 hours")
        else:
            self._notify(principal.email, WELCOME, ctx)
        logger.info("signup_completed", principal_id=principal.id, scope=ctx.scope.key)
        return AuthResult(
            principal=principal,
            tokens=tokens,
            needs_verification=ctx.policy.require_email_verification,
        )

    @surface_transient
    async def login(
        self,
        identifier: str,
        password: str,
        *,
        api_key: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> AuthResult:
        ctx = await self.resolve_policy(api_key)
        try:
            principal = await self.credentials.find_by_email_or_username(ctx.scope, identifier)
        except NotFoundError:
            self.credentials.burn_verification(password)
            logger.info("login_unknown_identifier", scope=ctx.scope.key)
            raise InvalidCredentials() from None

        self.lockout.enforce_gates(principal)
        if not self.credentials.verify_password(principal, password):
            await self.lockout.record_failure(principal, ctx.policy)
            raise InvalidCredentials()

        principal = await self.lockout.record_success(principal)
        if ctx.policy.require_email_verification and not principal.is_verified:
            raise EmailNotVerified()
        await self.credentials.maybe_rehash(principal, password)

        tokens = await self._open_session(principal, ctx, user_agent=user_agent, ip_addr=ip_addr)
        await self.credentials.record_login(
            principal.id,
            LoginRecord(at=self._clock(), ip_addr=ip_addr, user_agent=user_agent),
            history_limit=self.settings.login_history_limit,
        )
        if ctx.project:
            await self.projects.record_login(ctx.project.id)
        logger.info("login_succeeded", principal_id=principal.id, scope=ctx.scope.key)
        return AuthResult(principal=await self.credentials.get(principal.id), tokens=tokens)

    async def _open_session(
        self,
        principal: Principal,
        ctx: PolicyContext,
        *,
        user_agent: Optional[str],
        ip_addr: Optional[str],
    ) -> TokenPair:
        tokens = self.tokens.issue_token_pair(
            principal.id, ctx.scope, access_ttl_minutes=ctx.policy.session_timeout_minutes
        )
        await self.sessions.add_session(
            principal.id,
            session_id=tokens.session_id,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.refresh_expires_at,
            max_sessions=ctx.policy.max_sessions,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        return tokens

    # -- tokens and sessions -----------------------------------------------

    @surface_transient
    async def refresh(self, refresh_token: str) -> AccessGrant:
        return await self.tokens.rotate_access_token(
            refresh_token, self.sessions, ttl_for=self._access_ttl_for
        )

    @surface_transient
    async def authenticate(self, access_token: str) -> AuthContext:
        claims = self.tokens.verify_access_token(access_token)
        principal = await self.credentials.store.get_principal(claims.principal_id)
        if (
            principal is None
            or principal.scope != claims.scope
            or principal.status == PrincipalStatus.INACTIVE
        ):
            raise InvalidToken()
        if principal.is_suspended(self._clock()):
            raise AccountSuspended(until=principal.suspended_until)
        if not claims.scope.is_platform:
            await self.projects.get_active_project(claims.scope.project_id)
        return AuthContext(principal_id=principal.id, scope=principal.scope, token_id=claims.jti)

    @surface_transient
    async def logout(self, auth: AuthContext, refresh_token: Optional[str] = None) -> bool:
        """Revoke the session holding ``refresh_token``; without one this is a no-op."""
        if not refresh_token:
            return False
        revoked = await self.sessions.revoke_by_token(auth.principal_id, refresh_token)
        logger.info("logout", principal_id=auth.principal_id, revoked=revoked)
        return revoked

    @surface_transient
    async def logout_all(self, auth: AuthContext) -> int:
        return await self.sessions.revoke_all(auth.principal_id)

    @surface_transient
    async def list_sessions(self, auth: AuthContext) -> List[Session]:
        return await self.sessions.list_sessions(auth.principal_id)

    @surface_transient
    async def revoke_session(self, auth: AuthContext, session_id: str) -> None:
        if not await self.sessions.revoke_session(auth.principal_id, session_id):
            raise NotFoundError("session not found")

    # -- passwords ---------------------------------------------------------

    @surface_transient
    async def change_password(
        self, auth: AuthContext, current_password: str, new_password: str
    ) -> Principal:
        principal = await self.credentials.get(auth.principal_id)
        if not self.credentials.verify_password(principal, current_password):
            raise InvalidCredentials("current password is incorrect")
        ctx = await self._policy_for_scope(principal.scope)
        enforce_password_policy(new_password, ctx.policy)
        return await self.credentials.set_password(principal, new_password)

    @surface_transient
    async def forgot_password(self, email: str, *, api_key: Optional[str] = None) -> None:
        """Start a reset if the address is known. Reports nothing either way."""
        ctx = await self.resolve_policy(api_key)
        principal = await self.credentials.find_by_email(ctx.scope, email)
        if principal is None or principal.status == PrincipalStatus.INACTIVE:
            logger.info("password_reset_unknown", scope=ctx.scope.key, email_ref=email_ref(email))
            return
        token = generate_opaque_token()
        await self.credentials.update(
            principal.id,
            reset_token_hash=hash_opaque_token(token),
            reset_expires_at=self._clock() + timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        self._notify(principal.email, PASSWORD_RESET, ctx, token=token, expires_in="1 hour")
        logger.info("password_reset_requested", principal_id=principal.id)

    @surface_transient
    async def reset_password(
        self, token: str, new_password: str, *, api_key: Optional[str] = None
    ) -> Principal:
        ctx = await self.resolve_policy(api_key)
        enforce_password_policy(new_password, ctx.policy)
        principal = await self.credentials.reset_password(
            ctx.scope, hash_opaque_token(token or ""), new_password
        )
        if principal is None:
            logger.warning("password_reset_invalid_token", scope=ctx.scope.key)
            raise InvalidToken("invalid or expired reset token")
        logger.info("password_reset_completed", principal_id=principal.id)
        return principal

    # -- verification ------------------------------------------------------

    @surface_transient
    async def verify_email(self, token: str, *, api_key: Optional[str] = None) -> Principal:
        ctx = await self.resolve_policy(api_key)
        principal = await self.credentials.store.find_principal_by_verification_token(
            ctx.scope, hash_opaque_token(token or "")
        )
        if (
            principal is None
            or principal.verification_expires_at is None
            or principal.verification_expires_at <= self._clock()
        ):
            raise InvalidToken("invalid or expired verification token")
        updated = await self.credentials.update(
            principal.id,
            verification=VerificationState.VERIFIED,
            verification_token_hash=None,
            verification_expires_at=None,
        )
        self._notify(updated.email, WELCOME, ctx)
        logger.info("email_verified", principal_id=principal.id)
        return updated

    @surface_transient
    async def resend_verification(self, email: str, *, api_key: Optional[str] = None) -> None:
        ctx = await self.resolve_policy(api_key)
        principal = await self.credentials.find_by_email(ctx.scope, email)
        if principal is None or principal.is_verified:
            return
        token = generate_opaque_token()
        await self.credentials.update(
            principal.id,
            verification=VerificationState.PENDING,
            verification_token_hash=hash_opaque_token(token),
            verification_expires_at=self._clock()
            + timedelta(minutes=self.settings.verification_token_ttl_minutes),
        )
        self._notify(principal.email, VERIFICATION, ctx, token=token, expires_in="24 hours")

    # -- profile and account -----------------------------------------------

    @surface_transient
    async def get_profile(self, auth: AuthContext) -> Principal:
        return await self.credentials.get(auth.principal_id)

    @surface_transient
    async def update_profile(self, auth: AuthContext, changes: Dict[str, Any]) -> Principal:
        principal = await self.credentials.get(auth.principal_id)
        profile = dict(principal.profile)
        for key, value in self._clean_profile(changes, keep_none=True).items():
            if value is None:
                profile.pop(key, None)
            else:
                profile[key] = value
        return await self.credentials.update(principal.id, profile=profile)

    @surface_transient
    async def delete_account(self, auth: AuthContext, password: str) -> None:
        principal = await self.credentials.get(auth.principal_id)
        if not self.credentials.verify_password(principal, password):
            raise InvalidCredentials("password is incorrect")
        await self.credentials.tombstone(principal.id)
        if principal.scope.is_platform:
            await self.projects.retire_owner(principal.id)
        logger.info("account_deleted", principal_id=principal.id, scope=principal.scope.key)

    # -- project administration --------------------------------------------

    async def _managed_principal(
        self, actor: AuthContext, project_id: str, principal_id: str
    ) -> Principal:
        if not actor.scope.is_platform:
            raise ForbiddenError("project accounts cannot manage other accounts")
        await self.projects.require_access(project_id, actor.principal_id, ProjectRole.ADMIN)
        target = await self.credentials.get(principal_id)
        if target.project_id != project_id:
            raise NotFoundError("principal not found")
        return target

    @surface_transient
    async def list_project_principals(
        self, actor: AuthContext, project_id: str, *, limit: int = 100
    ) -> List[Principal]:
        if not actor.scope.is_platform:
            raise ForbiddenError("project accounts cannot manage other accounts")
        await self.projects.require_access(project_id, actor.principal_id, ProjectRole.MEMBER)
        return await self.credentials.list(Scope.project(project_id), limit=limit)

    @surface_transient
    async def set_status(
        self,
        actor: AuthContext,
        project_id: str,
        principal_id: str,
        status: PrincipalStatus,
        *,
        suspended_until: Optional[datetime] = None,
    ) -> Principal:
        target = await self._managed_principal(actor, project_id, principal_id)
        if suspended_until is not None and status != PrincipalStatus.SUSPENDED:
            raise ValidationError("suspended_until only applies to suspended accounts")
        if suspended_until is not None and suspended_until.tzinfo is None:
            suspended_until = suspended_until.replace(tzinfo=timezone.utc)
        updated = await self.credentials.update(
            target.id, status=status, suspended_until=suspended_until
        )
        if status != PrincipalStatus.ACTIVE:
            await self.sessions.revoke_all(target.id)
        logger.info("principal_status_changed", principal_id=target.id, status=status.value)
        return updated

    @surface_transient
    async def mark_verified(
        self, actor: AuthContext, project_id: str, principal_id: str
    ) -> Principal:
        target = await self._managed_principal(actor, project_id, principal_id)
        updated = await self.credentials.update(
            target.id,
            verification=VerificationState.VERIFIED,
            verification_token_hash=None,
            verification_expires_at=None,
        )
        logger.info("principal_verified_by_admin", principal_id=target.id)
        return updated

    @surface_transient
    async def unlock(self, actor: AuthContext, project_id: str, principal_id: str) -> Principal:
        target = await self._managed_principal(actor, project_id, principal_id)
        return await self.lockout.record_success(target)

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _clean_profile(
        profile: Optional[Dict[str, Any]], *, keep_none: bool = False
    ) -> Dict[str, Any]:
        profile = profile or {}
        unknown = set(profile) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(
                "unsupported profile fields", detail={"fields": sorted(unknown)}
            )
        return {k: v for k, v in profile.items() if keep_none or v is not None}

    def _notify(self, address: str, kind: str, ctx: PolicyContext, **params: Any) -> None:
        if self.email is None:
            return
        self.email.notify(address, kind, {"project_name": ctx.app_name, **params})

    async def drain_notifications(self) -> None:
        if self.email is not None:
            await self.email.drain()
