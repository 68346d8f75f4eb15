"""End-to-end credential lifecycle through AuthService against the memory store."""

from datetime import timedelta

import pytest

from keyward.service.email import PASSWORD_RESET, VERIFICATION, WELCOME
from keyward.service.errors import (
    AccountDeactivated,
    AccountSuspended,
    DuplicateIdentity,
    EmailNotVerified,
    ForbiddenError,
    InvalidCredentials,
    InvalidToken,
    NotFoundError,
    ProjectInactive,
    ProjectNotFound,
    SignupDisabled,
    ValidationError,
    WeakPassword,
)
from keyward.storage.models import PrincipalStatus, Scope, VerificationState


class TestSignup:
    async def test_platform_signup_is_verified_and_logged_in(self, auth, mailer):
        result = await auth.signup(email="Owner@Example.com", password="secret-1")
        await auth.drain_notifications()

        assert result.principal.email == "owner@example.com"
        assert result.principal.scope.is_platform
        assert result.principal.verification == VerificationState.VERIFIED
        assert not result.needs_verification
        assert result.tokens.access_token and result.tokens.refresh_token
        assert mailer.last(WELCOME)["to"] == "owner@example.com"

    async def test_project_signup_needs_verification_by_default(
        self, auth, mailer, make_project, runtime
    ):
        project, _ = await make_project(name="Shop")
        result = await auth.signup(
            email="buyer@example.com", password="secret-1", api_key=project.api_key
        )
        await auth.drain_notifications()

        assert result.needs_verification
        assert result.principal.verification == VerificationState.PENDING
        assert result.principal.project_id == project.id
        message = mailer.last(VERIFICATION, "buyer@example.com")
        assert message["params"]["project_name"] == "Shop"
        assert len(message["params"]["token"]) == 64

        stored = await runtime.projects.get_active_project(project.id)
        assert stored.total_users == 1

    async def test_signup_respects_policy(self, auth, make_project):
        project, _ = await make_project(allow_signup=False)
        with pytest.raises(SignupDisabled):
            await auth.signup(email="x@example.com", password="secret-1", api_key=project.api_key)

        strict, _ = await make_project(
            owner_email="strict@example.com", min_password_length=10, require_numbers=True
        )
        with pytest.raises(WeakPassword) as excinfo:
            await auth.signup(email="x@example.com", password="short", api_key=strict.api_key)
        assert excinfo.value.requirements == ["at least 10 characters", "a number"]

    async def test_duplicates_are_rejected_within_a_scope(self, auth, make_project):
        project, _ = await make_project()
        await auth.signup(
            email="dup@example.com", password="secret-1", username="dupe", api_key=project.api_key
        )
        with pytest.raises(DuplicateIdentity) as excinfo:
            await auth.signup(email="DUP@example.com", password="secret-1", api_key=project.api_key)
        assert excinfo.value.field == "email"
        with pytest.raises(DuplicateIdentity) as excinfo:
            await auth.signup(
                email="other@example.com",
                password="secret-1",
                username="dupe",
                api_key=project.api_key,
            )
        assert excinfo.value.field == "username"

    async def test_same_email_in_two_projects_are_separate_principals(self, auth, make_project):
        first, _ = await make_project(require_email_verification=False)
        second, _ = await make_project(
            owner_email="owner2@example.com", require_email_verification=False
        )
        a = await auth.signup(email="same@example.com", password="pass-one", api_key=first.api_key)
        b = await auth.signup(email="same@example.com", password="pass-two", api_key=second.api_key)
        assert a.principal.id != b.principal.id

        await auth.login("same@example.com", "pass-one", api_key=first.api_key)
        with pytest.raises(InvalidCredentials):
            await auth.login("same@example.com", "pass-one", api_key=second.api_key)
        # The platform namespace knows nothing about either
        with pytest.raises(InvalidCredentials):
            await auth.login("same@example.com", "pass-one")

    async def test_unknown_profile_fields_are_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.signup(email="p@example.com", password="secret-1", profile={"role": "admin"})

    async def test_unknown_or_inactive_api_key(self, auth, make_project, runtime):
        with pytest.raises(ProjectNotFound):
            await auth.signup(email="x@example.com", password="secret-1", api_key="ak_nope")

        project, owner = await make_project()
        await runtime.projects.deactivate_project(project.id, owner.principal.id)
        with pytest.raises(ProjectInactive):
            await auth.login("x@example.com", "secret-1", api_key=project.api_key)


class TestVerificationScenario:
    async def test_verify_then_login(self, auth, mailer, make_project):
        project, _ = await make_project()
        await auth.signup(email="v@example.com", password="secret-1", api_key=project.api_key)
        with pytest.raises(EmailNotVerified) as excinfo:
            await auth.login("v@example.com", "secret-1", api_key=project.api_key)
        assert excinfo.value.detail == {"needs_verification": True}

        await auth.drain_notifications()
        token = mailer.last(VERIFICATION, "v@example.com")["params"]["token"]
        verified = await auth.verify_email(token, api_key=project.api_key)
        assert verified.is_verified
        assert verified.verification_token_hash is None

        result = await auth.login("v@example.com", "secret-1", api_key=project.api_key)
        assert result.principal.is_verified

        with pytest.raises(InvalidToken):
            await auth.verify_email(token, api_key=project.api_key)

    async def test_verification_token_expires(self, auth, mailer, make_project, clock, settings):
        project, _ = await make_project()
        await auth.signup(email="late@example.com", password="secret-1", api_key=project.api_key)
        await auth.drain_notifications()
        token = mailer.last(VERIFICATION, "late@example.com")["params"]["token"]

        clock.advance(minutes=settings.verification_token_ttl_minutes)
        with pytest.raises(InvalidToken):
            await auth.verify_email(token, api_key=project.api_key)

    async def test_verification_token_is_scoped_to_its_project(self, auth, mailer, make_project):
        project, _ = await make_project()
        other, _ = await make_project(owner_email="o2@example.com")
        await auth.signup(email="v@example.com", password="secret-1", api_key=project.api_key)
        await auth.drain_notifications()
        token = mailer.last(VERIFICATION, "v@example.com")["params"]["token"]
        with pytest.raises(InvalidToken):
            await auth.verify_email(token, api_key=other.api_key)

    async def test_resend_replaces_the_token(self, auth, mailer, make_project):
        project, _ = await make_project()
        await auth.signup(email="r@example.com", password="secret-1", api_key=project.api_key)
        await auth.drain_notifications()
        old = mailer.last(VERIFICATION, "r@example.com")["params"]["token"]

        await auth.resend_verification("r@example.com", api_key=project.api_key)
        await auth.resend_verification("ghost@example.com", api_key=project.api_key)
        await auth.drain_notifications()
        new = mailer.last(VERIFICATION, "r@example.com")["params"]["token"]
        assert new != old
        assert not [m for m in mailer.sent if m["to"] == "ghost@example.com"]

        with pytest.raises(InvalidToken):
            await auth.verify_email(old, api_key=project.api_key)
        await auth.verify_email(new, api_key=project.api_key)


class TestPasswordReset:
    async def _reset_token(self, auth, mailer, email):
        await auth.forgot_password(email)
        await auth.drain_notifications()
        return mailer.last(PASSWORD_RESET, email)["params"]["token"]

    async def test_reset_is_single_use(self, auth, mailer):
        first = await auth.signup(email="r@example.com", password="old-password")
        token = await self._reset_token(auth, mailer, "r@example.com")

        principal = await auth.reset_password(token, "new-password")
        assert principal.reset_token_hash is None

        with pytest.raises(InvalidToken):
            await auth.reset_password(token, "third-password")
        with pytest.raises(InvalidCredentials):
            await auth.login("r@example.com", "old-password")
        await auth.login("r@example.com", "new-password")

        # Existing sessions ended with the reset
        with pytest.raises(InvalidToken):
            await auth.refresh(first.tokens.refresh_token)

    async def test_reset_token_expires_after_an_hour(self, auth, mailer, clock):
        await auth.signup(email="r@example.com", password="old-password")
        token = await self._reset_token(auth, mailer, "r@example.com")
        clock.advance(hours=1)
        with pytest.raises(InvalidToken):
            await auth.reset_password(token, "new-password")

    async def test_forgot_password_is_silent_for_unknown_addresses(self, auth, mailer):
        await auth.forgot_password("nobody@example.com")
        await auth.drain_notifications()
        assert mailer.sent == []

    async def test_reset_enforces_policy(self, auth, mailer):
        await auth.signup(email="r@example.com", password="old-password")
        token = await self._reset_token(auth, mailer, "r@example.com")
        with pytest.raises(WeakPassword):
            await auth.reset_password(token, "abc")
        # A rejected password does not spend the token
        await auth.reset_password(token, "good-password")

    async def test_newer_reset_request_replaces_the_older(self, auth, mailer):
        await auth.signup(email="r@example.com", password="old-password")
        stale = await self._reset_token(auth, mailer, "r@example.com")
        fresh = await self._reset_token(auth, mailer, "r@example.com")
        with pytest.raises(InvalidToken):
            await auth.reset_password(stale, "new-password")
        await auth.reset_password(fresh, "new-password")


class TestPasswordChange:
    async def test_change_password_invalidates_refresh_tokens(self, auth):
        result = await auth.signup(email="c@example.com", password="old-password")
        ctx = await auth.authenticate(result.tokens.access_token)

        with pytest.raises(InvalidCredentials):
            await auth.change_password(ctx, "not-it", "new-password")
        with pytest.raises(WeakPassword):
            await auth.change_password(ctx, "old-password", "abc")

        await auth.change_password(ctx, "old-password", "new-password")
        with pytest.raises(InvalidToken):
            await auth.refresh(result.tokens.refresh_token)
        await auth.login("c@example.com", "new-password")


class TestLogin:
    async def test_login_by_username_records_history(self, auth, runtime, clock):
        await auth.signup(email="u@example.com", password="secret-1", username="ulysses")
        clock.advance(minutes=3)
        result = await auth.login(
            "ulysses", "secret-1", user_agent="pytest", ip_addr="203.0.113.9"
        )

        assert result.principal.last_login_at == clock.now
        principal = await runtime.credentials.get(result.principal.id)
        assert principal.login_history[-1].ip_addr == "203.0.113.9"
        assert principal.login_history[-1].user_agent == "pytest"
        assert principal.sessions[-1].user_agent == "pytest"

    async def test_login_history_is_bounded(self, auth, runtime, settings):
        result = await auth.signup(email="h@example.com", password="secret-1")
        for _ in range(settings.login_history_limit + 3):
            await auth.login("h@example.com", "secret-1")
        principal = await runtime.credentials.get(result.principal.id)
        assert len(principal.login_history) == settings.login_history_limit

    async def test_unknown_identifier_and_wrong_password_look_the_same(self, auth):
        await auth.signup(email="k@example.com", password="secret-1")
        with pytest.raises(InvalidCredentials) as unknown:
            await auth.login("ghost@example.com", "secret-1")
        with pytest.raises(InvalidCredentials) as wrong:
            await auth.login("k@example.com", "nope-nope")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.detail == wrong.value.detail

    async def test_project_access_ttl_follows_policy(self, auth, make_project, clock):
        project, _ = await make_project(session_timeout_minutes=60, require_email_verification=False)
        result = await auth.signup(email="t@example.com", password="secret-1", api_key=project.api_key)
        assert result.tokens.access_expires_at == clock.now + timedelta(minutes=60)

        grant = await auth.refresh(result.tokens.refresh_token)
        assert grant.expires_at == clock.now + timedelta(minutes=60)

    async def test_project_login_counts_logins(self, auth, make_project, runtime):
        project, _ = await make_project(require_email_verification=False)
        await auth.signup(email="n@example.com", password="secret-1", api_key=project.api_key)
        await auth.login("n@example.com", "secret-1", api_key=project.api_key)
        await auth.login("n@example.com", "secret-1", api_key=project.api_key)
        stored = await runtime.projects.get_active_project(project.id)
        assert stored.total_logins == 2


class TestAuthenticate:
    async def test_access_token_resolves_principal_and_scope(self, auth, make_project):
        project, _ = await make_project(require_email_verification=False)
        result = await auth.signup(email="a@example.com", password="secret-1", api_key=project.api_key)
        ctx = await auth.authenticate(result.tokens.access_token)
        assert ctx.principal_id == result.principal.id
        assert ctx.scope == Scope.project(project.id)

    async def test_refresh_token_is_not_an_access_token(self, auth):
        result = await auth.signup(email="a@example.com", password="secret-1")
        with pytest.raises(InvalidToken):
            await auth.authenticate(result.tokens.refresh_token)

    async def test_deleted_principal_token_is_rejected(self, auth):
        result = await auth.signup(email="a@example.com", password="secret-1")
        ctx = await auth.authenticate(result.tokens.access_token)
        await auth.delete_account(ctx, "secret-1")
        with pytest.raises(InvalidToken):
            await auth.authenticate(result.tokens.access_token)


class TestProfileAndAccount:
    async def test_update_profile_merges_and_clears(self, auth):
        result = await auth.signup(
            email="p@example.com", password="secret-1", profile={"first_name": "Ada"}
        )
        ctx = await auth.authenticate(result.tokens.access_token)

        updated = await auth.update_profile(ctx, {"last_name": "Lovelace"})
        assert updated.profile == {"first_name": "Ada", "last_name": "Lovelace"}
        updated = await auth.update_profile(ctx, {"first_name": None})
        assert updated.profile == {"last_name": "Lovelace"}
        with pytest.raises(ValidationError):
            await auth.update_profile(ctx, {"status": "active"})

    async def test_delete_requires_password_and_frees_the_email(self, auth, runtime):
        result = await auth.signup(email="gone@example.com", password="secret-1")
        ctx = await auth.authenticate(result.tokens.access_token)

        with pytest.raises(InvalidCredentials):
            await auth.delete_account(ctx, "wrong-one")
        await auth.delete_account(ctx, "secret-1")

        with pytest.raises(NotFoundError):
            await runtime.credentials.get(result.principal.id)
        with pytest.raises(InvalidCredentials):
            await auth.login("gone@example.com", "secret-1")
        again = await auth.signup(email="gone@example.com", password="secret-2")
        assert again.principal.id != result.principal.id

    async def test_deleting_an_owner_retires_their_projects(self, auth, make_project, runtime):
        project, owner = await make_project(require_email_verification=False)
        member = await auth.signup(email="m@example.com", password="secret-1", api_key=project.api_key)

        owner_ctx = await auth.authenticate(owner.tokens.access_token)
        await auth.delete_account(owner_ctx, "owner-pass-1")

        with pytest.raises(ProjectNotFound):
            await auth.login("m@example.com", "secret-1", api_key=project.api_key)
        stored = await runtime.store.get_principal(member.principal.id)
        assert stored.status == PrincipalStatus.INACTIVE
        assert stored.sessions == []


class TestAdministration:
    async def _member(self, auth, make_project):
        project, owner = await make_project(require_email_verification=False)
        member = await auth.signup(email="m@example.com", password="secret-1", api_key=project.api_key)
        owner_ctx = await auth.authenticate(owner.tokens.access_token)
        return project, owner_ctx, member

    async def test_suspend_blocks_login_and_ends_sessions(self, auth, make_project, clock):
        project, owner_ctx, member = await self._member(auth, make_project)
        until = clock.now + timedelta(days=2)
        updated = await auth.set_status(
            owner_ctx, project.id, member.principal.id, PrincipalStatus.SUSPENDED,
            suspended_until=until,
        )
        assert updated.suspended_until == until

        with pytest.raises(InvalidToken):
            await auth.refresh(member.tokens.refresh_token)
        with pytest.raises(AccountSuspended):
            await auth.login("m@example.com", "secret-1", api_key=project.api_key)

        clock.advance(days=2, seconds=1)
        await auth.login("m@example.com", "secret-1", api_key=project.api_key)

    async def test_deactivated_principal_cannot_login(self, auth, make_project):
        project, owner_ctx, member = await self._member(auth, make_project)
        await auth.set_status(owner_ctx, project.id, member.principal.id, PrincipalStatus.INACTIVE)
        with pytest.raises(AccountDeactivated):
            await auth.login("m@example.com", "secret-1", api_key=project.api_key)

    async def test_only_project_admins_manage_principals(self, auth, make_project):
        project, _, member = await self._member(auth, make_project)
        outsider = await auth.signup(email="outsider@example.com", password="secret-1")
        outsider_ctx = await auth.authenticate(outsider.tokens.access_token)
        with pytest.raises(ForbiddenError):
            await auth.set_status(
                outsider_ctx, project.id, member.principal.id, PrincipalStatus.INACTIVE
            )

        member_ctx = await auth.authenticate(member.tokens.access_token)
        with pytest.raises(ForbiddenError):
            await auth.list_project_principals(member_ctx, project.id)

    async def test_unlock_clears_a_lock(self, auth, make_project):
        project, owner_ctx, member = await self._member(auth, make_project)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await auth.login("m@example.com", "bad-guess", api_key=project.api_key)
        unlocked = await auth.unlock(owner_ctx, project.id, member.principal.id)
        assert unlocked.locked_until is None
        await auth.login("m@example.com", "secret-1", api_key=project.api_key)

    async def test_admin_can_mark_a_principal_verified(self, auth, make_project):
        project, owner = await make_project()
        await auth.signup(email="p@example.com", password="secret-1", api_key=project.api_key)
        owner_ctx = await auth.authenticate(owner.tokens.access_token)
        [pending] = await auth.list_project_principals(owner_ctx, project.id)

        verified = await auth.mark_verified(owner_ctx, project.id, pending.id)
        assert verified.verification == VerificationState.VERIFIED
        await auth.login("p@example.com", "secret-1", api_key=project.api_key)

    async def test_principal_of_another_project_is_not_found(self, auth, make_project):
        project, owner_ctx, _ = await self._member(auth, make_project)
        other, _ = await make_project(owner_email="o2@example.com", require_email_verification=False)
        stranger = await auth.signup(email="s@example.com", password="secret-1", api_key=other.api_key)
        with pytest.raises(NotFoundError):
            await auth.unlock(owner_ctx, project.id, stranger.principal.id)

    async def test_list_project_principals(self, auth, make_project):
        project, owner_ctx, member = await self._member(auth, make_project)
        principals = await auth.list_project_principals(owner_ctx, project.id)
        assert [p.id for p in principals] == [member.principal.id]
