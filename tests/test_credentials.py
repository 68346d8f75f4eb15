"""Unit tests for password policy and the credential store."""

import pytest

from keyward.service.credentials import (
    PASSWORD_ALGO,
    enforce_password_policy,
    password_violations,
)
from keyward.service.errors import DuplicateIdentity, NotFoundError, WeakPassword
from keyward.storage.models import Principal, ProjectPolicy, Scope


class TestPasswordPolicy:
    def test_default_policy_only_checks_length(self):
        policy = ProjectPolicy()
        assert password_violations("abcdef", policy) == []
        assert password_violations("abc", policy) == ["at least 6 characters"]

    def test_every_failed_requirement_is_reported(self):
        policy = ProjectPolicy(
            min_password_length=10,
            require_uppercase=True,
            require_lowercase=True,
            require_numbers=True,
            require_special_chars=True,
        )
        failed = password_violations("short", policy)
        assert failed == [
            "at least 10 characters",
            "an uppercase letter",
            "a number",
            "a special character",
        ]

    def test_special_characters_follow_fixed_set(self):
        policy = ProjectPolicy(require_special_chars=True)
        assert password_violations("abcdef!", policy) == []
        assert password_violations("abcdef{", policy) == []
        # underscore and tilde are not in the accepted set
        assert password_violations("abcdef_~", policy) == ["a special character"]

    def test_enforce_raises_with_requirements(self):
        with pytest.raises(WeakPassword) as excinfo:
            enforce_password_policy("a", ProjectPolicy(require_numbers=True))
        assert excinfo.value.error_code == "weak_password"
        assert "a number" in excinfo.value.detail["requirements"]


class TestHashing:
    def test_hash_is_salted_argon2id(self, runtime):
        creds = runtime.credentials
        first, algo = creds.hash_password("Secret123!")
        second, _ = creds.hash_password("Secret123!")
        assert algo == PASSWORD_ALGO
        assert first.startswith("$argon2id$")
        assert first != second
        assert "Secret123!" not in first

    def test_verify_accepts_only_the_right_password(self, runtime):
        creds = runtime.credentials
        principal = Principal.new(Scope.platform(), "a@example.com")
        principal.password_hash, principal.password_algo = creds.hash_password("right-one")
        assert creds.verify_password(principal, "right-one")
        assert not creds.verify_password(principal, "wrong-one")

    def test_corrupt_or_missing_hash_never_raises(self, runtime):
        creds = runtime.credentials
        principal = Principal.new(Scope.platform(), "a@example.com")
        assert not creds.verify_password(principal, "anything")
        principal.password_hash = "not-a-hash"
        principal.password_algo = PASSWORD_ALGO
        assert not creds.verify_password(principal, "anything")
        principal.password_algo = "bcrypt"
        assert not creds.verify_password(principal, "anything")

    def test_burn_verification_does_not_raise(self, runtime):
        runtime.credentials.burn_verification("whatever")
        runtime.credentials.burn_verification("")


class TestCredentialStore:
    async def test_create_and_lookup_by_email_or_username(self, runtime):
        creds = runtime.credentials
        scope = Scope.project("p1")
        created = await creds.create(
            Principal.new(scope, "Jane@Example.com", username="jane"), "pw-123456"
        )
        assert created.email == "jane@example.com"
        assert created.password_hash

        by_email = await creds.find_by_email_or_username(scope, "JANE@example.com ")
        by_username = await creds.find_by_email_or_username(scope, "jane")
        assert by_email.id == by_username.id == created.id

        with pytest.raises(NotFoundError):
            await creds.find_by_email_or_username(Scope.platform(), "jane")

    async def test_identity_is_unique_per_scope_only(self, runtime):
        creds = runtime.credentials
        await creds.create(Principal.new(Scope.project("p1"), "x@example.com"), "pw-123456")
        # Same address in a different project and on the platform is fine
        await creds.create(Principal.new(Scope.project("p2"), "x@example.com"), "pw-123456")
        await creds.create(Principal.new(Scope.platform(), "x@example.com"), "pw-123456")

        with pytest.raises(DuplicateIdentity) as excinfo:
            await creds.create(Principal.new(Scope.project("p1"), "X@example.com"), "pw")
        assert excinfo.value.field == "email"

    async def test_identity_taken_names_the_field(self, runtime):
        creds = runtime.credentials
        scope = Scope.platform()
        await creds.create(Principal.new(scope, "a@example.com", username="alpha"), "pw-123456")
        assert await creds.identity_taken(scope, "a@example.com", None) == "email"
        assert await creds.identity_taken(scope, "b@example.com", "alpha") == "username"
        assert await creds.identity_taken(scope, "b@example.com", "beta") is None

    async def test_set_password_drops_sessions(self, runtime, auth):
        result = await auth.signup(email="s@example.com", password="first-pass")
        principal = await runtime.credentials.get(result.principal.id)
        assert len(principal.sessions) == 1

        updated = await runtime.credentials.set_password(principal, "second-pass")
        assert updated.sessions == []
        assert runtime.credentials.verify_password(updated, "second-pass")
        assert not runtime.credentials.verify_password(updated, "first-pass")
