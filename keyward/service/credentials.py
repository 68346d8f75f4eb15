from __future__ import annotations

import re
import secrets
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from keyward.logging import email_ref, get_logger
from keyward.service.errors import DuplicateIdentity, NotFoundError, WeakPassword
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    LoginRecord,
    Principal,
    ProjectPolicy,
    Scope,
    Session,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


class PrincipalStore(Protocol):
    async def create_principal(self, principal: Principal) -> Principal: ...

    async def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    async def find_principal(
        self, scope: Scope, *, email: Optional[str] = None, username: Optional[str] = None
    ) -> Optional[Principal]: ...

    async def find_principal_by_verification_token(
        self, scope: Scope, token_hash: str
    ) -> Optional[Principal]: ...

    async def list_principals(self, scope: Scope, *, limit: int = 100) -> List[Principal]: ...

    async def update_principal(
        self, principal_id: str, *, now: datetime, **changes: Any
    ) -> Optional[Principal]: ...

    async def set_password(
        self, principal_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> Optional[Principal]: ...

    async def rehash_password(
        self, principal_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> None: ...

    async def consume_reset_token(
        self,
        scope: Scope,
        token_hash: str,
        password_hash: str,
        password_algo: str,
        *,
        now: datetime,
    ) -> Optional[Principal]: ...

    async def record_failed_attempt(
        self,
        principal_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lockout_minutes: int,
        locking_enabled: bool,
    ) -> Optional[Principal]: ...

    async def clear_failed_attempts(
        self, principal_id: str, *, now: datetime
    ) -> Optional[Principal]: ...

    async def add_session(
        self, principal_id: str, session: Session, *, max_sessions: int, now: datetime
    ) -> List[str]: ...

    async def get_session(self, principal_id: str, session_id: str) -> Optional[Session]: ...

    async def touch_session(self, principal_id: str, session_id: str, *, now: datetime) -> None: ...

    async def revoke_session(
        self, principal_id: str, session_id: str, *, now: datetime
    ) -> bool: ...

    async def revoke_all_sessions(self, principal_id: str, *, now: datetime) -> int: ...

    async def record_login(
        self, principal_id: str, record: LoginRecord, *, history_limit: int
    ) -> None: ...

    async def tombstone_principal(
        self, principal_id: str, *, now: datetime
    ) -> Optional[Principal]: ...

    async def deactivate_scope(self, scope: Scope, *, now: datetime) -> int: ...


def password_violations(password: str, policy: ProjectPolicy) -> List[str]:
    """Return the policy requirements ``password`` fails; empty when it passes."""
    failed: List[str] = []
    if len(password) < policy.min_password_length:
        failed.append(f"at least {policy.min_password_length} characters")
    if policy.require_uppercase and not any(c.isupper() for c in password):
        failed.append("an uppercase letter")
    if policy.require_lowercase and not any(c.islower() for c in password):
        failed.append("a lowercase letter")
    if policy.require_numbers and not any(c.isdigit() for c in password):
        failed.append("a number")
    if policy.require_special_chars and not _SPECIAL_CHARS.search(password):
        failed.append("a special character")
    return failed


def enforce_password_policy(password: str, policy: ProjectPolicy) -> None:
    failed = password_violations(password, policy)
    if failed:
        raise WeakPassword(failed)


class CredentialStore:
    """Principal records and their argon2id password hashes.

    Hashes are computed whenever the password changes; verification never
    raises for a bad or corrupt hash, it simply returns False.
    """

    def __init__(
        self,
        store: PrincipalStore,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._clock = clock or utcnow
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, principal: Principal, password: str) -> bool:
        if not principal.password_hash:
            return False
        if principal.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", principal_id=principal.id, algo=principal.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(principal.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable", principal_id=principal.id)
            return False

    def burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown identifiers cost the same."""
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    async def create(self, principal: Principal, password: Optional[str]) -> Principal:
        if password is not None:
            principal.password_hash, principal.password_algo = self.hash_password(password)
        try:
            created = await self.store.create_principal(principal)
        except ConstraintViolation as exc:
            raise DuplicateIdentity(exc.detail.get("field", "email")) from exc
        logger.info(
            "principal_created",
            principal_id=created.id,
            scope=created.scope.key,
            email_ref=email_ref(created.email),
        )
        return created

    async def get(self, principal_id: str) -> Principal:
        principal = await self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    async def find_by_email_or_username(self, scope: Scope, identifier: str) -> Principal:
        identifier = (identifier or "").strip()
        if not identifier:
            raise NotFoundError("principal not found")
        principal = None
        if "@" in identifier:
            principal = await self.store.find_principal(scope, email=normalize_email(identifier))
        if principal is None:
            principal = await self.store.find_principal(scope, username=identifier)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    async def find_by_email(self, scope: Scope, email: str) -> Optional[Principal]:
        return await self.store.find_principal(scope, email=normalize_email(email))

    async def identity_taken(
        self, scope: Scope, email: str, username: Optional[str]
    ) -> Optional[str]:
        """Name the identity field already registered in ``scope``, if any."""
        if await self.store.find_principal(scope, email=normalize_email(email)):
            return "email"
        if username and await self.store.find_principal(scope, username=username):
            return "username"
        return None

    async def set_password(self, principal: Principal, password: str) -> Principal:
        """Rehash and store; every session of the principal is dropped with it."""
        password_hash, algo = self.hash_password(password)
        updated = await self.store.set_password(
            principal.id, password_hash, algo, now=self._clock()
        )
        if updated is None:
            raise NotFoundError("principal not found")
        logger.info("password_changed", principal_id=principal.id)
        return updated

    async def maybe_rehash(self, principal: Principal, password: str) -> None:
        """Upgrade a verified hash whose cost parameters are out of date."""
        if not principal.password_hash:
            return
        try:
            stale = self._pwd_hasher.check_needs_rehash(principal.password_hash)
        except InvalidHash:
            return
        if stale:
            password_hash, algo = self.hash_password(password)
            await self.store.rehash_password(principal.id, password_hash, algo, now=self._clock())
            logger.info("password_rehashed", principal_id=principal.id)

    async def update(self, principal_id: str, **changes: Any) -> Principal:
        try:
            updated = await self.store.update_principal(principal_id, now=self._clock(), **changes)
        except ConstraintViolation as exc:
            raise DuplicateIdentity(exc.detail.get("field", "email")) from exc
        if updated is None:
            raise NotFoundError("principal not found")
        return updated

    async def list(self, scope: Scope, *, limit: int = 100) -> List[Principal]:
        return await self.store.list_principals(scope, limit=limit)

    async def reset_password(
        self, scope: Scope, token_hash: str, password: str
    ) -> Optional[Principal]:
        """Spend a reset token and set ``password`` in one step.

        Returns None when no principal in ``scope`` holds an unexpired token
        with this hash, including one that was already used.
        """
        password_hash, algo = self.hash_password(password)
        return await self.store.consume_reset_token(
            scope, token_hash, password_hash, algo, now=self._clock()
        )

    async def record_login(
        self, principal_id: str, record: LoginRecord, *, history_limit: int
    ) -> None:
        await self.store.record_login(principal_id, record, history_limit=history_limit)

    async def tombstone(self, principal_id: str) -> Principal:
        deleted = await self.store.tombstone_principal(principal_id, now=self._clock())
        if deleted is None:
            raise NotFoundError("principal not found")
        return deleted
