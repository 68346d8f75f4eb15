from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from keyward.logging import get_logger
from keyward.service.credentials import PrincipalStore
from keyward.service.errors import (
    AccountDeactivated,
    AccountLocked,
    AccountSuspended,
    NotFoundError,
)
from keyward.storage.models import Principal, PrincipalStatus, ProjectPolicy, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Unlocked:
    attempts: int


@dataclass(frozen=True)
class Locked:
    until: datetime


LockState = Union[Unlocked, Locked]


def lock_state(principal: Principal, now: datetime) -> LockState:
    """Where ``principal`` sits in the lockout state machine at ``now``."""
    if principal.is_locked(now):
        return Locked(until=principal.locked_until)
    return Unlocked(attempts=principal.failed_attempts)


class LockoutEngine:
    """Failed-attempt tracking and time-boxed locks, parameterized by policy.

    The transitions themselves run inside the store as single atomic
    updates; this class decides which transition applies and enforces the
    read gates.
    """

    def __init__(
        self, store: PrincipalStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def enforce_gates(self, principal: Principal) -> None:
        """Status gates, then the lock gate, in that order.

        Runs before any password check so the outcome is the same whether
        or not the submitted password is correct.
        """
        now = self._clock()
        if principal.status == PrincipalStatus.INACTIVE:
            raise AccountDeactivated()
        if principal.is_suspended(now):
            raise AccountSuspended(until=principal.suspended_until)
        state = lock_state(principal, now)
        if isinstance(state, Locked):
            logger.info("login_refused_locked", principal_id=principal.id)
            raise AccountLocked(state.until)

    async def record_failure(self, principal: Principal, policy: ProjectPolicy) -> Principal:
        updated = await self.store.record_failed_attempt(
            principal.id,
            now=self._clock(),
            max_attempts=policy.max_login_attempts,
            lockout_minutes=policy.lockout_duration_minutes,
            locking_enabled=policy.enable_account_locking,
        )
        if updated is None:
            raise NotFoundError("principal not found")
        if updated.locked_until is not None and updated.locked_until != principal.locked_until:
            logger.warning(
                "account_locked",
                principal_id=principal.id,
                attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
        else:
            logger.info(
                "login_failed", principal_id=principal.id, attempts=updated.failed_attempts
            )
        return updated

    async def record_success(self, principal: Principal) -> Principal:
        """Reset the counter and clear any lock, whatever the policy says."""
        updated = await self.store.clear_failed_attempts(principal.id, now=self._clock())
        if updated is None:
            raise NotFoundError("principal not found")
        return updated
