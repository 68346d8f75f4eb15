from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Callable, List, Optional

from keyward.logging import get_logger
from keyward.service.credentials import PrincipalStore
from keyward.service.errors import NotFoundError
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import Session, utcnow

logger = get_logger(__name__)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionRegistry:
    """Bounded, FIFO-evicted list of refresh-token grants per principal."""

    def __init__(
        self, store: PrincipalStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    async def add_session(
        self,
        principal_id: str,
        *,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        max_sessions: int,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            id=session_id,
            token_hash=hash_refresh_token(refresh_token),
            created_at=now,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_addr=ip_addr,
            last_active_at=now,
        )
        try:
            evicted = await self.store.add_session(
                principal_id, session, max_sessions=max_sessions, now=now
            )
        except ConstraintViolation as exc:
            raise NotFoundError("principal not found") from exc
        if evicted:
            logger.info(
                "sessions_evicted",
                principal_id=principal_id,
                evicted=len(evicted),
                max_sessions=max_sessions,
            )
        return session

    async def revoke_session(self, principal_id: str, session_id: str) -> bool:
        return await self.store.revoke_session(principal_id, session_id, now=self._clock())

    async def revoke_by_token(self, principal_id: str, refresh_token: str) -> bool:
        """Revoke whichever session of ``principal_id`` holds this refresh token."""
        token_hash = hash_refresh_token(refresh_token)
        principal = await self.store.get_principal(principal_id)
        if principal is None:
            return False
        for session in principal.sessions:
            if hmac.compare_digest(session.token_hash, token_hash):
                return await self.store.revoke_session(
                    principal_id, session.id, now=self._clock()
                )
        return False

    async def revoke_all(self, principal_id: str) -> int:
        count = await self.store.revoke_all_sessions(principal_id, now=self._clock())
        logger.info("sessions_revoked", principal_id=principal_id, count=count)
        return count

    async def is_session_live(self, principal_id: str, session_id: str) -> bool:
        session = await self.store.get_session(principal_id, session_id)
        return session is not None and session.is_live(self._clock())

    async def find_live_session(
        self, principal_id: str, session_id: str, refresh_token: str
    ) -> Optional[Session]:
        """The live session with this id, provided the token hash matches."""
        session = await self.store.get_session(principal_id, session_id)
        if session is None or not session.is_live(self._clock()):
            return None
        if not hmac.compare_digest(session.token_hash, hash_refresh_token(refresh_token)):
            return None
        return session

    async def touch(self, principal_id: str, session_id: str) -> None:
        await self.store.touch_session(principal_id, session_id, now=self._clock())

    async def list_sessions(self, principal_id: str) -> List[Session]:
        principal = await self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal.live_sessions(self._clock())
