from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.errors import InvalidToken
from keyward.storage.models import Scope, utcnow

if TYPE_CHECKING:
    from keyward.service.sessions import SessionRegistry

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

API_KEY_PREFIX = "ak_"
API_SECRET_PREFIX = "as_"


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(32)


def generate_api_secret() -> str:
    return API_SECRET_PREFIX + secrets.token_hex(32)


def generate_opaque_token() -> str:
    """High-entropy single-use token for reset and verification links."""
    return secrets.token_hex(32)


def hash_opaque_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenClaims:
    principal_id: str
    scope: Scope
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime

    @property
    def project_id(self) -> Optional[str]:
        return self.scope.project_id


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
            "session_id": self.session_id,
        }


@dataclass
class AccessGrant:
    access_token: str
    expires_at: datetime
    claims: TokenClaims


class TokenService:
    """Signs and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``token_type`` claim, so a token of one kind never verifies as the other.
    Verification failures of any kind surface as a single ``InvalidToken``.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    def issue_token_pair(
        self,
        principal_id: str,
        scope: Scope,
        *,
        access_ttl_minutes: Optional[int] = None,
    ) -> TokenPair:
        now = self._clock()
        access_token, access_exp, _ = self._mint(
            ACCESS,
            principal_id,
            scope,
            now,
            access_ttl_minutes or self.settings.access_token_ttl_minutes,
        )
        refresh_token, refresh_exp, refresh_jti = self._mint(
            REFRESH, principal_id, scope, now, self.settings.refresh_token_ttl_minutes
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=refresh_jti,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def mint_access_token(
        self, principal_id: str, scope: Scope, *, ttl_minutes: Optional[int] = None
    ) -> tuple[str, datetime]:
        token, exp, _ = self._mint(
            ACCESS,
            principal_id,
            scope,
            self._clock(),
            ttl_minutes or self.settings.access_token_ttl_minutes,
        )
        return token, exp

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    async def rotate_access_token(
        self,
        refresh_token: str,
        sessions: "SessionRegistry",
        *,
        ttl_for: Optional[Callable[[TokenClaims], Awaitable[Optional[int]]]] = None,
    ) -> AccessGrant:
        """Mint a fresh access token against a live session.

        The refresh token itself is left unchanged; ``ttl_for`` lets the caller
        pick the access lifetime from the principal's policy.
        """
        claims = self.verify_refresh_token(refresh_token)
        session = await sessions.find_live_session(
            claims.principal_id, claims.jti, refresh_token
        )
        if session is None:
            logger.info("refresh_session_dead", principal_id=claims.principal_id)
            raise InvalidToken()
        ttl = await ttl_for(claims) if ttl_for else None
        access_token, expires_at = self.mint_access_token(
            claims.principal_id, claims.scope, ttl_minutes=ttl
        )
        await sessions.touch(claims.principal_id, session.id)
        return AccessGrant(access_token=access_token, expires_at=expires_at, claims=claims)

    # -- wire format -------------------------------------------------------

    def _mint(
        self,
        token_type: str,
        principal_id: str,
        scope: Scope,
        now: datetime,
        ttl_minutes: int,
    ) -> tuple[str, datetime, str]:
        expires_at = now + timedelta(minutes=ttl_minutes)
        jti = str(uuid.uuid4())
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal_id,
            "scope": scope.tag,
            "token_type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if scope.project_id:
            payload["pid"] = scope.project_id
        return self._encode_jwt(payload, self._secrets[token_type]), expires_at, jti

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= (self._clock() - self._leeway).timestamp():
            return None
        return payload

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        payload = self._decode_jwt(token, self._secrets[token_type])
        if not payload or payload.get("token_type") != token_type:
            raise InvalidToken()
        principal_id = payload.get("sub")
        jti = payload.get("jti")
        if not principal_id or not jti:
            raise InvalidToken()
        scope_tag = payload.get("scope")
        if scope_tag == "platform" and "pid" not in payload:
            scope = Scope.platform()
        elif scope_tag == "project" and payload.get("pid"):
            scope = Scope.project(str(payload["pid"]))
        else:
            raise InvalidToken()
        return TokenClaims(
            principal_id=str(principal_id),
            scope=scope,
            token_type=token_type,
            jti=str(jti),
            issued_at=datetime.fromtimestamp(int(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )
