from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type
from redis.exceptions import RedisError

from keyward.config import Settings, get_settings
from keyward.logging import get_logger
from keyward.service.auth import AuthService
from keyward.service.credentials import CredentialStore
from keyward.service.email import EmailDispatcher, EmailSender, EmailService
from keyward.service.lockout import LockoutEngine
from keyward.service.projects import ProjectService
from keyward.service.sessions import SessionRegistry
from keyward.service.tokens import TokenService
from keyward.storage.memory import MemoryStore
from keyward.storage.models import utcnow
from keyward.storage.postgres import PostgresStore
from keyward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the service graph for one app instance.

    Built eagerly in ``__init__``; ``init`` opens connections and ``close``
    releases them. Collaborators can be passed in to replace the defaults
    (tests inject a memory store, a frozen clock and a recording mailer).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Optional[RedisCache] = None,
        email_sender: Optional[EmailSender] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            store = (
                MemoryStore(fs_root=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, timeout=self.settings.storage_timeout_seconds
                )
            )
        self.store = store

        if cache is None and self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url, socket_timeout=self.settings.storage_timeout_seconds
            )
        self.cache = cache

        hasher = PasswordHasher(
            time_cost=self.settings.password_time_cost,
            memory_cost=self.settings.password_memory_cost_kib,
            type=Type.ID,
        )
        sender = email_sender or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.email = EmailDispatcher(sender)

        self.credentials = CredentialStore(self.store, hasher=hasher, clock=self.clock)
        self.tokens = TokenService(self.settings, clock=self.clock)
        self.lockout = LockoutEngine(self.store, clock=self.clock)
        self.sessions = SessionRegistry(self.store, clock=self.clock)
        self.projects = ProjectService(self.store, clock=self.clock)
        self.auth = AuthService(
            self.credentials,
            self.tokens,
            self.lockout,
            self.sessions,
            self.projects,
            settings=self.settings,
            email=self.email,
            clock=self.clock,
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

    async def init(self) -> None:
        await self.store.init()
        if self.cache is not None:
            try:
                await self.cache.verify_connection()
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Running without Redis; rate limits are per-process only.",
                )
                await self.cache.close()
                self.cache = None
        logger.info(
            "runtime_ready",
            store_type=type(self.store).__name__,
            shared_rate_limits=self.cache is not None,
        )

    async def close(self) -> None:
        await self.email.drain()
        if self.cache is not None:
            await self.cache.close()
        await self.store.close()
        logger.info("runtime_closed")

    async def __aenter__(self) -> "Runtime":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    scope_key: Optional[str] = None,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit, shared through Redis when it is available.

    Returns (allowed, remaining, reset_seconds). Without Redis, or when a Redis
    call fails, the bucket lives in this process only.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        try:
            return await runtime.cache.check_rate_limit(
                key, limit, window_seconds, scope_key=scope_key, cost=cost
            )
        except RedisError as exc:
            logger.warning(
                "rate_limit_cache_failed",
                error=str(exc),
                message="Falling back to the per-process bucket for this request.",
            )
    now = runtime.clock()
    bucket_key = f"{scope_key}:{key}" if scope_key else key
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(bucket_key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[bucket_key] = (tokens, now)
        reset_seconds = 0 if allowed else int((cost - tokens) / refill_rate) + 1
    return allowed, int(tokens), reset_seconds
