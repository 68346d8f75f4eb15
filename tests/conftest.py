import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keyward.config import Settings  # noqa: E402
from keyward.service.runtime import Runtime  # noqa: E402
from keyward.storage.memory import MemoryStore  # noqa: E402

OWNER_PASSWORD = "owner-pass-1"


class FrozenClock:
    """Manually advanced UTC clock shared by every service under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingSender:
    """Email sender that keeps every message instead of delivering it."""

    def __init__(self):
        self.sent = []

    def send(self, to_email, kind, params):
        self.sent.append({"to": to_email, "kind": kind, "params": dict(params)})
        return True

    def last(self, kind, to_email=None):
        for message in reversed(self.sent):
            if message["kind"] == kind and (to_email is None or message["to"] == to_email):
                return message
        raise AssertionError(f"no {kind} email sent")


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        password_time_cost=1,
        password_memory_cost_kib=8192,
    )


@pytest.fixture
def mailer():
    return RecordingSender()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, store, mailer, clock):
    return Runtime(settings, store=store, email_sender=mailer, clock=clock)


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def make_project(runtime):
    """Factory: sign up a platform owner and create a project for them."""

    async def _make(owner_email="owner@example.com", name="Acme", **policy):
        owner = await runtime.auth.signup(email=owner_email, password=OWNER_PASSWORD)
        issued = await runtime.projects.create_project(
            owner.principal, name, policy=policy or None
        )
        return issued.project, owner

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
