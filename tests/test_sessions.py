"""Session registry: bounded per-principal sessions and refresh behavior."""

import pytest

from keyward.service.errors import InvalidToken
from keyward.service.sessions import hash_refresh_token
from keyward.storage.models import Scope


async def test_oldest_session_is_evicted_past_the_cap(auth, runtime, clock, make_project):
    project, _ = await make_project(max_sessions=2, require_email_verification=False)
    await auth.signup(email="fifo@example.com", password="pass-1234", api_key=project.api_key)
    principal = await runtime.credentials.find_by_email(Scope.project(project.id), "fifo@example.com")
    first = principal.sessions[0]

    clock.advance(minutes=1)
    second = await auth.login("fifo@example.com", "pass-1234", api_key=project.api_key)
    clock.advance(minutes=1)
    third = await auth.login("fifo@example.com", "pass-1234", api_key=project.api_key)

    principal = await runtime.credentials.get(principal.id)
    ids = [s.id for s in principal.sessions]
    assert ids == [second.tokens.session_id, third.tokens.session_id]
    assert first.id not in ids
    assert not await runtime.sessions.is_session_live(principal.id, first.id)


async def test_evicted_refresh_token_stops_working(auth, make_project):
    project, _ = await make_project(max_sessions=1, require_email_verification=False)
    signup = await auth.signup(email="one@example.com", password="pass-1234", api_key=project.api_key)
    await auth.login("one@example.com", "pass-1234", api_key=project.api_key)

    with pytest.raises(InvalidToken):
        await auth.refresh(signup.tokens.refresh_token)


async def test_expired_sessions_are_pruned_before_counting(auth, runtime, clock, settings):
    first = await auth.signup(email="prune@example.com", password="pass-1234")
    clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)

    for _ in range(settings.platform_max_sessions):
        await auth.login("prune@example.com", "pass-1234")

    principal = await runtime.credentials.get(first.principal.id)
    assert len(principal.sessions) == settings.platform_max_sessions
    assert first.tokens.session_id not in {s.id for s in principal.sessions}


async def test_only_the_refresh_hash_is_stored(auth, runtime):
    result = await auth.signup(email="hash@example.com", password="pass-1234")
    principal = await runtime.credentials.get(result.principal.id)
    session = principal.sessions[0]
    assert session.token_hash == hash_refresh_token(result.tokens.refresh_token)
    assert session.token_hash != result.tokens.refresh_token


async def test_refresh_keeps_the_refresh_token_and_touches_session(auth, runtime, clock):
    result = await auth.signup(email="touch@example.com", password="pass-1234")
    clock.advance(minutes=5)
    grant = await auth.refresh(result.tokens.refresh_token)

    assert grant.access_token != result.tokens.access_token
    assert grant.claims.jti == result.tokens.session_id
    session = await runtime.store.get_session(result.principal.id, result.tokens.session_id)
    assert session.last_active_at == clock.now

    # The same refresh token keeps working
    await auth.refresh(result.tokens.refresh_token)


async def test_refresh_after_session_expiry_fails(auth, clock, settings):
    result = await auth.signup(email="late@example.com", password="pass-1234")
    clock.advance(minutes=settings.refresh_token_ttl_minutes, seconds=1)
    with pytest.raises(InvalidToken):
        await auth.refresh(result.tokens.refresh_token)


async def test_logout_revokes_only_the_matching_session(auth, runtime):
    first = await auth.signup(email="out@example.com", password="pass-1234")
    second = await auth.login("out@example.com", "pass-1234")
    ctx = await auth.authenticate(first.tokens.access_token)

    assert await auth.logout(ctx, first.tokens.refresh_token)
    assert not await auth.logout(ctx, first.tokens.refresh_token)
    assert not await auth.logout(ctx, None)

    with pytest.raises(InvalidToken):
        await auth.refresh(first.tokens.refresh_token)
    await auth.refresh(second.tokens.refresh_token)


async def test_logout_all_revokes_every_session(auth):
    first = await auth.signup(email="all@example.com", password="pass-1234")
    second = await auth.login("all@example.com", "pass-1234")
    ctx = await auth.authenticate(second.tokens.access_token)

    assert await auth.logout_all(ctx) == 2
    for tokens in (first.tokens, second.tokens):
        with pytest.raises(InvalidToken):
            await auth.refresh(tokens.refresh_token)


async def test_list_and_revoke_session(auth):
    first = await auth.signup(email="list@example.com", password="pass-1234")
    second = await auth.login("list@example.com", "pass-1234")
    ctx = await auth.authenticate(first.tokens.access_token)

    sessions = await auth.list_sessions(ctx)
    assert {s.id for s in sessions} == {first.tokens.session_id, second.tokens.session_id}

    await auth.revoke_session(ctx, second.tokens.session_id)
    sessions = await auth.list_sessions(ctx)
    assert [s.id for s in sessions] == [first.tokens.session_id]

async def test_refreshing_the_oldest_session_does_not_save_it(auth, clock, make_project):
    project, _ = await make_project(max_sessions=2, require_email_verification=False)
    first = await auth.signup(email="lru@example.com", password="pass-1234", api_key=project.api_key)
    clock.advance(minutes=1)
    second = await auth.login("lru@example.com", "pass-1234", api_key=project.api_key)

    clock.advance(minutes=1)
    await auth.refresh(first.tokens.refresh_token)
    clock.advance(minutes=1)
    await auth.login("lru@example.com", "pass-1234", api_key=project.api_key)

    with pytest.raises(InvalidToken):
        await auth.refresh(first.tokens.refresh_token)
    await auth.refresh(second.tokens.refresh_token)


async def test_session_changes_advance_updated_at(auth, runtime, clock):
    first = await auth.signup(email="stamp@example.com", password="pass-1234")
    second = await auth.login("stamp@example.com", "pass-1234")
    ctx = await auth.authenticate(first.tokens.access_token)

    clock.advance(minutes=5)
    assert await auth.logout(ctx, first.tokens.refresh_token)
    principal = await runtime.credentials.get(ctx.principal_id)
    assert principal.updated_at == clock.now

    clock.advance(minutes=5)
    await auth.refresh(second.tokens.refresh_token)
    principal = await runtime.credentials.get(ctx.principal_id)
    assert principal.updated_at == clock.now

    clock.advance(minutes=5)
    assert await auth.logout_all(ctx) == 1
    principal = await runtime.credentials.get(ctx.principal_id)
    assert principal.updated_at == clock.now
    assert principal.sessions == []
