import pytest
from pydantic import ValidationError

from keyward.config import Settings, get_settings, reset_settings_cache

ACCESS = "a" * 40
REFRESH = "r" * 40


def test_secrets_are_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)
    settings = Settings(test_mode=False, jwt_access_secret=ACCESS, jwt_refresh_secret=REFRESH)
    assert settings.jwt_access_secret == ACCESS


def test_test_mode_generates_distinct_throwaway_secrets():
    settings = Settings(test_mode=True)
    assert settings.jwt_access_secret
    assert settings.jwt_refresh_secret
    assert settings.jwt_access_secret != settings.jwt_refresh_secret


def test_settings_are_immutable_once_loaded():
    settings = Settings(test_mode=True)
    with pytest.raises(ValidationError):
        settings.access_token_ttl_minutes = 60
    with pytest.raises(ValidationError):
        settings.jwt_access_secret = ACCESS
    copy = settings.model_copy(update={"access_token_ttl_minutes": 60})
    assert copy.access_token_ttl_minutes == 60
    assert settings.access_token_ttl_minutes != 60


def test_access_and_refresh_secrets_must_differ():
    with pytest.raises(ValidationError):
        Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=ACCESS)


def test_short_secrets_are_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_access_secret="short", jwt_refresh_secret=REFRESH)


def test_platform_policy_follows_settings():
    settings = Settings(
        test_mode=True,
        platform_min_password_length=8,
        platform_max_sessions=2,
        access_token_ttl_minutes=30,
    )
    policy = settings.platform_policy()
    assert policy.min_password_length == 8
    assert policy.max_sessions == 2
    assert policy.session_timeout_minutes == 30
    assert policy.require_email_verification is False
    assert policy.max_login_attempts == 5
    assert policy.lockout_duration_minutes == 120


def test_cors_origins_are_split():
    settings = Settings(test_mode=True, cors_allow_origins=" https://a.example, ,https://b.example")
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert Settings(test_mode=True).cors_origins == []


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "true")
    monkeypatch.setenv("PLATFORM_MAX_SESSIONS", "7")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    reset_settings_cache()
    try:
        settings = get_settings()
        assert settings.platform_max_sessions == 7
        assert settings.redis_url == "redis://cache:6379/0"
        assert get_settings() is settings
    finally:
        reset_settings_cache()
