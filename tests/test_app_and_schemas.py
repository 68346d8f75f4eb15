import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from keyward.api import schemas
from keyward.app import create_app


def test_cors_enabled_only_for_configured_origins(settings, runtime):
    allowed = settings.model_copy(update={"cors_allow_origins": "https://app.example.com"})
    with TestClient(create_app(allowed, runtime=runtime)) as client:
        response = client.get("/v1/health", headers={"Origin": "https://app.example.com"})
        assert response.headers["access-control-allow-origin"] == "https://app.example.com"
        other = client.get("/v1/health", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in other.headers


def test_no_cors_headers_by_default(runtime):
    with TestClient(create_app(runtime=runtime)) as client:
        response = client.get("/v1/health", headers={"Origin": "https://app.example.com"})
    assert response.status_code == 200
    assert "access-control-allow-origin" not in response.headers


def test_lifespan_exposes_and_closes_runtime(runtime):
    app = create_app(runtime=runtime)
    with TestClient(app):
        assert app.state.runtime is runtime


def test_envelope_status_validation():
    with pytest.raises(ValidationError):
        schemas.Envelope(status="pending")


def test_signup_request_normalizes_email_and_username():
    req = schemas.SignupRequest(
        email=" User@Example.com ", password="Password1", username="ada\u200b_l"
    )
    assert req.email == "user@example.com"
    assert req.username == "ada_l"

    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="invalid", password="Password1")
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@localhost", password="Password1")
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@example.com", password="x" * 129)


@pytest.mark.parametrize("username", ["ab", "a" * 65, "has space", "semi;colon"])
def test_username_rules(username):
    with pytest.raises(ValidationError):
        schemas.SignupRequest(email="a@example.com", password="Password1", username=username)


def test_login_request_aliases():
    assert schemas.LoginRequest(email="a@example.com", password="p").identifier == "a@example.com"
    assert schemas.LoginRequest(username="ada", password="p").identifier == "ada"
    with pytest.raises(ValidationError):
        schemas.LoginRequest(password="p")


def test_profile_fields_reject_unknown_and_deep_json():
    with pytest.raises(ValidationError):
        schemas.ProfileFields(role="admin")

    deep: dict = {}
    node = deep
    for _ in range(schemas.MAX_JSON_DEPTH + 2):
        node["n"] = {}
        node = node["n"]
    with pytest.raises(ValidationError):
        schemas.ProfileFields(preferences=deep)

    fields = schemas.ProfileFields(preferences={"theme": "dark"})
    assert fields.model_dump(exclude_unset=True) == {"preferences": {"theme": "dark"}}


def test_policy_fields_only_report_sent_values():
    policy = schemas.PolicyFields(max_sessions=3, require_numbers=False)
    assert policy.changes() == {"max_sessions": 3, "require_numbers": False}
    with pytest.raises(ValidationError):
        schemas.PolicyFields(colour="blue")


def test_status_and_team_requests_are_constrained():
    with pytest.raises(ValidationError):
        schemas.PrincipalStatusRequest(status="banned")
    with pytest.raises(ValidationError):
        schemas.TeamRoleRequest(member_id="m", role="owner")
    assert schemas.TeamRoleRequest(member_id="m").role is None
