from __future__ import annotations

import base64
import json
import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_admin.core.auth import Identity, decode_token, extract_bearer_token, identity_from_claims
from crm_admin.core.config import Settings
from crm_admin.core.errors import (
    ExpiredCredential,
    InvalidSignature,
    MalformedCredential,
    MalformedToken,
    MissingCredential,
    MissingRoleClaim,
)
from crm_admin.crm.models import Customer


SECRET = "unit-secret"


def _settings(**overrides) -> Settings:
    values = {"jwt_secret": SECRET, "jwt_algorithm": "HS256", "jwt_issuer": None, **overrides}
    return Settings(**values)


def _unsigned_token(claims: dict) -> str:
    def encode(part: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(part).encode()).rstrip(b"=").decode()

    return f"{encode({'alg': 'none', 'typ': 'JWT'})}.{encode(claims)}."


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_missing_authorization_header(raw: str | None) -> None:
    with pytest.raises(MissingCredential):
        extract_bearer_token(raw)


@pytest.mark.parametrize("raw", ["Token abc", "Bearer", "Bearer a b", "abc"])
def test_malformed_authorization_header(raw: str) -> None:
    with pytest.raises(MalformedCredential) as exc_info:
        extract_bearer_token(raw)
    assert exc_info.value.code == "INVALID_TOKEN_FORMAT"


def test_bearer_scheme_is_case_insensitive() -> None:
    assert extract_bearer_token("bearer abc.def.ghi") == "abc.def.ghi"
    assert extract_bearer_token("BEARER abc.def.ghi") == "abc.def.ghi"


def test_decode_rejects_garbage() -> None:
    with pytest.raises(MalformedToken):
        decode_token("not-a-jwt", _settings())


def test_decode_rejects_expired_token() -> None:
    token = jwt.encode({"role": "admin", "exp": int(time.time()) - 60}, SECRET, algorithm="HS256")
    with pytest.raises(ExpiredCredential) as exc_info:
        decode_token(token, _settings())
    assert exc_info.value.message == "Token has expired"


def test_decode_rejects_wrong_secret() -> None:
    token = jwt.encode({"role": "admin", "exp": int(time.time()) + 60}, "other-secret", algorithm="HS256")
    with pytest.raises(InvalidSignature):
        decode_token(token, _settings())


def test_decode_rejects_unexpected_algorithm() -> None:
    token = jwt.encode({"role": "admin", "exp": int(time.time()) + 60}, SECRET, algorithm="HS512")
    with pytest.raises(InvalidSignature):
        decode_token(token, _settings())


def test_decode_rejects_unsigned_token() -> None:
    token = _unsigned_token({"role": "admin", "exp": int(time.time()) + 60})
    with pytest.raises(InvalidSignature):
        decode_token(token, _settings())


def test_decode_checks_issuer_when_configured() -> None:
    token = jwt.encode({"role": "admin", "iss": "someone-else", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
    with pytest.raises(InvalidSignature):
        decode_token(token, _settings(jwt_issuer="crm-auth"))

    good = jwt.encode({"role": "admin", "iss": "crm-auth", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
    assert decode_token(good, _settings(jwt_issuer="crm-auth"))["role"] == "admin"


def test_claims_without_role_are_rejected() -> None:
    with pytest.raises(MissingRoleClaim):
        identity_from_claims({"user_id": 1})
    with pytest.raises(MissingRoleClaim):
        identity_from_claims({"user_id": 1, "role": "  "})


def test_numeric_user_id_wins_over_subject() -> None:
    identity = identity_from_claims({"role": "agent", "user_id": 7, "sub": "42", "email": "a@b.co"})
    assert identity.user_id == 7
    assert identity.subject == "42"
    assert identity.actor_id == "7"
    assert identity.numeric_id == 7


def test_subject_only_identity() -> None:
    identity = identity_from_claims({"role": "agent", "sub": "auth0|abc"})
    assert identity.user_id is None
    assert identity.actor_id == "auth0|abc"
    assert identity.numeric_id is None

    assert Identity(role="agent", subject="42").numeric_id == 42


def test_admin_endpoint_without_header_is_rejected_without_mutation(
    client: TestClient,
    db_session: Session,
) -> None:
    response = client.post("/admin/customers", json={"name": "Jane Doe", "email": "jane@x.com"})
    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "unauthorized"
    assert body["code"] == "MISSING_TOKEN"
    assert body["correlation_id"] == response.headers["x-correlation-id"]
    assert db_session.scalar(select(func.count(Customer.id))) == 0


def test_token_failures_map_to_envelope_codes(client: TestClient, make_token) -> None:
    cases = [
        ({"Authorization": "Basic abc"}, "INVALID_TOKEN_FORMAT"),
        ({"Authorization": "Bearer not-a-jwt"}, "INVALID_TOKEN"),
        ({"Authorization": f"Bearer {make_token('admin', expires_in=-10)}"}, "INVALID_TOKEN"),
        ({"Authorization": f"Bearer {make_token('admin', secret='wrong')}"}, "INVALID_TOKEN"),
        ({"Authorization": f"Bearer {make_token(None)}"}, "MISSING_ROLE"),
    ]
    for headers, code in cases:
        response = client.get("/admin/customers", headers=headers)
        assert response.status_code == 401, code
        assert response.json()["code"] == code


def test_me_returns_identity_and_permissions(client: TestClient, auth_headers) -> None:
    response = client.get("/admin/me", headers=auth_headers("agent", user_id=12, email="agent@x.com", name="Agent"))
    assert response.status_code == 200
    body = response.json()
    assert body["user"] == {
        "id": 12,
        "subject": None,
        "email": "agent@x.com",
        "name": "Agent",
        "role": "agent",
        "is_active": True,
    }
    assert body["permissions"] == ["read", "write", "manage_own"]
