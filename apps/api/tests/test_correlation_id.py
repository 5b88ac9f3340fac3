from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_admin.models.audit import AuditLog


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient, auth_headers) -> None:
    response = client.get("/admin/customers/999", headers=auth_headers("admin"))
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    uuid.UUID(header_value)
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient, auth_headers) -> None:
    response = client.get(
        "/admin/customers/999",
        headers={**auth_headers("admin"), "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_header_is_accepted_as_fallback(client: TestClient) -> None:
    response = client.get("/admin/customers", headers={"X-Request-Id": "req-42"})
    assert response.status_code == 401
    assert response.headers.get("x-correlation-id") == "req-42"
    assert response.json()["correlation_id"] == "req-42"


@pytest.mark.parametrize("candidate", ["has spaces", "x" * 200, "semi;colon"])
def test_unsafe_correlation_ids_are_replaced(client: TestClient, candidate: str) -> None:
    response = client.get("/ready", headers={"X-Correlation-Id": candidate})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") != candidate
    uuid.UUID(response.headers["x-correlation-id"])


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session, auth_headers) -> None:
    response = client.post(
        "/admin/customers",
        json={"name": "Corr Customer", "email": "corr@x.com"},
        headers={**auth_headers("admin"), "X-Correlation-Id": "corr-audit-1"},
    )
    assert response.status_code == 201

    entry = db_session.scalar(select(AuditLog).where(AuditLog.resource_type == "customer"))
    assert entry is not None
    assert entry.correlation_id == "corr-audit-1"
