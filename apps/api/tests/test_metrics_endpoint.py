from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from crm_admin.core.config import get_settings
from crm_admin.core.database import get_db
from crm_admin.main import app


class _UnavailableSession:
    def execute(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


def test_metrics_endpoint_exposes_http_and_mutation_metrics(client: TestClient, auth_headers) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    customer = client.post(
        "/admin/customers",
        json={"name": "Metrics Customer", "email": "metrics@x.com"},
        headers=auth_headers("admin"),
    )
    assert customer.status_code == 201
    detail = client.get(f"/admin/customers/{customer.json()['id']}", headers=auth_headers("admin"))
    assert detail.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_mutations_total" in body

    assert 'path="/health"' in body
    assert 'path="/admin/customers/{id}"' in body
    assert 'resource="customer"' in body
    assert 'action="create"' in body


def test_metrics_endpoint_can_be_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404


def test_health_reports_service_details(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "CRM Admin API"
    assert body["version"] == "1.0.0"
    assert body["checks"] == {"database": "ok"}

    assert client.get("/ready").json() == {"status": "ready"}


def test_health_reports_unavailable_database(client: TestClient) -> None:
    def override_get_db() -> Generator[_UnavailableSession, None, None]:
        yield _UnavailableSession()

    app.dependency_overrides[get_db] = override_get_db

    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert response.json()["checks"] == {"database": "unavailable"}


def test_unmatched_paths_collapse_numeric_segments(client: TestClient) -> None:
    assert client.get("/no-such-resource/42/children").status_code == 404

    body = client.get("/metrics").text
    assert 'path="/no-such-resource/{id}/children"' in body
    assert 'path="/no-such-resource/42/children"' not in body
