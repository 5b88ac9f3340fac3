from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from crm_admin.otel import setup_inmemory_otel


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("crm-admin-api")
    exporter.clear()
    return exporter


def test_request_span_contains_correlation_id(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    auth_headers,
) -> None:
    response = client.post(
        "/admin/customers",
        json={"name": "OTel Customer", "email": "otel@x.com"},
        headers={**auth_headers("admin"), "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_mutation_span_contains_resource_and_action(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
    auth_headers,
) -> None:
    created = client.post(
        "/admin/customers",
        json={"name": "OTel Customer", "email": "otel@x.com"},
        headers=auth_headers("admin"),
    ).json()
    deleted = client.delete(f"/admin/customers/{created['id']}", headers=auth_headers("admin"))
    assert deleted.status_code == 200

    mutation_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.mutation"]
    assert [(span.attributes.get("crm.resource"), span.attributes.get("crm.action")) for span in mutation_spans] == [
        ("customer", "create"),
        ("customer", "delete"),
    ]
    assert all(span.attributes.get("crm.resource_id") == created["id"] for span in mutation_spans)
