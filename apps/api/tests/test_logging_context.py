from __future__ import annotations

import json
import logging

import pytest
from fastapi.testclient import TestClient

from crm_admin.context import reset_correlation_id, set_correlation_id
from crm_admin.logging import HANDLER_NAME, CorrelationIdFilter, JsonLogFormatter, configure_logging


def test_logs_include_correlation_id_for_http(
    client: TestClient,
    auth_headers,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/admin/customers/404", headers={**auth_headers("admin", user_id=12), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "crm_admin.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/admin/customers/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "actor_id", None) == "12"
        and record.levelno == logging.WARNING
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_mutation_logs_carry_resource_context(
    client: TestClient,
    auth_headers,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        "/admin/customers",
        json={"name": "Log Customer", "email": "log@x.com"},
        headers={**auth_headers("admin", user_id=3), "X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 201

    records = [record for record in caplog.records if record.name == "crm_admin.crm.pipeline"]
    assert any(
        record.getMessage() == "crm.mutation"
        and getattr(record, "resource", None) == "customer"
        and getattr(record, "action", None) == "create"
        and getattr(record, "resource_id", None) == response.json()["id"]
        and getattr(record, "actor_id", None) == "3"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.LogRecord("crm_admin.test", logging.INFO, __file__, 1, "crm.mutation", None, None)
    record.resource = "deal"
    record.action = "update"
    record.secret = "do-not-log"
    record.error = "x" * 900

    token = set_correlation_id("fmt-1")
    try:
        CorrelationIdFilter().filter(record)
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["level"] == "INFO"
    assert payload["service"] == "CRM Admin API"
    assert payload["logger"] == "crm_admin.test"
    assert payload["msg"] == "crm.mutation"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["resource"] == "deal"
    assert payload["fields"]["action"] == "update"
    assert len(payload["fields"]["error"]) == 500
    assert "secret" not in payload["fields"]


def test_configure_logging_installs_one_json_handler() -> None:
    first = configure_logging()
    second = configure_logging("DEBUG")

    assert first is second
    assert first.get_name() == HANDLER_NAME
    assert isinstance(first.formatter, JsonLogFormatter)
    assert [handler for handler in logging.getLogger().handlers if handler.get_name() == HANDLER_NAME] == [first]
