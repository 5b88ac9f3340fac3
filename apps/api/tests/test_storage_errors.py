from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from crm_admin.crm.models import Customer
from crm_admin.crm.service import ContactStrategy
from crm_admin.crm.stores import ContactStore, CustomerStore, TagStore
from crm_admin.models.audit import AuditLog


@pytest.fixture()
def admin(auth_headers) -> dict[str, str]:
    return auth_headers("admin")


def _integrity_error(message: str) -> IntegrityError:
    return IntegrityError("INSERT INTO contacts ...", {}, Exception(message))


def test_unique_email_race_is_reported_as_email_exists(
    client: TestClient,
    admin: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    first = client.post("/admin/customers", json={"name": "Acme", "email": "ops@acme.io"}, headers=admin)
    assert first.status_code == 201

    monkeypatch.setattr(CustomerStore, "email_taken", lambda self, *args, **kwargs: False)
    second = client.post("/admin/customers", json={"name": "Acme 2", "email": "ops@acme.io"}, headers=admin)
    assert second.status_code == 409
    assert second.json()["code"] == "EMAIL_EXISTS"


def test_unique_tag_name_race_is_reported_as_tag_exists(
    client: TestClient,
    admin: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert client.post("/admin/tags", json={"name": "VIP"}, headers=admin).status_code == 201

    monkeypatch.setattr(TagStore, "name_taken", lambda self, *args, **kwargs: False)
    duplicate = client.post("/admin/tags", json={"name": "VIP"}, headers=admin)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "TAG_EXISTS"


def test_second_primary_contact_race_is_a_conflict(
    client: TestClient,
    admin: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    customer = client.post("/admin/customers", json={"name": "Acme", "email": "ops@acme.io"}, headers=admin).json()
    path = f"/admin/customers/{customer['id']}/contacts"
    assert client.post(path, json={"first_name": "Ann", "is_primary": True}, headers=admin).status_code == 201

    monkeypatch.setattr(ContactStore, "clear_primary", lambda self, *args, **kwargs: None)
    second = client.post(path, json={"first_name": "Bob", "is_primary": True}, headers=admin)
    assert second.status_code == 409
    assert second.json()["code"] == "PRIMARY_CONTACT_CONFLICT"


@pytest.mark.parametrize(
    "message",
    [
        "UNIQUE constraint failed: contacts.customer_id",
        'duplicate key value violates unique constraint "uq_contacts_primary_per_customer_active"',
    ],
)
def test_primary_contact_index_violation_is_a_conflict(message: str) -> None:
    conflict = ContactStrategy().conflict_for(_integrity_error(message))
    assert conflict is not None
    assert conflict.code == "PRIMARY_CONTACT_CONFLICT"


@pytest.mark.parametrize(
    "message",
    [
        "NOT NULL constraint failed: contacts.first_name",
        "FOREIGN KEY constraint failed",
        'null value in column "customer_id" of relation "contacts" violates not-null constraint',
    ],
)
def test_other_contact_integrity_errors_are_not_conflicts(message: str) -> None:
    assert ContactStrategy().conflict_for(_integrity_error(message)) is None


def test_commit_failure_is_an_opaque_database_error(
    client: TestClient,
    db_session: Session,
    admin: dict[str, str],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    def failing_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("connection refused by db-primary:5432"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    response = client.post("/admin/customers", json={"name": "Acme", "email": "ops@acme.io"}, headers=admin)
    monkeypatch.undo()

    assert response.status_code == 500
    body = response.json()
    assert body["code"] == "DATABASE_ERROR"
    assert body["error"] == "internal_error"
    assert "connection refused" not in response.text
    assert "db-primary" not in response.text

    assert db_session.scalar(select(func.count(Customer.id))) == 0
    assert db_session.scalar(select(func.count(AuditLog.id))) == 0

    failures = [
        record
        for record in caplog.records
        if record.name == "crm_admin.crm.pipeline" and record.getMessage() == "crm.mutation_failed"
    ]
    assert len(failures) == 1
    assert failures[0].levelno == logging.ERROR
    assert getattr(failures[0], "resource", None) == "customer"
    assert "connection refused" in getattr(failures[0], "error", "")
