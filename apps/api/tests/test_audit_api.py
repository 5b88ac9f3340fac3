from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_admin.models.audit import AuditLog


@pytest.fixture()
def admin(auth_headers) -> dict[str, str]:
    return auth_headers("admin", user_id=1, name="Ada Admin")


def _audit_rows(db_session: Session, **filters: str) -> list[AuditLog]:
    db_session.expire_all()
    stmt = select(AuditLog).order_by(AuditLog.id)
    for key, value in filters.items():
        stmt = stmt.where(getattr(AuditLog, key) == value)
    return list(db_session.scalars(stmt).all())


def test_mutations_append_audit_rows(client: TestClient, db_session: Session, admin: dict[str, str]) -> None:
    headers = {**admin, "X-Correlation-ID": "corr-audit-1", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
    created = client.post("/admin/customers", json={"name": "Jane", "email": "jane@x.com"}, headers=headers).json()
    client.put(f"/admin/customers/{created['id']}", json={"company": "Globex"}, headers=admin)
    client.delete(f"/admin/customers/{created['id']}", headers=admin)

    rows = _audit_rows(db_session, resource_type="customer")
    assert [row.action for row in rows] == ["create", "update", "delete"]
    assert {row.resource_id for row in rows} == {str(created["id"])}

    create_row, update_row, delete_row = rows
    assert create_row.old_values is None
    assert create_row.new_values["email"] == "jane@x.com"
    assert create_row.user_id == "1"
    assert create_row.user_name == "Ada Admin"
    assert create_row.user_role == "admin"
    assert create_row.ip_address == "203.0.113.9"
    assert create_row.correlation_id == "corr-audit-1"

    assert update_row.old_values["company"] is None
    assert update_row.new_values["company"] == "Globex"

    assert delete_row.old_values["deleted_at"] is None
    assert delete_row.new_values is None


def test_rejected_mutations_are_not_audited(client: TestClient, db_session: Session, admin: dict[str, str]) -> None:
    client.post("/admin/customers", json={"name": "Jane", "email": "bad"}, headers=admin)
    client.put("/admin/customers/999", json={"name": "X"}, headers=admin)
    assert _audit_rows(db_session) == []


def test_audit_failure_does_not_fail_the_mutation(client: TestClient, db_session: Session, admin: dict[str, str]) -> None:
    before = REGISTRY.get_sample_value("crm_audit_write_failures_total", {"resource": "customer"}) or 0.0
    AuditLog.__table__.drop(bind=db_session.get_bind())

    response = client.post("/admin/customers", json={"name": "Jane", "email": "jane@x.com"}, headers=admin)
    assert response.status_code == 201

    after = REGISTRY.get_sample_value("crm_audit_write_failures_total", {"resource": "customer"})
    assert after == before + 1

    fetched = client.get(f"/admin/customers/{response.json()['id']}", headers=admin)
    assert fetched.status_code == 200

    AuditLog.__table__.create(bind=db_session.get_bind())


def test_list_audit_logs_filters(client: TestClient, admin: dict[str, str], auth_headers) -> None:
    customer = client.post("/admin/customers", json={"name": "Jane", "email": "jane@x.com"}, headers=admin).json()
    client.post("/admin/tags", json={"name": "VIP"}, headers=admin)
    client.patch(
        f"/admin/customers/{customer['id']}",
        json={"status": "active"},
        headers=auth_headers("agent", user_id=9),
    )

    everything = client.get("/admin/audit-logs", headers=admin).json()
    assert everything["total"] == 3
    assert everything["items"][0]["action"] == "update"

    customers = client.get("/admin/audit-logs", params={"resource_type": "customer"}, headers=admin).json()
    assert customers["total"] == 2

    by_user = client.get("/admin/audit-logs", params={"user_id": "9"}, headers=admin).json()
    assert [item["new_values"]["status"] for item in by_user["items"]] == ["active"]

    by_record = client.get(
        "/admin/audit-logs",
        params={"resource_type": "customer", "resource_id": str(customer["id"]), "action": "create"},
        headers=admin,
    ).json()
    assert by_record["total"] == 1


@pytest.mark.parametrize("role", ["manager", "agent"])
def test_audit_logs_are_admin_only(client: TestClient, auth_headers, role: str) -> None:
    response = client.get("/admin/audit-logs", headers=auth_headers(role))
    assert response.status_code == 403
    assert response.json()["code"] == "INSUFFICIENT_PERMISSIONS"
