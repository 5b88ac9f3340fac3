from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_admin.crm.models import customer_tags
from crm_admin.models.audit import AuditLog


@pytest.fixture()
def admin(auth_headers) -> dict[str, str]:
    return auth_headers("admin")


@pytest.fixture()
def customer_id(client: TestClient, admin: dict[str, str]) -> int:
    response = client.post("/admin/customers", json={"name": "Acme", "email": "ops@acme.io"}, headers=admin)
    assert response.status_code == 201
    return response.json()["id"]


def _create_tag(client: TestClient, headers: dict[str, str], name: str = "VIP", **payload) -> dict:
    response = client.post("/admin/tags", json={"name": name, **payload}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_tag_names_are_unique(client: TestClient, admin: dict[str, str]) -> None:
    tag = _create_tag(client, admin, color="#00ff00")
    assert tag["color"] == "#00ff00"

    duplicate = client.post("/admin/tags", json={"name": "VIP"}, headers=admin)
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "TAG_EXISTS"

    other = _create_tag(client, admin, "Churn risk")
    renamed = client.put(f"/admin/tags/{other['id']}", json={"name": "VIP"}, headers=admin)
    assert renamed.status_code == 409
    assert renamed.json()["code"] == "TAG_EXISTS"


@pytest.mark.parametrize("color", ["red", "#FFF", "#GGGGGG", "FF0000"])
def test_tag_color_must_be_hex(client: TestClient, admin: dict[str, str], color: str) -> None:
    response = client.post("/admin/tags", json={"name": "VIP", "color": color}, headers=admin)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_REQUEST"


def test_list_tags_sorted_by_name(client: TestClient, admin: dict[str, str]) -> None:
    for name in ("Partner", "Enterprise", "VIP"):
        _create_tag(client, admin, name)

    listing = client.get("/admin/tags", headers=admin).json()
    assert [tag["name"] for tag in listing["items"]] == ["Enterprise", "Partner", "VIP"]

    searched = client.get("/admin/tags", params={"search": "part"}, headers=admin).json()
    assert [tag["name"] for tag in searched["items"]] == ["Partner"]


def test_assign_and_unassign_tag(
    client: TestClient,
    db_session: Session,
    admin: dict[str, str],
    customer_id: int,
) -> None:
    tag = _create_tag(client, admin)

    assigned = client.post(f"/admin/customers/{customer_id}/tags/{tag['id']}", headers=admin)
    assert assigned.status_code == 200
    assert [item["id"] for item in assigned.json()["tags"]] == [tag["id"]]

    again = client.post(f"/admin/customers/{customer_id}/tags/{tag['id']}", headers=admin)
    assert again.status_code == 200
    assert len(again.json()["tags"]) == 1

    removed = client.delete(f"/admin/customers/{customer_id}/tags/{tag['id']}", headers=admin)
    assert removed.status_code == 200
    assert removed.json()["tags"] == []

    rows = db_session.scalars(
        select(AuditLog)
        .where(AuditLog.resource_type == "customer", AuditLog.action == "update")
        .order_by(AuditLog.id)
    ).all()
    assert [(row.old_values, row.new_values) for row in rows] == [
        ({"tag_ids": []}, {"tag_ids": [tag["id"]]}),
        ({"tag_ids": [tag["id"]]}, {"tag_ids": []}),
    ]


def test_assignment_requires_live_customer_and_tag(client: TestClient, admin: dict[str, str], customer_id: int) -> None:
    tag = _create_tag(client, admin)

    missing_customer = client.post(f"/admin/customers/999/tags/{tag['id']}", headers=admin)
    assert missing_customer.status_code == 404
    assert missing_customer.json()["code"] == "CUSTOMER_NOT_FOUND"

    missing_tag = client.post(f"/admin/customers/{customer_id}/tags/999", headers=admin)
    assert missing_tag.status_code == 404
    assert missing_tag.json()["code"] == "TAG_NOT_FOUND"

    invalid = client.post(f"/admin/customers/{customer_id}/tags/abc", headers=admin)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "INVALID_ID"


def test_agent_can_assign_tags(client: TestClient, admin: dict[str, str], auth_headers, customer_id: int) -> None:
    tag = _create_tag(client, admin)
    response = client.post(f"/admin/customers/{customer_id}/tags/{tag['id']}", headers=auth_headers("agent"))
    assert response.status_code == 200


def test_delete_tag_clears_assignments(
    client: TestClient,
    db_session: Session,
    admin: dict[str, str],
    customer_id: int,
) -> None:
    tag = _create_tag(client, admin)
    assert client.post(f"/admin/customers/{customer_id}/tags/{tag['id']}", headers=admin).status_code == 200

    response = client.delete(f"/admin/tags/{tag['id']}", headers=admin)
    assert response.status_code == 200
    assert response.json() == {"message": "Tag deleted successfully"}

    assert db_session.scalar(select(func.count()).select_from(customer_tags)) == 0
    assert client.get(f"/admin/tags/{tag['id']}", headers=admin).status_code == 404
    assert client.get(f"/admin/customers/{customer_id}", headers=admin).json()["tags"] == []

    recreated = _create_tag(client, admin)
    assert recreated["id"] != tag["id"]
