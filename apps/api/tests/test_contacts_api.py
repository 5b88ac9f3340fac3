from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_admin.crm.models import Contact


@pytest.fixture()
def admin(auth_headers) -> dict[str, str]:
    return auth_headers("admin")


@pytest.fixture()
def customer_id(client: TestClient, admin: dict[str, str]) -> int:
    response = client.post("/admin/customers", json={"name": "Acme", "email": "ops@acme.io"}, headers=admin)
    assert response.status_code == 201
    return response.json()["id"]


def _create_contact(client: TestClient, headers: dict[str, str], customer_id: int, **payload) -> dict:
    body = {"first_name": "Ann", **payload}
    response = client.post(f"/admin/customers/{customer_id}/contacts", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _primary_ids(db_session: Session, customer_id: int) -> list[int]:
    db_session.expire_all()
    stmt = select(Contact.id).where(
        Contact.customer_id == customer_id,
        Contact.is_primary.is_(True),
        Contact.deleted_at.is_(None),
    )
    return list(db_session.scalars(stmt).all())


def test_single_primary_contact_per_customer(
    client: TestClient,
    db_session: Session,
    admin: dict[str, str],
    customer_id: int,
) -> None:
    first = _create_contact(client, admin, customer_id, is_primary=True)
    assert _primary_ids(db_session, customer_id) == [first["id"]]

    second = _create_contact(client, admin, customer_id, first_name="Bob", is_primary=True)
    assert _primary_ids(db_session, customer_id) == [second["id"]]

    third = _create_contact(client, admin, customer_id, first_name="Cid")
    assert third["is_primary"] is False

    promoted = client.put(f"/admin/contacts/{third['id']}", json={"is_primary": True}, headers=admin)
    assert promoted.status_code == 200
    assert promoted.json()["is_primary"] is True
    assert _primary_ids(db_session, customer_id) == [third["id"]]

    again = client.put(f"/admin/contacts/{third['id']}", json={"is_primary": True}, headers=admin)
    assert again.status_code == 200
    assert _primary_ids(db_session, customer_id) == [third["id"]]


def test_list_contacts_puts_primary_first(client: TestClient, admin: dict[str, str], customer_id: int) -> None:
    _create_contact(client, admin, customer_id, first_name="Ann")
    primary = _create_contact(client, admin, customer_id, first_name="Bob", is_primary=True)
    _create_contact(client, admin, customer_id, first_name="Cid")

    response = client.get(f"/admin/customers/{customer_id}/contacts", headers=admin)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert [item["first_name"] for item in body["items"]] == ["Bob", "Ann", "Cid"]
    assert body["items"][0]["id"] == primary["id"]


def test_create_contact_for_unknown_customer(client: TestClient, admin: dict[str, str]) -> None:
    missing = client.post("/admin/customers/404/contacts", json={"first_name": "Ann"}, headers=admin)
    assert missing.status_code == 404
    assert missing.json()["code"] == "CUSTOMER_NOT_FOUND"

    invalid = client.post("/admin/customers/abc/contacts", json={"first_name": "Ann"}, headers=admin)
    assert invalid.status_code == 400
    assert invalid.json()["code"] == "INVALID_ID"


def test_contact_validation(client: TestClient, admin: dict[str, str], customer_id: int) -> None:
    bad_email = client.post(
        f"/admin/customers/{customer_id}/contacts",
        json={"first_name": "Ann", "email": "nope"},
        headers=admin,
    )
    assert bad_email.status_code == 400
    assert bad_email.json()["code"] == "INVALID_EMAIL"

    no_name = client.post(f"/admin/customers/{customer_id}/contacts", json={"last_name": "Lee"}, headers=admin)
    assert no_name.status_code == 400
    assert no_name.json()["code"] == "INVALID_REQUEST"


def test_delete_contact_is_soft_and_clears_primary(
    client: TestClient,
    db_session: Session,
    admin: dict[str, str],
    customer_id: int,
) -> None:
    contact = _create_contact(client, admin, customer_id, is_primary=True)

    response = client.delete(f"/admin/contacts/{contact['id']}", headers=admin)
    assert response.status_code == 200
    assert response.json() == {"message": "Contact deleted successfully"}

    assert client.get(f"/admin/contacts/{contact['id']}", headers=admin).status_code == 404
    assert _primary_ids(db_session, customer_id) == []
    stored = db_session.get(Contact, contact["id"])
    assert stored is not None
    assert stored.deleted_at is not None

    replacement = _create_contact(client, admin, customer_id, first_name="Dee", is_primary=True)
    assert _primary_ids(db_session, customer_id) == [replacement["id"]]
    assert db_session.scalar(select(func.count(Contact.id))) == 2


def test_update_contact_of_deleted_customer(client: TestClient, admin: dict[str, str], customer_id: int) -> None:
    contact = _create_contact(client, admin, customer_id)
    assert client.delete(f"/admin/customers/{customer_id}", headers=admin).status_code == 200

    response = client.put(f"/admin/contacts/{contact['id']}", json={"position": "CTO"}, headers=admin)
    assert response.status_code == 404
    assert response.json()["code"] == "CUSTOMER_NOT_FOUND"


def test_agent_cannot_delete_contact(client: TestClient, admin: dict[str, str], auth_headers, customer_id: int) -> None:
    contact = _create_contact(client, admin, customer_id)
    response = client.delete(f"/admin/contacts/{contact['id']}", headers=auth_headers("agent"))
    assert response.status_code == 403
