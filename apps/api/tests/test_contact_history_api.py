from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.main import app
from crm_api.middleware.rate_limit import reset_rate_limiter


PASSWORD = "Str0ng!Password"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth_headers(client: TestClient, email: str, organization: str) -> dict[str, str]:
    register = client.post(
        "/api/auth/register",
        json={
            "email": email,
            "password": PASSWORD,
            "firstName": "Sam",
            "lastName": "Seller",
            "organizationName": organization,
        },
    )
    assert register.status_code == 201
    login = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert login.status_code == 200
    return {"Authorization": f"Bearer {login.json()['data']['accessToken']}"}


@pytest.fixture()
def acme(client: TestClient) -> dict[str, str]:
    return _auth_headers(client, "admin@acme.io", "Acme")


@pytest.fixture()
def globex(client: TestClient) -> dict[str, str]:
    return _auth_headers(client, "admin@globex.io", "Globex")


def _create_customer(client: TestClient, headers: dict[str, str], email: str = "john@x.com") -> dict:
    response = client.post(
        "/api/customers",
        json={"firstName": "John", "lastName": "Doe", "email": email, "phone": email},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["data"]


def _log_contact(client: TestClient, headers: dict[str, str], customer_id: str, **overrides: object) -> dict:
    payload: dict[str, object] = {"customerId": customer_id, "type": "CALL", "body": "Discussed renewal"}
    payload.update(overrides)
    response = client.post("/api/contact-history", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_create_entry_joins_customer_and_creator(client: TestClient, acme: dict[str, str]) -> None:
    customer = _create_customer(client, acme)

    entry = _log_contact(
        client,
        acme,
        customer["id"],
        type="meeting",
        subject="Kickoff",
        duration=30,
        attachments='["agenda.pdf", "notes.txt"]',
    )

    assert entry["type"] == "MEETING"
    assert entry["attachments"] == ["agenda.pdf", "notes.txt"]
    assert entry["customerEmail"] == "john@x.com"
    assert entry["creatorFirstName"] == "Sam"
    assert "updatedAt" not in entry


def test_null_attachments_default_to_empty_list(client: TestClient, acme: dict[str, str]) -> None:
    customer = _create_customer(client, acme)

    entry = _log_contact(client, acme, customer["id"], attachments=None)
    assert entry["attachments"] == []


def test_invalid_type_is_validation_error(client: TestClient, acme: dict[str, str]) -> None:
    customer = _create_customer(client, acme)

    response = client.post(
        "/api/contact-history",
        json={"customerId": customer["id"], "type": "FAX", "body": "Sent a fax"},
        headers=acme,
    )

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]["allowed"] == ["CALL", "EMAIL", "MEETING", "NOTE"]


def test_customer_from_other_organization_is_not_found(
    client: TestClient,
    acme: dict[str, str],
    globex: dict[str, str],
) -> None:
    foreign = _create_customer(client, globex, email="foreign@globex.io")

    response = client.post(
        "/api/contact-history",
        json={"customerId": foreign["id"], "type": "CALL", "body": "Wrong tenant"},
        headers=acme,
    )
    assert response.status_code == 404


def test_pagination_pages_concatenate_to_full_list(client: TestClient, acme: dict[str, str]) -> None:
    customer = _create_customer(client, acme)
    for index in range(5):
        _log_contact(client, acme, customer["id"], subject=f"entry-{index}")

    full = client.get("/api/contact-history", headers=acme).json()
    assert full["metadata"]["total"] == 5
    assert [item["subject"] for item in full["data"]] == [f"entry-{index}" for index in range(4, -1, -1)]

    first = client.get("/api/contact-history", params={"limit": 2, "offset": 0}, headers=acme).json()
    second = client.get("/api/contact-history", params={"limit": 2, "offset": 2}, headers=acme).json()
    third = client.get("/api/contact-history", params={"limit": 2, "offset": 4}, headers=acme).json()

    pages = first["data"] + second["data"] + third["data"]
    assert [item["id"] for item in pages] == [item["id"] for item in full["data"]]
    assert first["metadata"] == {
        "total": 5,
        "limit": 2,
        "offset": 0,
        "hasMore": True,
        "page": 1,
        "totalPages": 3,
    }
    assert third["metadata"]["hasMore"] is False
    assert third["metadata"]["page"] == 3


def test_limit_is_bounded(client: TestClient, acme: dict[str, str]) -> None:
    assert client.get("/api/contact-history", params={"limit": 101}, headers=acme).status_code == 400
    assert client.get("/api/contact-history", params={"offset": -1}, headers=acme).status_code == 400


def test_list_filters_by_customer_and_type(client: TestClient, acme: dict[str, str]) -> None:
    first = _create_customer(client, acme)
    second = _create_customer(client, acme, email="jane@x.com")
    _log_contact(client, acme, first["id"], type="EMAIL")
    _log_contact(client, acme, first["id"], type="CALL")
    _log_contact(client, acme, second["id"], type="EMAIL")

    by_customer = client.get("/api/contact-history", params={"customerId": first["id"]}, headers=acme).json()
    assert by_customer["metadata"]["total"] == 2

    by_type = client.get(
        "/api/contact-history",
        params={"customerId": first["id"], "type": "EMAIL"},
        headers=acme,
    ).json()
    assert [item["type"] for item in by_type["data"]] == ["EMAIL"]


def test_entries_are_invisible_across_tenants(
    client: TestClient,
    acme: dict[str, str],
    globex: dict[str, str],
) -> None:
    customer = _create_customer(client, acme)
    entry = _log_contact(client, acme, customer["id"])
    path = f"/api/contact-history/{entry['id']}"

    assert client.get("/api/contact-history", headers=globex).json()["metadata"]["total"] == 0
    assert client.get(path, headers=globex).status_code == 404
    assert client.put(path, json={"body": "Rewritten"}, headers=globex).status_code == 404
    assert client.delete(path, headers=globex).status_code == 404
    assert client.get(path, headers=acme).json()["data"]["body"] == "Discussed renewal"


def test_update_and_delete_entry(client: TestClient, acme: dict[str, str]) -> None:
    customer = _create_customer(client, acme)
    entry = _log_contact(client, acme, customer["id"], subject="Call", aiSummary="short")
    path = f"/api/contact-history/{entry['id']}"

    updated = client.put(path, json={"subject": None, "duration": 12}, headers=acme).json()["data"]
    assert updated["subject"] is None
    assert updated["duration"] == 12
    assert updated["aiSummary"] == "short"

    deleted = client.delete(path, headers=acme)
    assert deleted.status_code == 200
    assert client.get(path, headers=acme).status_code == 404


def test_entries_of_deleted_customer_are_hidden(client: TestClient, acme: dict[str, str]) -> None:
    customer = _create_customer(client, acme)
    _log_contact(client, acme, customer["id"])

    assert client.delete(f"/api/customers/{customer['id']}", headers=acme).status_code == 200
    assert client.get("/api/contact-history", headers=acme).json()["metadata"]["total"] == 0
