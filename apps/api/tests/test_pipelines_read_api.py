from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.crm.models import Pipeline, User
from crm_api.crm.stages import DEFAULT_STAGES
from crm_api.main import app
from crm_api.middleware.rate_limit import reset_rate_limiter


PASSWORD = "Str0ng!Password"
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


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
            "firstName": "Test",
            "lastName": organization,
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


def _organization_id(db_session: Session, email: str) -> uuid.UUID:
    organization_id = db_session.scalar(select(User.organization_id).where(User.email == email))
    assert organization_id is not None
    return organization_id


def _replace_pipelines(db_session: Session, organization_id: uuid.UUID, *pipelines: Pipeline) -> None:
    db_session.execute(delete(Pipeline).where(Pipeline.organization_id == organization_id))
    for pipeline in pipelines:
        pipeline.organization_id = organization_id
        pipeline.stages = DEFAULT_STAGES
        db_session.add(pipeline)
    db_session.commit()


def test_list_and_get_pipelines(client: TestClient, acme: dict[str, str]) -> None:
    listed = client.get("/api/pipelines", headers=acme)
    assert listed.status_code == 200
    pipelines = listed.json()["data"]
    assert len(pipelines) == 1
    assert pipelines[0]["name"] == "Default Sales Pipeline"
    assert pipelines[0]["isDefault"] is True
    assert [stage["name"] for stage in pipelines[0]["stages"]] == [
        "Lead",
        "Qualified",
        "Proposal",
        "Negotiation",
        "Closed Won",
        "Closed Lost",
    ]
    assert pipelines[0]["stages"][4] == {"id": "5", "name": "Closed Won", "order": 5, "probability": 100}

    fetched = client.get(f"/api/pipelines/{pipelines[0]['id']}", headers=acme)
    assert fetched.status_code == 200
    assert fetched.json()["data"] == pipelines[0]


def test_pipelines_are_invisible_across_tenants(client: TestClient, acme: dict[str, str]) -> None:
    globex = _auth_headers(client, "admin@globex.io", "Globex")
    acme_pipeline = client.get("/api/pipelines/default", headers=acme).json()["data"]

    response = client.get(f"/api/pipelines/{acme_pipeline['id']}", headers=globex)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
    assert all(item["id"] != acme_pipeline["id"] for item in client.get("/api/pipelines", headers=globex).json()["data"])


def test_default_prefers_most_recently_updated_flagged_pipeline(
    client: TestClient,
    db_session: Session,
    acme: dict[str, str],
) -> None:
    organization_id = _organization_id(db_session, "admin@acme.io")
    _replace_pipelines(
        db_session,
        organization_id,
        Pipeline(name="Old default", is_default=True, created_at=BASE_TIME, updated_at=BASE_TIME),
        Pipeline(
            name="Fresh default",
            is_default=True,
            created_at=BASE_TIME + timedelta(hours=1),
            updated_at=BASE_TIME + timedelta(days=2),
        ),
        Pipeline(
            name="Not default",
            is_default=False,
            created_at=BASE_TIME + timedelta(hours=2),
            updated_at=BASE_TIME + timedelta(days=5),
        ),
    )

    response = client.get("/api/pipelines/default", headers=acme)
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Fresh default"

    names = [item["name"] for item in client.get("/api/pipelines", headers=acme).json()["data"]]
    assert names == ["Old default", "Fresh default", "Not default"]


def test_default_ties_break_on_latest_created(
    client: TestClient,
    db_session: Session,
    acme: dict[str, str],
) -> None:
    organization_id = _organization_id(db_session, "admin@acme.io")
    _replace_pipelines(
        db_session,
        organization_id,
        Pipeline(name="Earlier", is_default=True, created_at=BASE_TIME, updated_at=BASE_TIME + timedelta(days=1)),
        Pipeline(
            name="Later",
            is_default=True,
            created_at=BASE_TIME + timedelta(hours=1),
            updated_at=BASE_TIME + timedelta(days=1),
        ),
    )

    assert client.get("/api/pipelines/default", headers=acme).json()["data"]["name"] == "Later"


def test_default_falls_back_to_oldest_pipeline(
    client: TestClient,
    db_session: Session,
    acme: dict[str, str],
) -> None:
    organization_id = _organization_id(db_session, "admin@acme.io")
    _replace_pipelines(
        db_session,
        organization_id,
        Pipeline(name="Second", is_default=False, created_at=BASE_TIME + timedelta(days=1), updated_at=BASE_TIME),
        Pipeline(name="First", is_default=False, created_at=BASE_TIME, updated_at=BASE_TIME),
    )

    assert client.get("/api/pipelines/default", headers=acme).json()["data"]["name"] == "First"


def test_default_without_pipelines_is_not_found(
    client: TestClient,
    db_session: Session,
    acme: dict[str, str],
) -> None:
    _replace_pipelines(db_session, _organization_id(db_session, "admin@acme.io"))

    response = client.get("/api/pipelines/default", headers=acme)
    assert response.status_code == 404
    assert response.json()["error"]["message"] == "No pipeline found for this organization"
