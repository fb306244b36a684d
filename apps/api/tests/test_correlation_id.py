from __future__ import annotations

import uuid
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
def clear_state(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header(client: TestClient) -> None:
    response = client.get(f"/api/customers/{uuid.uuid4()}")
    assert response.status_code == 401

    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert uuid.UUID(header_value)
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "abc-123"


def test_each_request_gets_its_own_correlation_id(client: TestClient) -> None:
    first = client.get("/health").headers["x-correlation-id"]
    second = client.get("/health").headers["x-correlation-id"]
    assert first != second


def test_unknown_route_still_echoes_correlation_id(client: TestClient) -> None:
    response = client.get("/api/unknown", headers={"X-Correlation-Id": "corr-404"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "corr-404"


@pytest.mark.parametrize("inbound", ["x" * 129, "bad id with spaces", "semi;colon"])
def test_unsafe_correlation_id_is_replaced(client: TestClient, inbound: str) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": inbound})

    echoed = response.headers["x-correlation-id"]
    assert echoed != inbound
    assert uuid.UUID(echoed)
