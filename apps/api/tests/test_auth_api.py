from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.core.security import create_token, decode_token
from crm_api.crm.models import Organization, Pipeline, User
from crm_api.crm.stages import DEFAULT_STAGES
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


def _register(client: TestClient, email: str = "Owner@Acme.io", organization: str = "Acme") -> dict:
    response = client.post(
        "/api/auth/register",
        json={
            "email": email,
            "password": PASSWORD,
            "firstName": "Olive",
            "lastName": "Owner",
            "organizationName": organization,
        },
    )
    assert response.status_code == 201
    return response.json()["data"]


def _login(client: TestClient, email: str = "owner@acme.io") -> dict:
    response = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]


def test_register_creates_organization_admin_and_default_pipeline(client: TestClient, db_session: Session) -> None:
    data = _register(client)

    assert data["message"] == "User registered successfully"
    assert data["user"]["email"] == "owner@acme.io"
    assert data["user"]["role"] == "ADMIN"
    assert "passwordHash" not in data["user"]

    user = db_session.scalar(select(User).where(User.email == "owner@acme.io"))
    assert user is not None
    assert user.password_hash != PASSWORD
    organization = db_session.get(Organization, user.organization_id)
    assert organization is not None
    assert organization.name == "Acme"
    assert organization.subscription_tier == "FREE"
    assert organization.max_users == 5

    pipeline = db_session.scalar(select(Pipeline).where(Pipeline.organization_id == organization.id))
    assert pipeline is not None
    assert pipeline.is_default is True
    assert [stage.name for stage in pipeline.stages] == [stage.name for stage in DEFAULT_STAGES]
    assert [stage.probability for stage in pipeline.stages] == [10, 30, 50, 70, 100, 0]
    assert not set(pipeline.stages.ids()) & set(DEFAULT_STAGES.ids())


def test_register_rejects_weak_password(client: TestClient) -> None:
    response = client.post(
        "/api/auth/register",
        json={
            "email": "weak@acme.io",
            "password": "short",
            "firstName": "Weak",
            "lastName": "Password",
            "organizationName": "Weak Org",
        },
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["message"] == "Invalid password"
    assert any("12 characters" in reason for reason in body["error"]["details"])


def test_register_duplicate_email_is_conflict(client: TestClient) -> None:
    _register(client)
    response = client.post(
        "/api/auth/register",
        json={
            "email": "owner@acme.io",
            "password": PASSWORD,
            "firstName": "Second",
            "lastName": "Owner",
            "organizationName": "Other",
        },
    )

    assert response.status_code == 409
    assert response.json()["error"] == {"code": "CONFLICT", "message": "User with this email already exists"}


def test_login_returns_tokens_and_profile(client: TestClient, db_session: Session) -> None:
    _register(client)
    data = _login(client)

    assert data["user"]["organization"]["name"] == "Acme"
    assert data["user"]["organization"]["subscriptionTier"] == "FREE"
    access = decode_token(data["accessToken"], "access")
    refresh = decode_token(data["refreshToken"], "refresh")
    assert access["sub"] == data["user"]["id"] == refresh["sub"]
    assert access["iss"] == "crm-system"
    assert access["aud"] == "crm-users"

    user = db_session.scalar(select(User).where(User.email == "owner@acme.io"))
    assert user is not None
    assert user.last_login_at is not None


def test_login_with_wrong_password_is_unauthorized(client: TestClient) -> None:
    _register(client)
    response = client.post("/api/auth/login", json={"email": "owner@acme.io", "password": "Wr0ng!Password"})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid email or password"


def test_login_inactive_user_is_unauthorized(client: TestClient, db_session: Session) -> None:
    _register(client)
    user = db_session.scalar(select(User).where(User.email == "owner@acme.io"))
    assert user is not None
    user.is_active = False
    db_session.commit()

    response = client.post("/api/auth/login", json={"email": "owner@acme.io", "password": PASSWORD})
    assert response.status_code == 401


def test_refresh_issues_new_pair(client: TestClient) -> None:
    _register(client)
    tokens = _login(client)

    response = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 200
    data = response.json()["data"]
    assert decode_token(data["accessToken"], "access")["sub"] == tokens["user"]["id"]
    assert decode_token(data["refreshToken"], "refresh")["sub"] == tokens["user"]["id"]


def test_refresh_requires_token(client: TestClient) -> None:
    response = client.post("/api/auth/refresh", json={})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Refresh token required"


def test_refresh_rejects_access_token(client: TestClient) -> None:
    _register(client)
    tokens = _login(client)

    response = client.post("/api/auth/refresh", json={"refreshToken": tokens["accessToken"]})
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid refresh token"


def test_refresh_rejects_deactivated_user(client: TestClient, db_session: Session) -> None:
    _register(client)
    tokens = _login(client)
    user = db_session.scalar(select(User).where(User.email == "owner@acme.io"))
    assert user is not None
    user.is_active = False
    db_session.commit()

    response = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 401


def test_refresh_without_activity_check_when_disabled(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("REFRESH_REQUIRES_ACTIVE_USER", "false")
    get_settings.cache_clear()
    orphan = create_token(user_id="no-such-user", email="ghost@acme.io", role="USER", token_type="refresh")

    response = client.post("/api/auth/refresh", json={"refreshToken": orphan})
    assert response.status_code == 200


def test_me_requires_bearer_token(client: TestClient) -> None:
    missing = client.get("/api/auth/me")
    assert missing.status_code == 401
    assert missing.json()["error"]["message"] == "No token provided"

    invalid = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert invalid.status_code == 401
    assert invalid.json()["error"]["message"] == "Invalid or expired token"


def test_me_returns_profile(client: TestClient) -> None:
    _register(client)
    tokens = _login(client)

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {tokens['accessToken']}"})
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "owner@acme.io"
    assert response.json()["data"]["organization"]["name"] == "Acme"


def test_logout_is_stateless(client: TestClient) -> None:
    response = client.post("/api/auth/logout")

    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"message": "Logged out successfully"}}
