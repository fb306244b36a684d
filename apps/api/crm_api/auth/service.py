from __future__ import annotations

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from crm_api.auth.schemas import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RegisterResponse,
    TokenPair,
    UserProfile,
    UserRead,
)
from crm_api.core.auth import Principal
from crm_api.core.config import get_settings
from crm_api.core.errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from crm_api.core.security import (
    InvalidTokenError,
    create_token_pair,
    decode_token,
    hash_password,
    password_strength_errors,
    verify_password,
)
from crm_api.crm.enums import SubscriptionTier, UserRole
from crm_api.crm.models import Organization, User, utcnow
from crm_api.crm.service import pipeline_service
from crm_api.metrics import observe_auth_event

logger = logging.getLogger("crm_api.auth")

_DUPLICATE_USER_MESSAGE = "User with this email already exists"


class AuthService:
    def register(self, session: Session, dto: RegisterRequest) -> RegisterResponse:
        errors = password_strength_errors(dto.password)
        if errors:
            observe_auth_event("register", "rejected")
            raise ValidationError("Invalid password", details=errors)

        if session.scalar(select(User.id).where(User.email == dto.email)) is not None:
            observe_auth_event("register", "conflict")
            raise ConflictError(_DUPLICATE_USER_MESSAGE)

        organization = Organization(
            name=dto.organization_name,
            settings={},
            subscription_tier=SubscriptionTier.FREE.value,
            max_users=5,
        )
        session.add(organization)
        session.flush()

        user = User(
            email=dto.email,
            password_hash=hash_password(dto.password),
            first_name=dto.first_name,
            last_name=dto.last_name,
            role=UserRole.ADMIN.value,
            organization_id=organization.id,
            is_active=True,
        )
        session.add(user)
        session.flush()
        pipeline_service.create_default_pipeline(session, organization.id, user.id)

        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            observe_auth_event("register", "conflict")
            raise ConflictError(_DUPLICATE_USER_MESSAGE) from exc

        observe_auth_event("register", "success")
        logger.info(
            "auth.registered",
            extra={"user_id": str(user.id), "organization_id": str(organization.id)},
        )
        return RegisterResponse(user=UserRead.model_validate(user), message="User registered successfully")

    def login(self, session: Session, dto: LoginRequest) -> LoginResponse:
        user = session.scalar(
            select(User).options(joinedload(User.organization)).where(User.email == dto.email)
        )
        if user is None or not user.is_active or not verify_password(dto.password, user.password_hash):
            observe_auth_event("login", "failure")
            logger.info("auth.login_failed", extra={"user_id": str(user.id) if user else None})
            raise UnauthorizedError("Invalid email or password")

        session.execute(update(User).where(User.id == user.id).values(last_login_at=utcnow()))
        session.commit()

        profile = self._profile(user)
        tokens = create_token_pair(user_id=str(user.id), email=user.email, role=user.role)
        observe_auth_event("login", "success")
        logger.info("auth.login", extra={"user_id": str(user.id), "organization_id": str(user.organization_id)})
        return LoginResponse(user=profile, **tokens)

    def refresh(self, session: Session, refresh_token: str | None) -> TokenPair:
        if not refresh_token:
            observe_auth_event("refresh", "failure")
            raise UnauthorizedError("Refresh token required")

        try:
            payload = decode_token(refresh_token, "refresh")
        except InvalidTokenError as exc:
            observe_auth_event("refresh", "failure")
            raise UnauthorizedError("Invalid refresh token") from exc

        user_id, email, role = str(payload["sub"]), str(payload.get("email", "")), str(payload.get("role", "USER"))
        if get_settings().refresh_requires_active_user:
            user = self._find_user(session, user_id)
            if user is None or not user.is_active:
                observe_auth_event("refresh", "failure")
                raise UnauthorizedError("Invalid refresh token")
            email, role = user.email, user.role

        observe_auth_event("refresh", "success")
        logger.info("auth.refreshed", extra={"user_id": user_id})
        return TokenPair(**create_token_pair(user_id=user_id, email=email, role=role))

    def me(self, session: Session, principal: Principal) -> UserProfile:
        user = self._find_user(session, principal.principal_id)
        if user is None:
            raise NotFoundError("User", principal.principal_id)
        return self._profile(user)

    def _find_user(self, session: Session, user_id: str) -> User | None:
        try:
            parsed = uuid.UUID(user_id)
        except ValueError:
            return None
        return session.scalar(select(User).options(joinedload(User.organization)).where(User.id == parsed))

    def _profile(self, user: User) -> UserProfile:
        return UserProfile.model_validate(
            {
                "id": user.id,
                "email": user.email,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "role": user.role,
                "organization": user.organization,
            }
        )


auth_service = AuthService()
