from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from crm_api.auth.schemas import (
    LoginRequest,
    LoginResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPair,
    UserProfile,
)
from crm_api.auth.service import auth_service
from crm_api.core.auth import Principal, get_current_principal
from crm_api.core.database import get_db
from crm_api.core.envelope import Envelope, MessageRead, ok

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=Envelope[RegisterResponse], status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Session = Depends(get_db)) -> Envelope[RegisterResponse]:
    return ok(auth_service.register(db, payload))


@router.post("/login", response_model=Envelope[LoginResponse])
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> Envelope[LoginResponse]:
    return ok(auth_service.login(db, payload))


@router.post("/refresh", response_model=Envelope[TokenPair])
def refresh(payload: RefreshRequest, db: Session = Depends(get_db)) -> Envelope[TokenPair]:
    return ok(auth_service.refresh(db, payload.refresh_token))


@router.post("/logout", response_model=Envelope[MessageRead])
def logout() -> Envelope[MessageRead]:
    return ok(MessageRead(message="Logged out successfully"))


@router.get("/me", response_model=Envelope[UserProfile])
def me(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Envelope[UserProfile]:
    return ok(auth_service.me(db, principal))
