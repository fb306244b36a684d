from __future__ import annotations

from uuid import UUID

from pydantic import EmailStr, Field, field_validator

from crm_api.core.schemas import ApiModel
from crm_api.crm.enums import SubscriptionTier, UserRole


class RegisterRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    organization_name: str = Field(min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def _lowercase_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _lowercase_email(cls, value: str) -> str:
        return value.lower()


class RefreshRequest(ApiModel):
    refresh_token: str | None = None


class OrganizationSummary(ApiModel):
    id: UUID
    name: str
    subscription_tier: SubscriptionTier


class UserRead(ApiModel):
    id: UUID
    email: str
    first_name: str
    last_name: str
    role: UserRole


class UserProfile(UserRead):
    organization: OrganizationSummary


class RegisterResponse(ApiModel):
    user: UserRead
    message: str


class TokenPair(ApiModel):
    access_token: str
    refresh_token: str


class LoginResponse(TokenPair):
    user: UserProfile
