from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID

from pydantic import EmailStr, Field, field_validator

from crm_api.core.schemas import ApiModel
from crm_api.crm.enums import TaskPriority, TaskStatus
from crm_api.crm.patch import PatchModel
from crm_api.crm.stages import PipelineStage


class CustomerCreate(ApiModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str = Field(min_length=1, max_length=20)
    company: str | None = Field(default=None, max_length=200)
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] | None = None

    @field_validator("email")
    @classmethod
    def _lowercase_email(cls, value: str) -> str:
        return value.lower()


class CustomerUpdate(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"company", "custom_fields"})

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, min_length=1, max_length=20)
    company: str | None = Field(default=None, max_length=200)
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None

    @field_validator("email")
    @classmethod
    def _lowercase_email(cls, value: str | None) -> str | None:
        return value.lower() if value is not None else None


class CustomerRead(ApiModel):
    id: UUID
    organization_id: UUID
    first_name: str
    last_name: str
    email: str
    phone: str
    company: str | None
    tags: list[str]
    custom_fields: dict[str, Any] | None
    created_by: UUID
    created_at: datetime
    updated_at: datetime


class PipelineRead(ApiModel):
    id: UUID
    organization_id: UUID
    name: str
    stages: list[PipelineStage]
    is_default: bool
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime


class LineItem(ApiModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    quantity: float = Field(ge=0)
    price: float = Field(ge=0)
    total: float = Field(ge=0)


def _normalize_currency(value: str | None) -> str | None:
    return value.upper() if value is not None else None


class DealCreate(ApiModel):
    customer_id: UUID
    pipeline_id: UUID
    stage_id: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=255)
    value: Decimal = Field(gt=0, max_digits=15, decimal_places=2)
    currency: str = Field(default="USD", pattern=r"^[A-Za-z]{3}$")
    expected_close_date: datetime | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None
    products: list[LineItem] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def _uppercase_currency(cls, value: str | None) -> str | None:
        return _normalize_currency(value)


class DealUpdate(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"expected_close_date", "actual_close_date", "notes"})

    title: str | None = Field(default=None, min_length=1, max_length=255)
    value: Decimal | None = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    currency: str | None = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    expected_close_date: datetime | None = None
    actual_close_date: datetime | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    stage_id: str | None = Field(default=None, min_length=1, max_length=64)
    notes: str | None = None
    products: list[LineItem] | None = None

    @field_validator("currency")
    @classmethod
    def _uppercase_currency(cls, value: str | None) -> str | None:
        return _normalize_currency(value)


class DealRead(ApiModel):
    id: UUID
    customer_id: UUID
    pipeline_id: UUID
    stage_id: str
    title: str
    value: Decimal
    currency: str
    expected_close_date: datetime | None
    actual_close_date: datetime | None
    probability: int
    notes: str | None
    products: list[LineItem]
    owner_id: UUID
    created_at: datetime
    updated_at: datetime
    customer_first_name: str
    customer_last_name: str
    customer_email: str
    owner_first_name: str
    owner_last_name: str
    pipeline_name: str


class TaskCreate(ApiModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    due_date: datetime | None = None
    assignee_id: UUID | None = None
    related_customer_id: UUID | None = None
    related_deal_id: UUID | None = None
    is_recurring: bool = False
    recurrence_rule: str | None = None
    time_spent: int | None = Field(default=None, ge=0)


class TaskUpdate(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset(
        {"description", "due_date", "related_customer_id", "related_deal_id", "recurrence_rule", "time_spent"}
    )

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    due_date: datetime | None = None
    assignee_id: UUID | None = None
    related_customer_id: UUID | None = None
    related_deal_id: UUID | None = None
    is_recurring: bool | None = None
    recurrence_rule: str | None = None
    time_spent: int | None = Field(default=None, ge=0)


class TaskRead(ApiModel):
    id: UUID
    title: str
    description: str | None
    priority: TaskPriority
    status: TaskStatus
    due_date: datetime | None
    assignee_id: UUID
    related_customer_id: UUID | None
    related_deal_id: UUID | None
    is_recurring: bool
    recurrence_rule: str | None
    time_spent: int | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    assignee_first_name: str
    assignee_last_name: str
    assignee_email: str
    customer_first_name: str | None
    customer_last_name: str | None


def _coerce_attachments(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError("attachments must be a list of strings or a JSON array") from exc
    return value


class ContactHistoryCreate(ApiModel):
    customer_id: UUID
    type: str = Field(min_length=1)
    subject: str | None = Field(default=None, max_length=500)
    body: str = Field(min_length=1)
    duration: int | None = Field(default=None, ge=0)
    attachments: list[str] = Field(default_factory=list)
    ai_summary: str | None = None

    @field_validator("attachments", mode="before")
    @classmethod
    def _parse_attachments(cls, value: Any) -> Any:
        if value is None:
            return []
        return _coerce_attachments(value)


class ContactHistoryUpdate(PatchModel):
    nullable_fields: ClassVar[frozenset[str]] = frozenset({"subject", "duration", "ai_summary"})

    subject: str | None = Field(default=None, max_length=500)
    body: str | None = Field(default=None, min_length=1)
    duration: int | None = Field(default=None, ge=0)
    attachments: list[str] | None = None
    ai_summary: str | None = None

    @field_validator("attachments", mode="before")
    @classmethod
    def _parse_attachments(cls, value: Any) -> Any:
        return _coerce_attachments(value)


class ContactHistoryRead(ApiModel):
    id: UUID
    customer_id: UUID
    type: str
    subject: str | None
    body: str
    duration: int | None
    attachments: list[str]
    ai_summary: str | None
    created_at: datetime
    created_by: UUID
    customer_first_name: str
    customer_last_name: str
    customer_email: str
    creator_first_name: str
    creator_last_name: str
