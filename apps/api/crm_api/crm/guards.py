"""Cross-reference checks run before any CRM write.

Each guard confirms a referenced id resolves to a row reachable from the caller's
organization and returns that row. A failing guard raises before anything is written.
"""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.core.errors import NotFoundError, ValidationError
from crm_api.crm.enums import ContactType
from crm_api.crm.models import Customer, Deal, Pipeline, User
from crm_api.crm.stages import PipelineStage
from crm_api.crm.tenancy import TenantScope
from crm_api.metrics import observe_guard_rejection


class EntityGuards:
    def customer(self, session: Session, scope: TenantScope, customer_id: uuid.UUID) -> Customer:
        customer = session.scalar(
            select(Customer).where(
                Customer.id == customer_id,
                Customer.organization_id == scope.organization_id,
                Customer.deleted_at.is_(None),
            )
        )
        if customer is None:
            observe_guard_rejection("customer", "not_found")
            raise NotFoundError("Customer", customer_id)
        return customer

    def pipeline(self, session: Session, scope: TenantScope, pipeline_id: uuid.UUID) -> Pipeline:
        pipeline = session.scalar(
            select(Pipeline).where(Pipeline.id == pipeline_id, Pipeline.organization_id == scope.organization_id)
        )
        if pipeline is None:
            observe_guard_rejection("pipeline", "not_found")
            raise NotFoundError("Pipeline", pipeline_id)
        return pipeline

    def stage(self, pipeline: Pipeline, stage_id: str) -> PipelineStage:
        stage = pipeline.stages.get(stage_id)
        if stage is None:
            observe_guard_rejection("deal", "invalid_stage")
            raise ValidationError(
                "Invalid stage ID for this pipeline",
                details={"stage_id": stage_id, "allowed": pipeline.stages.ids()},
            )
        return stage

    def assignee(self, session: Session, scope: TenantScope, user_id: uuid.UUID) -> User:
        user = session.scalar(select(User).where(User.id == user_id, User.organization_id == scope.organization_id))
        if user is None:
            observe_guard_rejection("task", "assignee_not_found")
            raise NotFoundError("Assignee", user_id)
        return user

    def deal(self, session: Session, scope: TenantScope, deal_id: uuid.UUID) -> Deal:
        deal = session.scalar(
            select(Deal)
            .join(Customer, Customer.id == Deal.customer_id)
            .where(
                Deal.id == deal_id,
                Customer.organization_id == scope.organization_id,
                Customer.deleted_at.is_(None),
            )
        )
        if deal is None:
            observe_guard_rejection("deal", "not_found")
            raise NotFoundError("Deal", deal_id)
        return deal

    def contact_type(self, value: str) -> ContactType:
        try:
            return ContactType(value.upper())
        except ValueError as exc:
            observe_guard_rejection("contact_history", "invalid_type")
            raise ValidationError(
                "Invalid contact type",
                details={"type": value, "allowed": [item.value for item in ContactType]},
            ) from exc


guards = EntityGuards()
