from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from crm_api.core.database import get_db
from crm_api.core.envelope import Envelope, MessageRead, PagedEnvelope, ok, paged
from crm_api.crm.enums import TaskPriority, TaskStatus
from crm_api.crm.schemas import (
    ContactHistoryCreate,
    ContactHistoryRead,
    ContactHistoryUpdate,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    PipelineRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from crm_api.crm.service import (
    contact_history_service,
    customer_service,
    deal_service,
    pipeline_service,
    task_service,
)
from crm_api.crm.tenancy import TenantScope, get_tenant_scope

customers_router = APIRouter(prefix="/api/customers", tags=["crm.customers"])
deals_router = APIRouter(prefix="/api/deals", tags=["crm.deals"])
pipelines_router = APIRouter(prefix="/api/pipelines", tags=["crm.pipelines"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["crm.tasks"])
contact_history_router = APIRouter(prefix="/api/contact-history", tags=["crm.contact_history"])


@customers_router.get("", response_model=Envelope[list[CustomerRead]])
def list_customers(
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[list[CustomerRead]]:
    return ok(customer_service.list_customers(db, scope))


@customers_router.post("", response_model=Envelope[CustomerRead], status_code=status.HTTP_201_CREATED)
def create_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[CustomerRead]:
    return ok(customer_service.create_customer(db, scope, payload))


@customers_router.get("/{customer_id}", response_model=Envelope[CustomerRead])
def get_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[CustomerRead]:
    return ok(customer_service.get_customer(db, scope, customer_id))


@customers_router.put("/{customer_id}", response_model=Envelope[CustomerRead])
def update_customer(
    customer_id: uuid.UUID,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[CustomerRead]:
    return ok(customer_service.update_customer(db, scope, customer_id, payload))


@customers_router.delete("/{customer_id}", response_model=Envelope[MessageRead])
def delete_customer(
    customer_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[MessageRead]:
    return ok(customer_service.delete_customer(db, scope, customer_id))


@deals_router.get("", response_model=Envelope[list[DealRead]])
def list_deals(
    pipeline_id: uuid.UUID | None = Query(default=None, alias="pipelineId"),
    stage_id: str | None = Query(default=None, alias="stageId"),
    customer_id: uuid.UUID | None = Query(default=None, alias="customerId"),
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[list[DealRead]]:
    return ok(
        deal_service.list_deals(db, scope, pipeline_id=pipeline_id, stage_id=stage_id, customer_id=customer_id)
    )


@deals_router.post("", response_model=Envelope[DealRead], status_code=status.HTTP_201_CREATED)
def create_deal(
    payload: DealCreate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[DealRead]:
    return ok(deal_service.create_deal(db, scope, payload))


@deals_router.get("/{deal_id}", response_model=Envelope[DealRead])
def get_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[DealRead]:
    return ok(deal_service.get_deal(db, scope, deal_id))


@deals_router.put("/{deal_id}", response_model=Envelope[DealRead])
def update_deal(
    deal_id: uuid.UUID,
    payload: DealUpdate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[DealRead]:
    return ok(deal_service.update_deal(db, scope, deal_id, payload))


@deals_router.delete("/{deal_id}", response_model=Envelope[MessageRead])
def delete_deal(
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[MessageRead]:
    return ok(deal_service.delete_deal(db, scope, deal_id))


@pipelines_router.get("", response_model=Envelope[list[PipelineRead]])
def list_pipelines(
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[list[PipelineRead]]:
    return ok(pipeline_service.list_pipelines(db, scope))


@pipelines_router.get("/default", response_model=Envelope[PipelineRead])
def get_default_pipeline(
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[PipelineRead]:
    return ok(pipeline_service.get_default_pipeline(db, scope))


@pipelines_router.get("/{pipeline_id}", response_model=Envelope[PipelineRead])
def get_pipeline(
    pipeline_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[PipelineRead]:
    return ok(pipeline_service.get_pipeline(db, scope, pipeline_id))


@tasks_router.get("", response_model=Envelope[list[TaskRead]])
def list_tasks(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    priority: TaskPriority | None = Query(default=None),
    assignee_id: uuid.UUID | None = Query(default=None, alias="assigneeId"),
    customer_id: uuid.UUID | None = Query(default=None, alias="customerId"),
    due_date_from: datetime | None = Query(default=None, alias="dueDateFrom"),
    due_date_to: datetime | None = Query(default=None, alias="dueDateTo"),
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[list[TaskRead]]:
    return ok(
        task_service.list_tasks(
            db,
            scope,
            status=status_filter,
            priority=priority,
            assignee_id=assignee_id,
            customer_id=customer_id,
            due_date_from=due_date_from,
            due_date_to=due_date_to,
        )
    )


@tasks_router.post("", response_model=Envelope[TaskRead], status_code=status.HTTP_201_CREATED)
def create_task(
    payload: TaskCreate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[TaskRead]:
    return ok(task_service.create_task(db, scope, payload))


@tasks_router.get("/{task_id}", response_model=Envelope[TaskRead])
def get_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[TaskRead]:
    return ok(task_service.get_task(db, scope, task_id))


@tasks_router.put("/{task_id}", response_model=Envelope[TaskRead])
def update_task(
    task_id: uuid.UUID,
    payload: TaskUpdate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[TaskRead]:
    return ok(task_service.update_task(db, scope, task_id, payload))


@tasks_router.delete("/{task_id}", response_model=Envelope[MessageRead])
def delete_task(
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[MessageRead]:
    return ok(task_service.delete_task(db, scope, task_id))


@contact_history_router.get("", response_model=PagedEnvelope[ContactHistoryRead])
def list_contact_history(
    customer_id: uuid.UUID | None = Query(default=None, alias="customerId"),
    contact_type: str | None = Query(default=None, alias="type"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> PagedEnvelope[ContactHistoryRead]:
    entries, meta = contact_history_service.list_entries(
        db,
        scope,
        customer_id=customer_id,
        contact_type=contact_type,
        limit=limit,
        offset=offset,
    )
    return paged(entries, meta)


@contact_history_router.post("", response_model=Envelope[ContactHistoryRead], status_code=status.HTTP_201_CREATED)
def create_contact_history(
    payload: ContactHistoryCreate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[ContactHistoryRead]:
    return ok(contact_history_service.create_entry(db, scope, payload))


@contact_history_router.get("/{entry_id}", response_model=Envelope[ContactHistoryRead])
def get_contact_history(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[ContactHistoryRead]:
    return ok(contact_history_service.get_entry(db, scope, entry_id))


@contact_history_router.put("/{entry_id}", response_model=Envelope[ContactHistoryRead])
def update_contact_history(
    entry_id: uuid.UUID,
    payload: ContactHistoryUpdate,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[ContactHistoryRead]:
    return ok(contact_history_service.update_entry(db, scope, entry_id, payload))


@contact_history_router.delete("/{entry_id}", response_model=Envelope[MessageRead])
def delete_contact_history(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    scope: TenantScope = Depends(get_tenant_scope),
) -> Envelope[MessageRead]:
    return ok(contact_history_service.delete_entry(db, scope, entry_id))


routers = [customers_router, deals_router, pipelines_router, tasks_router, contact_history_router]
