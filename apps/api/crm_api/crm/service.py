from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, Select, case, func, inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_api.core.envelope import MessageRead, PageMeta
from crm_api.core.errors import ConflictError, NotFoundError
from crm_api.crm.enums import TaskPriority, TaskStatus
from crm_api.crm.guards import guards
from crm_api.crm.models import ContactHistory, Customer, Deal, Pipeline, Task, User, utcnow
from crm_api.crm.patch import DeletionPolicy, apply_patch, delete_entity
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
from crm_api.crm.stages import DEFAULT_PIPELINE_NAME, DEFAULT_STAGES
from crm_api.crm.tenancy import TenantScope
from crm_api.metrics import observe_mutation

logger = logging.getLogger("crm_api.crm")


def _columns(entity: Any) -> dict[str, Any]:
    return {attr.key: getattr(entity, attr.key) for attr in inspect(entity).mapper.column_attrs}


def _org_customer_ids(scope: TenantScope) -> Select[tuple[uuid.UUID]]:
    return select(Customer.id).where(
        Customer.organization_id == scope.organization_id,
        Customer.deleted_at.is_(None),
    )


def _org_user_ids(scope: TenantScope) -> Select[tuple[uuid.UUID]]:
    return select(User.id).where(User.organization_id == scope.organization_id)


def _commit(session: Session, conflict_message: str) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(conflict_message) from exc


def _record_mutation(scope: TenantScope, entity: str, entity_id: uuid.UUID, action: str) -> None:
    observe_mutation(entity, action)
    logger.info(
        "crm.mutation",
        extra={
            "entity": entity,
            "entity_id": str(entity_id),
            "action": action,
            "organization_id": str(scope.organization_id),
            "user_id": str(scope.user_id),
        },
    )


class CustomerService:
    entity_type = "customer"
    deletion_policy = DeletionPolicy.SOFT

    def list_customers(self, session: Session, scope: TenantScope) -> list[CustomerRead]:
        customers = session.scalars(
            select(Customer)
            .where(*self._scope(scope))
            .order_by(Customer.created_at.desc(), Customer.id.desc())
        ).all()
        return [CustomerRead.model_validate(customer) for customer in customers]

    def get_customer(self, session: Session, scope: TenantScope, customer_id: uuid.UUID) -> CustomerRead:
        customer = session.scalar(select(Customer).where(Customer.id == customer_id, *self._scope(scope)))
        if customer is None:
            raise NotFoundError("Customer", customer_id)
        return CustomerRead.model_validate(customer)

    def create_customer(self, session: Session, scope: TenantScope, dto: CustomerCreate) -> CustomerRead:
        self._ensure_email_available(session, scope, dto.email)

        customer = Customer(
            organization_id=scope.organization_id,
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=dto.email,
            phone=dto.phone,
            company=dto.company,
            tags=dto.tags,
            custom_fields=dto.custom_fields,
            created_by=scope.user_id,
        )
        session.add(customer)
        _commit(session, "Customer with this email or phone already exists")
        _record_mutation(scope, self.entity_type, customer.id, "create")
        return self.get_customer(session, scope, customer.id)

    def update_customer(
        self,
        session: Session,
        scope: TenantScope,
        customer_id: uuid.UUID,
        dto: CustomerUpdate,
    ) -> CustomerRead:
        existing = guards.customer(session, scope, customer_id)
        values = dto.changes()
        if values.get("email") and values["email"] != existing.email:
            self._ensure_email_available(session, scope, values["email"], exclude_id=customer_id)

        if apply_patch(session, Customer, where=[Customer.id == customer_id, *self._scope(scope)], values=values):
            _commit(session, "Customer with this email or phone already exists")
            _record_mutation(scope, self.entity_type, customer_id, "update")
        return self.get_customer(session, scope, customer_id)

    def delete_customer(self, session: Session, scope: TenantScope, customer_id: uuid.UUID) -> MessageRead:
        deleted = delete_entity(
            session,
            Customer,
            self.deletion_policy,
            where=[Customer.id == customer_id, Customer.organization_id == scope.organization_id],
        )
        if not deleted:
            session.rollback()
            raise NotFoundError("Customer", customer_id)
        session.commit()
        _record_mutation(scope, self.entity_type, customer_id, "delete")
        return MessageRead(message="Customer deleted successfully")

    def _scope(self, scope: TenantScope) -> list[ColumnElement[bool]]:
        return [Customer.organization_id == scope.organization_id, Customer.deleted_at.is_(None)]

    def _ensure_email_available(
        self,
        session: Session,
        scope: TenantScope,
        email: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(Customer.id).where(Customer.email == email, *self._scope(scope))
        if exclude_id is not None:
            stmt = stmt.where(Customer.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise ConflictError("Customer with this email already exists", details={"email": email})


class PipelineService:
    def list_pipelines(self, session: Session, scope: TenantScope) -> list[PipelineRead]:
        pipelines = session.scalars(
            select(Pipeline)
            .where(Pipeline.organization_id == scope.organization_id)
            .order_by(Pipeline.is_default.desc(), Pipeline.created_at.asc())
        ).all()
        return [self._to_read(pipeline) for pipeline in pipelines]

    def get_pipeline(self, session: Session, scope: TenantScope, pipeline_id: uuid.UUID) -> PipelineRead:
        pipeline = session.scalar(
            select(Pipeline).where(Pipeline.id == pipeline_id, Pipeline.organization_id == scope.organization_id)
        )
        if pipeline is None:
            raise NotFoundError("Pipeline", pipeline_id)
        return self._to_read(pipeline)

    def get_default_pipeline(self, session: Session, scope: TenantScope) -> PipelineRead:
        """The most recently updated pipeline flagged default, else the oldest pipeline."""
        owned = Pipeline.organization_id == scope.organization_id
        pipeline = session.scalar(
            select(Pipeline)
            .where(owned, Pipeline.is_default.is_(True))
            .order_by(Pipeline.updated_at.desc(), Pipeline.created_at.desc())
            .limit(1)
        )
        if pipeline is None:
            pipeline = session.scalar(select(Pipeline).where(owned).order_by(Pipeline.created_at.asc()).limit(1))
        if pipeline is None:
            raise NotFoundError("Pipeline", message="No pipeline found for this organization")
        return self._to_read(pipeline)

    def create_default_pipeline(
        self,
        session: Session,
        organization_id: uuid.UUID,
        created_by: uuid.UUID | None,
    ) -> Pipeline:
        pipeline = Pipeline(
            organization_id=organization_id,
            name=DEFAULT_PIPELINE_NAME,
            stages=DEFAULT_STAGES.with_fresh_ids(),
            is_default=True,
            created_by=created_by,
        )
        session.add(pipeline)
        return pipeline

    def _to_read(self, pipeline: Pipeline) -> PipelineRead:
        return PipelineRead.model_validate({**_columns(pipeline), "stages": list(pipeline.stages)})


class DealService:
    entity_type = "deal"
    deletion_policy = DeletionPolicy.HARD

    def list_deals(
        self,
        session: Session,
        scope: TenantScope,
        *,
        pipeline_id: uuid.UUID | None = None,
        stage_id: str | None = None,
        customer_id: uuid.UUID | None = None,
    ) -> list[DealRead]:
        stmt = self._read_stmt(scope)
        if pipeline_id is not None:
            stmt = stmt.where(Deal.pipeline_id == pipeline_id)
        if stage_id:
            stmt = stmt.where(Deal.stage_id == stage_id)
        if customer_id is not None:
            stmt = stmt.where(Deal.customer_id == customer_id)

        rows = session.execute(stmt.order_by(Deal.created_at.desc(), Deal.id.desc())).all()
        return [self._to_read(row) for row in rows]

    def get_deal(self, session: Session, scope: TenantScope, deal_id: uuid.UUID) -> DealRead:
        row = session.execute(self._read_stmt(scope).where(Deal.id == deal_id)).one_or_none()
        if row is None:
            raise NotFoundError("Deal", deal_id)
        return self._to_read(row)

    def create_deal(self, session: Session, scope: TenantScope, dto: DealCreate) -> DealRead:
        customer = guards.customer(session, scope, dto.customer_id)
        pipeline = guards.pipeline(session, scope, dto.pipeline_id)
        stage = guards.stage(pipeline, dto.stage_id)

        deal = Deal(
            customer_id=customer.id,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            title=dto.title,
            value=dto.value,
            currency=dto.currency,
            expected_close_date=dto.expected_close_date,
            probability=dto.probability if dto.probability is not None else stage.probability,
            notes=dto.notes,
            products=[item.model_dump(mode="json") for item in dto.products],
            owner_id=scope.user_id,
        )
        session.add(deal)
        _commit(session, "Deal could not be created")
        _record_mutation(scope, self.entity_type, deal.id, "create")
        return self.get_deal(session, scope, deal.id)

    def update_deal(self, session: Session, scope: TenantScope, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        existing = guards.deal(session, scope, deal_id)
        values = dto.changes()
        if "stage_id" in values:
            pipeline = guards.pipeline(session, scope, existing.pipeline_id)
            guards.stage(pipeline, values["stage_id"])

        if apply_patch(session, Deal, where=self._write_scope(scope, deal_id), values=values):
            _commit(session, "Deal could not be updated")
            _record_mutation(scope, self.entity_type, deal_id, "update")
        return self.get_deal(session, scope, deal_id)

    def delete_deal(self, session: Session, scope: TenantScope, deal_id: uuid.UUID) -> MessageRead:
        if not delete_entity(session, Deal, self.deletion_policy, where=self._write_scope(scope, deal_id)):
            session.rollback()
            raise NotFoundError("Deal", deal_id)
        session.commit()
        _record_mutation(scope, self.entity_type, deal_id, "delete")
        return MessageRead(message="Deal deleted successfully")

    def _write_scope(self, scope: TenantScope, deal_id: uuid.UUID) -> list[ColumnElement[bool]]:
        return [Deal.id == deal_id, Deal.customer_id.in_(_org_customer_ids(scope))]

    def _read_stmt(self, scope: TenantScope) -> Select[Any]:
        return (
            select(
                Deal,
                Customer.first_name.label("customer_first_name"),
                Customer.last_name.label("customer_last_name"),
                Customer.email.label("customer_email"),
                User.first_name.label("owner_first_name"),
                User.last_name.label("owner_last_name"),
                Pipeline.name.label("pipeline_name"),
            )
            .join(Customer, Customer.id == Deal.customer_id)
            .join(User, User.id == Deal.owner_id)
            .join(Pipeline, Pipeline.id == Deal.pipeline_id)
            .where(Customer.organization_id == scope.organization_id, Customer.deleted_at.is_(None))
        )

    def _to_read(self, row: Any) -> DealRead:
        return DealRead.model_validate(
            {
                **_columns(row.Deal),
                "customer_first_name": row.customer_first_name,
                "customer_last_name": row.customer_last_name,
                "customer_email": row.customer_email,
                "owner_first_name": row.owner_first_name,
                "owner_last_name": row.owner_last_name,
                "pipeline_name": row.pipeline_name,
            }
        )


_STATUS_RANK = case(
    (Task.status == TaskStatus.PENDING.value, 1),
    (Task.status == TaskStatus.IN_PROGRESS.value, 2),
    (Task.status == TaskStatus.COMPLETE.value, 3),
    else_=4,
)
_PRIORITY_RANK = case(
    (Task.priority == TaskPriority.HIGH.value, 1),
    (Task.priority == TaskPriority.MEDIUM.value, 2),
    (Task.priority == TaskPriority.LOW.value, 3),
    else_=4,
)


def completion_timestamp(status: str) -> datetime | None:
    return utcnow() if status == TaskStatus.COMPLETE else None


class TaskService:
    entity_type = "task"
    deletion_policy = DeletionPolicy.HARD

    def list_tasks(
        self,
        session: Session,
        scope: TenantScope,
        *,
        status: TaskStatus | None = None,
        priority: TaskPriority | None = None,
        assignee_id: uuid.UUID | None = None,
        customer_id: uuid.UUID | None = None,
        due_date_from: datetime | None = None,
        due_date_to: datetime | None = None,
    ) -> list[TaskRead]:
        stmt = self._read_stmt(scope)
        if status is not None:
            stmt = stmt.where(Task.status == status.value)
        if priority is not None:
            stmt = stmt.where(Task.priority == priority.value)
        if assignee_id is not None:
            stmt = stmt.where(Task.assignee_id == assignee_id)
        if customer_id is not None:
            stmt = stmt.where(Task.related_customer_id == customer_id)
        if due_date_from is not None:
            stmt = stmt.where(Task.due_date >= due_date_from)
        if due_date_to is not None:
            stmt = stmt.where(Task.due_date <= due_date_to)

        stmt = stmt.order_by(
            _STATUS_RANK,
            _PRIORITY_RANK,
            Task.due_date.is_(None),
            Task.due_date.asc(),
            Task.created_at.desc(),
        )
        return [self._to_read(row) for row in session.execute(stmt).all()]

    def get_task(self, session: Session, scope: TenantScope, task_id: uuid.UUID) -> TaskRead:
        row = session.execute(self._read_stmt(scope).where(Task.id == task_id)).one_or_none()
        if row is None:
            raise NotFoundError("Task", task_id)
        return self._to_read(row)

    def create_task(self, session: Session, scope: TenantScope, dto: TaskCreate) -> TaskRead:
        assignee = guards.assignee(session, scope, dto.assignee_id or scope.user_id)
        if dto.related_customer_id is not None:
            guards.customer(session, scope, dto.related_customer_id)
        if dto.related_deal_id is not None:
            guards.deal(session, scope, dto.related_deal_id)

        task = Task(
            title=dto.title,
            description=dto.description,
            priority=dto.priority.value,
            status=dto.status.value,
            due_date=dto.due_date,
            assignee_id=assignee.id,
            related_customer_id=dto.related_customer_id,
            related_deal_id=dto.related_deal_id,
            is_recurring=dto.is_recurring,
            recurrence_rule=dto.recurrence_rule,
            time_spent=dto.time_spent,
            completed_at=completion_timestamp(dto.status),
        )
        session.add(task)
        _commit(session, "Task could not be created")
        _record_mutation(scope, self.entity_type, task.id, "create")
        return self.get_task(session, scope, task.id)

    def update_task(self, session: Session, scope: TenantScope, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        self._ensure_visible(session, scope, task_id)
        values = dto.changes()
        if "assignee_id" in values:
            guards.assignee(session, scope, values["assignee_id"])
        if values.get("related_customer_id") is not None:
            guards.customer(session, scope, values["related_customer_id"])
        if values.get("related_deal_id") is not None:
            guards.deal(session, scope, values["related_deal_id"])
        for key in ("status", "priority"):
            if key in values:
                values[key] = values[key].value
        if "status" in values:
            values["completed_at"] = completion_timestamp(values["status"])

        where = [Task.id == task_id, Task.assignee_id.in_(_org_user_ids(scope))]
        if apply_patch(session, Task, where=where, values=values):
            _commit(session, "Task could not be updated")
            _record_mutation(scope, self.entity_type, task_id, "update")
        return self.get_task(session, scope, task_id)

    def delete_task(self, session: Session, scope: TenantScope, task_id: uuid.UUID) -> MessageRead:
        deleted = delete_entity(
            session,
            Task,
            self.deletion_policy,
            where=[Task.id == task_id, Task.assignee_id.in_(_org_user_ids(scope))],
        )
        if not deleted:
            session.rollback()
            raise NotFoundError("Task", task_id)
        session.commit()
        _record_mutation(scope, self.entity_type, task_id, "delete")
        return MessageRead(message="Task deleted successfully")

    def _ensure_visible(self, session: Session, scope: TenantScope, task_id: uuid.UUID) -> None:
        found = session.scalar(
            select(Task.id).where(Task.id == task_id, Task.assignee_id.in_(_org_user_ids(scope)))
        )
        if found is None:
            raise NotFoundError("Task", task_id)

    def _read_stmt(self, scope: TenantScope) -> Select[Any]:
        return (
            select(
                Task,
                User.first_name.label("assignee_first_name"),
                User.last_name.label("assignee_last_name"),
                User.email.label("assignee_email"),
                Customer.first_name.label("customer_first_name"),
                Customer.last_name.label("customer_last_name"),
            )
            .join(User, User.id == Task.assignee_id)
            .outerjoin(Customer, Customer.id == Task.related_customer_id)
            .where(User.organization_id == scope.organization_id)
        )

    def _to_read(self, row: Any) -> TaskRead:
        return TaskRead.model_validate(
            {
                **_columns(row.Task),
                "assignee_first_name": row.assignee_first_name,
                "assignee_last_name": row.assignee_last_name,
                "assignee_email": row.assignee_email,
                "customer_first_name": row.customer_first_name,
                "customer_last_name": row.customer_last_name,
            }
        )


class ContactHistoryService:
    entity_type = "contact_history"
    deletion_policy = DeletionPolicy.HARD

    def list_entries(
        self,
        session: Session,
        scope: TenantScope,
        *,
        customer_id: uuid.UUID | None = None,
        contact_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ContactHistoryRead], PageMeta]:
        filters: list[ColumnElement[bool]] = [ContactHistory.customer_id.in_(_org_customer_ids(scope))]
        if customer_id is not None:
            filters.append(ContactHistory.customer_id == customer_id)
        if contact_type:
            filters.append(ContactHistory.type == guards.contact_type(contact_type).value)

        total = session.scalar(select(func.count()).select_from(ContactHistory).where(*filters)) or 0
        rows = session.execute(
            self._read_stmt()
            .where(*filters)
            .order_by(ContactHistory.created_at.desc(), ContactHistory.id.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return [self._to_read(row) for row in rows], PageMeta.from_window(total=total, limit=limit, offset=offset)

    def get_entry(self, session: Session, scope: TenantScope, entry_id: uuid.UUID) -> ContactHistoryRead:
        row = session.execute(
            self._read_stmt().where(*self._write_scope(scope, entry_id))
        ).one_or_none()
        if row is None:
            raise NotFoundError("Contact history", entry_id)
        return self._to_read(row)

    def create_entry(self, session: Session, scope: TenantScope, dto: ContactHistoryCreate) -> ContactHistoryRead:
        customer = guards.customer(session, scope, dto.customer_id)
        contact_type = guards.contact_type(dto.type)

        entry = ContactHistory(
            customer_id=customer.id,
            type=contact_type.value,
            subject=dto.subject,
            body=dto.body,
            duration=dto.duration,
            attachments=dto.attachments,
            ai_summary=dto.ai_summary,
            created_by=scope.user_id,
        )
        session.add(entry)
        _commit(session, "Contact history entry could not be created")
        _record_mutation(scope, self.entity_type, entry.id, "create")
        return self.get_entry(session, scope, entry.id)

    def update_entry(
        self,
        session: Session,
        scope: TenantScope,
        entry_id: uuid.UUID,
        dto: ContactHistoryUpdate,
    ) -> ContactHistoryRead:
        self.get_entry(session, scope, entry_id)
        if apply_patch(session, ContactHistory, where=self._write_scope(scope, entry_id), values=dto.changes()):
            _commit(session, "Contact history entry could not be updated")
            _record_mutation(scope, self.entity_type, entry_id, "update")
        return self.get_entry(session, scope, entry_id)

    def delete_entry(self, session: Session, scope: TenantScope, entry_id: uuid.UUID) -> MessageRead:
        if not delete_entity(session, ContactHistory, self.deletion_policy, where=self._write_scope(scope, entry_id)):
            session.rollback()
            raise NotFoundError("Contact history", entry_id)
        session.commit()
        _record_mutation(scope, self.entity_type, entry_id, "delete")
        return MessageRead(message="Contact history deleted successfully")

    def _write_scope(self, scope: TenantScope, entry_id: uuid.UUID) -> list[ColumnElement[bool]]:
        return [ContactHistory.id == entry_id, ContactHistory.customer_id.in_(_org_customer_ids(scope))]

    def _read_stmt(self) -> Select[Any]:
        return (
            select(
                ContactHistory,
                Customer.first_name.label("customer_first_name"),
                Customer.last_name.label("customer_last_name"),
                Customer.email.label("customer_email"),
                User.first_name.label("creator_first_name"),
                User.last_name.label("creator_last_name"),
            )
            .join(Customer, Customer.id == ContactHistory.customer_id)
            .join(User, User.id == ContactHistory.created_by)
        )

    def _to_read(self, row: Any) -> ContactHistoryRead:
        return ContactHistoryRead.model_validate(
            {
                **_columns(row.ContactHistory),
                "customer_first_name": row.customer_first_name,
                "customer_last_name": row.customer_last_name,
                "customer_email": row.customer_email,
                "creator_first_name": row.creator_first_name,
                "creator_last_name": row.creator_last_name,
            }
        )


customer_service = CustomerService()
pipeline_service = PipelineService()
deal_service = DealService()
task_service = TaskService()
contact_history_service = ContactHistoryService()
