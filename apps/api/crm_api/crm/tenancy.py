from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.core.auth import Principal, get_current_principal
from crm_api.core.database import get_db
from crm_api.core.errors import NotFoundError
from crm_api.crm.models import User


@dataclass(frozen=True)
class TenantScope:
    organization_id: uuid.UUID
    user_id: uuid.UUID
    role: str


class TenantResolver:
    def resolve(self, session: Session, principal: Principal) -> TenantScope:
        try:
            user_id = uuid.UUID(principal.principal_id)
        except ValueError as exc:
            raise NotFoundError("User", principal.principal_id) from exc

        row = session.execute(select(User.organization_id, User.role).where(User.id == user_id)).one_or_none()
        if row is None:
            raise NotFoundError("User", user_id)
        return TenantScope(organization_id=row.organization_id, user_id=user_id, role=row.role)


tenant_resolver = TenantResolver()


def get_tenant_scope(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> TenantScope:
    scope = tenant_resolver.resolve(db, principal)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.organization_id = str(scope.organization_id)
    return scope
