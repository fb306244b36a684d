"""Sparse updates and per-entity deletion."""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import model_validator
from sqlalchemy import ColumnElement, delete, update
from sqlalchemy.orm import Session

from crm_api.core.database import Base
from crm_api.core.schemas import ApiModel
from crm_api.crm.models import utcnow


class DeletionPolicy(StrEnum):
    SOFT = "soft"
    HARD = "hard"


class PatchModel(ApiModel):
    """Update payload where a field counts as present only if the client sent it.

    Explicit ``null`` is a present value; it is accepted only for fields listed in
    ``nullable_fields``.
    """

    nullable_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null_for_required_columns(self) -> PatchModel:
        invalid = sorted(
            name
            for name in self.model_fields_set
            if getattr(self, name) is None and name not in self.nullable_fields
        )
        if invalid:
            raise ValueError(f"fields cannot be null: {', '.join(invalid)}")
        return self

    def changes(self, *, exclude: Sequence[str] = ()) -> dict[str, Any]:
        fields = set(self.model_fields_set) - set(exclude)
        if not fields:
            return {}
        return self.model_dump(include=fields, mode="python")


def apply_patch(
    session: Session,
    model: type[Base],
    *,
    where: Sequence[ColumnElement[bool]],
    values: dict[str, Any],
) -> bool:
    """Issue one UPDATE for ``values``; returns False without touching the database when empty."""
    if not values:
        return False

    changes = dict(values)
    if "updated_at" in model.__table__.c:
        changes["updated_at"] = utcnow()

    result = session.execute(
        update(model).where(*where).values(**changes).execution_options(synchronize_session="fetch")
    )
    return result.rowcount > 0


def delete_entity(
    session: Session,
    model: type[Base],
    policy: DeletionPolicy,
    *,
    where: Sequence[ColumnElement[bool]],
) -> bool:
    if policy is DeletionPolicy.SOFT:
        now = utcnow()
        result = session.execute(
            update(model)
            .where(*where, model.deleted_at.is_(None))  # type: ignore[attr-defined]
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
    else:
        result = session.execute(delete(model).where(*where).execution_options(synchronize_session="fetch"))
    return result.rowcount > 0
