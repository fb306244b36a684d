"""Ordered pipeline stage lists and the column type that stores them."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, RootModel, model_validator
from sqlalchemy import JSON
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator, TypeEngine


class PipelineStage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=100)
    order: int = Field(ge=0)
    probability: int = Field(default=0, ge=0, le=100)


class StageList(RootModel[list[PipelineStage]]):
    """Stages sorted by ``order``; ids are unique within a list."""

    root: list[PipelineStage] = Field(default_factory=list)

    @model_validator(mode="after")
    def _sort_and_check_ids(self) -> StageList:
        ids = [stage.id for stage in self.root]
        duplicates = sorted({stage_id for stage_id in ids if ids.count(stage_id) > 1})
        if duplicates:
            raise ValueError(f"duplicate stage ids: {', '.join(duplicates)}")
        self.root = sorted(self.root, key=lambda stage: (stage.order, stage.id))
        return self

    def __iter__(self) -> Iterator[PipelineStage]:  # type: ignore[override]
        return iter(self.root)

    def __len__(self) -> int:
        return len(self.root)

    def __contains__(self, stage_id: object) -> bool:
        return any(stage.id == stage_id for stage in self.root)

    def get(self, stage_id: str) -> PipelineStage | None:
        for stage in self.root:
            if stage.id == stage_id:
                return stage
        return None

    def ids(self) -> list[str]:
        return [stage.id for stage in self.root]

    def with_fresh_ids(self) -> StageList:
        """Copy of the list where every stage gets a new random id."""
        return StageList([stage.model_copy(update={"id": str(uuid.uuid4())}) for stage in self.root])


class StageListType(TypeDecorator[StageList]):
    """JSONB on PostgreSQL, JSON elsewhere; validates on read and write."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return []
        stages = value if isinstance(value, StageList) else StageList.model_validate(value)
        return stages.model_dump(mode="json")

    def process_result_value(self, value: Any, dialect: Dialect) -> StageList:
        return StageList.model_validate(value or [])


DEFAULT_PIPELINE_NAME = "Default Sales Pipeline"
DEFAULT_STAGES = StageList.model_validate(
    [
        {"id": "1", "name": "Lead", "order": 1, "probability": 10},
        {"id": "2", "name": "Qualified", "order": 2, "probability": 30},
        {"id": "3", "name": "Proposal", "order": 3, "probability": 50},
        {"id": "4", "name": "Negotiation", "order": 4, "probability": 70},
        {"id": "5", "name": "Closed Won", "order": 5, "probability": 100},
        {"id": "6", "name": "Closed Lost", "order": 6, "probability": 0},
    ]
)
