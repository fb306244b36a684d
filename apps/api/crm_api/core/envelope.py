from __future__ import annotations

import math
from typing import Any, Generic, TypeVar

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from crm_api.core.schemas import ApiModel


DataT = TypeVar("DataT")


class PageMeta(ApiModel):
    total: int
    limit: int
    offset: int
    has_more: bool
    page: int
    total_pages: int

    @classmethod
    def from_window(cls, *, total: int, limit: int, offset: int) -> PageMeta:
        return cls(
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
            page=offset // limit + 1,
            total_pages=math.ceil(total / limit) if total else 0,
        )


class Envelope(BaseModel, Generic[DataT]):
    success: bool = True
    data: DataT


class PagedEnvelope(BaseModel, Generic[DataT]):
    success: bool = True
    data: list[DataT] = Field(default_factory=list)
    metadata: PageMeta


class MessageRead(ApiModel):
    message: str


def ok(data: Any) -> Envelope[Any]:
    return Envelope(data=data)


def paged(data: list[Any], meta: PageMeta) -> PagedEnvelope[Any]:
    return PagedEnvelope(data=data, metadata=meta)


def error_body(code: str, message: str, details: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}


def error_response(
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(code, message, details), headers=headers)
