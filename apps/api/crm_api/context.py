from __future__ import annotations

import re
import uuid
from contextvars import ContextVar, Token

CORRELATION_HEADER = "x-correlation-id"

_ACCEPTED_CORRELATION_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def accepted_correlation_id(raw: str | None) -> str | None:
    """The inbound id when it is a short token safe to echo and log, else None."""
    if raw and _ACCEPTED_CORRELATION_ID.fullmatch(raw):
        return raw
    return None


def resolve_correlation_id(raw: str | None) -> str:
    return accepted_correlation_id(raw) or str(uuid.uuid4())


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()
