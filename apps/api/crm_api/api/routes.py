import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_api.auth.api import router as auth_router
from crm_api.core import redis_client
from crm_api.core.auth import Principal
from crm_api.core.config import get_settings
from crm_api.core.database import get_db
from crm_api.core.rbac import require_roles
from crm_api.crm.api import routers as crm_routers
from crm_api.crm.enums import UserRole
from crm_api.metrics import generate_metrics_payload, metrics_content_type

logger = logging.getLogger("crm_api.health")
_started_at = time.monotonic()

router = APIRouter()
router.include_router(auth_router)
for crm_router in crm_routers:
    router.include_router(crm_router)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    return {"status": "ok", "timestamp": _timestamp()}


@router.get("/health/detailed", tags=["system"])
def health_detailed(db: Session = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", extra={"error": str(exc)})
        database = "disconnected"

    healthy = database == "connected"
    body: dict[str, Any] = {
        "status": "ok" if healthy else "degraded",
        "timestamp": _timestamp(),
        "uptime": round(time.monotonic() - _started_at, 3),
        "service": settings.app_name,
        "environment": settings.app_env,
        "dependencies": {"database": database, "cache": redis_client.ping()},
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )


@router.get("/metrics", tags=["system"])
def metrics(principal: Principal = Depends(require_roles(UserRole.ADMIN))) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
