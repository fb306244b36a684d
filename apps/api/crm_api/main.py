from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from crm_api.api.routes import router as api_router
from crm_api.core.config import get_settings
from crm_api.core.context import RequestContextMiddleware
from crm_api.core.database import engine
from crm_api.core.handlers import register_exception_handlers
from crm_api.logging import configure_logging
from crm_api.middleware.correlation_id import CorrelationIdMiddleware
from crm_api.middleware.rate_limit import ApiRateLimitMiddleware
from crm_api.middleware.request_logging import RequestLoggingMiddleware
from crm_api.otel import setup_otel, tag_server_span


configure_logging(get_settings().log_level)
logger = logging.getLogger("crm_api.lifecycle")


def _probe_database() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("database.unavailable", extra={"error": str(exc)})
        return False
    logger.info("database.connected")
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("service.starting")
    _probe_database()
    yield
    logger.info("service.stopping")


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(ApiRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-correlation-id", "x-request-id", "retry-after"],
)
register_exception_handlers(app)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=tag_server_span)
