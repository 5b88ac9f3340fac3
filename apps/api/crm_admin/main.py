from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy.exc import SQLAlchemyError

from crm_admin.api.routes import router as api_router
from crm_admin.core.config import Settings, get_settings
from crm_admin.core.context import RequestContextMiddleware
from crm_admin.core.database import SessionLocal, get_db
from crm_admin.core.errors import register_exception_handlers
from crm_admin.crm.api import pipeline_stage_service
from crm_admin.logging import configure_logging, shutdown_logging
from crm_admin.middleware.correlation_id import CorrelationIdMiddleware
from crm_admin.middleware.request_logging import RequestLoggingMiddleware
from crm_admin.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_admin.lifecycle")


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _seed_pipeline_stages() -> None:
    try:
        with _session_scope() as session:
            created = pipeline_stage_service.ensure_default_stages(session)
    except SQLAlchemyError as exc:
        logger.error("startup.seed_failed", extra={"resource": "pipeline_stage", "error": str(exc)[:500]})
        return
    logger.info("startup.seed_complete", extra={"resource": "pipeline_stage", "action": "seed", "resource_id": created})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("startup")
    if settings.seed_pipeline_stages:
        _seed_pipeline_stages()
    yield
    logger.info("shutdown")
    shutdown_logging()


def _configure_cors(application: FastAPI, settings: Settings) -> None:
    if not settings.cors_origins:
        return

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
register_exception_handlers(app)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
_configure_cors(app, settings)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(SERVICE_NAME)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
