import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_admin.core.config import get_settings
from crm_admin.core.database import get_db
from crm_admin.crm.api import (
    activities_router,
    audit_router,
    contacts_router,
    deals_router,
    me_router,
    pipeline_stages_router,
    reports_router,
    tags_router,
    router as crm_customers_router,
)
from crm_admin.metrics import render_metrics

logger = logging.getLogger("crm_admin.health")

router = APIRouter()
router.include_router(me_router)
router.include_router(crm_customers_router)
router.include_router(contacts_router)
router.include_router(deals_router)
router.include_router(activities_router)
router.include_router(tags_router)
router.include_router(pipeline_stages_router)
router.include_router(audit_router)
router.include_router(reports_router)


def _database_status(db: Session) -> str:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("health.database_unavailable", extra={"error": str(exc)})
        return "unavailable"
    return "ok"


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    checks = {"database": _database_status(db)}
    healthy = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": settings.app_name,
            "environment": settings.app_env,
            "version": settings.app_version,
            "checks": checks,
        },
    )


@router.get("/ready", tags=["system"])
def ready() -> dict[str, str]:
    return {"status": "ready"}


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
