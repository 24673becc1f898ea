from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from eduflare.cases.api import (
    applications_router,
    audit_router,
    billing_router,
    contracts_router,
    documents_router,
    leads_router,
    reports_router,
    students_router,
    unlocks_router,
)
from eduflare.core.config import get_settings
from eduflare.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(leads_router)
router.include_router(students_router)
router.include_router(documents_router)
router.include_router(applications_router)
router.include_router(contracts_router)
router.include_router(billing_router)
router.include_router(unlocks_router)
router.include_router(reports_router)
router.include_router(audit_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
