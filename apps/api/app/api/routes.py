from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.authz.api import ActorUser, auth_router, require_roles, users_router
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type
from app.crm.api import (
    clients_router,
    leads_router,
    notes_router,
    notifications_router,
    pipeline_router,
    reports_router,
    stages_router,
    tasks_router,
)

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(stages_router)
router.include_router(leads_router)
router.include_router(clients_router)
router.include_router(notes_router)
router.include_router(tasks_router)
router.include_router(pipeline_router)
router.include_router(reports_router)
router.include_router(notifications_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(_user: ActorUser = Depends(require_roles("admin"))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
