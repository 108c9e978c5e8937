from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from salescrm.core.config import get_settings
from salescrm.core.database import get_db
from salescrm.crm.api import (
    audit_router,
    companies_router,
    contacts_router,
    custom_fields_router,
    deals_router,
    files_router,
    get_current_user,
    leads_router,
    pipelines_router,
    stages_router,
    teams_router,
    users_router,
)
from salescrm.crm.policy import AccessPolicy, ActorUser, Permission
from salescrm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(companies_router)
router.include_router(contacts_router)
router.include_router(leads_router)
router.include_router(deals_router)
router.include_router(pipelines_router)
router.include_router(stages_router)
router.include_router(custom_fields_router)
router.include_router(files_router)
router.include_router(teams_router)
router.include_router(users_router)
router.include_router(audit_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, int | str | None]:
    return {
        "userId": user.user_id,
        "role": str(user.role),
        "workspaceId": user.workspace_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(db: Session = Depends(get_db), user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not AccessPolicy(db, user).has_permission(Permission.MANAGE):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="missing permission: manage")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
