from typing import Optional
import uuid

from fastapi import APIRouter, Depends, Query

from app.api.deps import DB, CurrentUser, require_roles
from app.jobs.registry import run_job, registered_jobs
from app.jobs.scheduler import get_job_status
from app.models.notifications import AlertSeverity, NotificationType
from app.models.user import AppRole
from app.schemas.base import PaginatedResponse
from app.schemas.notifications import AlertResponse
from app.services.alert_service import AlertService


router = APIRouter()

managers = Depends(require_roles(AppRole.ADMIN, AppRole.DISPATCH_MANAGER, AppRole.WAREHOUSE_MANAGER))


@router.get("", response_model=PaginatedResponse[AlertResponse])
async def list_alerts(
    db: DB,
    current_user: CurrentUser,
    status: Optional[str] = Query("active", pattern="^(active|resolved)$"),
    alert_type: Optional[NotificationType] = None,
    severity: Optional[AlertSeverity] = None,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
):
    alerts, total = await AlertService(db).get_alerts(
        status=status,
        alert_type=alert_type.value if alert_type else None,
        severity=severity.value if severity else None,
        skip=(page - 1) * size,
        limit=size,
    )
    return PaginatedResponse[AlertResponse].build(
        [AlertResponse.model_validate(a) for a in alerts], total, page, size
    )


@router.get("/jobs")
async def list_jobs(current_user: CurrentUser):
    """Scheduled jobs with their next run time."""
    return {"jobs": registered_jobs(), "scheduled": get_job_status()}


@router.post("/jobs/{job_name}/run", dependencies=[managers])
async def run_job_now(job_name: str, current_user: CurrentUser):
    """Run a maintenance job immediately and return its summary."""
    return {"job": job_name, "result": await run_job(job_name)}


@router.post("/{alert_id}/resolve", response_model=AlertResponse, dependencies=[managers])
async def resolve_alert(alert_id: uuid.UUID, db: DB, current_user: CurrentUser):
    alert = await AlertService(db).resolve_alert(alert_id, current_user.id)
    return AlertResponse.model_validate(alert)
