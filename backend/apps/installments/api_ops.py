"""Read-only ops endpoints for scheduled installment jobs."""

from typing import Any

from fastapi import APIRouter, Header, HTTPException, status
from fastapi.responses import JSONResponse

from agents.installments.commission import CommissionRepository
from agents.installments.job_ledger import JobRunLedger
from backend.core.config import settings
from backend.core.observability.logging import hash_actor_token, logger
from backend.core.observability.metrics import get_metrics

from .repository import get_engine

router = APIRouter(prefix="/api/v1/ops")


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _auth_admin(authorization: str | None) -> tuple[str, str]:
    if not authorization or not authorization.lower().startswith("bearer "):
        _error(
            status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing or invalid Authorization header"
        )
    token = (
        authorization.split(" ", 1)[1].strip() if " " in authorization else authorization.strip()
    )
    allowed = [t.strip() for t in settings.ADMIN_TOKENS.split(",") if t.strip()]
    if not allowed or token not in allowed:
        _error(status.HTTP_403_FORBIDDEN, "forbidden", "Admin token required")
    return token, hash_actor_token(token)


@router.get("/jobs/{job_name}/health")
def job_health(job_name: str, authorization: str | None = Header(default=None)):
    """Freshness of the last run; 503 when the job is critical (missed schedule)."""
    _, actor = _auth_admin(authorization)
    health = JobRunLedger(get_engine()).job_health(job_name)
    logger.info("ops_job_health", extra={"actor": actor, "job_name": job_name, "status": health.status})
    return JSONResponse(
        status_code=status.HTTP_200_OK if health.ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=health.to_dict(),
    )


@router.get("/jobs/stale")
def stale_jobs(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    """Runs stuck in 'running' longer than JOB_STALE_AFTER_HOURS."""
    _auth_admin(authorization)
    rows = JobRunLedger(get_engine()).find_stale_runs()
    return {
        "items": [
            {
                "id": r["id"],
                "job_name": r["job_name"],
                "started_at": r["started_at"].isoformat() if r["started_at"] else None,
            }
            for r in rows
        ]
    }


@router.get("/agencies/{agency_id}/plans/{plan_id}/commission")
def plan_commission(
    agency_id: str, plan_id: str, authorization: str | None = Header(default=None)
) -> dict[str, Any]:
    _auth_admin(authorization)
    with get_engine().connect() as conn:
        summary = CommissionRepository().load_plan_commission(conn, agency_id, plan_id)
    if summary is None:
        _error(status.HTTP_404_NOT_FOUND, "not_found", "Payment plan not found")
    return summary.to_dict()


@router.get("/metrics")
def metrics_snapshot(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    _auth_admin(authorization)
    return get_metrics()
