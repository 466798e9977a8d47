"""Health and readiness endpoints."""

from importlib.metadata import PackageNotFoundError, version
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.apps.installments.repository import get_engine

router = APIRouter()


def get_version() -> str:
    """Installed distribution version, or ``dev`` for a source checkout."""
    try:
        return version("installment-engine")
    except PackageNotFoundError:
        return "dev"


def check_database() -> str:
    """Check database connectivity with light query."""
    try:
        with get_engine().connect() as conn:
            row = conn.execute(text("SELECT 1 AS health_check")).first()
            return "OK" if row and row.health_check == 1 else "FAIL"
    except SQLAlchemyError:
        return "FAIL"


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()

    response = {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }

    return response


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
