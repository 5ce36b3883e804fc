"""
Health Check Endpoints

- /health/live - the process answers
- /health/ready - the database answers (load balancer gate)
- /health/detailed - database, mailbox and Ecwid configuration, ingestion backlog
"""

import time
from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import __version__
from ..config import settings
from ..database import get_db
from ..models.booking_email import BookingEmail, IngestionStatus

router = APIRouter(prefix="/health", tags=["Health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def check_database(db: Session) -> dict:
    """SELECT 1 round trip; never raises"""
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {"status": "down", "error": str(e)[:100]}
    return {
        "status": "up",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "dialect": db.bind.dialect.name,
    }


def ingestion_backlog(db: Session) -> Dict[str, int]:
    """Message count per ingestion status; statuses with no rows report 0."""
    counts = {s.value: 0 for s in IngestionStatus}
    rows = (
        db.query(BookingEmail.ingestion_status, func.count(BookingEmail.id))
        .group_by(BookingEmail.ingestion_status)
        .all()
    )
    counts.update({status_name: count for status_name, count in rows})
    return counts


@router.get("/live")
async def liveness_check():
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    database = check_database(db)
    if database["status"] != "up":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "not_ready", "reason": "database_unavailable", "timestamp": _now()},
        )
    return {"status": "ready", "timestamp": _now()}


@router.get("/detailed")
def detailed_health_check(db: Session = Depends(get_db)):
    """Component view for operators; a degraded mailbox does not fail the check."""
    database = check_database(db)
    database_up = database["status"] == "up"
    return {
        "status": "healthy" if database_up else "unhealthy",
        "timestamp": _now(),
        "version": __version__,
        "environment": settings.environment,
        "checks": {
            "database": database,
            "gmail": {"status": "configured" if settings.has_gmail_config else "not_configured"},
            "ecwid": {"status": "configured" if settings.has_ecwid_config else "disabled"},
        },
        "ingestion": ingestion_backlog(db) if database_up else {},
        "worker": {
            "enabled": settings.ingest_worker_enabled,
            "poll_interval_seconds": settings.worker_poll_interval,
            "dynamic_rules": bool(settings.dynamic_parser_rules_path),
        },
    }


@router.get("")
async def simple_health_check():
    return {"status": "healthy", "timestamp": _now(), "version": __version__}
