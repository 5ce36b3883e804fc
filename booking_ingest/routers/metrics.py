"""
Metrics Router - Prometheus Metrics Endpoint

Exposes /metrics for Prometheus scraping. The ingestion backlog gauge is
refreshed from the database on every scrape.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..utils.metrics import format_prometheus_metrics, update_backlog
from .health import ingestion_backlog

router = APIRouter(prefix="/metrics", tags=["Metrics"])
logger = logging.getLogger(__name__)


@router.get("")
@router.get("/")
def get_metrics(db: Session = Depends(get_db)):
    try:
        update_backlog(ingestion_backlog(db))
    except SQLAlchemyError as e:
        # the process counters are still worth scraping
        logger.warning(f"Backlog refresh failed: {e}")
    return PlainTextResponse(
        content=format_prometheus_metrics(),
        media_type="text/plain; charset=utf-8"
    )
