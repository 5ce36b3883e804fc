"""
Ingestion API Router

Operator endpoints for the booking email pipeline:
- Process a single message (optionally forced)
- Ingest the latest page / sweep failed and ignored messages
- Run a date-bounded backfill
- Inspect raw messages and booking timelines
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..models.booking import Booking
from ..models.booking_email import BookingEmail, IngestionStatus
from ..models.booking_event import BookingEvent
from ..services.backfill import BackfillDriver
from ..services.ingestion_service import BookingIngestionService, IngestionResult, build_ingestion_service
from ..schemas.ingestion import (
    BackfillRequest,
    BackfillResponse,
    BatchResultResponse,
    BookingEmailResponse,
    BookingEventResponse,
    BookingTimelineResponse,
    IngestionResultResponse,
    IngestRequest,
    ReprocessRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ingestion", tags=["Ingestion"])


def get_ingestion_service(db: Session = Depends(get_db)) -> BookingIngestionService:
    return build_ingestion_service(db)


def _summarize(results: List[IngestionResult]) -> BatchResultResponse:
    statuses: Dict[str, int] = {}
    for r in results:
        statuses[r.status] = statuses.get(r.status, 0) + 1
    return BatchResultResponse(
        total=len(results),
        statuses=statuses,
        results=[IngestionResultResponse.model_validate(r) for r in results],
    )


@router.post("/messages/{message_id}/process", response_model=IngestionResultResponse)
def process_message(
    message_id: str,
    force: bool = Query(False, description="Reprocess even if already processed"),
    use_stored: bool = Query(False, description="Replay the stored copy instead of refetching"),
    service: BookingIngestionService = Depends(get_ingestion_service),
    db: Session = Depends(get_db),
):
    """Process one message through parse and reconcile"""
    if use_stored or service.mail_source is None:
        exists = db.query(BookingEmail.id).filter(BookingEmail.message_id == message_id).first()
        if not exists:
            raise HTTPException(status_code=404, detail="Message not found")
        use_stored = True
    result = service.process_booking_email(message_id, force=force, use_stored=use_stored)
    return IngestionResultResponse.model_validate(result)


@router.post("/ingest", response_model=BatchResultResponse)
def ingest_latest(
    request: Optional[IngestRequest] = None,
    service: BookingIngestionService = Depends(get_ingestion_service),
):
    """Process the newest page of matching messages"""
    if service.mail_source is None:
        raise HTTPException(status_code=503, detail="Mail source is not configured")
    request = request or IngestRequest()
    results = service.ingest_latest(query=request.query, max_results=request.max_results)
    return _summarize(results)


@router.post("/reprocess", response_model=BatchResultResponse)
def reprocess_failed(
    request: Optional[ReprocessRequest] = None,
    service: BookingIngestionService = Depends(get_ingestion_service),
):
    """Retry failed and ignored messages"""
    request = request or ReprocessRequest()
    results = service.reprocess_failed(limit=request.limit, use_stored=request.use_stored)
    return _summarize(results)


@router.post("/backfill", response_model=BackfillResponse)
def run_backfill(
    request: BackfillRequest,
    service: BookingIngestionService = Depends(get_ingestion_service),
):
    """Page through the mailbox for a date range, oldest first within each page"""
    if service.mail_source is None:
        raise HTTPException(status_code=503, detail="Mail source is not configured")
    if request.after and request.before and request.after >= request.before:
        raise HTTPException(status_code=400, detail="'after' must be earlier than 'before'")

    driver = BackfillDriver(service.mail_source, service, page_size=request.page_size)
    report = driver.run(
        request.query or settings.booking_email_query,
        after=request.after,
        before=request.before,
        max_pages=request.max_pages,
        force=request.force,
        on_progress=lambda p: logger.info(
            f"Backfill progress: page {p.pages}, {p.messages_seen} messages, "
            f"{p.percent if p.percent is not None else '?'}%{' (estimated)' if p.estimated else ''}"
        ),
    )
    return BackfillResponse(
        query=report.query,
        pages=report.pages,
        messages_seen=report.messages_seen,
        skipped_lower=report.skipped_lower,
        skipped_upper=report.skipped_upper,
        statuses=report.statuses,
        error=report.error,
    )


@router.get("/messages", response_model=List[BookingEmailResponse])
def list_messages(
    status: Optional[str] = Query(None, description="Filter by ingestion status"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(BookingEmail)
    if status:
        valid = {s.value for s in IngestionStatus}
        if status not in valid:
            raise HTTPException(status_code=400, detail=f"Invalid status. Allowed: {sorted(valid)}")
        query = query.filter(BookingEmail.ingestion_status == status)
    return query.order_by(BookingEmail.updated_at.desc()).limit(limit).all()


@router.get("/bookings/{platform}/{platform_booking_id}/events", response_model=BookingTimelineResponse)
def booking_timeline(platform: str, platform_booking_id: str, db: Session = Depends(get_db)):
    booking = (
        db.query(Booking)
        .filter(Booking.platform == platform, Booking.platform_booking_id == platform_booking_id)
        .first()
    )
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")

    events = (
        db.query(BookingEvent)
        .filter(BookingEvent.booking_id == booking.id)
        .order_by(BookingEvent.occurred_at.asc())
        .all()
    )
    return BookingTimelineResponse(
        booking_id=booking.id,
        platform=booking.platform,
        platform_booking_id=booking.platform_booking_id,
        status=booking.status,
        payment_status=booking.payment_status,
        status_changed_at=booking.status_changed_at,
        party_size_total=booking.party_size_total,
        price_gross=booking.price_gross,
        currency=booking.currency,
        events=[BookingEventResponse.model_validate(e) for e in events],
    )
