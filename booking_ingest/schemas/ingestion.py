"""
Ingestion Schemas

Pydantic models for the ingestion API requests and responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ==================
# Processing results
# ==================

class IngestionResultResponse(BaseModel):
    """Outcome of processing one message"""
    message_id: str
    status: str
    booking_ids: List[str] = []
    error: Optional[str] = None
    rebuilt: bool = False

    class Config:
        from_attributes = True


class BatchResultResponse(BaseModel):
    total: int
    statuses: Dict[str, int]
    results: List[IngestionResultResponse]


# ==================
# Requests
# ==================

class IngestRequest(BaseModel):
    query: Optional[str] = Field(default=None, description="Mailbox search query")
    max_results: Optional[int] = Field(default=None, ge=1, le=500)


class ReprocessRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=500)
    use_stored: bool = Field(default=False, description="Replay stored bodies instead of refetching")


class BackfillRequest(BaseModel):
    query: Optional[str] = None
    after: Optional[date] = Field(default=None, description="Only messages on or after this date")
    before: Optional[date] = Field(default=None, description="Only messages before this date")
    max_pages: Optional[int] = Field(default=None, ge=1)
    page_size: Optional[int] = Field(default=None, ge=1, le=500)
    force: bool = False


class BackfillResponse(BaseModel):
    query: str
    pages: int
    messages_seen: int
    skipped_lower: bool
    skipped_upper: int
    statuses: Dict[str, int]
    error: Optional[str] = None


# ==================
# Read models
# ==================

class BookingEmailResponse(BaseModel):
    id: str
    message_id: str
    thread_id: Optional[str]
    from_address: Optional[str]
    subject: Optional[str]
    received_at: Optional[datetime]
    ingestion_status: str
    failure_reason: Optional[str]
    last_processed_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class BookingEventResponse(BaseModel):
    id: str
    event_type: str
    platform: str
    status_after: Optional[str]
    email_message_id: Optional[str]
    occurred_at: Optional[datetime]
    processed_at: Optional[datetime]
    field_patch: Optional[Dict[str, Any]]
    applied_fields: Optional[Dict[str, Any]]

    class Config:
        from_attributes = True


class BookingTimelineResponse(BaseModel):
    booking_id: str
    platform: str
    platform_booking_id: str
    status: str
    payment_status: str
    status_changed_at: Optional[datetime]
    party_size_total: Optional[int]
    price_gross: Optional[Decimal]
    currency: Optional[str]
    events: List[BookingEventResponse]
