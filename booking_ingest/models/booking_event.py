"""
Booking Event Model

Append-only audit log of every parsed event applied to a booking.
Used for:
- Timeline rebuild (which messages touched a booking, in order)
- Convergence of out-of-order backfills (which fields newer events declared)
- Replay supersession (prior events of a reprocessed message)
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingEventType(str, enum.Enum):
    CREATED = "created"
    AMENDED = "amended"
    CANCELLED = "cancelled"
    REPLAYED = "replayed"


class BookingEvent(Base):
    """
    One row per reconciled ParsedBookingEvent.

    field_patch holds what the parser declared; applied_fields holds what was
    actually written (including deltas), so a superseding replay can revert it.
    """
    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    email_id = Column(String(36), ForeignKey("booking_emails.id", ondelete="SET NULL"), nullable=True)
    email_message_id = Column(String(255), nullable=True)

    event_type = Column(String(20), nullable=False)
    platform = Column(String(50), nullable=False)
    status_after = Column(String(30), nullable=True)

    occurred_at = Column(DateTime, nullable=True)
    ingested_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    field_patch = Column(JSON, nullable=True)
    applied_fields = Column(JSON, nullable=True)
    event_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    booking = relationship("Booking", back_populates="events")
    addons = relationship("BookingAddon", viewonly=True)

    __table_args__ = (
        Index("ix_booking_event_booking", "booking_id", "occurred_at"),
        Index("ix_booking_event_message", "email_message_id"),
    )

    @property
    def declared_fields(self) -> set:
        """Names of the absolute fields and deltas the parser declared"""
        return set((self.field_patch or {}).get("fields", {}).keys())

    @property
    def carried_addons(self) -> bool:
        """An addon list (possibly empty) was part of the event"""
        return (self.field_patch or {}).get("addons") is not None

    def __repr__(self):
        return f"<BookingEvent {self.event_type} booking={self.booking_id} status={self.status_after}>"
