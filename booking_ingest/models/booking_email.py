"""
Booking Email Model

Stores one raw inbox message per external message id.
The record is mutated in place on every (re)processing attempt and is never
deleted: a timeline rebuild only resets its status by reprocessing it.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, JSON
from ..database import Base
import enum


class IngestionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"  # No parser matched
    FAILED = "failed"


class BookingEmail(Base):
    __tablename__ = "booking_emails"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Mailbox identifiers
    message_id = Column(String(255), nullable=False, unique=True)
    thread_id = Column(String(255), nullable=True)
    history_id = Column(String(255), nullable=True)

    from_address = Column(String(500), nullable=True)
    to_addresses = Column(Text, nullable=True)
    cc_addresses = Column(Text, nullable=True)
    subject = Column(String(1000), nullable=True)
    snippet = Column(Text, nullable=True)

    received_at = Column(DateTime, nullable=True)
    internal_date = Column(DateTime, nullable=True)

    label_ids = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=True)  # lower-cased header names
    payload_size_bytes = Column(Integer, nullable=True)

    text_body = Column(Text, nullable=True)
    html_body = Column(Text, nullable=True)

    # Processing status
    ingestion_status = Column(String(20), default=IngestionStatus.PENDING.value, nullable=False)
    failure_reason = Column(Text, nullable=True)
    last_processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_booking_email_status", "ingestion_status", "updated_at"),
        Index("ix_booking_email_received", "received_at"),
    )

    @property
    def sort_key(self):
        """Chronological replay order"""
        return (self.received_at or self.internal_date or datetime.min, self.message_id)

    def __repr__(self):
        return f"<BookingEmail {self.message_id} status={self.ingestion_status}>"
