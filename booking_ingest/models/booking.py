import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Date, Numeric, Text, ForeignKey, DateTime, Index, Integer, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    AMENDED = "amended"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    REBOOKED = "rebooked"


class PaymentStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    UNPAID = "unpaid"
    DEPOSIT = "deposit"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"


class BookingPlatform(str, enum.Enum):
    """The platform a booking email originates from"""
    FAREHARBOR = "fareharbor"
    ECWID = "ecwid"
    VIATOR = "viator"
    GETYOURGUIDE = "getyourguide"
    FREETOUR = "freetour"
    XPERIENCEPOLAND = "xperiencepoland"
    AIRBNB = "airbnb"
    MANUAL = "manual"
    UNKNOWN = "unknown"


class Booking(Base):
    """
    Canonical booking aggregate.

    Identified by (platform, platform_booking_id). Mutated by every reconciled
    BookingEvent; deleted only by a timeline rebuild or as a replay orphan.
    """
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Natural key
    platform = Column(String(50), nullable=False)
    platform_booking_id = Column(String(255), nullable=False)
    platform_order_id = Column(String(255), nullable=True)

    # Catalog references
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="SET NULL"), nullable=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    product_name = Column(String(255), nullable=True)
    product_variant = Column(String(255), nullable=True)

    status = Column(String(30), default=BookingStatus.PENDING.value, nullable=False)
    payment_status = Column(String(30), default=PaymentStatus.UNKNOWN.value, nullable=False)

    # Guest
    guest_first_name = Column(String(255), nullable=True)
    guest_last_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(64), nullable=True)
    hotel_name = Column(String(255), nullable=True)
    pickup_location = Column(String(500), nullable=True)

    # Party
    party_size_total = Column(Integer, nullable=True)
    party_size_adults = Column(Integer, nullable=True)
    party_size_children = Column(Integer, nullable=True)

    # Experience
    experience_date = Column(Date, nullable=True)
    experience_start_at = Column(DateTime, nullable=True)
    experience_end_at = Column(DateTime, nullable=True)

    # Money (fixed-point)
    currency = Column(String(3), nullable=True)
    base_amount = Column(Numeric(12, 2), nullable=True)
    addons_amount = Column(Numeric(12, 2), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    price_gross = Column(Numeric(12, 2), nullable=True)
    price_net = Column(Numeric(12, 2), nullable=True)
    commission_amount = Column(Numeric(12, 2), nullable=True)
    commission_rate = Column(Numeric(5, 2), nullable=True)
    payment_method = Column(String(255), nullable=True)

    addons_snapshot = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    raw_payload_location = Column(String(1000), nullable=True)

    # Attribution (filled by downstream sync)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)

    # Timeline
    status_changed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    last_email_message_id = Column(String(255), nullable=True)
    source_received_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    events = relationship(
        "BookingEvent",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingEvent.occurred_at",
    )
    addons = relationship(
        "BookingAddon",
        back_populates="booking",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("platform", "platform_booking_id", name="uq_booking_platform_booking_id"),
        Index("ix_booking_platform_status", "platform", "status"),
        Index("ix_booking_experience_date", "platform", "experience_date"),
    )

    @property
    def guest_full_name(self) -> str:
        return " ".join(p for p in (self.guest_first_name, self.guest_last_name) if p)

    def __repr__(self):
        return f"<Booking {self.platform}#{self.platform_booking_id} status={self.status}>"
