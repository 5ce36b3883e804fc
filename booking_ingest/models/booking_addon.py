import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Numeric, Boolean, DateTime, ForeignKey, Index, JSON
from sqlalchemy.orm import relationship
from ..database import Base


class BookingAddon(Base):
    """Addon line items, regenerated in full by the event that carries them"""
    __tablename__ = "booking_addons"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    source_event_id = Column(String(36), ForeignKey("booking_events.id", ondelete="CASCADE"), nullable=True)

    platform_addon_id = Column(String(255), nullable=True)
    platform_addon_name = Column(String(255), nullable=True)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    tax_amount = Column(Numeric(12, 2), nullable=True)
    is_included = Column(Boolean, default=False)
    addon_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    booking = relationship("Booking", back_populates="addons")
    source_event = relationship("BookingEvent", viewonly=True)

    __table_args__ = (
        Index("ix_booking_addon_booking", "booking_id", "source_event_id"),
    )

    def __repr__(self):
        return f"<BookingAddon {self.platform_addon_name} x{self.quantity}>"
