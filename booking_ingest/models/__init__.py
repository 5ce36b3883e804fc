# Models package
from .catalog import Product, Channel
from .booking import Booking, BookingStatus, PaymentStatus, BookingPlatform
from .booking_email import BookingEmail, IngestionStatus
from .booking_event import BookingEvent, BookingEventType
from .booking_addon import BookingAddon
from .product_alias import ProductAlias, AliasMatchType, AliasSource

__all__ = [
    "Product", "Channel",
    "Booking", "BookingStatus", "PaymentStatus", "BookingPlatform",
    "BookingEmail", "IngestionStatus",
    "BookingEvent", "BookingEventType",
    "BookingAddon",
    "ProductAlias", "AliasMatchType", "AliasSource",
]
