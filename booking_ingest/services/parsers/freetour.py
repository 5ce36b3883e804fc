import logging
import re
from datetime import datetime
from typing import Optional

from ...models.booking import BookingPlatform, BookingStatus, PaymentStatus
from ...models.booking_event import BookingEventType
from ...utils.datetime_utils import localize
from .base import BookingEmailParser, BookingFieldPatch, ParsedBookingEvent, ParserContext
from .text_utils import (
    decode_html_entities,
    extract_field,
    normalize_whitespace,
    parse_count,
    parse_money,
    split_name,
)

logger = logging.getLogger(__name__)

PRODUCT_ANCHORED_RE = re.compile(r"Booking ID:[^A-Za-z0-9]+\S+\s+([A-Za-z0-9 .,'-]+?)\s+Tour Reservation", re.IGNORECASE)
PRODUCT_RE = re.compile(r"([A-Za-z0-9 .,'-]+?)\s+Tour Reservation", re.IGNORECASE)
TOUR_DATE_FORMATS = ["%I:%M %p %B %d %Y", "%I:%M %p %b %d %Y"]
CANCELLED_RE = re.compile(r"\b(?:canceled|cancelled|cancellation)\b", re.IGNORECASE)
AMENDED_RE = re.compile(r"\b(?:amended|changed|updated|modified|rescheduled)\b", re.IGNORECASE)


def parse_tour_date(value: Optional[str]) -> Optional[datetime]:
    """'8:00 PM March 14, 2025' -> naive local datetime"""
    if not value:
        return None
    compact = normalize_whitespace(value.replace(",", " ")).upper()
    for fmt in TOUR_DATE_FORMATS:
        try:
            return datetime.strptime(compact, fmt)
        except ValueError:
            continue
    return None


class FreeTourBookingParser(BookingEmailParser):
    name = "freetour"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def can_parse(self, context: ParserContext) -> bool:
        sender = context.from_address or context.headers.get("from", "")
        return bool(re.search("freetour", sender, re.IGNORECASE)
                    or re.search("freetour", context.subject or "", re.IGNORECASE))

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        text = normalize_whitespace(decode_html_entities(context.text_body or context.raw_text_body or context.snippet))
        if not text:
            return None
        booking_id = extract_field(text, "Booking Reference Number:", ["Booking Total Cost:"])
        if not booking_id:
            return None

        fields = BookingFieldPatch()
        product = PRODUCT_ANCHORED_RE.search(text) or PRODUCT_RE.search(text)
        if product:
            fields.product_name = product.group(1).strip()

        tour_date = parse_tour_date(extract_field(text, "Date of the Tour:", ["Language:"]))
        if tour_date:
            fields.experience_date = tour_date.date()
            fields.experience_start_at = localize(tour_date, self.timezone)

        first, last = split_name(extract_field(text, "Booking Name:", ["Booking E-mail:"]))
        if first:
            fields.guest_first_name = first
        if last:
            fields.guest_last_name = last
        email = extract_field(text, "Booking E-mail:", ["Booking phone:"])
        if email:
            fields.guest_email = email.lower()
        phone = extract_field(text, "Booking phone:", ["Booking Reference Number:"])
        if phone:
            fields.guest_phone = phone

        adults = parse_count(extract_field(text, "Adults:", ["Booking Name:"]))
        if adults is not None:
            fields.party_size_total = adults
            fields.party_size_adults = adults

        total_cost = extract_field(text, "Booking Total Cost:", ["Paid:"])
        paid = extract_field(text, "Paid:", ["Balance due:"])
        balance = extract_field(text, "Balance due:", ["If you are"])
        amount, currency = parse_money(paid)
        total_amount, total_currency = parse_money(total_cost)
        amount = amount if amount is not None else total_amount
        currency = currency or total_currency
        if amount is not None:
            fields.price_gross = amount
            fields.base_amount = amount
            fields.price_net = amount
        if currency:
            fields.currency = currency

        balance_amount, _ = parse_money(balance)
        settled = amount is not None or (balance_amount is not None and not balance_amount)

        status = BookingStatus.CONFIRMED.value
        haystack = f"{context.subject or ''}\n{text}"
        if CANCELLED_RE.search(haystack):
            status = BookingStatus.CANCELLED.value
        elif AMENDED_RE.search(haystack):
            status = BookingStatus.AMENDED.value

        notes = []
        language = extract_field(text, "Language:", ["Adults:"])
        if language:
            notes.append(f"Language: {language}")
        if status == BookingStatus.CANCELLED.value:
            notes.append("Email indicates booking was cancelled.")
        elif status == BookingStatus.AMENDED.value:
            notes.append("Email indicates booking was amended.")
        if notes:
            fields.notes = " | ".join(notes)

        event_type = {
            BookingStatus.CANCELLED.value: BookingEventType.CANCELLED.value,
            BookingStatus.AMENDED.value: BookingEventType.AMENDED.value,
        }.get(status, BookingEventType.CREATED.value)

        return ParsedBookingEvent(
            platform=BookingPlatform.FREETOUR.value,
            platform_booking_id=booking_id,
            platform_order_id=booking_id,
            status=status,
            event_type=event_type,
            payment_status=PaymentStatus.PAID.value if settled else PaymentStatus.UNKNOWN.value,
            fields=fields,
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
        )
