"""
XperiencePoland reservation notices.

These only ever announce new reservations, so every event is a confirmation.
"""

import logging
import re
from datetime import datetime
from typing import Optional

from ...models.booking import BookingPlatform, BookingStatus, PaymentStatus
from ...models.booking_event import BookingEventType
from ...utils.datetime_utils import localize
from .base import BookingEmailParser, BookingFieldPatch, ParsedBookingEvent, ParserContext
from .text_utils import extract_field, normalize_decimal, normalize_whitespace, parse_count, split_name

logger = logging.getLogger(__name__)

DATE_TIME_FORMATS = [
    "%B %d, %Y %H:%M",
    "%B %d %Y %H:%M",
    "%d/%m/%Y %H:%M",
    "%d.%m.%Y %H:%M",
    "%d-%m-%Y %H:%M",
]
DATE_FORMATS = ["%B %d, %Y", "%B %d %Y", "%d/%m/%Y", "%d.%m.%Y", "%d-%m-%Y"]
SUBJECT_RESERVATION_RE = re.compile(r"\|\s*([A-Z0-9]+)\)")
SUBJECT_SCHEDULE_RE = re.compile(r"(\d{1,2}[./-]\d{1,2}[./-]\d{2,4}).*?(\d{1,2}:\d{2})")
SERVICES_RE = re.compile(r"Basic services\s+(.+?)Total amount of all services", re.IGNORECASE | re.DOTALL)
ADDITIONAL_INFO_RE = re.compile(r"Additional information:\s*(.+)", re.IGNORECASE)

CLIENT_STOP = ["Customer phone number:", "Customer nr phone number:", "Date:"]


def parse_schedule(date_text: Optional[str], time_text: Optional[str], fallback: Optional[str]):
    """Return (naive local datetime, has_time) from the first readable candidate."""
    date_text = normalize_whitespace(re.sub(r"\(.*?\)", "", date_text or ""))
    time_text = normalize_whitespace(time_text)
    candidates = []
    if date_text and time_text:
        candidates.append(f"{date_text} {time_text}")
    if fallback:
        candidates.append(fallback)
    for candidate in candidates:
        for fmt in DATE_TIME_FORMATS:
            try:
                return datetime.strptime(candidate, fmt), True
            except ValueError:
                continue
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(date_text, fmt), False
        except ValueError:
            continue
    return None, False


def service_name(body: str) -> Optional[str]:
    """First line under 'Basic services', without its price."""
    match = SERVICES_RE.search(body)
    if not match:
        return None
    lines = [line.strip() for line in match.group(1).splitlines() if line.strip()]
    if not lines:
        return None
    return re.sub(r"\s+PLN.*$", "", lines[0], flags=re.IGNORECASE).strip() or None


class XperiencePolandBookingParser(BookingEmailParser):
    name = "xperiencepoland"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def can_parse(self, context: ParserContext) -> bool:
        sender = context.from_address or context.headers.get("from", "")
        return bool(re.search(r"xperiencepoland\.com", sender, re.IGNORECASE)
                    or re.search("xperience", context.subject or "", re.IGNORECASE))

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        body = context.text_body or context.raw_text_body or context.snippet or ""
        if not body.strip():
            return None

        reservation = extract_field(body, "Reservation number:", ["Client:"])
        if not reservation:
            from_subject = SUBJECT_RESERVATION_RE.search(context.subject or "")
            reservation = from_subject.group(1) if from_subject else None
        if not reservation:
            return None
        reservation = normalize_whitespace(reservation)

        fields = BookingFieldPatch()
        product = service_name(body)
        if product:
            fields.product_name = product

        first, last = split_name(extract_field(body, "Client:", CLIENT_STOP))
        if first:
            fields.guest_first_name = first
        if last:
            fields.guest_last_name = last
        phone = extract_field(body, "Customer phone number:", ["Date:", "Time:"])
        if phone:
            fields.guest_phone = normalize_whitespace(phone)

        subject_schedule = SUBJECT_SCHEDULE_RE.search(context.subject or "")
        start, has_time = parse_schedule(
            extract_field(body, "Date:", ["Time:", "Number of people:"]),
            extract_field(body, "Time:", ["Number of people:", "All services"]),
            f"{subject_schedule.group(1)} {subject_schedule.group(2)}" if subject_schedule else None,
        )
        if start:
            fields.experience_date = start.date()
            if has_time:
                fields.experience_start_at = localize(start, self.timezone)

        people = parse_count(extract_field(body, "Number of people:", ["All services", "Basic services", "Total amount"]))
        if people is not None:
            fields.party_size_total = people
            fields.party_size_adults = people

        total_text = extract_field(body, "Total amount of all services:", ["Additional information:", "This is our"])
        number = re.search(r"([\d.,]+)", total_text or "")
        amount = normalize_decimal(number.group(1).replace(",", "")) if number else None
        fields.currency = "PLN"
        if amount is not None:
            fields.price_gross = amount
            fields.price_net = amount
            fields.base_amount = amount

        info = ADDITIONAL_INFO_RE.search(body)
        if info and info.group(1).strip():
            fields.notes = info.group(1).strip()

        return ParsedBookingEvent(
            platform=BookingPlatform.XPERIENCEPOLAND.value,
            platform_booking_id=reservation,
            platform_order_id=reservation,
            status=BookingStatus.CONFIRMED.value,
            event_type=BookingEventType.CREATED.value,
            payment_status=PaymentStatus.PAID.value if amount else PaymentStatus.UNKNOWN.value,
            fields=fields,
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
        )
