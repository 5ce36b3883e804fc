"""
Viator supplier notifications.

The body is a flat list of "Label: value" pairs. The start time is not a
field of its own; it is carried by the tour grade (e.g. "TG2~21:00").
"""

import logging
import re
from datetime import datetime
from typing import Optional, Tuple

from ...models.booking import BookingPlatform, BookingStatus, PaymentStatus
from ...models.booking_event import BookingEventType
from ...utils.datetime_utils import localize
from .base import (
    BookingEmailParser,
    BookingFieldPatch,
    DiagnosticCheck,
    ParsedBookingEvent,
    ParserContext,
    ParserDiagnostics,
)
from .ecwid import EXTRAS_KEYS
from .text_utils import extract_field, normalize_decimal, normalize_whitespace, split_name

logger = logging.getLogger(__name__)

DATE_FORMATS = ["%a, %b %d, %Y", "%b %d, %Y", "%B %d, %Y"]
REFERENCE_LABEL_RE = re.compile(r"booking reference:", re.IGNORECASE)
REFERENCE_RE = re.compile(r"#?([A-Z0-9-]+)")
MONEY_RE = re.compile(r"([A-Z]{3})\s*([\d.,]+)", re.IGNORECASE)
TIME_RE = re.compile(r"(\d{1,2}:\d{2})\s*(a\.m\.|p\.m\.|am|pm)?", re.IGNORECASE)
CANCELLED_RE = re.compile(r"\b(?:canceled|cancelled|cancellation)\b", re.IGNORECASE)
AMENDED_RE = re.compile(r"\b(?:amended|amendment|changed|modified|updated|rebooked)\b", re.IGNORECASE)

COCKTAIL_GRADE_CODES = {"TG2", "TG2~21:00", "TG2-21:00", "TG2=21:00"}
COCKTAIL_KEYWORDS = [
    re.compile(r"cocktail", re.IGNORECASE),
    re.compile(r"open bar", re.IGNORECASE),
    re.compile(r"vip entry", re.IGNORECASE),
    re.compile(r"welcome shots?", re.IGNORECASE),
]
LEAD_TRAVELER_NOISE = [
    "Optional:", "Please visit", "Manage Bookings", "Have questions", "If you need help", "Management Center",
]

LEAD_STOP = [
    "Traveler Names:", "Travelers:", "Product Code:", "Tour Grade:", "Tour Grade Code:",
    "Tour Grade Description:", "Tour Language:", "Location:", "Special Requirements:",
]
LOCATION_STOP = [
    "Net Rate:", "Travel Date:", "Lead Traveler Name:", "Meeting Point:", "Special Requirements:",
    "Phone:", "Optional:", "Have questions",
]


def parse_travel_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    value = normalize_whitespace(value)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def parse_time_hint(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """'TG2~21:00' -> (21, 0); '9:30 p.m.' -> (21, 30)"""
    match = TIME_RE.search(value or "")
    if not match:
        return None
    meridiem = (match.group(2) or "").replace(".", "").upper()
    try:
        if meridiem:
            parsed = datetime.strptime(f"{match.group(1)} {meridiem}", "%I:%M %p")
        else:
            parsed = datetime.strptime(match.group(1), "%H:%M")
    except ValueError:
        return None
    return parsed.hour, parsed.minute


def sanitize_lead_traveler(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    for marker in LEAD_TRAVELER_NOISE:
        idx = value.lower().find(marker.lower())
        if idx != -1:
            value = value[:idx]
    return value.strip() or None


def parse_phone(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = re.sub(r"Send the customer a message\.?", "", value, flags=re.IGNORECASE).strip()
    cleaned = re.sub(r"^[A-Za-z()\s]+", "", cleaned).strip()
    if not cleaned:
        return None
    match = re.search(r"(\+?\d[\d\s\-()]+)", cleaned)
    if not match:
        return cleaned
    return normalize_whitespace(re.sub(r"[()\s-]+", " ", match.group(1)))


def requires_cocktail_addon(grade: Optional[str], grade_code: Optional[str], description: Optional[str]) -> bool:
    if grade_code and grade_code.upper() in COCKTAIL_GRADE_CODES:
        return True
    haystacks = [v for v in (grade, grade_code, description) if v]
    return any(pattern.search(value) for value in haystacks for pattern in COCKTAIL_KEYWORDS)


def derive_status(subject: str, text: str) -> str:
    haystack = f"{subject}\n{text}"
    if CANCELLED_RE.search(haystack):
        return BookingStatus.CANCELLED.value
    if AMENDED_RE.search(haystack):
        return BookingStatus.AMENDED.value
    return BookingStatus.CONFIRMED.value


class ViatorBookingParser(BookingEmailParser):
    name = "viator"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    @staticmethod
    def _from_viator(context: ParserContext) -> bool:
        haystack = f"{context.from_address or context.headers.get('from', '')} {context.subject or ''}"
        return "viator" in haystack.lower()

    @staticmethod
    def _text(context: ParserContext) -> str:
        text = context.text_body or context.raw_text_body or context.snippet or ""
        return normalize_whitespace(re.sub(r"[\u00a0\u202f\u2007]", " ", text))

    def can_parse(self, context: ParserContext) -> bool:
        return self._from_viator(context) and bool(REFERENCE_LABEL_RE.search(self._text(context)))

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        sender = self._from_viator(context)
        has_label = bool(REFERENCE_LABEL_RE.search(self._text(context)))
        return ParserDiagnostics(
            name=self.name,
            can_parse=sender and has_label,
            checks=[
                DiagnosticCheck("viator sender or subject", sender, context.from_address),
                DiagnosticCheck("'Booking Reference:' label", has_label),
            ],
        )

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        text = self._text(context)
        if not text:
            return None

        reference = REFERENCE_RE.search(extract_field(text, "Booking Reference:", ["Tour Name:"]) or "")
        if not reference:
            return None
        booking_id = reference.group(1)

        tour_name = extract_field(text, "Tour Name:", ["Travel Date:"])
        travel_date = extract_field(text, "Travel Date:", ["Lead Traveler Name:"])
        lead_traveler = sanitize_lead_traveler(extract_field(text, "Lead Traveler Name:", LEAD_STOP))
        traveler_names = extract_field(text, "Traveler Names:", ["Travelers:"])
        travelers = extract_field(text, "Travelers:", ["Product Code:"])
        product_code = extract_field(text, "Product Code:", ["Tour Grade:"])
        grade = extract_field(text, "Tour Grade:", ["Tour Grade Code:"])
        grade_code = extract_field(text, "Tour Grade Code:", ["Tour Grade Description:"])
        grade_description = extract_field(text, "Tour Grade Description:", ["Tour Language:"])
        language = extract_field(text, "Tour Language:", ["Location:"])
        location = extract_field(text, "Location:", LOCATION_STOP)
        net_rate = extract_field(text, "Net Rate:", ["Meeting Point:", "Special Requirements:", "Phone:", "Optional:"])
        meeting_point = extract_field(text, "Meeting Point:", ["Special Requirements:", "Phone:", "Optional:"])
        special = extract_field(text, "Special Requirements:", ["Phone:", "Optional:", "Have questions"])
        phone = parse_phone(extract_field(
            text, "Phone:", ["Optional:", "Have questions", "Management Center", "Send the customer a message."],
        ))

        fields = BookingFieldPatch()
        if tour_name:
            fields.product_name = tour_name
        if grade or grade_code:
            fields.product_variant = grade or grade_code
        first, last = split_name(lead_traveler)
        if first:
            fields.guest_first_name = first
        if last:
            fields.guest_last_name = last
        if phone:
            fields.guest_phone = phone
        if meeting_point or location:
            fields.pickup_location = meeting_point or location

        count = re.search(r"(\d+)", travelers or "")
        party = int(count.group(1)) if count else None
        if party is not None:
            fields.party_size_total = party
            fields.party_size_adults = party

        day = parse_travel_date(travel_date)
        if day:
            fields.experience_date = day.date()
            clock = parse_time_hint(grade or grade_code)
            if clock:
                fields.experience_start_at = localize(day.replace(hour=clock[0], minute=clock[1]), self.timezone)

        money = MONEY_RE.search(net_rate or "")
        amount = normalize_decimal(money.group(2).replace(",", "")) if money else None
        if amount is not None:
            fields.currency = money.group(1).upper()
            fields.price_gross = amount
            fields.price_net = amount
            fields.base_amount = amount

        if party and requires_cocktail_addon(grade, grade_code, grade_description):
            extras = {key: 0 for key in EXTRAS_KEYS}
            extras["cocktails"] = party
            fields.addons_snapshot = {"extras": extras}

        status = derive_status(context.subject or "", text)
        notes = []
        if traveler_names:
            notes.append(f"Traveler names: {traveler_names}")
        if language:
            notes.append(f"Tour language: {language}")
        if location and meeting_point:
            notes.append(f"Location: {location}")
        if grade_description:
            notes.append(f"Grade description: {grade_description}")
        if product_code:
            notes.append(f"Product code: {product_code}")
        if grade_code:
            notes.append(f"Grade code: {grade_code}")
        if special:
            notes.append(f"Special requirements: {special}")
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
            platform=BookingPlatform.VIATOR.value,
            platform_booking_id=booking_id,
            platform_order_id=booking_id,
            status=status,
            event_type=event_type,
            payment_status=PaymentStatus.PAID.value if amount is not None else PaymentStatus.UNKNOWN.value,
            fields=fields,
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
            raw_payload={"subject": context.subject, "snippet": context.snippet},
        )
