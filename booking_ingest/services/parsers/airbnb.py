"""
Airbnb host notifications (experiences and stays).

Cancellation notices do not always repeat the reservation code. In that case
the event is emitted without a booking id and the reconciler tries to match
it to an existing booking by guest, party size and time.
"""

import logging
import re
from datetime import datetime, timedelta
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
from .text_utils import (
    currency_from_token,
    decode_html_entities,
    element_text,
    extract_field,
    html_soup,
    normalize_decimal,
    normalize_whitespace,
    parse_count,
    parse_money,
    split_name,
)

logger = logging.getLogger(__name__)

_NAME_CHARS = r"[A-Za-zÀ-ſ' -]"
BOOKING_ID_PATTERNS = [
    re.compile(r"\b(?:reservation|confirmation|booking)\s*(?:code|id|number|#)?\s*[:#]?\s*((?=[A-Z]*\d)[A-Z0-9]{4,})", re.IGNORECASE),
    re.compile(r"\b(?:trip|reservation)\s*id\s*[:#]?\s*((?=[A-Z]*\d)[A-Z0-9]{4,})", re.IGNORECASE),
]
BOOKING_ID_FALLBACK_RE = re.compile(r"#((?=[A-Z]*\d)[A-Z0-9]{5,})", re.IGNORECASE)
SUBJECT_GUEST_RE = re.compile(
    r"^(?:confirmed|canceled|cancelled|updated|alteration|change|request|inquiry)\s*:\s*"
    rf"({_NAME_CHARS}+?)\s+(?:booked|requested|cancelled|canceled|updated|changed|altered)\b",
    re.IGNORECASE,
)
SUBJECT_BOOKED_RE = re.compile(rf"^({_NAME_CHARS}+?)\s+booked your experience\b", re.IGNORECASE)
EXPERIENCE_WINDOW_RE = re.compile(
    r"Date\s*(?:and|&)\s*time\s+([A-Za-z]{3,9},?\s+[A-Za-z]+\s+\d{1,2},\s+\d{4})\s*[·•]?\s*"
    r"(\d{1,2}:\d{2}\s*(?:AM|PM))\s*[-–—]\s*(\d{1,2}:\d{2}\s*(?:AM|PM))(?:\s*([A-Za-z]{2,5})\b)?",
    re.IGNORECASE,
)
TOTAL_WITH_CURRENCY_RE = re.compile(r"Total\s*\(([^)]+)\)\s*([\d.,]+)", re.IGNORECASE)
TOTAL_RE = re.compile(r"Total\s*[:\s]+\s*([\d.,]+)\s*([A-Za-zł$€£]{1,5})", re.IGNORECASE)
HOSTING_URL_RE = re.compile(r"https?://www\.airbnb\.com/hosting/[^\s\"'<>]+", re.IGNORECASE)

TIMEZONE_ALIASES = {"CET": "Europe/Warsaw", "CEST": "Europe/Warsaw", "UTC": "UTC", "GMT": "UTC"}
DATE_FORMATS = ["%b %d, %Y", "%B %d, %Y", "%b %d %Y", "%B %d %Y", "%Y-%m-%d"]
LISTING_STOP = ["Check-in", "Check out", "Check-out", "Checkout", "Guests", "Reservation", "Confirmation", "Total"]
GUEST_STOP = LISTING_STOP + ["Listing", "Phone", "Email"]
STAY_STOP = ["Check-out", "Checkout", "Guests", "Reservation", "Confirmation", "Total", "Listing", "Phone", "Email"]
COUNT_STOP = ["Check-in", "Check out", "Check-out", "Checkout", "Reservation", "Confirmation", "Total", "Listing"]


def strip_weekday(value: str) -> str:
    trimmed = value.strip()
    stripped = re.sub(r"^[A-Za-z]{3,9},\s+", "", trimmed)
    if stripped != trimmed:
        return stripped
    return re.sub(r"^[A-Za-z]{3,9}\s+(?=[A-Za-z]+)", "", trimmed)


def clean_listing_title(value: str) -> str:
    value = re.sub(r"^(?:euid=)?[0-9a-f]{8}(?:-[0-9a-f]{4,})+\s+", "", value.strip(), flags=re.IGNORECASE)
    return re.sub(r"^[0-9]{6,}\s+", "", value).strip()


def parse_date(value: str) -> Optional[datetime]:
    for candidate in dict.fromkeys([value.strip(), strip_weekday(value)]):
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(candidate, fmt)
            except ValueError:
                continue
    return None


def parse_clock(value: str) -> Optional[Tuple[int, int]]:
    compact = normalize_whitespace(re.sub(r"(?i)\s*(am|pm)", r" \1", value)).upper()
    try:
        parsed = datetime.strptime(compact, "%I:%M %p")
    except ValueError:
        return None
    return parsed.hour, parsed.minute


def parse_datetime_value(value: Optional[str]) -> Optional[datetime]:
    """'Fri, Mar 14, 2025 at 3:00 PM' -> naive local datetime (midnight if no time)."""
    if not value:
        return None
    text = re.sub(r"\s+at\s+", " ", value, flags=re.IGNORECASE)
    text = normalize_whitespace(re.sub(r"(?:GMT|UTC)[+-]\d{1,2}", "", text, flags=re.IGNORECASE))
    time_match = re.search(r"(\d{1,2}:\d{2}\s*(?:AM|PM))", text, re.IGNORECASE)
    date_text = text.replace(time_match.group(0), "").strip(" ,") if time_match else text
    day = parse_date(date_text)
    if day is None:
        return None
    clock = parse_clock(time_match.group(1)) if time_match else None
    if clock:
        day = day.replace(hour=clock[0], minute=clock[1])
    return day


def derive_status(subject: str, body: str) -> str:
    subject = subject.lower()
    if "cancelled" in subject or "canceled" in subject:
        return BookingStatus.CANCELLED.value
    if any(word in subject for word in ("alteration", "change", "updated", "modified")):
        return BookingStatus.AMENDED.value
    if "request" in subject or "inquiry" in subject:
        return BookingStatus.PENDING.value
    if "confirmed" in subject or "booked" in subject:
        return BookingStatus.CONFIRMED.value
    if re.search(r"(?:reservation|booking)\s+(?:was|has been)?\s*(?:cancelled|canceled)\b", body, re.IGNORECASE):
        return BookingStatus.CANCELLED.value
    if re.search(r"(?:reservation|booking)\s+(?:was|has been)?\s*(?:changed|updated|modified|altered)\b", body, re.IGNORECASE):
        return BookingStatus.AMENDED.value
    return BookingStatus.CONFIRMED.value


class AirbnbBookingParser(BookingEmailParser):
    name = "airbnb"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def can_parse(self, context: ParserContext) -> bool:
        sender = context.from_address or context.headers.get("from", "")
        return bool(re.search("airbnb", sender, re.IGNORECASE)
                    or re.search("airbnb", context.subject or "", re.IGNORECASE))

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        text = normalize_whitespace(context.text_body or context.raw_text_body or context.snippet)
        booking_id = self._booking_id(text, context.subject)
        window = EXPERIENCE_WINDOW_RE.search(text)
        return ParserDiagnostics(
            name=self.name,
            can_parse=self.can_parse(context),
            checks=[
                DiagnosticCheck("airbnb sender or subject", self.can_parse(context), context.from_address),
                DiagnosticCheck("reservation code", bool(booking_id), booking_id),
                DiagnosticCheck("experience window", bool(window), window.group(0) if window else None),
            ],
        )

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        text = normalize_whitespace(context.text_body or context.raw_text_body or context.snippet)
        if not text:
            return None
        status = derive_status(context.subject or "", text)
        booking_id = self._booking_id(text, context.subject)
        if not booking_id and status != BookingStatus.CANCELLED.value:
            return None

        fields = BookingFieldPatch()
        listing = self._listing_name(text)
        if listing:
            fields.product_name = listing
        link = self._reservation_link(context.html_body, context.text_body)
        if link:
            fields.raw_payload_location = link

        first, last = split_name(self._guest_from_subject(context.subject or "") or self._guest_from_body(text))
        if first:
            fields.guest_first_name = first
        if last:
            fields.guest_last_name = last

        email = (re.search(r"[A-Z0-9._%+-]+@(?:guest\.)?airbnb\.com", text, re.IGNORECASE)
                 or re.search(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", text, re.IGNORECASE))
        if email:
            fields.guest_email = email.group(0).lower()
        phone = self._phone(text)
        if phone:
            fields.guest_phone = phone

        self._apply_schedule(fields, text)
        self._apply_party(fields, text)

        notes = []
        if status == BookingStatus.CANCELLED.value:
            notes.append("Email indicates reservation was cancelled.")
        elif status == BookingStatus.AMENDED.value:
            notes.append("Email indicates reservation was amended.")
        elif status == BookingStatus.PENDING.value:
            notes.append("Email indicates reservation is pending.")

        amount, currency = self._earnings(text)
        if amount is not None:
            fields.price_gross = amount
            fields.base_amount = amount
            fields.price_net = amount
            if currency:
                fields.currency = currency
            notes.append("Airbnb earnings total parsed from host email.")
        if notes:
            fields.notes = " | ".join(notes)

        event_type = {
            BookingStatus.CANCELLED.value: BookingEventType.CANCELLED.value,
            BookingStatus.AMENDED.value: BookingEventType.AMENDED.value,
        }.get(status, BookingEventType.CREATED.value)

        return ParsedBookingEvent(
            platform=BookingPlatform.AIRBNB.value,
            platform_booking_id=booking_id,
            platform_order_id=booking_id,
            status=status,
            event_type=event_type,
            payment_status=PaymentStatus.UNKNOWN.value,
            fields=fields,
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
            raw_payload={"subject": context.subject, "snippet": context.snippet},
        )

    @staticmethod
    def _booking_id(text: str, subject: Optional[str]) -> Optional[str]:
        for source in (text, subject):
            if not source:
                continue
            for pattern in BOOKING_ID_PATTERNS:
                match = pattern.search(source)
                if match:
                    return match.group(1).upper()
            fallback = BOOKING_ID_FALLBACK_RE.search(source)
            if fallback:
                return fallback.group(1).upper()
        return None

    @staticmethod
    def _guest_from_subject(subject: str) -> Optional[str]:
        match = SUBJECT_GUEST_RE.search(subject) or SUBJECT_BOOKED_RE.search(subject)
        return match.group(1).strip() if match else None

    @staticmethod
    def _guest_from_body(text: str) -> Optional[str]:
        for label in ("Guest:", "Guest name:", "Name:"):
            value = extract_field(text, label, GUEST_STOP)
            if value:
                return value
        for pattern in (
            rf"(?:new reservation|reservation request|request to book)\s+from\s+({_NAME_CHARS}+)",
            rf"({_NAME_CHARS}+)\s+is\s+arriving",
            rf"({_NAME_CHARS}+)\s+booked your experience\b",
        ):
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                return match.group(1).strip()
        return None

    @staticmethod
    def _listing_name(text: str) -> Optional[str]:
        for label in ("Listing:", "Listing name:", "Home:", "Property:", "Your place:", "Accommodation:", "Experience:"):
            value = extract_field(text, label, LISTING_STOP)
            if value:
                return clean_listing_title(value)
        match = (
            re.search(r"(?:^|[^A-Za-z0-9])([A-Za-z][A-Za-z0-9 '&-]{5,})\s+https?://www\.airbnb\.com/experiences/\d+",
                      text, re.IGNORECASE)
            or re.search(r"(?:^|[^A-Za-z0-9])([A-Za-z][A-Za-z0-9 '&-]{5,})\s+Hosted by", text, re.IGNORECASE)
        )
        return clean_listing_title(match.group(1)) if match else None

    @staticmethod
    def _reservation_link(html_body: Optional[str], text_body: Optional[str]) -> Optional[str]:
        for anchor in html_soup(html_body).find_all("a", href=True):
            if element_text(anchor).lower() == "view reservation":
                return anchor["href"].strip()
        candidates = HOSTING_URL_RE.findall(html_body or "") + HOSTING_URL_RE.findall(text_body or "")
        return decode_html_entities(candidates[0]).strip() if candidates else None

    @staticmethod
    def _phone(text: str) -> Optional[str]:
        match = re.search(r"(?:phone|contact)\s*[:\-]?\s*([+0-9()\[\]\s.-]{6,})", text, re.IGNORECASE)
        if not match:
            return None
        phone = normalize_whitespace(re.sub(r"[().-]", " ", match.group(1)))
        if phone.startswith("00"):
            phone = "+" + phone[2:]
        return phone or None

    def _apply_schedule(self, fields: BookingFieldPatch, text: str) -> None:
        window = EXPERIENCE_WINDOW_RE.search(text)
        if window:
            day = parse_date(window.group(1))
            start_clock = parse_clock(window.group(2))
            end_clock = parse_clock(window.group(3))
            tz_name = TIMEZONE_ALIASES.get((window.group(4) or "").upper(), self.timezone)
            if day and start_clock:
                start = day.replace(hour=start_clock[0], minute=start_clock[1])
                fields.experience_date = start.date()
                fields.experience_start_at = localize(start, tz_name)
                if end_clock:
                    end = day.replace(hour=end_clock[0], minute=end_clock[1])
                    if end < start:
                        end += timedelta(days=1)
                    fields.experience_end_at = localize(end, tz_name)
                return

        check_in = parse_datetime_value(
            extract_field(text, "Check-in:", STAY_STOP)
            or extract_field(text, "Check in:", STAY_STOP)
            or extract_field(text, "Check-in date:", STAY_STOP)
        )
        check_out = parse_datetime_value(
            extract_field(text, "Check-out:", STAY_STOP)
            or extract_field(text, "Check out:", STAY_STOP)
            or extract_field(text, "Checkout:", STAY_STOP)
        )
        if check_in:
            fields.experience_date = check_in.date()
            fields.experience_start_at = localize(check_in, self.timezone)
        if check_out:
            fields.experience_end_at = localize(check_out, self.timezone)
            if check_in is None:
                fields.experience_date = check_out.date()

    @staticmethod
    def _apply_party(fields: BookingFieldPatch, text: str) -> None:
        adults_inline = re.search(r"\bGuests?\s+(\d{1,3})\s+adults?\b", text, re.IGNORECASE)
        inline = adults_inline.group(1) if adults_inline else None
        guests_count = re.search(r"\b(\d{1,3})\s+guests?\b", text, re.IGNORECASE)
        total = (
            parse_count(extract_field(text, "Guests:", COUNT_STOP) or extract_field(text, "Guest count:", COUNT_STOP))
            or parse_count(inline)
            or parse_count(guests_count.group(1) if guests_count else None)
        )
        adults = parse_count(extract_field(text, "Adults:", COUNT_STOP)) or parse_count(inline)
        children = parse_count(extract_field(text, "Children:", COUNT_STOP))

        if adults is not None:
            fields.party_size_adults = adults
        if children is not None:
            fields.party_size_children = children
        if total is not None:
            fields.party_size_total = total
            if adults is None:
                fields.party_size_adults = total
        elif adults is not None or children is not None:
            fields.party_size_total = (adults or 0) + (children or 0)

    @staticmethod
    def _earnings(text: str):
        match = TOTAL_WITH_CURRENCY_RE.search(text)
        if match:
            return normalize_decimal(match.group(2)), currency_from_token(match.group(1).strip())
        match = TOTAL_RE.search(text)
        if match:
            amount, currency = parse_money(f"{match.group(2)} {match.group(1)}")
            return amount, currency
        return None, None
