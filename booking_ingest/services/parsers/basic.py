"""
Heuristic fallback for booking mail no dedicated parser could read.

Runs last. It only claims a message that names a known platform somewhere
and carries an explicit booking or reservation reference with a digit in
it; everything it extracts is best effort and flagged in the notes.
"""

import logging
import re
from datetime import datetime
from typing import List, Optional, Tuple

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
from .text_utils import split_name

logger = logging.getLogger(__name__)

PLATFORM_HINTS: List[Tuple[str, List[re.Pattern]]] = [
    (BookingPlatform.FAREHARBOR.value, [re.compile(r"fare\s?harbor", re.IGNORECASE)]),
    (BookingPlatform.ECWID.value, [re.compile(r"ecwid", re.IGNORECASE)]),
    (BookingPlatform.VIATOR.value, [re.compile(r"viator", re.IGNORECASE)]),
    (BookingPlatform.GETYOURGUIDE.value, [re.compile(r"get\s?your\s?guide", re.IGNORECASE),
                                          re.compile(r"\bgyg", re.IGNORECASE)]),
    (BookingPlatform.FREETOUR.value, [re.compile(r"free\s?tour", re.IGNORECASE)]),
    (BookingPlatform.AIRBNB.value, [re.compile(r"airbnb", re.IGNORECASE)]),
]

BOOKING_ID_RE = re.compile(
    r"\b(?:booking|reservation)\s*(?:id|number|no\.?|#)?\s*[:#]?\s*((?=[A-Za-z_-]*\d)[A-Za-z0-9_-]{4,})",
    re.IGNORECASE,
)
BOOKING_ID_LIMIT = 190

# (pattern, strptime format) in priority order; day-first wins for slashed dates
DATE_PATTERNS = [
    (re.compile(r"\b\d{4}-\d{2}-\d{2}\b"), "%Y-%m-%d"),
    (re.compile(r"\b\d{2}/\d{2}/\d{4}\b"), "%d/%m/%Y"),
    (re.compile(r"\b\d{2}-\d{2}-\d{4}\b"), "%d-%m-%Y"),
    (re.compile(r"\b[A-Z][a-z]+ \d{1,2}, \d{4}\b"), "%B %d, %Y"),
    (re.compile(r"\b[A-Z][a-z]{2} \d{1,2}, \d{4}\b"), "%b %d, %Y"),
    (re.compile(r"\b\d{1,2} [A-Z][a-z]+ \d{4}\b"), "%d %B %Y"),
    (re.compile(r"\b\d{1,2} [A-Z][a-z]{2} \d{4}\b"), "%d %b %Y"),
]
TIME_RE = re.compile(r"\b(\d{1,2}):(\d{2})\s*(AM|PM|A\.M\.|P\.M\.)?", re.IGNORECASE)
TOTAL_RE = re.compile(r"(?:party|group|total|guests?)\D{0,8}(\d{1,3})")
ADULTS_RE = re.compile(r"(?:adults?|men|women)\D{0,5}(\d{1,3})")
CHILDREN_RE = re.compile(r"(?:child(?:ren)?|kids?)\D{0,5}(\d{1,3})")

HEURISTIC_NOTE = "Parsed via heuristics. Please verify details with the source email."


def detect_platform(context: ParserContext) -> str:
    haystack = " ".join([
        context.from_address or "",
        context.subject or "",
        context.text_body or "",
        context.html_body or "",
        context.headers.get("x-envelope-from", ""),
    ])
    for platform, patterns in PLATFORM_HINTS:
        if any(p.search(haystack) for p in patterns):
            return platform
    return BookingPlatform.UNKNOWN.value


def extract_booking_id(context: ParserContext) -> Optional[str]:
    for source in (context.subject, context.snippet, context.text_body):
        match = BOOKING_ID_RE.search(source or "")
        if match:
            return match.group(1)[:BOOKING_ID_LIMIT]
    return None


def detect_status(text: str) -> str:
    text = text.lower()
    if re.search(r"cancelled|canceled|cancellation|voided", text):
        return BookingStatus.CANCELLED.value
    if re.search(r"amend|modified|updated|changed|rebooked|altered", text):
        return BookingStatus.AMENDED.value
    if re.search(r"no[-\s]?show", text):
        return BookingStatus.NO_SHOW.value
    return BookingStatus.CONFIRMED.value


def detect_start(text: str) -> Tuple[Optional[datetime], bool]:
    """First recognisable date in the text, plus the first clock time if any."""
    day = None
    for pattern, fmt in DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            day = datetime.strptime(match.group(0), fmt)
        except ValueError:
            continue
        break
    if day is None:
        return None, False

    clock = TIME_RE.search(text)
    if not clock:
        return day, False
    hour, minute = int(clock.group(1)), int(clock.group(2))
    meridiem = (clock.group(3) or "").replace(".", "").upper()
    if meridiem == "PM" and hour < 12:
        hour += 12
    elif meridiem == "AM" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return day, False
    return day.replace(hour=hour, minute=minute), True


def sender_name(sender: str) -> Optional[str]:
    name = sender.split("<")[0].strip().strip('"')
    return name or None


class BasicBookingParser(BookingEmailParser):
    name = "basic"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        text_present = bool((context.text_body or "").strip())
        booking_id = extract_booking_id(context)
        platform = detect_platform(context)
        return ParserDiagnostics(
            name=self.name,
            can_parse=text_present and bool(booking_id) and platform != BookingPlatform.UNKNOWN.value,
            checks=[
                DiagnosticCheck("text body present", text_present),
                DiagnosticCheck("booking id detected", bool(booking_id), booking_id),
                DiagnosticCheck("platform hint", platform != BookingPlatform.UNKNOWN.value, platform),
            ],
        )

    def can_parse(self, context: ParserContext) -> bool:
        return self.diagnose(context).can_parse

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        booking_id = extract_booking_id(context)
        if not booking_id:
            return None
        platform = detect_platform(context)
        text = f"{context.subject or ''}\n{context.text_body or ''}"
        status = detect_status(text)

        fields = BookingFieldPatch(notes=HEURISTIC_NOTE)
        start, has_time = detect_start(text)
        if start:
            fields.experience_date = start.date()
            if has_time:
                fields.experience_start_at = localize(start, self.timezone)

        lower = (context.text_body or "").lower()
        for attr, pattern in (
            ("party_size_total", TOTAL_RE),
            ("party_size_adults", ADULTS_RE),
            ("party_size_children", CHILDREN_RE),
        ):
            match = pattern.search(lower)
            if match:
                setattr(fields, attr, int(match.group(1)))

        # the sender is the platform itself when it names one
        sender = context.from_address or context.headers.get("from", "")
        if not any(p.search(sender) for _, patterns in PLATFORM_HINTS for p in patterns):
            first, last = split_name(sender_name(sender))
            if first:
                fields.guest_first_name = first
            if last:
                fields.guest_last_name = last

        event_type = {
            BookingStatus.CANCELLED.value: BookingEventType.CANCELLED.value,
            BookingStatus.AMENDED.value: BookingEventType.AMENDED.value,
        }.get(status, BookingEventType.CREATED.value)

        return ParsedBookingEvent(
            platform=platform,
            platform_booking_id=booking_id,
            status=status,
            event_type=event_type,
            payment_status=PaymentStatus.UNKNOWN.value,
            fields=fields,
            addons=[],
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
            raw_payload={"subject": context.subject, "snippet": context.snippet},
        )
