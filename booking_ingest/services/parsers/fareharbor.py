"""
FareHarbor booking notifications.

Handles confirmations, amendments, cancellations and rebookings. A rebooking
("Old"/"New" comparison) is reported as a `rebooked` event on the old booking
number plus a spawned `amended` event that creates the new one.
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

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
    UNSET,
)
from .text_utils import element_text, html_soup, normalize_decimal, normalize_whitespace, split_name

logger = logging.getLogger(__name__)

_CURRENCY = r"(PLN|USD|EUR|GBP)?"
BOOKING_NUMBER_RE = re.compile(r"Booking\s*#(\d+)", re.IGNORECASE)
PRODUCT_LINE_RE = re.compile(
    r"Booking\s*#\d+\s+(.+?)\s+(?:Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)",
    re.IGNORECASE,
)
PARTY_SEGMENT_RE = re.compile(
    r"(\d+)\s+(Man|Men|Woman|Women|Guest|Guests|People|Persons|Adult|Adults|Child|Children|Kid|Kids)\b",
    re.IGNORECASE,
)
EMAIL_RE = re.compile(r"Email:\s*([^\s]+@[^\s]+)", re.IGNORECASE)
PHONE_RE = re.compile(r"Phone:\s*([+()\d\s-]{6,})", re.IGNORECASE)
NAME_RE = re.compile(r"Name:\s*([^\n]+?)(?:\s+Phone:|\s+Email:|$)", re.IGNORECASE | re.MULTILINE)
BOOKING_TOTAL_RE = re.compile(r"Booking\s+total\s+" + _CURRENCY + r"\s*([\d.,]+)", re.IGNORECASE)
TAXES_RE = re.compile(r"Taxes\s+" + _CURRENCY + r"\s*([\d.,]+)", re.IGNORECASE)
DUE_RE = re.compile(r"Due:\s*" + _CURRENCY + r"\s*([\d.,]+)", re.IGNORECASE)
PAYMENT_BULLET_RE = re.compile(
    r"[•]\s*" + _CURRENCY + r"\s*([\d.,]+)\s*(?:[-–]\s*([^(]+?)\s*)?\(([^)]+)\)",
    re.IGNORECASE,
)
PAYMENT_RE = re.compile(
    r"[•*]?\s*" + _CURRENCY + r"\s*([\d.,]+)\s*(?:[-–]\s*)?([^(]+?)\s*\(([^)]+)\)",
    re.IGNORECASE,
)
SCHEDULE_RE = re.compile(
    r"([A-Za-z]+,\s+\d{1,2}\s+[A-Za-z]+\s+\d{4})\s*@\s*([\d:]+\s*(?:am|pm))",
    re.IGNORECASE,
)
DETAIL_LINE_RE = re.compile(r"([A-Za-z0-9 ?'()]+?)\s+(PLN|USD|EUR|GBP)\s*([\d.,]+)")
NEW_ID_RE = re.compile(r"New\s+#?(\d{5,})", re.IGNORECASE)
NEW_ID_URL_RE = re.compile(r"New\s+https?://[^\s#/]+/[^\s#]+#?(\d{5,})", re.IGNORECASE)
COMPARISON_HEADERS = ("old", "new")

ADULT_TERMS = {"man", "men", "woman", "women", "guest", "guests", "people", "persons", "adult", "adults"}
CHILD_TERMS = {"child", "children", "kid", "kids"}

QUESTION_LINE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"^How did you hear about us\?",
        r"^Where are you from\?",
        r"^How many photos do you want\?",
        r"^How many T-shirts would you like to get\?",
        r"^Bring the PubCrawl",
        r"^Elevate Your Pub Crawl",
        r"^How many people would like extra cocktails\?",
        r"^Instant Photos",
    )
]

Schedule = Tuple[Optional[datetime], Optional[datetime]]


def derive_status(subject: str, body: str) -> str:
    """Keyword precedence: cancelled > amended > no_show > confirmed."""
    haystack = f"{subject}\n{body}".lower()
    if re.search(r"cancelled|canceled|cancellation", haystack):
        return BookingStatus.CANCELLED.value
    if re.search(r"amended|modified|updated|changed|rebooked", haystack):
        return BookingStatus.AMENDED.value
    if re.search(r"no[-\s]?show", haystack):
        return BookingStatus.NO_SHOW.value
    return BookingStatus.CONFIRMED.value


def event_type_for(status: str) -> str:
    if status == BookingStatus.CANCELLED.value:
        return BookingEventType.CANCELLED.value
    if status in (BookingStatus.AMENDED.value, BookingStatus.REBOOKED.value):
        return BookingEventType.AMENDED.value
    return BookingEventType.CREATED.value


def extract_party_counts(text: str) -> Dict[str, Optional[int]]:
    adults = 0
    children = 0
    for qty, label in PARTY_SEGMENT_RE.findall(text):
        label = label.lower()
        if label in ADULT_TERMS:
            adults += int(qty)
        elif label in CHILD_TERMS:
            children += int(qty)
    total = adults + children
    return {
        "party_size_total": total or None,
        "party_size_adults": adults or None,
        "party_size_children": children or None,
    }


def parse_wall_clock(date_token: str, time_token: str) -> Optional[datetime]:
    """'Friday, 14 March 2025' + '8:00 pm' -> naive local datetime."""
    date_token = normalize_whitespace(date_token.replace("\u00a0", " "))
    time_token = normalize_whitespace(time_token.replace("\u00a0", " ")).replace(" ", "")
    try:
        day = datetime.strptime(date_token.split(",", 1)[-1].strip(), "%d %B %Y")
        clock = datetime.strptime(time_token.lower(), "%I:%M%p")
    except ValueError:
        return None
    return day.replace(hour=clock.hour, minute=clock.minute)


def _split_range(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not value:
        return None, None
    parts = [p.strip() for p in re.split(r"\s*-\s*", value) if p.strip()]
    if not parts:
        return None, None
    if len(parts) == 1:
        return parts[0], parts[0]
    return parts[0], parts[1]


def _slice_section(text: str, start: str, end: Optional[str] = None) -> Optional[str]:
    lower = text.lower()
    idx = lower.find(start.lower())
    if idx == -1:
        return None
    section = text[idx + len(start):]
    if end:
        end_idx = section.lower().find(end.lower())
        if end_idx != -1:
            section = section[:end_idx]
    return section.strip()


def extract_comparison_rows(html_body: Optional[str]) -> Optional[Dict[str, Dict[str, str]]]:
    """
    Rows of the rebook email's Old/New table keyed by lower-cased label:
    {"id": {"old": "#100001", "new": "#100077"}, ...}
    """
    if not html_body:
        return None
    soup = html_soup(html_body)
    for table in soup.find_all("table"):
        headers = [element_text(th).lower() for th in table.find_all("th")]
        if not all(h in headers for h in COMPARISON_HEADERS):
            continue
        rows = {}
        for tr in table.find_all("tr"):
            cells = tr.find_all("td", recursive=False)
            if len(cells) < 3:
                continue
            key = element_text(cells[0]).rstrip(":").lower()
            if key:
                rows[key] = {"old": element_text(cells[1]), "new": element_text(cells[2])}
        if rows:
            return rows
    return None


class FareHarborBookingParser(BookingEmailParser):
    name = "fareharbor"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def can_parse(self, context: ParserContext) -> bool:
        sender = context.from_address or context.headers.get("from", "")
        return bool(re.search("fareharbor", sender, re.IGNORECASE)
                    or re.search("fareharbor", context.subject or "", re.IGNORECASE))

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        text = self._text(context)
        booking = BOOKING_NUMBER_RE.search(text)
        schedule = SCHEDULE_RE.search(f"{context.subject}\n{text}")
        return ParserDiagnostics(
            name=self.name,
            can_parse=self.can_parse(context),
            checks=[
                DiagnosticCheck("fareharbor sender or subject", self.can_parse(context), context.from_address),
                DiagnosticCheck("booking number", bool(booking), booking.group(0) if booking else None),
                DiagnosticCheck("schedule", bool(schedule), schedule.group(0) if schedule else None),
            ],
        )

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        text = self._text(context)
        if not text:
            return None
        booking_match = BOOKING_NUMBER_RE.search(text)
        if not booking_match:
            return None
        booking_number = booking_match.group(1)

        fields = self._build_fields(text, context.subject or "")
        product = PRODUCT_LINE_RE.search(text)
        if product:
            fields.product_name = product.group(1).strip()

        payment_status = self._apply_money(fields, text)

        detail_lines = self._detail_lines(text)
        questionnaire = self._questionnaire(text)
        if detail_lines or questionnaire:
            fields.addons_snapshot = {"detail_lines": detail_lines, "questionnaire": questionnaire}

        spawn_fields = fields.copy()
        status = derive_status(context.subject or "", text)
        rebook = self._rebook_details(context) if status == BookingStatus.AMENDED.value else None
        new_id = None
        if status == BookingStatus.AMENDED.value:
            new_id = (rebook or {}).get("booking_id") or self._rebooked_new_id(text)
        if new_id:
            status = BookingStatus.REBOOKED.value
            fields.experience_date = UNSET
            fields.experience_start_at = UNSET
            fields.experience_end_at = UNSET

        notes = [questionnaire] if questionnaire else []
        if status == BookingStatus.CANCELLED.value:
            notes.append("Parsed from FareHarbor cancellation email.")
        elif status == BookingStatus.AMENDED.value:
            notes.append("Parsed from FareHarbor amendment email.")
        elif status == BookingStatus.REBOOKED.value:
            notes.append("Parsed from FareHarbor rebooking email. Original booking moved to a new slot.")
            notes.append(f"New booking id: #{new_id}.")
        else:
            notes.append("Parsed from FareHarbor confirmation email.")

        occurred_at = context.occurred_at
        event = ParsedBookingEvent(
            platform=BookingPlatform.FAREHARBOR.value,
            platform_booking_id=booking_number,
            platform_order_id=booking_number,
            status=status,
            event_type=event_type_for(status),
            payment_status=payment_status,
            fields=fields,
            notes=" ".join(notes),
            occurred_at=occurred_at,
            source_received_at=occurred_at,
        )
        if new_id:
            event.spawned_events.append(ParsedBookingEvent(
                platform=BookingPlatform.FAREHARBOR.value,
                platform_booking_id=new_id,
                platform_order_id=new_id,
                status=BookingStatus.AMENDED.value,
                event_type=BookingEventType.AMENDED.value,
                payment_status=payment_status,
                fields=self._rebook_fields(spawn_fields, rebook),
                notes=f"Generated from FareHarbor rebooking of #{booking_number}.",
                occurred_at=occurred_at,
                source_received_at=occurred_at,
            ))
        return event

    def _text(self, context: ParserContext) -> str:
        return (context.text_body or context.raw_text_body or context.snippet or "").strip()

    def _schedule(self, subject: str, text: str) -> Schedule:
        # Subjects read "... on Friday, 14 March 2025 @ 8:00 pm - Friday, ... @ 11:00 pm"
        lower = subject.lower()
        idx = lower.find(" on ")
        if idx != -1:
            remainder = subject[idx + 4:]
            start_segment, _, end_segment = remainder.partition("-")
            start = SCHEDULE_RE.search(start_segment)
            if start:
                end = SCHEDULE_RE.search(end_segment)
                return (
                    parse_wall_clock(*start.groups()),
                    parse_wall_clock(*end.groups()) if end else None,
                )
        matches = SCHEDULE_RE.findall(subject if subject.strip() else text) or SCHEDULE_RE.findall(text)
        if not matches:
            return None, None
        start = parse_wall_clock(*matches[0])
        end = parse_wall_clock(*matches[1]) if len(matches) > 1 else None
        return start, end

    def _set_schedule(self, fields: BookingFieldPatch, start: Optional[datetime], end: Optional[datetime]) -> None:
        if start:
            fields.experience_date = start.date()
            fields.experience_start_at = localize(start, self.timezone)
        if end:
            fields.experience_end_at = localize(end, self.timezone)

    def _build_fields(self, text: str, subject: str) -> BookingFieldPatch:
        fields = BookingFieldPatch()
        name = NAME_RE.search(text)
        if name:
            fields.guest_first_name, fields.guest_last_name = split_name(name.group(1))
        phone = PHONE_RE.search(text)
        if phone:
            fields.guest_phone = phone.group(1).strip()
        email = EMAIL_RE.search(text)
        if email:
            fields.guest_email = email.group(1).strip()

        for key, value in extract_party_counts(text).items():
            if value is not None:
                setattr(fields, key, value)

        self._set_schedule(fields, *self._schedule(subject, text))
        return fields

    def _apply_money(self, fields: BookingFieldPatch, text: str) -> str:
        total = BOOKING_TOTAL_RE.search(text)
        taxes = TAXES_RE.search(text)
        due = DUE_RE.search(text)
        section = _slice_section(text, "payments", "details") or text
        payment = PAYMENT_BULLET_RE.search(section) or PAYMENT_RE.search(section)

        total_amount = normalize_decimal(total.group(2)) if total else None
        payment_amount = normalize_decimal(payment.group(2)) if payment else None
        if total_amount is None:
            total_amount = payment_amount
        currency = ((total and total.group(1)) or (payment and payment.group(1))
                    or (taxes and taxes.group(1)) or None)

        if total_amount is not None:
            fields.price_gross = total_amount
            tax_amount = normalize_decimal(taxes.group(2)) if taxes else None
            fields.base_amount = total_amount - tax_amount if tax_amount is not None else total_amount
            fields.price_net = fields.base_amount
        if currency:
            fields.currency = currency.upper()
        if payment and payment.group(3) and payment.group(3).strip():
            fields.payment_method = payment.group(3).strip()

        due_amount = normalize_decimal(due.group(2)) if due else None
        if (due_amount is not None and due_amount == 0) or payment_amount is not None:
            return PaymentStatus.PAID.value
        return PaymentStatus.UNKNOWN.value

    def _detail_lines(self, text: str) -> List[Dict[str, str]]:
        section = _slice_section(text, "details", "total paid")
        if not section:
            return []
        lines = []
        for label, _, amount in DETAIL_LINE_RE.findall(section):
            value = normalize_decimal(amount)
            if value is not None:
                lines.append({"label": label.strip(), "amount": str(value)})
        return lines

    def _questionnaire(self, text: str) -> Optional[str]:
        section = _slice_section(text, "details") or text
        lines = [line.strip() for line in section.splitlines() if line.strip()]
        picked = [
            normalize_whitespace(line) for line in lines
            if any(p.search(line) for p in QUESTION_LINE_PATTERNS)
        ]
        return " | ".join(picked) if picked else None

    def _rebooked_new_id(self, text: str) -> Optional[str]:
        match = NEW_ID_RE.search(text) or NEW_ID_URL_RE.search(text)
        return match.group(1) if match else None

    def _rebook_details(self, context: ParserContext) -> Optional[Dict[str, Optional[str]]]:
        rows = extract_comparison_rows(context.html_body)
        if not rows:
            return None

        def new_value(label):
            return rows.get(label, {}).get("new") or None

        def sanitize(value):
            if not value:
                return None
            return normalize_whitespace(re.sub(r"[^\w\s]", " ", value).replace("_", " ")) or None

        booking_match = re.search(r"(\d{5,})", new_value("id") or "")
        if not booking_match:
            return None
        return {
            "booking_id": booking_match.group(1),
            "date": new_value("date"),
            "time": new_value("time"),
            "customers": sanitize(new_value("customers")),
            "item": sanitize(new_value("item")),
        }

    def _rebook_fields(self, base: BookingFieldPatch, rebook: Optional[Dict[str, Optional[str]]]) -> BookingFieldPatch:
        fields = base.copy()
        if not rebook:
            return fields
        if rebook.get("item"):
            fields.product_name = rebook["item"]
        if rebook.get("customers"):
            for key, value in extract_party_counts(rebook["customers"]).items():
                if value is not None:
                    setattr(fields, key, value)

        start_date, end_date = _split_range(rebook.get("date"))
        start_time, end_time = _split_range(rebook.get("time"))
        start = parse_wall_clock(start_date, start_time) if start_date and start_time else None
        end = None
        if end_date and end_time:
            end = parse_wall_clock(end_date, end_time)
        elif start_date and end_time:
            end = parse_wall_clock(start_date, end_time)
        self._set_schedule(fields, start, end)
        return fields
