import logging
import re
from datetime import datetime
from typing import Optional

from ...models.booking import BookingPlatform, BookingStatus, PaymentStatus
from ...models.booking_event import BookingEventType
from ...utils.datetime_utils import localize
from .base import BookingEmailParser, BookingFieldPatch, ParsedBookingEvent, ParserContext
from .text_utils import normalize_whitespace, parse_money, split_name

logger = logging.getLogger(__name__)

REFERENCE_RE = re.compile(r"Reference number\s+([A-Z0-9]+)", re.IGNORECASE)
PRODUCT_RE = re.compile(r"has been booked:\s+(.+?)\s+Reference number", re.IGNORECASE)
CUSTOMER_RE = re.compile(r"Main customer\s+([A-Za-zÀ-ſ' -]+?)(?=\s+[a-z0-9._%+-]+@)", re.IGNORECASE)
GUEST_EMAIL_RE = re.compile(r"([a-z0-9._%+-]+@reply\.getyourguide\.com)", re.IGNORECASE)
PHONE_RE = re.compile(r"Phone:\s*([+()\d\s-]+)", re.IGNORECASE)
PARTICIPANTS_RE = re.compile(r"Number of participants\s+(\d+)\s+x\s+([A-Za-z]+)", re.IGNORECASE)
DATE_RE = re.compile(r"Date\s+([A-Za-z]+\s+\d{1,2},\s+\d{4})\s+(\d{1,2}:\d{2}\s*(?:AM|PM))", re.IGNORECASE)
PRICE_RE = re.compile(r"Price\s+(\S+)\s*([\d.,]+)", re.IGNORECASE)
TOUR_LANGUAGE_RE = re.compile(r"Tour language\s+(.+?)\s+Price", re.IGNORECASE)
CUSTOMER_LANGUAGE_RE = re.compile(r"Language:\s*([A-Za-z]+)", re.IGNORECASE)


def dedupe_product_name(raw: str) -> str:
    """GetYourGuide repeats the activity title; 'A B A B' -> 'A B'."""
    raw = raw.strip()
    half = len(raw) // 2
    first, second = raw[:half].strip(), raw[half:].strip()
    return first if first and first == second else raw


class GetYourGuideBookingParser(BookingEmailParser):
    name = "getyourguide"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def can_parse(self, context: ParserContext) -> bool:
        sender = context.from_address or context.headers.get("from", "")
        return bool(re.search("getyourguide", sender, re.IGNORECASE)
                    or re.search("getyourguide", context.subject or "", re.IGNORECASE))

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        text = normalize_whitespace(context.text_body or context.raw_text_body or context.snippet)
        if not text:
            return None
        reference = REFERENCE_RE.search(text)
        if not reference:
            return None
        booking_id = reference.group(1)

        fields = BookingFieldPatch()
        product = PRODUCT_RE.search(text)
        if product:
            fields.product_name = dedupe_product_name(product.group(1))

        customer = CUSTOMER_RE.search(text)
        if customer:
            fields.guest_first_name, fields.guest_last_name = split_name(customer.group(1))

        email = GUEST_EMAIL_RE.search(text)
        if email:
            fields.guest_email = email.group(1)
        phone = PHONE_RE.search(text)
        if phone:
            fields.guest_phone = phone.group(1).strip()

        participants = PARTICIPANTS_RE.search(text)
        if participants:
            fields.party_size_total = int(participants.group(1))
            fields.party_size_adults = int(participants.group(1))

        when = DATE_RE.search(text)
        if when:
            try:
                local = datetime.strptime(f"{when.group(1)} {when.group(2).upper()}", "%B %d, %Y %I:%M %p")
            except ValueError:
                logger.debug(f"Unparseable GetYourGuide date: {when.group(0)}")
            else:
                fields.experience_date = local.date()
                fields.experience_start_at = localize(local, self.timezone)

        price = PRICE_RE.search(text)
        if price:
            amount, currency = parse_money(f"{price.group(1)} {price.group(2)}")
            if amount is not None:
                fields.price_gross = amount
                fields.base_amount = amount
            if currency:
                fields.currency = currency

        notes = []
        tour_language = TOUR_LANGUAGE_RE.search(text)
        if tour_language:
            notes.append(f"Tour language: {tour_language.group(1).strip()}")
        customer_language = CUSTOMER_LANGUAGE_RE.search(text)
        if customer_language:
            notes.append(f"Customer language: {customer_language.group(1).strip()}")

        return ParsedBookingEvent(
            platform=BookingPlatform.GETYOURGUIDE.value,
            platform_booking_id=booking_id,
            platform_order_id=booking_id,
            status=BookingStatus.CONFIRMED.value,
            event_type=BookingEventType.CREATED.value,
            payment_status=PaymentStatus.PAID.value if fields.price_gross else PaymentStatus.UNKNOWN.value,
            fields=fields,
            notes=" | ".join(notes) if notes else "Parsed from GetYourGuide confirmation email.",
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
        )
