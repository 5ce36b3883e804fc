"""
Ecwid store order notifications ("New order #X").

One order may contain several items; each item block becomes its own
booking. The first keeps the order id, item i (i >= 1) is keyed
"<order>-<i+1>" and is emitted as a spawned event.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from ...models.booking import BookingPlatform, BookingStatus, PaymentStatus
from ...models.booking_event import BookingEventType
from ...utils.datetime_utils import localize
from .base import (
    AddonLine,
    BookingEmailParser,
    BookingFieldPatch,
    DiagnosticCheck,
    ParsedBookingEvent,
    ParserContext,
    ParserDiagnostics,
)
from .text_utils import normalize_decimal, normalize_whitespace, split_name

logger = logging.getLogger(__name__)

ORDER_RE = re.compile(r"New order\s+#([A-Z0-9]+)", re.IGNORECASE)
TOTAL_RE = re.compile(r"Total\s+([\d\s.,-]+)\s*([^\s\d]+)", re.IGNORECASE)
ITEMS_SECTION_RE = re.compile(
    r"Items\s+([\s\S]+?)(?:\s+Subtotal\b|\s+Shipping\b|\s+Discount\b|\s+Total\b|\s+Customer\b|$)",
    re.IGNORECASE,
)
ITEM_BLOCK_RE = re.compile(r"Price per item:\s*([\d\s.,-]+)\s*([^\s\d]+)?\s*Quantity:\s*(\d+)", re.IGNORECASE)
CUSTOMER_SECTION_RE = re.compile(
    r"Customer\s+(.+?)\s+(?:Pickup Details|Pickup date and time|Billing Info|Billing information)",
    re.IGNORECASE | re.DOTALL,
)
EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
PHONE_CANDIDATE_RE = re.compile(r"(\+?\d[\d\s().-]{5,})")
ADDON_ROW_RE = re.compile(
    r"([A-Za-z][A-Za-z\s-]*Add-On):\s*([\s\S]*?)"
    r"(?=(?:\s+[A-Za-z][A-Za-z\s-]*Add-On:|\s+Price per item|\s+Quantity:|\s+Subtotal|$))",
    re.IGNORECASE,
)
PICKUP_LINE_RE = re.compile(
    r"Pickup date and time:? ([A-Za-z]+ \d{1,2}, \d{4}(?:\s+\d{1,2}:\d{2}(?:\s*(?:AM|PM))?)?)",
    re.IGNORECASE,
)
PICKUP_LINE_TIME_RE = re.compile(
    r"Pickup date and time:? [A-Za-z]+\s+\d{1,2},\s+\d{4}[,\s]+(\d{1,2}:\d{2}\s*(?:AM|PM)?)",
    re.IGNORECASE,
)
PUB_CRAWL_TIME_RE = re.compile(
    r"Pub Crawl Details[\s\S]*?Time\s+([\d:.]+\s*(?:A\.M\.|P\.M\.|AM|PM)?)",
    re.IGNORECASE,
)
PRODUCT_NAME_RE = re.compile(
    r"^(.+?)(?:\s+(?:Man:|Woman:|Packages?:|Activity Date:|Activity Time:|Pickup Date:|Pickup Time:"
    r"|Date:|Time:|Phone Number:|Vehicle Type:|Full Name:|Flight Number:|Price per item:|Quantity:"
    r"|Subtotal|Total)|$)",
    re.IGNORECASE | re.DOTALL,
)

LABEL_TERMINATORS = [
    "Full Name", "Phone Number", "Group Time", "Activity Time", "Activity Date", "Time", "Date",
    "Meeting Point", "Price per item", "Quantity", "Subtotal", "Total", "Items", "Man", "Woman",
]
EXTRAS_KEYS = ("cocktails", "tshirts", "photos")
DEFAULT_PUB_CRAWL_TIME = "21:00"


@dataclass
class ItemBlock:
    block: str
    price: Optional[Decimal]
    currency: Optional[str]
    quantity: int


@dataclass
class AddonRow:
    label: str
    raw_value: str
    quantity: int
    category: Optional[str]


def currency_from_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    lower = token.lower()
    if "z" in lower:
        return "PLN"
    if "€" in lower:
        return "EUR"
    if "$" in lower:
        return "USD"
    return None


def normalize_meridiem(value: str) -> str:
    value = re.sub(r"A\s*\.?\s*M\.?", "AM", value, flags=re.IGNORECASE)
    return re.sub(r"P\s*\.?\s*M\.?", "PM", value, flags=re.IGNORECASE)


def extract_labeled_value(text: str, label: str, terminators: List[str] = LABEL_TERMINATORS) -> Optional[str]:
    """Value after "Label:" up to the next known label."""
    if not text:
        return None
    others = "|".join(re.escape(t) for t in terminators if t.lower() != label.lower())
    pattern = (
        rf"{re.escape(label)}\s*:\s*(.+?)"
        rf"(?=\s+(?:{others})\s*:|\s+(?:{others})\b|\s*$)"
    )
    match = re.search(pattern, text, re.IGNORECASE | re.MULTILINE)
    return match.group(1).strip() if match else None


def detect_addon_category(label: str) -> Optional[str]:
    lower = label.lower()
    if "cocktail" in lower or "drink" in lower:
        return "cocktails"
    if "photo" in lower:
        return "photos"
    if "shirt" in lower or "tee" in lower:
        return "tshirts"
    return None


def parse_addon_quantity(value: str) -> int:
    digits = re.search(r"(-?\d+)", value.replace(",", ""))
    if digits and int(digits.group(1)) >= 0:
        return int(digits.group(1))
    if re.search(r"yes", value, re.IGNORECASE):
        return 1
    return 0


def parse_addon_rows(text: str) -> List[AddonRow]:
    rows = []
    for label, raw in ADDON_ROW_RE.findall(text.replace("\r\n", "\n")):
        raw_value = normalize_whitespace(raw)
        rows.append(AddonRow(
            label=label.strip(),
            raw_value=raw_value,
            quantity=parse_addon_quantity(raw_value),
            category=detect_addon_category(label),
        ))
    return rows


def split_item_blocks(section: Optional[str]) -> List[ItemBlock]:
    if not section:
        return []
    blocks = []
    last_index = 0
    for match in ITEM_BLOCK_RE.finditer(section):
        quantity = int(match.group(3))
        blocks.append(ItemBlock(
            block=section[last_index:match.end()].strip(),
            price=normalize_decimal(match.group(1)),
            currency=currency_from_token(match.group(2)),
            quantity=quantity if quantity > 0 else 1,
        ))
        last_index = match.end()
    return blocks


def parse_phone(section: Optional[str], email: Optional[str]) -> Optional[str]:
    if not section:
        return None
    text = section.replace("\u00a0", " ")
    if email:
        text = text.replace(email, " ")
    labeled = re.search(r"(?:phone|tel|mobile)[:\s]+([+0-9()\[\]\s.-]+)", text, re.IGNORECASE)
    haystack = labeled.group(1) if labeled else text
    candidates = [
        c for c in PHONE_CANDIDATE_RE.findall(haystack)
        if len(re.sub(r"\D+", "", c)) >= 7
    ]
    if not candidates:
        return None
    phone = (
        next((c for c in candidates if c.strip().startswith("+")), None)
        or next((c for c in candidates if len(re.sub(r"\D+", "", c)) >= 9), None)
        or candidates[0]
    )
    ext = phone.lower().find("ext")
    if ext != -1:
        phone = phone[:ext]
    phone = re.sub(r"[().-]", " ", phone).strip()
    if phone.startswith("00"):
        phone = "+" + phone[2:]
    return normalize_whitespace(phone)


def build_experience_moment(
    date_raw: Optional[str],
    time_raw: Optional[str],
    timezone: str,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Returns (local wall-clock date, start in naive UTC)."""
    if not date_raw:
        return None, None
    date_text = normalize_whitespace(date_raw)
    time_text = None
    if time_raw:
        time_text = re.sub(r"CEST|CET|UTC|GMT", "", normalize_meridiem(time_raw), flags=re.IGNORECASE).strip()
    combined = re.search(r"([A-Za-z]+\s+\d{1,2},\s+\d{4})(?:[,\s]+(\d{1,2}:\d{2}\s*(?:AM|PM)?))?", date_text)
    if combined:
        date_text = combined.group(1)
        if not time_text and combined.group(2):
            time_text = normalize_meridiem(combined.group(2)).strip()

    day = None
    for fmt in ("%b %d, %Y", "%B %d, %Y", "%Y-%m-%d", "%Y/%m/%d"):
        try:
            day = datetime.strptime(date_text, fmt)
            break
        except ValueError:
            continue
    if day is None:
        return None, None
    if not time_text:
        return day, None

    fmt = "%I:%M %p" if re.search(r"am|pm", time_text, re.IGNORECASE) else "%H:%M"
    try:
        clock = datetime.strptime(normalize_whitespace(re.sub(r"(?i)(am|pm)", r" \1", time_text)), fmt)
    except ValueError:
        return day, None
    local = day.replace(hour=clock.hour, minute=clock.minute)
    return day, localize(local, timezone)


class EcwidBookingParser(BookingEmailParser):
    name = "ecwid"

    def __init__(self, timezone: str = "Europe/Warsaw"):
        self.timezone = timezone

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        subject = context.subject or ""
        sender = context.from_address or context.headers.get("from", "")
        forwarded = subject.lower().startswith("fwd:")
        from_match = bool(re.search("ecwid", sender, re.IGNORECASE))
        subject_match = bool(re.search(r"new order #", subject, re.IGNORECASE))
        text = self._text(context)
        order = ORDER_RE.search(text)
        return ParserDiagnostics(
            name=self.name,
            can_parse=not forwarded and (from_match or subject_match),
            checks=[
                DiagnosticCheck('subject starts with "fwd:"', not forwarded, subject),
                DiagnosticCheck("from matches /ecwid/i", from_match, sender),
                DiagnosticCheck("subject matches /new order #/i", subject_match, subject),
                DiagnosticCheck("text body present", bool(text)),
                DiagnosticCheck("order id matched /New order #/i", bool(order), order.group(1) if order else None),
            ],
        )

    def can_parse(self, context: ParserContext) -> bool:
        return self.diagnose(context).can_parse

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        text = self._text(context)
        if not text:
            return None
        order = ORDER_RE.search(text)
        if not order:
            return None
        order_id = order.group(1).strip()

        total_match = TOTAL_RE.search(text)
        order_total = normalize_decimal(total_match.group(1)) if total_match else None
        order_currency = currency_from_token(total_match.group(2)) if total_match else None

        items_match = ITEMS_SECTION_RE.search(text)
        items_section = items_match.group(1).strip() if items_match else None
        blocks = split_item_blocks(items_section) or [ItemBlock(
            block=items_section or text,
            price=None,
            currency=order_currency,
            quantity=self._quantity(text),
        )]

        customer_match = CUSTOMER_SECTION_RE.search(text)
        customer = customer_match.group(1).strip() if customer_match else None
        email_match = EMAIL_RE.search(customer or "") or EMAIL_RE.search(text)
        email = email_match.group(0).lower() if email_match else None
        phone = parse_phone(customer, email) or extract_labeled_value(text, "Phone Number")
        full_name = extract_labeled_value(text, "Full Name") or self._name_from_customer(customer, email, phone)

        payment_match = re.search(r"Payment method\s+([A-Za-z ]+)", text, re.IGNORECASE)
        payment_method = None
        if payment_match:
            payment_method = re.sub(r"View order details", "", payment_match.group(1), flags=re.IGNORECASE).strip()

        paid = re.search("paid", context.subject or "", re.IGNORECASE) or re.search("paid", text, re.IGNORECASE)
        shared = {
            "order_id": order_id,
            "order_total": order_total,
            "order_currency": order_currency,
            "single_block": len(blocks) == 1,
            "subject_product": self._subject_product(context.subject or ""),
            "overall_date": self._pickup_date(text),
            "overall_time": self._pickup_line_time(text),
            "pub_crawl_time": self._pub_crawl_time(text),
            "location": self._pickup_location(text),
            "name": split_name(full_name),
            "email": email,
            "phone": phone,
            "payment_method": payment_method or None,
            "payment_status": PaymentStatus.PAID.value if paid else PaymentStatus.UNKNOWN.value,
        }

        event = self._build_event(context, blocks[0], 0, shared)
        event.spawned_events = [
            self._build_event(context, block, index, shared)
            for index, block in enumerate(blocks[1:], start=1)
        ]
        return event

    def _build_event(self, context: ParserContext, item: ItemBlock, index: int, shared: Dict) -> ParsedBookingEvent:
        quantity = item.quantity if item.quantity > 0 else self._quantity(item.block)
        men = self._count(item.block, "Man")
        women = self._count(item.block, "Woman")
        rows = parse_addon_rows(item.block)

        if men is not None or women is not None:
            men = men * quantity if men is not None else None
            women = women * quantity if women is not None else None
            total = (men or 0) + (women or 0)
        else:
            total = quantity
        if quantity > 1:
            for row in rows:
                row.quantity *= quantity

        product_name = self._product_name(item.block) or (shared["subject_product"] if index == 0 else None)
        is_pub_crawl = bool(product_name and "pub crawl" in product_name.lower())
        pickup_date = self._pickup_date(item.block) or shared["overall_date"]
        pickup_time = self._pickup_time(item.block)
        if not pickup_time and is_pub_crawl:
            pickup_time = shared["pub_crawl_time"] or shared["overall_time"] or DEFAULT_PUB_CRAWL_TIME
        local_day, start_at = build_experience_moment(pickup_date, pickup_time, self.timezone)

        extras = {key: 0 for key in EXTRAS_KEYS}
        for row in rows:
            if row.category and row.quantity > 0:
                extras[row.category] += row.quantity

        notes = []
        if rows:
            notes.append(" | ".join(f"{row.label}: {row.raw_value}" for row in rows))
        flight = extract_labeled_value(item.block, "Flight Number")
        if flight:
            notes.append(f"Flight Number: {flight}")

        if item.price is not None:
            item_total = item.price * quantity
        elif shared["single_block"]:
            item_total = shared["order_total"]
        else:
            item_total = None

        snapshot = {}
        if men is not None or women is not None:
            snapshot["party_breakdown"] = {"men": men, "women": women}
        if rows:
            snapshot["addons"] = [
                {"label": r.label, "raw_value": r.raw_value, "quantity": r.quantity, "category": r.category}
                for r in rows
            ]
        if any(extras.values()):
            snapshot["extras"] = extras

        first_name, last_name = shared["name"]
        fields = BookingFieldPatch(
            product_name=product_name,
            product_variant=self._variant(item.block),
            guest_first_name=first_name,
            guest_last_name=last_name,
            guest_email=shared["email"],
            guest_phone=shared["phone"],
            experience_date=local_day.date() if local_day else None,
            experience_start_at=start_at,
            party_size_total=total,
            party_size_adults=total,
            currency=item.currency or shared["order_currency"] or "PLN",
            price_gross=item_total,
            price_net=item_total,
            base_amount=item_total,
            payment_method=shared["payment_method"],
            pickup_location=shared["location"],
            notes=" | ".join(notes) if notes else None,
        )
        if snapshot:
            fields.addons_snapshot = snapshot

        addons = [
            AddonLine(
                platform_addon_name=row.label,
                quantity=row.quantity,
                metadata={"category": row.category, "raw_value": row.raw_value},
            )
            for row in rows if row.quantity > 0
        ]

        order_id = shared["order_id"]
        return ParsedBookingEvent(
            platform=BookingPlatform.ECWID.value,
            platform_booking_id=order_id if index == 0 else f"{order_id}-{index + 1}",
            platform_order_id=order_id,
            status=BookingStatus.CONFIRMED.value,
            event_type=BookingEventType.CREATED.value,
            payment_status=shared["payment_status"],
            fields=fields,
            addons=addons or None,
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
        )

    def _text(self, context: ParserContext) -> str:
        return context.text_body or context.raw_text_body or context.snippet or ""

    @staticmethod
    def _quantity(text: str) -> int:
        match = re.search(r"Quantity:\s*(\d+)", text, re.IGNORECASE)
        if not match or int(match.group(1)) <= 0:
            return 1
        return int(match.group(1))

    @staticmethod
    def _count(text: str, label: str) -> Optional[int]:
        match = re.search(rf"\b{label}:\s*(\d+)", text, re.IGNORECASE)
        return int(match.group(1)) if match else None

    @staticmethod
    def _subject_product(subject: str) -> Optional[str]:
        match = re.search(r"^(.+?)\s*:\s*New order", subject, re.IGNORECASE)
        return match.group(1).strip() if match else None

    @staticmethod
    def _product_name(block: str) -> Optional[str]:
        match = PRODUCT_NAME_RE.search(block or "")
        name = normalize_whitespace(match.group(1)) if match else ""
        return name or None

    @staticmethod
    def _variant(block: str) -> Optional[str]:
        package = extract_labeled_value(block, "Packages") or extract_labeled_value(block, "Package")
        vehicle = extract_labeled_value(block, "Vehicle Type")
        parts = [p for p in (package, vehicle) if p]
        return " | ".join(parts) if parts else None

    @staticmethod
    def _name_from_customer(section: Optional[str], email: Optional[str], phone: Optional[str]) -> Optional[str]:
        if not section:
            return None
        candidate = section
        if email:
            candidate = re.sub(re.escape(email), " ", candidate, flags=re.IGNORECASE)
        if phone:
            candidate = candidate.replace(phone, " ")
        candidate = PHONE_CANDIDATE_RE.sub(" ", candidate)
        return normalize_whitespace(candidate) or None

    @staticmethod
    def _pickup_location(text: str) -> Optional[str]:
        match = re.search(r"Meeting Point\s+(.+?)\s+Time", text, re.IGNORECASE)
        if match:
            return match.group(1).strip()
        return extract_labeled_value(text, "Meeting Point")

    @staticmethod
    def _pickup_date(text: str) -> Optional[str]:
        match = PICKUP_LINE_RE.search(text)
        if match:
            return match.group(1).strip()
        return (
            extract_labeled_value(text, "Activity Date")
            or extract_labeled_value(text, "Pickup Date")
            or extract_labeled_value(text, "Date")
        )

    @staticmethod
    def _pickup_line_time(text: str) -> Optional[str]:
        match = PICKUP_LINE_TIME_RE.search(text)
        return normalize_meridiem(match.group(1)).strip() if match else None

    def _pickup_time(self, text: str) -> Optional[str]:
        for label in ("Activity Time", "Pickup Time", "Time"):
            value = extract_labeled_value(text, label)
            if value:
                return normalize_meridiem(value).strip()
        line_time = self._pickup_line_time(text)
        if line_time:
            return line_time
        group_time = extract_labeled_value(text, "Group Time")
        return normalize_meridiem(group_time).strip() if group_time else None

    @staticmethod
    def _pub_crawl_time(text: str) -> Optional[str]:
        match = PUB_CRAWL_TIME_RE.search(text)
        return normalize_meridiem(match.group(1)).strip() if match else None
