"""
Parser contract and the canonical parsed-event types.

Parsers expose a cheap can_parse() predicate and a fallible parse() that
returns at most one ParsedBookingEvent (plus optional spawned events).
Field patches distinguish three states per field:

- UNSET: the parser said nothing, leave the stored value alone
- None: the parser explicitly cleared the value
- a value: overwrite (or, for *_delta fields, add)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ...utils.datetime_utils import coerce_date, to_utc_naive
from .text_utils import normalize_decimal, truncate

logger = logging.getLogger(__name__)


class _Unset:
    """Marker for a patch field the parser did not provide."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "UNSET"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


UNSET = _Unset()

DECIMAL_FIELDS = {
    "base_amount", "addons_amount", "discount_amount", "price_gross",
    "price_net", "commission_amount", "commission_rate",
}
DATETIME_FIELDS = {"experience_start_at", "experience_end_at"}
DATE_FIELDS = {"experience_date"}

# delta slot -> absolute field it adjusts
DELTA_TARGETS = {
    "party_size_total_delta": "party_size_total",
    "party_size_adults_delta": "party_size_adults",
    "party_size_children_delta": "party_size_children",
    "addons_extras_delta": "addons_snapshot",
}


@dataclass
class BookingFieldPatch:
    """Sparse set of booking attributes extracted from one message."""
    channel_id: Any = UNSET
    product_id: Any = UNSET
    product_name: Any = UNSET
    product_variant: Any = UNSET
    guest_first_name: Any = UNSET
    guest_last_name: Any = UNSET
    guest_email: Any = UNSET
    guest_phone: Any = UNSET
    hotel_name: Any = UNSET
    pickup_location: Any = UNSET
    party_size_total: Any = UNSET
    party_size_adults: Any = UNSET
    party_size_children: Any = UNSET
    party_size_total_delta: Any = UNSET
    party_size_adults_delta: Any = UNSET
    party_size_children_delta: Any = UNSET
    experience_date: Any = UNSET
    experience_start_at: Any = UNSET
    experience_end_at: Any = UNSET
    currency: Any = UNSET
    base_amount: Any = UNSET
    addons_amount: Any = UNSET
    discount_amount: Any = UNSET
    price_gross: Any = UNSET
    price_net: Any = UNSET
    commission_amount: Any = UNSET
    commission_rate: Any = UNSET
    payment_method: Any = UNSET
    notes: Any = UNSET
    addons_snapshot: Any = UNSET
    addons_extras_delta: Any = UNSET
    raw_payload_location: Any = UNSET

    def __post_init__(self):
        for name in DECIMAL_FIELDS:
            value = getattr(self, name)
            if value is not UNSET and value is not None:
                setattr(self, name, normalize_decimal(value))
        for name in DATETIME_FIELDS:
            value = getattr(self, name)
            if isinstance(value, datetime):
                setattr(self, name, to_utc_naive(value))
        for name in DATE_FIELDS:
            value = getattr(self, name)
            if value is not UNSET and value is not None:
                setattr(self, name, coerce_date(value))

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def is_set(self, name: str) -> bool:
        return getattr(self, name) is not UNSET

    def set_fields(self) -> Iterator[Tuple[str, Any]]:
        """Yield (name, value) for every slot that is not UNSET."""
        for name in self.field_names():
            value = getattr(self, name)
            if value is not UNSET:
                yield name, value

    def absolute_fields(self) -> Dict[str, Any]:
        return {k: v for k, v in self.set_fields() if k not in DELTA_TARGETS}

    def delta_fields(self) -> Dict[str, Any]:
        return {k: v for k, v in self.set_fields() if k in DELTA_TARGETS}

    def copy(self, **changes) -> "BookingFieldPatch":
        values = {name: getattr(self, name) for name in self.field_names()}
        values.update(changes)
        return BookingFieldPatch(**values)

    def to_json(self) -> Dict[str, Any]:
        return {name: to_jsonable(value) for name, value in self.set_fields()}

    def __bool__(self):
        return any(True for _ in self.set_fields())


@dataclass
class AddonLine:
    platform_addon_name: Optional[str] = None
    platform_addon_id: Optional[str] = None
    quantity: int = 1
    unit_price: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    currency: Optional[str] = None
    tax_amount: Optional[Decimal] = None
    included: bool = False
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        self.unit_price = normalize_decimal(self.unit_price)
        self.total_price = normalize_decimal(self.total_price)
        self.tax_amount = normalize_decimal(self.tax_amount)


@dataclass
class ParserContext:
    """Everything a parser may look at for one message."""
    message_id: str
    subject: str = ""
    snippet: str = ""
    from_address: str = ""
    to: str = ""
    cc: str = ""
    thread_id: Optional[str] = None
    received_at: Optional[datetime] = None
    internal_date: Optional[datetime] = None
    headers: Dict[str, str] = field(default_factory=dict)
    text_body: str = ""
    raw_text_body: str = ""
    html_body: str = ""

    @property
    def occurred_at(self) -> Optional[datetime]:
        return self.received_at or self.internal_date

    def source_text(self, source: str) -> str:
        """Look up a named text source (used by config-driven rules)."""
        return {
            "from": self.from_address or self.headers.get("from", ""),
            "to": self.to or self.headers.get("to", ""),
            "cc": self.cc or self.headers.get("cc", ""),
            "subject": self.subject,
            "snippet": self.snippet,
            "text_body": self.text_body,
            "html_body": self.html_body,
        }.get(source, "") or ""


@dataclass
class ParsedBookingEvent:
    platform: str
    platform_booking_id: Optional[str]
    status: str
    event_type: str
    fields: BookingFieldPatch = field(default_factory=BookingFieldPatch)
    platform_order_id: Optional[str] = None
    payment_status: Optional[str] = None
    addons: Optional[List[AddonLine]] = None
    notes: Optional[str] = None
    occurred_at: Optional[datetime] = None
    source_received_at: Optional[datetime] = None
    raw_payload: Optional[Dict[str, Any]] = None
    spawned_events: List["ParsedBookingEvent"] = field(default_factory=list)

    def __post_init__(self):
        self.occurred_at = to_utc_naive(self.occurred_at)
        self.source_received_at = to_utc_naive(self.source_received_at)

    def iter_events(self) -> Iterator["ParsedBookingEvent"]:
        """This event followed by its spawned events, depth-first."""
        yield self
        for child in self.spawned_events:
            yield from child.iter_events()

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return self.platform, self.platform_booking_id


@dataclass
class DiagnosticCheck:
    label: str
    passed: bool
    value: Optional[str] = None

    def __post_init__(self):
        self.value = truncate(self.value)


@dataclass
class ParserDiagnostics:
    name: str
    can_parse: bool
    checks: List[DiagnosticCheck] = field(default_factory=list)
    error: Optional[str] = None

    def render(self) -> str:
        parts = [f"[{self.name}] can_parse={'yes' if self.can_parse else 'no'}"]
        for check in self.checks:
            mark = "ok" if check.passed else "x"
            suffix = f" ({check.value})" if check.value else ""
            parts.append(f"  {mark} {check.label}{suffix}")
        if self.error:
            parts.append(f"  error: {self.error}")
        return "\n".join(parts)


class BookingEmailParser(ABC):
    name: str = "base"

    @abstractmethod
    def can_parse(self, context: ParserContext) -> bool:
        ...

    @abstractmethod
    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        ...

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        """Default diagnostics: sender and subject evidence plus can_parse."""
        matched = self.can_parse(context)
        return ParserDiagnostics(
            name=self.name,
            can_parse=matched,
            checks=[
                DiagnosticCheck(f"{self.name} sender or subject", matched,
                                f"{context.from_address} | {context.subject}"),
            ],
        )


def to_jsonable(value: Any) -> Any:
    if value is UNSET:
        return None
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
