"""
Config-driven parsers.

Operators describe simple platforms in a JSON file instead of code:

    [
      {
        "id": "freetour",
        "priority": 10,
        "platform": "freetour",
        "match_all": [{"source": "from", "pattern": "freetour\\\\.com"}],
        "extract": {
          "platform_booking_id": {"pattern": "Booking ID:\\\\s*(\\\\w+)"},
          "party_size_total": {"pattern": "(\\\\d+) people"}
        },
        "status": {"cancelled": [{"source": "subject", "pattern": "cancel"}]}
      }
    ]

A bare string clause is shorthand for a pattern on text_body.
"""

import json
import logging
import re
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from ...models.booking import BookingPlatform, BookingStatus, PaymentStatus
from ...models.booking_event import BookingEventType
from .base import (
    BookingEmailParser,
    BookingFieldPatch,
    DiagnosticCheck,
    ParsedBookingEvent,
    ParserContext,
    ParserDiagnostics,
)
from .text_utils import normalize_decimal, truncate

logger = logging.getLogger(__name__)

SourceField = Literal["from", "to", "cc", "subject", "snippet", "text_body", "html_body"]

# JS-style flag letters accepted in rule files; g/y/d/u have no Python meaning
REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
IGNORED_FLAGS = set("gydu")

DATE_ONLY_FORMATS = ["%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%m-%d-%Y",
                     "%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%d %b %Y"]
DATE_TIME_FORMATS = ["%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S",
                     "%d/%m/%Y %H:%M", "%d-%m-%Y %H:%M", "%B %d, %Y %I:%M %p", "%b %d, %Y %I:%M %p",
                     "%d %B %Y %H:%M", "%d %b %Y %H:%M"]

STRING_FIELDS = ("product_name", "product_variant", "guest_email", "guest_phone",
                 "guest_first_name", "guest_last_name", "payment_method", "notes")
INTEGER_FIELDS = ("party_size_total", "party_size_adults", "party_size_children")


class DynamicRuleError(ValueError):
    """A rule definition or rules file that cannot be used."""


class DynamicClause(BaseModel):
    source: SourceField = "text_body"
    pattern: str = Field(..., min_length=1)
    flags: Optional[str] = None
    group: Optional[int] = Field(None, ge=0)
    label: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label or f"{self.source} =~ /{self.pattern}/{self.flags or 'i'}"

    def compile(self) -> Tuple[Optional[re.Pattern], Optional[str]]:
        """Compiled pattern, or (None, error message)."""
        flags = self.flags if self.flags is not None else "i"
        compiled_flags = 0
        for letter in flags:
            if letter in REGEX_FLAGS:
                compiled_flags |= REGEX_FLAGS[letter]
            elif letter not in IGNORED_FLAGS:
                return None, f'Invalid regex flags "{flags}"'
        try:
            return re.compile(self.pattern, compiled_flags), None
        except re.error as e:
            return None, f'Invalid regex "{self.pattern}": {e}'


def _coerce_clause(value):
    if isinstance(value, str):
        return {"source": "text_body", "pattern": value}
    return value


def _coerce_clause_list(value):
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    return [_coerce_clause(v) for v in value]


class DynamicExtractConfig(BaseModel):
    platform_booking_id: DynamicClause
    platform_order_id: Optional[DynamicClause] = None
    product_name: Optional[DynamicClause] = None
    product_variant: Optional[DynamicClause] = None
    guest_email: Optional[DynamicClause] = None
    guest_phone: Optional[DynamicClause] = None
    guest_first_name: Optional[DynamicClause] = None
    guest_last_name: Optional[DynamicClause] = None
    experience_date: Optional[DynamicClause] = None
    experience_start_at: Optional[DynamicClause] = None
    currency: Optional[DynamicClause] = None
    base_amount: Optional[DynamicClause] = None
    party_size_total: Optional[DynamicClause] = None
    party_size_adults: Optional[DynamicClause] = None
    party_size_children: Optional[DynamicClause] = None
    payment_method: Optional[DynamicClause] = None
    notes: Optional[DynamicClause] = None

    @model_validator(mode="before")
    @classmethod
    def coerce_shorthand(cls, data):
        if isinstance(data, dict):
            return {k: _coerce_clause(v) for k, v in data.items()}
        return data


class DynamicStatusConfig(BaseModel):
    cancelled: List[DynamicClause] = []
    amended: List[DynamicClause] = []
    no_show: List[DynamicClause] = []
    confirmed: List[DynamicClause] = []
    default_status: Optional[BookingStatus] = None

    @field_validator("cancelled", "amended", "no_show", "confirmed", mode="before")
    @classmethod
    def coerce_list(cls, v):
        return _coerce_clause_list(v)


class DynamicDefaults(BaseModel):
    status: Optional[BookingStatus] = None
    event_type: Optional[BookingEventType] = None
    payment_status: Optional[PaymentStatus] = None


class DynamicParserDefinition(BaseModel):
    id: str = Field(..., min_length=1)
    enabled: bool = True
    priority: int = 0
    platform: str = BookingPlatform.UNKNOWN.value
    match_all: List[DynamicClause] = []
    match_any: List[DynamicClause] = []
    extract: DynamicExtractConfig
    status: DynamicStatusConfig = DynamicStatusConfig()
    defaults: DynamicDefaults = DynamicDefaults()

    @field_validator("match_all", "match_any", mode="before")
    @classmethod
    def coerce_list(cls, v):
        return _coerce_clause_list(v)

    @field_validator("platform", mode="before")
    @classmethod
    def known_platform(cls, v):
        known = {p.value for p in BookingPlatform}
        value = str(v or "").strip()
        return value if value in known else BookingPlatform.UNKNOWN.value

    @model_validator(mode="after")
    def require_matchers(self):
        if not self.match_all and not self.match_any:
            raise ValueError("definition needs at least one match_all or match_any clause")
        return self


def load_rule_definitions(raw) -> List[DynamicParserDefinition]:
    """Validate raw definitions; invalid and disabled entries are skipped."""
    if not isinstance(raw, list):
        raise DynamicRuleError("dynamic parser rules must be a JSON list")
    definitions = []
    for index, entry in enumerate(raw):
        try:
            definition = DynamicParserDefinition.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid dynamic parser rule #{index}: {e.error_count()} error(s)")
            continue
        if definition.enabled:
            definitions.append(definition)
    definitions.sort(key=lambda d: d.priority)
    return definitions


def load_rules_file(path: str) -> List[DynamicParserDefinition]:
    try:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise DynamicRuleError(f"Cannot read dynamic parser rules from {path}: {e}") from e
    return load_rule_definitions(raw)


def _parse_with_formats(value: str, formats: List[str]) -> Optional[datetime]:
    for fmt in formats:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _to_int(value: str) -> Optional[int]:
    cleaned = re.sub(r"[^\d-]", "", value)
    try:
        return int(cleaned)
    except ValueError:
        return None


def infer_status(context: ParserContext) -> str:
    text = f"{context.subject}\n{context.text_body}".lower()
    if re.search(r"cancelled|canceled|cancellation|voided", text):
        return BookingStatus.CANCELLED.value
    if re.search(r"amend|modified|updated|changed|rebooked|altered", text):
        return BookingStatus.AMENDED.value
    if re.search(r"no[-\s]?show", text):
        return BookingStatus.NO_SHOW.value
    return BookingStatus.CONFIRMED.value


class DynamicRuleBookingParser(BookingEmailParser):

    def __init__(self, definition: DynamicParserDefinition):
        self.definition = definition
        self.name = f"dynamic:{definition.id}"

    def _clause_passes(self, context: ParserContext, clause: DynamicClause) -> Tuple[bool, Optional[str]]:
        text = context.source_text(clause.source)
        regex, error = clause.compile()
        if regex is None:
            logger.warning(f"[{self.name}] {error}")
            return False, error
        return bool(regex.search(text)), truncate(text, 140)

    def _extract(self, context: ParserContext, clause: Optional[DynamicClause]) -> Optional[str]:
        if clause is None:
            return None
        regex, error = clause.compile()
        if regex is None:
            logger.warning(f"[{self.name}] {error}")
            return None
        match = regex.search(context.source_text(clause.source))
        if not match:
            return None
        group = clause.group if clause.group is not None else (1 if regex.groups >= 1 else 0)
        try:
            value = match.group(group)
        except IndexError:
            return None
        value = (value or "").strip()
        return value or None

    def _match_checks(self, context: ParserContext) -> Tuple[bool, List[DiagnosticCheck]]:
        checks = []
        all_passed = True
        for clause in self.definition.match_all:
            passed, value = self._clause_passes(context, clause)
            all_passed = all_passed and passed
            checks.append(DiagnosticCheck(f"all:{clause.display_label}", passed, value))
        any_passed = True
        if self.definition.match_any:
            results = [(clause, self._clause_passes(context, clause)) for clause in self.definition.match_any]
            any_passed = any(passed for _, (passed, _) in results)
            checks.append(DiagnosticCheck("any:at least one matcher must pass", any_passed))
            for clause, (passed, value) in results:
                checks.append(DiagnosticCheck(f"any:{clause.display_label}", passed, value))
        return bool(checks) and all_passed and any_passed, checks

    def can_parse(self, context: ParserContext) -> bool:
        return self._match_checks(context)[0]

    def diagnose(self, context: ParserContext) -> ParserDiagnostics:
        matched, checks = self._match_checks(context)
        booking_id = self._extract(context, self.definition.extract.platform_booking_id)
        checks.append(DiagnosticCheck("platform_booking_id extracted", bool(booking_id), booking_id))
        return ParserDiagnostics(name=self.name, can_parse=matched, checks=checks)

    def _resolve_status(self, context: ParserContext) -> str:
        status_config = self.definition.status
        for status, clauses in (
            (BookingStatus.CANCELLED.value, status_config.cancelled),
            (BookingStatus.AMENDED.value, status_config.amended),
            (BookingStatus.NO_SHOW.value, status_config.no_show),
            (BookingStatus.CONFIRMED.value, status_config.confirmed),
        ):
            if any(self._clause_passes(context, clause)[0] for clause in clauses):
                return status
        if self.definition.defaults.status:
            return self.definition.defaults.status.value
        if status_config.default_status:
            return status_config.default_status.value
        return infer_status(context)

    def _build_fields(self, context: ParserContext) -> BookingFieldPatch:
        extract = self.definition.extract
        fields = BookingFieldPatch()
        for name in STRING_FIELDS:
            value = self._extract(context, getattr(extract, name))
            if value:
                setattr(fields, name, value)
        for name in INTEGER_FIELDS:
            value = self._extract(context, getattr(extract, name))
            number = _to_int(value) if value else None
            if number is not None:
                setattr(fields, name, number)

        experience_date = self._extract(context, extract.experience_date)
        if experience_date:
            parsed = _parse_with_formats(experience_date, DATE_ONLY_FORMATS)
            if parsed:
                fields.experience_date = parsed.date()
        start = self._extract(context, extract.experience_start_at)
        if start:
            parsed = _parse_with_formats(start, DATE_TIME_FORMATS)
            if parsed:
                fields.experience_start_at = parsed
        currency = self._extract(context, extract.currency)
        if currency:
            letters = re.sub(r"[^A-Za-z]", "", currency).upper()
            fields.currency = letters if len(letters) == 3 else currency.upper()[:3]
        amount = self._extract(context, extract.base_amount)
        if amount:
            value = normalize_decimal(re.sub(r"[^\d,.-]", "", amount))
            if value is not None:
                fields.base_amount = value
        return fields

    def parse(self, context: ParserContext) -> Optional[ParsedBookingEvent]:
        if not self.can_parse(context):
            return None
        booking_id = self._extract(context, self.definition.extract.platform_booking_id)
        if not booking_id:
            return None
        status = self._resolve_status(context)
        defaults = self.definition.defaults
        if defaults.event_type:
            event_type = defaults.event_type.value
        elif status == BookingStatus.CANCELLED.value:
            event_type = BookingEventType.CANCELLED.value
        elif status == BookingStatus.AMENDED.value:
            event_type = BookingEventType.AMENDED.value
        else:
            event_type = BookingEventType.CREATED.value

        return ParsedBookingEvent(
            platform=self.definition.platform,
            platform_booking_id=booking_id,
            platform_order_id=self._extract(context, self.definition.extract.platform_order_id),
            status=status,
            event_type=event_type,
            payment_status=(defaults.payment_status or PaymentStatus.UNKNOWN).value,
            fields=self._build_fields(context),
            occurred_at=context.occurred_at,
            source_received_at=context.occurred_at,
            raw_payload={"parser": self.name},
        )


def build_dynamic_parsers(path: Optional[str]) -> List[DynamicRuleBookingParser]:
    """Parsers for every enabled rule in `path`; an unreadable file yields none."""
    if not path:
        return []
    try:
        definitions = load_rules_file(path)
    except DynamicRuleError as e:
        logger.error(str(e))
        return []
    logger.info(f"Loaded {len(definitions)} dynamic parser rule(s) from {path}")
    return [DynamicRuleBookingParser(d) for d in definitions]
