"""
Booking email parser registry.

Parsers are tried in a fixed order and the first one that both accepts the
message (can_parse) and returns an event wins. A parser that raises is
treated as a non-match so one broken parser cannot block the rest.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ...config import settings
from .airbnb import AirbnbBookingParser
from .base import (
    AddonLine,
    BookingEmailParser,
    BookingFieldPatch,
    DiagnosticCheck,
    ParsedBookingEvent,
    ParserContext,
    ParserDiagnostics,
    UNSET,
)
from .basic import BasicBookingParser
from .dynamic_rule import DynamicRuleBookingParser, DynamicRuleError, build_dynamic_parsers
from .ecwid import EcwidBookingParser
from .fareharbor import FareHarborBookingParser
from .freetour import FreeTourBookingParser
from .getyourguide import GetYourGuideBookingParser
from .viator import ViatorBookingParser
from .xperiencepoland import XperiencePolandBookingParser

logger = logging.getLogger(__name__)

NO_MATCH_PREFIX = "No parser matched this email"


@dataclass
class ParseOutcome:
    event: Optional[ParsedBookingEvent]
    parser_name: Optional[str] = None
    diagnostics: List[ParserDiagnostics] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.event is not None

    def report(self) -> str:
        """Human-readable explanation stored on ignored messages."""
        lines = [NO_MATCH_PREFIX]
        lines.extend(d.render() for d in self.diagnostics)
        return "\n".join(lines)


class ParserRegistry:

    def __init__(self, parsers: List[BookingEmailParser]):
        self.parsers = list(parsers)

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.parsers]

    def _diagnose(self, parser: BookingEmailParser, context: ParserContext) -> ParserDiagnostics:
        try:
            return parser.diagnose(context)
        except Exception as e:
            logger.warning(f"Parser {parser.name} diagnostics failed: {e}")
            return ParserDiagnostics(name=parser.name, can_parse=False, error=str(e))

    def parse(self, context: ParserContext) -> ParseOutcome:
        diagnostics = []
        for parser in self.parsers:
            try:
                if not parser.can_parse(context):
                    diagnostics.append(self._diagnose(parser, context))
                    continue
                event = parser.parse(context)
            except Exception as e:
                logger.warning(f"Parser {parser.name} failed on message {context.message_id}: {e}")
                diag = self._diagnose(parser, context)
                diag.error = str(e)
                diagnostics.append(diag)
                continue

            if event is not None:
                logger.debug(f"Message {context.message_id} parsed by {parser.name}")
                return ParseOutcome(event=event, parser_name=parser.name, diagnostics=diagnostics)
            diagnostics.append(self._diagnose(parser, context))

        return ParseOutcome(event=None, diagnostics=diagnostics)


def build_default_registry(
    rules_path: Optional[str] = None,
    timezone: Optional[str] = None,
) -> ParserRegistry:
    """Dynamic rules first, then the built-in platform parsers, then the heuristic fallback."""
    timezone = timezone or settings.booking_parser_timezone
    if rules_path is None:
        rules_path = settings.dynamic_parser_rules_path
    parsers: List[BookingEmailParser] = []
    parsers.extend(build_dynamic_parsers(rules_path))
    parsers.extend([
        FareHarborBookingParser(timezone=timezone),
        EcwidBookingParser(timezone=timezone),
        GetYourGuideBookingParser(timezone=timezone),
        AirbnbBookingParser(timezone=timezone),
        ViatorBookingParser(timezone=timezone),
        FreeTourBookingParser(timezone=timezone),
        XperiencePolandBookingParser(timezone=timezone),
        BasicBookingParser(timezone=timezone),
    ])
    return ParserRegistry(parsers)


__all__ = [
    "AddonLine",
    "BookingEmailParser",
    "BookingFieldPatch",
    "DiagnosticCheck",
    "DynamicRuleBookingParser",
    "DynamicRuleError",
    "ParseOutcome",
    "ParsedBookingEvent",
    "ParserContext",
    "ParserDiagnostics",
    "ParserRegistry",
    "UNSET",
    "build_default_registry",
]
