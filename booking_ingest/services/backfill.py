"""
Backfill driver.

Pages through the mailbox for a query and optional date range, processing
each page oldest-first (pages arrive newest-first). Every message is its own
transaction, so interrupting a run loses at most the message in flight.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Union

from ..config import settings
from .ingestion_service import BookingIngestionService, IngestionResult
from .mail_source import MailSource, MailTransportError

logger = logging.getLogger(__name__)

DateBound = Union[date, datetime, None]


@dataclass
class BackfillProgress:
    pages: int
    messages_seen: int
    percent: Optional[float]
    estimated: bool


@dataclass
class BackfillReport:
    query: str
    pages: int = 0
    messages_seen: int = 0
    skipped_lower: bool = False
    skipped_upper: int = 0
    statuses: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    results: List[IngestionResult] = field(default_factory=list)

    def count(self, status: str) -> None:
        self.statuses[status] = self.statuses.get(status, 0) + 1


def _as_datetime(value: DateBound) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def build_query(query: str, after: DateBound = None, before: DateBound = None) -> str:
    """Append Gmail after:/before: operators (YYYY/MM/DD) to a search query."""
    parts = [query.strip()] if query and query.strip() else []
    if after is not None:
        parts.append(f"after:{after:%Y/%m/%d}")
    if before is not None:
        parts.append(f"before:{before:%Y/%m/%d}")
    return " ".join(parts)


class BackfillDriver:
    """
    Example:
        driver = BackfillDriver(mail_source, service)
        report = driver.run(settings.booking_email_query, after=date(2024, 1, 1))
    """

    def __init__(
        self,
        mail_source: MailSource,
        service: BookingIngestionService,
        page_size: Optional[int] = None,
    ):
        self.mail_source = mail_source
        self.service = service
        self.page_size = page_size or settings.booking_email_batch_size

    @staticmethod
    def _progress(
        pages: int,
        seen: int,
        next_page_token: Optional[str],
        max_pages: Optional[int],
        total_size_estimate: Optional[int],
    ) -> BackfillProgress:
        if not next_page_token:
            return BackfillProgress(pages=pages, messages_seen=seen, percent=100.0, estimated=False)
        if max_pages:
            percent = round(min(pages / max_pages, 1.0) * 100, 1)
            return BackfillProgress(pages=pages, messages_seen=seen, percent=percent, estimated=False)
        if total_size_estimate:
            percent = round(min(seen / total_size_estimate * 100, 99.0), 1)
            return BackfillProgress(pages=pages, messages_seen=seen, percent=percent, estimated=True)
        return BackfillProgress(pages=pages, messages_seen=seen, percent=None, estimated=True)

    def run(
        self,
        query: str,
        after: DateBound = None,
        before: DateBound = None,
        max_pages: Optional[int] = None,
        force: bool = False,
        on_progress: Optional[Callable[[BackfillProgress], None]] = None,
    ) -> BackfillReport:
        full_query = build_query(query, after, before)
        lower = _as_datetime(after)
        upper = _as_datetime(before)
        report = BackfillReport(query=full_query)
        page_token = None

        logger.info(f"Starting backfill for {full_query!r}")
        while True:
            try:
                page = self.mail_source.list_messages(full_query, max_results=self.page_size, page_token=page_token)
            except MailTransportError as e:
                logger.error(f"Backfill listing failed on page {report.pages + 1}: {e}")
                report.error = str(e)
                break
            report.pages += 1

            for ref in reversed(page.messages):
                report.messages_seen += 1
                self._process_one(ref.id, lower, upper, force, report)

            if on_progress is not None:
                on_progress(self._progress(
                    report.pages, report.messages_seen, page.next_page_token, max_pages, page.total_size_estimate,
                ))

            if report.skipped_lower:
                logger.info("Crossed the lower date bound; stopping pagination")
                break
            if not page.next_page_token or (max_pages and report.pages >= max_pages):
                break
            page_token = page.next_page_token

        logger.info(
            f"Backfill finished: {report.pages} page(s), {report.messages_seen} message(s), {report.statuses}"
        )
        return report

    def _process_one(
        self,
        message_id: str,
        lower: Optional[datetime],
        upper: Optional[datetime],
        force: bool,
        report: BackfillReport,
    ) -> None:
        try:
            payload = self.mail_source.fetch_message_payload(message_id)
        except MailTransportError as e:
            logger.warning(f"Backfill could not fetch {message_id}: {e}")
            report.count("failed")
            return
        if payload is None:
            report.count("failed")
            return

        internal_date = payload.internal_date
        if lower is not None and internal_date is not None and internal_date < lower:
            report.skipped_lower = True
            report.count("skipped_lower")
            return
        if upper is not None and internal_date is not None and internal_date >= upper:
            report.skipped_upper += 1
            report.count("skipped_upper")
            return

        result = self.service.process_booking_email(message_id, force=force, payload=payload)
        report.results.append(result)
        report.count(result.status)
