"""
Booking Email Ingestion Service

Drives one inbox message through the pipeline:
1. Fetch the payload from the mail source (or reuse the stored copy)
2. Upsert the raw BookingEmail record (idempotent by message_id)
3. Run the parser registry
4. Reconcile every parsed event in a single transaction
5. Fan touched bookings out to the downstream sync hook after commit

Status machine per message: pending -> processing -> processed | ignored | failed.
A processed message is skipped unless reprocessing is forced.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models.booking import Booking
from ..models.booking_email import BookingEmail, IngestionStatus
from ..models.booking_event import BookingEvent
from ..utils.datetime_utils import utcnow
from ..utils.db_helpers import get_pending_with_skip_locked
from ..utils.logging_config import clear_message_context, get_logger, set_message_context
from ..utils.metrics import (
    booking_emails_total,
    parser_matches_total,
    reconcile_duration_seconds,
    record_booking_sync,
    timeline_rebuilds_total,
)
from .gmail_client import GmailMailSource
from .mail_source import MailSource, MailTransportError, MessagePayload
from .parsers import ParserContext, ParserRegistry, build_default_registry
from .parsers.text_utils import ensure_plain_text_body
from .reconciliation import BookingReconciler, ReplayContext, StaleBookingEvent
from .utm_sync import BookingSyncHook, EcwidUtmSyncService

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

STALE_DURING_REBUILD = "Stale event during timeline rebuild"
REBUILD_PENDING = "Timeline rebuild pending"
FAILURE_REASON_LIMIT = 1000


@dataclass
class IngestionResult:
    """Outcome of processing one message"""
    message_id: str
    status: str  # processed, ignored, failed, skipped
    booking_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    rebuilt: bool = False


@lru_cache()
def get_default_registry() -> ParserRegistry:
    return build_default_registry()


class BookingIngestionService:
    """
    Ingest booking notification emails into the Booking timeline.

    One instance works on one database session. Each message is its own
    transaction; the booking sync hook runs only after the outermost call
    has committed.
    """

    def __init__(
        self,
        db: Session,
        mail_source: Optional[MailSource] = None,
        registry: Optional[ParserRegistry] = None,
        reconciler_factory: Optional[Callable[[Session], BookingReconciler]] = None,
        booking_sync: Optional[BookingSyncHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.mail_source = mail_source
        self.registry = registry or get_default_registry()
        self.reconciler_factory = reconciler_factory or (lambda session: BookingReconciler(session, clock=clock))
        self.booking_sync = booking_sync
        self.clock = clock

        self._depth = 0
        self._pending_sync: List[str] = []
        self._rebuilding: Set[Tuple[str, str]] = set()

    # ------------------------------------------------------------------
    # Raw store
    # ------------------------------------------------------------------

    def upsert_email(self, payload: MessagePayload) -> BookingEmail:
        """
        Insert or refresh the raw record for a fetched message.

        A processed record keeps its status; anything else goes back to pending.
        """
        headers = payload.headers or {}
        email = self.db.query(BookingEmail).filter(BookingEmail.message_id == payload.message_id).first()
        if email is None:
            email = BookingEmail(message_id=payload.message_id, ingestion_status=IngestionStatus.PENDING.value)
            self.db.add(email)
        elif email.ingestion_status != IngestionStatus.PROCESSED.value:
            email.ingestion_status = IngestionStatus.PENDING.value

        text_body = payload.text_body or ""
        email.thread_id = payload.thread_id
        email.history_id = payload.history_id
        email.from_address = headers.get("from") or email.from_address
        email.to_addresses = headers.get("to") or email.to_addresses
        email.cc_addresses = headers.get("cc") or email.cc_addresses
        email.subject = headers.get("subject") or email.subject
        email.snippet = payload.snippet or text_body[:240]
        email.received_at = payload.received_at or email.received_at
        email.internal_date = payload.internal_date or email.internal_date
        email.label_ids = payload.label_ids or email.label_ids
        email.headers = headers
        email.payload_size_bytes = payload.size_estimate or len(text_body)
        email.text_body = text_body
        email.html_body = payload.html_body

        self.db.commit()
        return email

    def _set_status(self, email: BookingEmail, status: IngestionStatus, reason: Optional[str] = None) -> None:
        email.ingestion_status = status.value
        email.failure_reason = reason[:FAILURE_REASON_LIMIT] if reason else None
        email.last_processed_at = self.clock()
        self.db.commit()

    @staticmethod
    def build_context(email: BookingEmail) -> ParserContext:
        headers = dict(email.headers or {})
        return ParserContext(
            message_id=email.message_id,
            thread_id=email.thread_id,
            subject=email.subject or "",
            snippet=email.snippet or "",
            from_address=email.from_address or headers.get("from", ""),
            to=email.to_addresses or headers.get("to", ""),
            cc=email.cc_addresses or headers.get("cc", ""),
            received_at=email.received_at,
            internal_date=email.internal_date,
            headers=headers,
            text_body=ensure_plain_text_body(email.text_body, email.html_body, email.snippet),
            raw_text_body=email.text_body or "",
            html_body=email.html_body or "",
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_booking_email(
        self,
        message_id: str,
        force: bool = False,
        use_stored: bool = False,
        payload: Optional[MessagePayload] = None,
    ) -> IngestionResult:
        """
        Process one message end to end.

        `payload` skips the mailbox fetch when the caller already holds the
        message; `use_stored` replays the stored BookingEmail bodies.
        """
        token = set_message_context(message_id)
        started = time.perf_counter()
        self._depth += 1
        try:
            result = self._process(message_id, force=force, use_stored=use_stored, payload=payload)
        finally:
            self._depth -= 1
            clear_message_context(token)

        structured_logger.message_outcome(
            message_id,
            result.status,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            booking_ids=result.booking_ids,
            rebuilt=result.rebuilt,
        )
        booking_emails_total.inc(status=result.status)
        if self._depth == 0:
            self._flush_sync()
        return result

    def _load_email(
        self,
        message_id: str,
        use_stored: bool,
        payload: Optional[MessagePayload] = None,
    ) -> Tuple[Optional[BookingEmail], Optional[str]]:
        if payload is not None:
            return self.upsert_email(payload), None
        if use_stored:
            email = self.db.query(BookingEmail).filter(BookingEmail.message_id == message_id).first()
            return email, None if email else f"Message {message_id} is not stored"

        if self.mail_source is None:
            return None, "No mail source configured"
        try:
            payload = self.mail_source.fetch_message_payload(message_id)
        except MailTransportError as e:
            logger.error(f"Unable to fetch message {message_id}: {e}")
            return None, str(e)
        if payload is None or not payload.message_id:
            logger.warning(f"Mail source returned no payload for {message_id}")
            return None, f"No payload for message {message_id}"
        return self.upsert_email(payload), None

    def _process(
        self,
        message_id: str,
        force: bool,
        use_stored: bool,
        payload: Optional[MessagePayload] = None,
    ) -> IngestionResult:
        email, error = self._load_email(message_id, use_stored, payload)
        if email is None:
            return IngestionResult(message_id=message_id, status=IngestionStatus.FAILED.value, error=error)

        if email.ingestion_status == IngestionStatus.PROCESSED.value and not force:
            logger.debug(f"Message {message_id} already processed, skipping")
            return IngestionResult(message_id=message_id, status="skipped")

        self._set_status(email, IngestionStatus.PROCESSING)

        outcome = self.registry.parse(self.build_context(email))
        if not outcome.matched:
            self._set_status(email, IngestionStatus.IGNORED, outcome.report())
            return IngestionResult(message_id=message_id, status=IngestionStatus.IGNORED.value)
        parser_matches_total.inc(parser=outcome.parser_name)

        booking_ids: List[str] = []
        try:
            reconciler = self.reconciler_factory(self.db)
            with reconcile_duration_seconds.time():
                replay = ReplayContext.load(self.db, message_id)
                for event in outcome.event.iter_events():
                    result = reconciler.apply(email, event, replay)
                    if result.booking_id not in booking_ids:
                        booking_ids.append(result.booking_id)
                discarded = reconciler.discard_unclaimed(replay)
            if discarded:
                logger.info(f"Discarded {discarded} superseded event(s) of message {message_id}")

            email.ingestion_status = IngestionStatus.PROCESSED.value
            email.failure_reason = None
            email.last_processed_at = self.clock()
            self.db.commit()
        except StaleBookingEvent as stale:
            self.db.rollback()
            key = (stale.platform, stale.platform_booking_id)
            if key in self._rebuilding:
                logger.warning(f"{STALE_DURING_REBUILD} for {stale.platform}#{stale.platform_booking_id}: {stale}")
                self._set_status(email, IngestionStatus.FAILED, STALE_DURING_REBUILD)
                return IngestionResult(
                    message_id=message_id, status=IngestionStatus.FAILED.value, error=STALE_DURING_REBUILD,
                )
            logger.info(f"Message {message_id} is out of order; rebuilding timeline: {stale}")
            return self.rebuild_timeline(stale, message_id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to apply parsed booking for {message_id}: {e}", exc_info=True)
            self._set_status(email, IngestionStatus.FAILED, str(e))
            return IngestionResult(message_id=message_id, status=IngestionStatus.FAILED.value, error=str(e)[:FAILURE_REASON_LIMIT])

        self._pending_sync.extend(booking_ids)
        return IngestionResult(
            message_id=message_id,
            status=IngestionStatus.PROCESSED.value,
            booking_ids=booking_ids,
        )

    # ------------------------------------------------------------------
    # Timeline rebuild
    # ------------------------------------------------------------------

    def rebuild_timeline(self, stale: StaleBookingEvent, trigger_message_id: str) -> IngestionResult:
        """
        Discard a booking and replay every message that touched it, oldest first.

        Messages are replayed from their stored bodies, so the mailbox is not
        contacted. The trigger message is replayed with the rest.

        The delete commits together with moving every collected message back
        to pending. If the replay dies halfway, the retry sweep picks those
        messages up once they are older than BOOKING_STUCK_AFTER_SECONDS.
        """
        key = (stale.platform, stale.platform_booking_id)
        booking = (
            self.db.query(Booking)
            .filter(Booking.platform == stale.platform, Booking.platform_booking_id == stale.platform_booking_id)
            .first()
        )

        message_ids: List[str] = []
        if booking is not None:
            rows = (
                self.db.query(BookingEvent.email_message_id)
                .filter(BookingEvent.booking_id == booking.id)
                .order_by(BookingEvent.occurred_at.asc())
                .all()
            )
            for (msg_id,) in rows:
                if msg_id and msg_id not in message_ids:
                    message_ids.append(msg_id)
        if trigger_message_id not in message_ids:
            message_ids.append(trigger_message_id)

        emails = self.db.query(BookingEmail).filter(BookingEmail.message_id.in_(message_ids)).all()
        emails.sort(key=lambda e: e.sort_key)
        now = self.clock()
        for email in emails:
            email.ingestion_status = IngestionStatus.PENDING.value
            email.failure_reason = REBUILD_PENDING
            email.last_processed_at = now
        if booking is not None:
            logger.info(
                f"Rebuilding {stale.platform}#{stale.platform_booking_id} "
                f"from {len(message_ids)} message(s)"
            )
            self.db.delete(booking)
        self.db.commit()
        timeline_rebuilds_total.inc(platform=stale.platform)

        self._rebuilding.add(key)
        try:
            results = self._replay_stored([e.message_id for e in emails])
        finally:
            self._rebuilding.discard(key)

        trigger = next((r for r in results if r.message_id == trigger_message_id), None)
        booking_ids: List[str] = []
        for r in results:
            for booking_id in r.booking_ids:
                if booking_id not in booking_ids:
                    booking_ids.append(booking_id)

        return IngestionResult(
            message_id=trigger_message_id,
            status=trigger.status if trigger else IngestionStatus.FAILED.value,
            booking_ids=trigger.booking_ids if trigger else [],
            error=trigger.error if trigger else f"Message {trigger_message_id} is not stored",
            rebuilt=True,
        )

    def _replay_stored(self, message_ids: List[str]) -> List[IngestionResult]:
        return [self.process_booking_email(msg_id, force=True, use_stored=True) for msg_id in message_ids]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def ingest_latest(self, query: Optional[str] = None, max_results: Optional[int] = None) -> List[IngestionResult]:
        """Process the first page of matching messages, oldest first."""
        if self.mail_source is None:
            logger.warning("Mail source is not configured; skipping ingestion")
            return []
        query = query or settings.booking_email_query
        max_results = max_results or settings.booking_email_batch_size
        try:
            page = self.mail_source.list_messages(query, max_results=max_results)
        except MailTransportError as e:
            logger.error(f"Failed to list booking emails: {e}")
            return []

        if not page.messages:
            logger.debug("No messages matching booking query")
            return []
        return [self.process_booking_email(ref.id) for ref in reversed(page.messages)]

    def reprocess_failed(self, limit: Optional[int] = None, use_stored: bool = False) -> List[IngestionResult]:
        """
        Retry failed and ignored messages, plus pending or processing ones that
        have not been touched for BOOKING_STUCK_AFTER_SECONDS (an interrupted
        run or timeline rebuild). The most recently updated are picked first
        and replayed oldest first.
        """
        limit = limit or settings.booking_reprocess_limit
        stuck_before = self.clock() - timedelta(seconds=settings.booking_stuck_after_seconds)
        emails = get_pending_with_skip_locked(
            self.db,
            BookingEmail,
            or_(
                BookingEmail.ingestion_status.in_([IngestionStatus.FAILED.value, IngestionStatus.IGNORED.value]),
                and_(
                    BookingEmail.ingestion_status.in_([IngestionStatus.PENDING.value, IngestionStatus.PROCESSING.value]),
                    func.coalesce(BookingEmail.last_processed_at, BookingEmail.updated_at) < stuck_before,
                ),
            ),
            order_by=BookingEmail.updated_at.desc(),
            limit=limit,
        )
        message_ids = [e.message_id for e in sorted(emails, key=lambda e: e.sort_key)]
        use_stored = use_stored or self.mail_source is None
        return [
            self.process_booking_email(message_id, force=True, use_stored=use_stored)
            for message_id in message_ids
        ]

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _flush_sync(self) -> None:
        booking_ids = list(dict.fromkeys(self._pending_sync))
        self._pending_sync.clear()
        if not booking_ids or self.booking_sync is None:
            return
        try:
            self.booking_sync.sync(booking_ids)
        except Exception as e:
            # Downstream sync never undoes ingestion
            logger.warning(f"Booking sync failed for {len(booking_ids)} booking(s): {e}")
            record_booking_sync(False, len(booking_ids))
            return
        record_booking_sync(True, len(booking_ids))


def build_ingestion_service(db: Session) -> BookingIngestionService:
    """Service wired from settings: Gmail when configured, Ecwid UTM sync."""
    mail_source = GmailMailSource() if settings.has_gmail_config else None
    if mail_source is None:
        logger.warning("Gmail credentials are not configured; only stored messages can be processed")
    return BookingIngestionService(
        db,
        mail_source=mail_source,
        booking_sync=EcwidUtmSyncService(db),
    )


def run_ingest_cycle() -> Dict[str, int]:
    """One poll: ingest the latest page, then sweep failed, ignored and stuck messages."""
    db = SessionLocal()
    try:
        service = build_ingestion_service(db)
        results = service.ingest_latest() + service.reprocess_failed()
    finally:
        db.close()

    statuses: Dict[str, int] = {}
    for r in results:
        statuses[r.status] = statuses.get(r.status, 0) + 1
    return statuses
