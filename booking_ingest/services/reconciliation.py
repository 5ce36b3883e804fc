"""
Booking Reconciliation Engine

Merges one ParsedBookingEvent into the canonical Booking aggregate inside the
caller's per-message transaction:

1. Locate the booking by (platform, platform_booking_id), by cross-reference
   when the message carries no id, or through the event a replayed message
   produced last time
2. Guard ordering: status only moves forward in occurred_at; older created or
   amended events may still backfill fields
3. Resolve channel and product references
4. Apply absolute fields and deltas to an immutable BookingState snapshot
5. Write the audit BookingEvent and regenerate addon rows

Out-of-order histories converge because stale backfills never overwrite a
field that a newer event declared, and re-apply newer deltas on top of the
absolute values they do write.
"""

import copy
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking import Booking, BookingStatus, PaymentStatus
from ..models.booking_addon import BookingAddon
from ..models.booking_email import BookingEmail
from ..models.booking_event import BookingEvent, BookingEventType
from ..utils.datetime_utils import utcnow
from ..utils.db_helpers import acquire_row_lock
from ..utils.logging_config import get_logger
from .alias_resolver import AliasResolver
from .catalog import CatalogService
from .parsers.base import DELTA_TARGETS, UNSET, BookingFieldPatch, ParsedBookingEvent, to_jsonable
from .parsers.text_utils import normalize_label

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

BACKFILL_EVENT_TYPES = {BookingEventType.CREATED.value, BookingEventType.AMENDED.value}
PARTY_DELTAS = ("party_size_total_delta", "party_size_adults_delta")


class StaleBookingEvent(Exception):
    """
    A status-changing event older than the booking's current status.

    Raised before anything is written; the caller rebuilds the timeline.
    """

    def __init__(
        self,
        platform: str,
        platform_booking_id: str,
        occurred_at: Optional[datetime],
        status_changed_at: Optional[datetime],
    ):
        self.platform = platform
        self.platform_booking_id = platform_booking_id
        self.occurred_at = occurred_at
        self.status_changed_at = status_changed_at
        super().__init__(
            f"Stale event for {platform}#{platform_booking_id}: "
            f"occurred {occurred_at} before status change at {status_changed_at}"
        )


@dataclass(frozen=True)
class BookingState:
    """Immutable snapshot of every attribute reconciliation may write."""
    status: Optional[str] = None
    payment_status: Optional[str] = None
    platform_order_id: Optional[str] = None
    channel_id: Optional[int] = None
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    product_variant: Optional[str] = None
    guest_first_name: Optional[str] = None
    guest_last_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    hotel_name: Optional[str] = None
    pickup_location: Optional[str] = None
    party_size_total: Optional[int] = None
    party_size_adults: Optional[int] = None
    party_size_children: Optional[int] = None
    experience_date: Optional[date] = None
    experience_start_at: Optional[datetime] = None
    experience_end_at: Optional[datetime] = None
    currency: Optional[str] = None
    base_amount: Optional[Decimal] = None
    addons_amount: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    price_gross: Optional[Decimal] = None
    price_net: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    addons_snapshot: Optional[Dict[str, Any]] = None
    raw_payload_location: Optional[str] = None
    status_changed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    last_email_message_id: Optional[str] = None
    source_received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingState":
        values = {name: getattr(booking, name) for name in cls.__dataclass_fields__}
        values["addons_snapshot"] = copy.deepcopy(values["addons_snapshot"])
        return cls(**values)

    def write_to(self, booking: Booking) -> None:
        for name, value in asdict(self).items():
            if getattr(booking, name) != value:
                setattr(booking, name, value)


@dataclass
class ReplayContext:
    """
    Events a previous run of the same message produced.

    Each incoming parsed event claims at most one prior event: first one on
    the same booking key, otherwise one of the same platform. Whatever stays
    unclaimed at the end of the message is discarded.
    """
    message_id: str
    prior_events: List[BookingEvent] = field(default_factory=list)
    claimed_ids: Set[str] = field(default_factory=set)

    @classmethod
    def load(cls, db: Session, message_id: str) -> "ReplayContext":
        prior = (
            db.query(BookingEvent)
            .filter(BookingEvent.email_message_id == message_id)
            .order_by(BookingEvent.occurred_at.asc(), BookingEvent.created_at.asc())
            .all()
        )
        return cls(message_id=message_id, prior_events=prior)

    @property
    def is_replay(self) -> bool:
        return bool(self.prior_events)

    def unclaimed(self) -> List[BookingEvent]:
        return [e for e in self.prior_events if e.id not in self.claimed_ids]

    def claim(self, event: ParsedBookingEvent) -> Optional[BookingEvent]:
        candidates = self.unclaimed()
        chosen = None
        if event.platform_booking_id:
            chosen = next(
                (e for e in candidates
                 if e.booking is not None
                 and e.booking.platform == event.platform
                 and e.booking.platform_booking_id == event.platform_booking_id),
                None,
            )
        if chosen is None:
            chosen = next((e for e in candidates if e.platform == event.platform), None)
        if chosen is not None:
            self.claimed_ids.add(chosen.id)
        return chosen


@dataclass
class ReconcileResult:
    booking_id: str
    event_id: str
    action: str  # created, updated, backfilled, rekeyed


class CrossReferenceMatcher:
    """
    Find the booking a message without a booking id refers to.

    Candidates are non-cancelled bookings of the same platform with an
    experience date inside the window. Scores: 3 for the same full name (1 for
    last name only), 2 for the same party size, 2 for a start time within the
    time window (else 1 for the same date). The best score must reach the
    minimum and be unique.
    """

    def __init__(
        self,
        db: Session,
        date_window_days: Optional[int] = None,
        time_window_minutes: Optional[int] = None,
        min_score: Optional[int] = None,
    ):
        self.db = db
        self.date_window_days = (
            settings.cross_reference_date_window_days if date_window_days is None else date_window_days
        )
        self.time_window_minutes = (
            settings.cross_reference_time_window_minutes if time_window_minutes is None else time_window_minutes
        )
        self.min_score = settings.cross_reference_min_score if min_score is None else min_score

    @staticmethod
    def _experience_date(fields: BookingFieldPatch) -> Optional[date]:
        if fields.experience_date:
            return fields.experience_date
        if fields.experience_start_at:
            return fields.experience_start_at.date()
        return None

    def score(self, booking: Booking, fields: BookingFieldPatch) -> int:
        total = 0
        full_name = normalize_label(" ".join(
            p for p in (fields.guest_first_name or None, fields.guest_last_name or None) if p
        ))
        last_name = normalize_label(fields.guest_last_name or None)
        if full_name and full_name == normalize_label(booking.guest_full_name):
            total += 3
        elif last_name and last_name == normalize_label(booking.guest_last_name):
            total += 1

        party = fields.party_size_total or fields.party_size_adults or None
        if party and party == booking.party_size_total:
            total += 2

        start = fields.experience_start_at or None
        if start and booking.experience_start_at and \
                abs(start - booking.experience_start_at) <= timedelta(minutes=self.time_window_minutes):
            total += 2
        elif self._experience_date(fields) and self._experience_date(fields) == booking.experience_date:
            total += 1
        return total

    def match(self, event: ParsedBookingEvent) -> Optional[Booking]:
        target = self._experience_date(event.fields)
        if target is None:
            return None
        window = timedelta(days=self.date_window_days)
        candidates = (
            self.db.query(Booking)
            .filter(
                Booking.platform == event.platform,
                Booking.status != BookingStatus.CANCELLED.value,
                Booking.experience_date >= target - window,
                Booking.experience_date <= target + window,
            )
            .all()
        )
        if not candidates:
            return None

        scored = sorted(((self.score(b, event.fields), b) for b in candidates), key=lambda s: -s[0])
        best_score, best = scored[0]
        if best_score < self.min_score:
            return None
        if len(scored) > 1 and scored[1][0] == best_score:
            logger.info(
                f"Cross-reference for {event.platform} on {target} is ambiguous "
                f"({best_score} points shared); not matching"
            )
            return None
        logger.info(f"Cross-referenced message to {best.platform}#{best.platform_booking_id} ({best_score} points)")
        return acquire_row_lock(self.db, Booking, Booking.id == best.id)


def _addon_to_json(addon) -> Dict[str, Any]:
    return to_jsonable(asdict(addon))


class BookingReconciler:
    """
    Apply parsed events to bookings.

    Example:
        reconciler = BookingReconciler(db)
        result = reconciler.apply(email, parsed_event, ReplayContext.load(db, email.message_id))
    """

    def __init__(
        self,
        db: Session,
        alias_resolver: Optional[AliasResolver] = None,
        catalog: Optional[CatalogService] = None,
        cross_reference: Optional[CrossReferenceMatcher] = None,
        per_person_addon_keys: Optional[List[str]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.alias_resolver = alias_resolver or AliasResolver(db, clock=clock)
        self.catalog = catalog or CatalogService(db)
        self.cross_reference = cross_reference or CrossReferenceMatcher(db)
        self.per_person_addon_keys = (
            settings.per_person_addon_key_list if per_person_addon_keys is None else per_person_addon_keys
        )
        self.clock = clock

    # ------------------------------------------------------------------
    # Locate
    # ------------------------------------------------------------------

    def _find_by_key(self, platform: str, platform_booking_id: str) -> Optional[Booking]:
        return acquire_row_lock(
            self.db,
            Booking,
            and_(Booking.platform == platform, Booking.platform_booking_id == platform_booking_id),
        )

    def _locate(self, event: ParsedBookingEvent, prior: Optional[BookingEvent]):
        """Return (booking, action); booking is None when a new one must be created."""
        booking = None
        if event.platform_booking_id:
            booking = self._find_by_key(event.platform, event.platform_booking_id)
        else:
            booking = self.cross_reference.match(event)
        if booking is not None:
            return booking, "updated"

        if prior is not None:
            booking = acquire_row_lock(self.db, Booking, Booking.id == prior.booking_id)
            if booking is not None:
                return booking, "rekeyed"
        return None, "created"

    def _create(self, email: BookingEmail, event: ParsedBookingEvent, occurred_at: datetime) -> Booking:
        booking = Booking(
            platform=event.platform,
            platform_booking_id=event.platform_booking_id or f"msg-{email.message_id}",
            status=event.status,
            payment_status=event.payment_status or PaymentStatus.UNKNOWN.value,
            status_changed_at=occurred_at,
            cancelled_at=occurred_at if event.status == BookingStatus.CANCELLED.value else None,
        )
        self.db.add(booking)
        self.db.flush()
        return booking

    # ------------------------------------------------------------------
    # Supersede
    # ------------------------------------------------------------------

    def _revert_deltas(self, booking: Booking, prior: BookingEvent) -> None:
        applied = prior.applied_fields or {}
        for delta_name, target in DELTA_TARGETS.items():
            value = applied.get(delta_name)
            if not value:
                continue
            if target == "addons_snapshot":
                snapshot = copy.deepcopy(booking.addons_snapshot or {})
                extras = dict(snapshot.get("extras") or {})
                for key, amount in value.items():
                    extras[key] = (extras.get(key) or 0) - int(amount)
                snapshot["extras"] = extras
                booking.addons_snapshot = snapshot
            else:
                setattr(booking, target, (getattr(booking, target) or 0) - int(value))

    def discard_prior_event(self, prior: BookingEvent, message_id: str, keep_booking_id: Optional[str] = None) -> None:
        """
        Delete a prior event of a replayed message, undoing its deltas.

        Its booking is deleted as well when nothing else references it and it
        was last touched by this same message.
        """
        booking = prior.booking
        if booking is not None:
            self._revert_deltas(booking, prior)
        self.db.query(BookingAddon).filter(BookingAddon.source_event_id == prior.id).delete(
            synchronize_session=False
        )
        self.db.delete(prior)
        self.db.flush()

        if booking is None or booking.id == keep_booking_id:
            return
        remaining = self.db.query(BookingEvent.id).filter(BookingEvent.booking_id == booking.id).first()
        if remaining is None and booking.last_email_message_id == message_id:
            logger.info(f"Deleting orphaned booking {booking.platform}#{booking.platform_booking_id}")
            self.db.delete(booking)
            self.db.flush()

    def discard_unclaimed(self, replay: Optional[ReplayContext]) -> int:
        if replay is None:
            return 0
        unclaimed = replay.unclaimed()
        for prior in unclaimed:
            replay.claimed_ids.add(prior.id)
            self.discard_prior_event(prior, replay.message_id)
        return len(unclaimed)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def _resolve_references(self, booking: Booking, event: ParsedBookingEvent, patch: BookingFieldPatch) -> None:
        if not patch.is_set("channel_id") and booking.channel_id is None:
            channel_id = self.catalog.channel_id_for_platform(event.platform)
            if channel_id is not None:
                patch.channel_id = channel_id

        if patch.is_set("product_id") or booking.product_id is not None:
            return
        candidates = [
            patch.product_name if patch.is_set("product_name") else booking.product_name,
            patch.product_variant if patch.is_set("product_variant") else booking.product_variant,
            patch.notes if patch.is_set("notes") else (event.notes or booking.notes),
        ]
        experience_date = patch.experience_date if patch.is_set("experience_date") else booking.experience_date

        product_id = self.alias_resolver.resolve(candidates)
        if product_id is None:
            product_id = self.catalog.product_id_from_labels(candidates, experience_date)
        product_id = self.catalog.apply_new_years_eve(product_id, experience_date)
        if product_id is not None:
            patch.product_id = product_id

    # ------------------------------------------------------------------
    # Patch
    # ------------------------------------------------------------------

    def _newer_events(self, booking: Booking, occurred_at: datetime) -> List[BookingEvent]:
        return (
            self.db.query(BookingEvent)
            .filter(BookingEvent.booking_id == booking.id, BookingEvent.occurred_at > occurred_at)
            .all()
        )

    def _inferred_extras(self, party_delta, snapshot: Optional[Dict[str, Any]]) -> Dict[str, int]:
        """Per-person extras follow a party delta when the snapshot already tracks them."""
        if not party_delta:
            return {}
        extras = (snapshot or {}).get("extras") or {}
        return {key: int(party_delta) for key in self.per_person_addon_keys if key in extras}

    @staticmethod
    def _add_extras(snapshot: Optional[Dict[str, Any]], delta: Dict[str, Any]) -> Dict[str, Any]:
        updated = copy.deepcopy(snapshot or {})
        extras = dict(updated.get("extras") or {})
        for key, amount in delta.items():
            extras[key] = (extras.get(key) or 0) + int(amount)
        updated["extras"] = extras
        return updated

    def _newer_extras_delta(self, newer: BookingEvent, snapshot: Optional[Dict[str, Any]]) -> Dict[str, int]:
        applied = newer.applied_fields or {}
        if applied.get("addons_extras_delta"):
            return applied["addons_extras_delta"]
        if "addons_extras_delta" in newer.declared_fields:
            return {}
        party_delta = next((applied.get(name) for name in PARTY_DELTAS if applied.get(name)), None)
        return self._inferred_extras(party_delta, snapshot)

    def _apply_patch(
        self,
        state: BookingState,
        patch: BookingFieldPatch,
        newer: List[BookingEvent],
    ):
        """Return (changes, applied) for a patch against a state snapshot."""
        declared_by_newer: Set[str] = set()
        for e in newer:
            declared_by_newer |= e.declared_fields

        changes: Dict[str, Any] = {}
        applied: Dict[str, Any] = {}

        for name, value in patch.absolute_fields().items():
            if name in declared_by_newer:
                continue
            if newer and name in DELTA_TARGETS.values():
                value = self._with_newer_deltas(name, value, newer)
            changes[name] = value
            applied[name] = value

        deltas = patch.delta_fields()
        if not patch.is_set("addons_extras_delta"):
            party_delta = next((deltas[n] for n in PARTY_DELTAS if deltas.get(n)), None)
            inferred = self._inferred_extras(party_delta, changes.get("addons_snapshot", state.addons_snapshot))
            if inferred:
                deltas["addons_extras_delta"] = inferred

        for delta_name, value in deltas.items():
            target = DELTA_TARGETS[delta_name]
            if value is None or target in declared_by_newer:
                continue
            current = changes.get(target, getattr(state, target))
            if target == "addons_snapshot":
                changes[target] = self._add_extras(current, value)
            else:
                changes[target] = (current or 0) + int(value)
            applied[delta_name] = value

        return changes, applied

    def _with_newer_deltas(self, name: str, value: Any, newer: List[BookingEvent]) -> Any:
        """An absolute value written by a backfill still carries newer deltas."""
        if name == "addons_snapshot":
            for e in newer:
                delta = self._newer_extras_delta(e, value)
                if delta:
                    value = self._add_extras(value, delta)
            return value
        for delta_name, target in DELTA_TARGETS.items():
            if target != name:
                continue
            for e in newer:
                amount = (e.applied_fields or {}).get(delta_name)
                if amount:
                    value = (value or 0) + int(amount)
        return value

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _replace_addons(self, booking: Booking, event_row: BookingEvent, event: ParsedBookingEvent) -> None:
        self.db.query(BookingAddon).filter(BookingAddon.booking_id == booking.id).delete(synchronize_session=False)
        for line in event.addons or []:
            self.db.add(BookingAddon(
                booking_id=booking.id,
                source_event_id=event_row.id,
                platform_addon_id=line.platform_addon_id,
                platform_addon_name=line.platform_addon_name,
                quantity=line.quantity if line.quantity is not None else 1,
                unit_price=line.unit_price,
                total_price=line.total_price,
                currency=line.currency,
                tax_amount=line.tax_amount,
                is_included=bool(line.included),
                addon_metadata=line.metadata,
            ))

    def apply(
        self,
        email: BookingEmail,
        event: ParsedBookingEvent,
        replay: Optional[ReplayContext] = None,
    ) -> ReconcileResult:
        now = self.clock()
        occurred_at = (
            event.occurred_at or event.source_received_at or email.received_at or email.internal_date or now
        )
        prior = replay.claim(event) if replay is not None else None

        booking, action = self._locate(event, prior)
        created = booking is None
        if created:
            booking = self._create(email, event, occurred_at)

        stale = (
            not created
            and booking.status_changed_at is not None
            and occurred_at < booking.status_changed_at
        )
        if stale and event.event_type not in BACKFILL_EVENT_TYPES:
            raise StaleBookingEvent(event.platform, booking.platform_booking_id, occurred_at, booking.status_changed_at)
        if stale:
            action = "backfilled"

        if action == "rekeyed" and event.platform_booking_id \
                and booking.platform_booking_id != event.platform_booking_id:
            logger.info(
                f"Re-keying booking {booking.id} from {booking.platform_booking_id} "
                f"to {event.platform_booking_id} on replay of {email.message_id}"
            )
            booking.platform_booking_id = event.platform_booking_id

        if prior is not None:
            self.discard_prior_event(prior, email.message_id, keep_booking_id=booking.id)

        declared = event.fields
        patch = declared.copy()
        if not patch.is_set("notes") and event.notes:
            patch.notes = event.notes
        self._resolve_references(booking, event, patch)

        newer = self._newer_events(booking, occurred_at) if stale else []
        state = BookingState.from_booking(booking)
        changes, applied = self._apply_patch(state, patch, newer)

        old_status = booking.status
        if not stale:
            changes["status"] = event.status
            changes["status_changed_at"] = occurred_at
            changes["cancelled_at"] = occurred_at if event.status == BookingStatus.CANCELLED.value else None
            if event.payment_status:
                changes["payment_status"] = event.payment_status
            changes["last_email_message_id"] = email.message_id
        if event.platform_order_id and (not stale or not state.platform_order_id):
            changes["platform_order_id"] = event.platform_order_id

        received = event.source_received_at or email.received_at or email.internal_date
        if received and (state.source_received_at is None or received < state.source_received_at):
            changes["source_received_at"] = received
        changes["processed_at"] = now

        replace(state, **changes).write_to(booking)
        self.db.flush()

        if not stale and old_status != booking.status and not created:
            structured_logger.booking_status_changed(
                booking.id, old_status, booking.status,
                platform=booking.platform, platform_booking_id=booking.platform_booking_id,
                message_id=email.message_id,
            )

        field_patch = {"fields": patch.copy(**{
            name: UNSET for name in ("channel_id", "product_id") if not declared.is_set(name)
        }).to_json()}
        if event.addons is not None:
            field_patch["addons"] = [_addon_to_json(a) for a in event.addons]

        event_row = BookingEvent(
            booking_id=booking.id,
            email_id=email.id,
            email_message_id=email.message_id,
            event_type=event.event_type,
            platform=event.platform,
            status_after=booking.status,
            occurred_at=occurred_at,
            ingested_at=now,
            processed_at=now,
            field_patch=field_patch,
            applied_fields=to_jsonable(applied),
            event_payload=to_jsonable(event.raw_payload) if event.raw_payload is not None else {
                "status": event.status,
                "event_type": event.event_type,
                "notes": event.notes,
            },
        )
        self.db.add(event_row)
        self.db.flush()

        if event.addons is not None:
            if stale and any(e.carried_addons for e in newer):
                logger.debug(f"Skipping addons of stale event on {booking.platform}#{booking.platform_booking_id}")
            else:
                self._replace_addons(booking, event_row, event)
                self.db.flush()

        logger.info(
            f"Reconciled {event.event_type} for {booking.platform}#{booking.platform_booking_id} "
            f"({action}, status={booking.status})"
        )
        return ReconcileResult(booking_id=booking.id, event_id=event_row.id, action=action)
