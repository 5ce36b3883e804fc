"""
Shared fixtures: in-memory database, fake mailbox and message builders.
"""

import os
import sys
from collections import OrderedDict
from datetime import datetime, timezone
from email.utils import format_datetime

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from booking_ingest import models  # noqa: E402,F401
from booking_ingest.database import Base  # noqa: E402
from booking_ingest.services.alias_resolver import AliasResolver  # noqa: E402
from booking_ingest.services.catalog import CatalogService  # noqa: E402
from booking_ingest.services.ingestion_service import BookingIngestionService  # noqa: E402
from booking_ingest.services.mail_source import (  # noqa: E402
    ListMessagesResult,
    MailTransportError,
    MessagePayload,
    MessageRef,
)
from booking_ingest.services.parsers import build_default_registry  # noqa: E402
from booking_ingest.services.reconciliation import BookingReconciler, CrossReferenceMatcher  # noqa: E402
from booking_ingest.utils.ttl_cache import TTLCache  # noqa: E402

FAREHARBOR_SENDER = "FareHarbor <notifications@fareharbor.com>"
GETYOURGUIDE_SENDER = "GetYourGuide <do-not-reply@notification.getyourguide.com>"
ECWID_SENDER = "Ecwid <noreply@ecwid.com>"
AIRBNB_SENDER = "Airbnb <automated@airbnb.com>"

SCHEDULE = "Friday, 14 March 2025 @ 8:00 pm - Friday, 14 March 2025 @ 11:00 pm"
NOW = datetime(2025, 3, 20, 12, 0)


# ==================
# Database
# ==================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own; let SQLAlchemy emit it so SAVEPOINTs work
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


# ==================
# Mailbox
# ==================

class FakeMailSource:
    """In-memory mailbox; lists newest first like Gmail."""

    def __init__(self, payloads=None):
        self.payloads = OrderedDict()
        self.fetch_calls = []
        self.list_calls = []
        self.fail_fetch = set()
        self.fail_list = False
        for payload in payloads or []:
            self.add(payload)

    def add(self, payload):
        self.payloads[payload.message_id] = payload

    def fetch_message_payload(self, message_id):
        self.fetch_calls.append(message_id)
        if message_id in self.fail_fetch:
            raise MailTransportError(f"fetch failed for {message_id}", status_code=500)
        return self.payloads.get(message_id)

    def list_messages(self, query, max_results=25, page_token=None):
        self.list_calls.append((query, max_results, page_token))
        if self.fail_list:
            raise MailTransportError("list failed", status_code=503)
        ordered = sorted(self.payloads.values(), key=lambda p: p.internal_date, reverse=True)
        start = int(page_token or 0)
        end = start + max_results
        return ListMessagesResult(
            messages=[MessageRef(id=p.message_id, thread_id=p.thread_id) for p in ordered[start:end]],
            next_page_token=str(end) if end < len(ordered) else None,
            total_size_estimate=len(ordered),
        )


def make_payload(message_id, subject, body, sender=FAREHARBOR_SENDER,
                 received_at=datetime(2025, 3, 1, 9, 0), html_body=None):
    aware = received_at.replace(tzinfo=timezone.utc)
    return MessagePayload(
        message={
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "historyId": "1001",
            "internalDate": str(int(aware.timestamp() * 1000)),
            "snippet": body[:120],
            "labelIds": ["INBOX"],
            "sizeEstimate": len(body),
        },
        headers={
            "from": sender,
            "to": "bookings@example.com",
            "subject": subject,
            "date": format_datetime(aware),
        },
        text_body=body,
        html_body=html_body,
    )


# ==================
# Message builders
# ==================

def fareharbor_body(booking_id, adults=2, children=1, total="150.00"):
    return (
        f"Booking #{booking_id} Krawl Through Krakow Pub Crawl Friday, 14 March 2025 @ 8:00 pm\n"
        "Name: Jane Doe\n"
        "Phone: +48 600 700 800\n"
        "Email: jane@example.com\n"
        f"{adults} Adults, {children} Child\n"
        "Payments\n"
        f"• PLN {total} - Visa (online payment)\n"
        f"Booking total PLN {total}\n"
        "Taxes PLN 0.00\n"
    )


def fareharbor_confirmation(message_id, booking_id="100001", received_at=datetime(2025, 3, 1, 9, 0), **kwargs):
    return make_payload(
        message_id,
        f"New booking: Booking #{booking_id} on {SCHEDULE}",
        fareharbor_body(booking_id, **kwargs),
        received_at=received_at,
    )


def fareharbor_amendment(message_id, booking_id="100001", received_at=datetime(2025, 3, 2, 9, 0), **kwargs):
    return make_payload(
        message_id,
        f"Booking #{booking_id} amended on {SCHEDULE}",
        fareharbor_body(booking_id, **kwargs),
        received_at=received_at,
    )


def fareharbor_cancellation(message_id, booking_id="100001", received_at=datetime(2025, 3, 3, 9, 0)):
    return make_payload(
        message_id,
        f"Cancelled: Booking #{booking_id}",
        f"Booking #{booking_id} has been cancelled.\n",
        received_at=received_at,
    )


def fareharbor_rebooking(message_id, old_id="100001", new_id="100002", received_at=datetime(2025, 3, 2, 9, 0)):
    body = fareharbor_body(old_id) + f"This booking was rebooked.\nOld #{old_id}\nNew #{new_id}\n"
    return make_payload(
        message_id,
        f"Rebooked: Booking #{old_id} on "
        "Saturday, 15 March 2025 @ 8:00 pm - Saturday, 15 March 2025 @ 11:00 pm",
        body,
        received_at=received_at,
    )


def out_of_order_mailbox(mail_source, suffix="", booking_id="100001"):
    """Confirmation, then a cancellation, then an amendment received after it"""
    mail_source.add(fareharbor_confirmation("A" + suffix, booking_id=booking_id))
    mail_source.add(fareharbor_cancellation(
        "C" + suffix, booking_id=booking_id, received_at=datetime(2025, 3, 2, 9, 0),
    ))
    mail_source.add(fareharbor_amendment(
        "D" + suffix, booking_id=booking_id, received_at=datetime(2025, 3, 3, 9, 0),
    ))


def getyourguide_booking(message_id, reference, received_at=datetime(2025, 3, 1, 9, 0)):
    body = (
        "Hi supplier, your offer has been booked: Krakow Food Tour Krakow Food Tour "
        f"Reference number {reference} Date March 14, 2025 10:00 AM "
        "Number of participants 2 x Adults "
        "Main customer Jane Doe customer-abc@reply.getyourguide.com Phone: +48 600 700 800 "
        "Language: English Tour language English Price PLN 120.00"
    )
    return make_payload(
        message_id, f"Booking - S123 - {reference}", body,
        sender=GETYOURGUIDE_SENDER, received_at=received_at,
    )


def ecwid_order(message_id, order_id="A123", two_items=False, received_at=datetime(2025, 3, 1, 9, 0)):
    items = ""
    if two_items:
        items += "Walking Tour Price per item: 50.00 zł Quantity: 2 "
    items += (
        "Krawl Through Krakow Pub Crawl Man: 2 Woman: 1 Date: Mar 14, 2025 "
        "Extra Cocktails Add-On: 2 Price per item: 80.00 zł Quantity: 1"
    )
    body = (
        f"New order #{order_id}\n"
        f"Items\n{items}\n"
        "Subtotal 240.00 zł\n"
        "Total 240.00 zł\n"
        "Customer Jane Doe jane@example.com +48 600 700 800 Billing Info\n"
        "Payment method Card\n"
    )
    return make_payload(
        message_id, f"New order #{order_id}", body,
        sender=ECWID_SENDER, received_at=received_at,
    )


# ==================
# Services
# ==================

class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def registry():
    return build_default_registry(rules_path="", timezone="Europe/Warsaw")


def make_reconciler(session, clock=None, platform_channels=None, per_person_addon_keys=("cocktails",)):
    """Reconciler with private caches so tests never share catalog state."""
    clock = clock or FixedClock()
    return BookingReconciler(
        session,
        alias_resolver=AliasResolver(session, cache=TTLCache(60), clock=clock),
        catalog=CatalogService(session, cache=TTLCache(60), platform_channels=platform_channels or {}),
        cross_reference=CrossReferenceMatcher(session, date_window_days=1, time_window_minutes=90, min_score=4),
        per_person_addon_keys=list(per_person_addon_keys),
        clock=clock,
    )


@pytest.fixture
def reconciler(db, clock):
    return make_reconciler(db, clock)


@pytest.fixture
def mail_source():
    return FakeMailSource()


@pytest.fixture
def make_service(db, registry, clock, mail_source):
    def factory(booking_sync=None, source=mail_source, reconciler_factory=None):
        return BookingIngestionService(
            db,
            mail_source=source,
            registry=registry,
            reconciler_factory=reconciler_factory or (lambda session: make_reconciler(session, clock)),
            booking_sync=booking_sync,
            clock=clock,
        )
    return factory
