# Services package
from .mail_source import MailSource, MailTransportError, MessagePayload, MessageRef, ListMessagesResult
from .gmail_client import GmailMailSource
from .alias_resolver import AliasResolver, AliasSnapshot, default_alias_cache
from .catalog import CatalogService, canonical_product_name
from .reconciliation import (
    BookingReconciler,
    BookingState,
    CrossReferenceMatcher,
    ReconcileResult,
    ReplayContext,
    StaleBookingEvent,
)
from .utm_sync import BookingSyncHook, EcwidUtmSyncService
from .ingestion_service import BookingIngestionService, IngestionResult, build_ingestion_service
from .backfill import BackfillDriver, BackfillProgress, BackfillReport
