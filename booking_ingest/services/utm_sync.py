"""
Downstream booking sync.

After a message commits, the ingestion service hands the touched booking ids
to a BookingSyncHook. The Ecwid hook copies UTM attribution from the store
order onto bookings that do not have any yet. It is fire-and-forget: every
failure is logged and swallowed per booking.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking import Booking, BookingPlatform

logger = logging.getLogger(__name__)

ITEM_SUFFIX_RE = re.compile(r"-\d+$")
UTM_VALUE_LIMIT = 255


class BookingSyncHook(Protocol):

    def sync(self, booking_ids: List[str]) -> None:
        ...


def _normalize_value(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value[:UTM_VALUE_LIMIT] if value else None


def extract_utm(order: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """UTM values from an Ecwid order: utmData, else the last utmDataSets entry."""
    raw = order.get("utmData")
    if not isinstance(raw, dict) or not raw:
        datasets = [d for d in order.get("utmDataSets") or [] if isinstance(d, dict)]
        raw = datasets[-1] if datasets else {}
    return {
        "utm_source": _normalize_value(raw.get("source")),
        "utm_medium": _normalize_value(raw.get("medium")),
        "utm_campaign": _normalize_value(raw.get("campaign")),
    }


class EcwidUtmSyncService:
    """
    Fill utm_source / utm_medium / utm_campaign on Ecwid bookings.

    Disabled (a no-op) unless ECWID_STORE_ID and ECWID_API_TOKEN are set.
    """

    def __init__(
        self,
        db: Session,
        store_id: Optional[str] = None,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.db = db
        self.store_id = store_id if store_id is not None else settings.ecwid_store_id
        self.api_token = api_token if api_token is not None else settings.ecwid_api_token
        self.base_url = (base_url or settings.ecwid_api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.ecwid_timeout_seconds
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.store_id and self.api_token)

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Accept": "application/json",
        }

    def fetch_order(self, order_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/{self.store_id}/orders/{order_id}"
        if self.client is not None:
            response = self.client.get(url, headers=self._get_headers(), timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url, headers=self._get_headers())
        response.raise_for_status()
        return response.json()

    def sync(self, booking_ids: List[str]) -> None:
        if not self.enabled or not booking_ids:
            return
        bookings = (
            self.db.query(Booking)
            .filter(Booking.id.in_(booking_ids), Booking.platform == BookingPlatform.ECWID.value)
            .all()
        )
        for booking in bookings:
            if booking.utm_source or booking.utm_medium or booking.utm_campaign:
                continue
            booking_id = booking.id
            try:
                self.sync_booking(booking)
            except (httpx.HTTPError, SQLAlchemyError, ValueError) as e:
                self.db.rollback()
                logger.warning(f"Unable to sync Ecwid UTM tags for booking {booking_id}: {e}")

    def sync_booking(self, booking: Booking) -> bool:
        raw_order_id = (booking.platform_order_id or booking.platform_booking_id or "").strip()
        order_id = ITEM_SUFFIX_RE.sub("", raw_order_id)
        if not order_id:
            return False

        utm = extract_utm(self.fetch_order(order_id))
        if not any(utm.values()):
            logger.debug(f"Ecwid order {order_id} carries no UTM data")
            return False

        for name, value in utm.items():
            setattr(booking, name, value)
        self.db.commit()
        logger.info(f"Synced UTM tags for booking {booking.id} from Ecwid order {order_id}")
        return True
