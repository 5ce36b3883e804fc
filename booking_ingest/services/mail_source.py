"""
Mail source collaborator.

The ingestion service only needs two operations from a mailbox: list message
references for a search query and fetch one decoded message. Anything that
implements MailSource (Gmail, an in-memory fake in tests) can be plugged in.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from ..utils.datetime_utils import from_epoch_millis, parse_date_header


class MailTransportError(Exception):
    """The mailbox could not be reached or returned an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class MessageRef:
    id: str
    thread_id: Optional[str] = None


@dataclass
class ListMessagesResult:
    messages: List[MessageRef] = field(default_factory=list)
    next_page_token: Optional[str] = None
    total_size_estimate: Optional[int] = None


@dataclass
class MessagePayload:
    """
    One fetched message.

    `message` is the provider's metadata record (id, threadId, labelIds,
    snippet, internalDate, historyId, sizeEstimate); headers are keyed by
    lower-cased name.
    """
    message: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    text_body: str = ""
    html_body: Optional[str] = None

    @property
    def message_id(self) -> str:
        return self.message.get("id", "")

    @property
    def thread_id(self) -> Optional[str]:
        return self.message.get("threadId")

    @property
    def history_id(self) -> Optional[str]:
        value = self.message.get("historyId")
        return str(value) if value is not None else None

    @property
    def snippet(self) -> str:
        return self.message.get("snippet") or ""

    @property
    def label_ids(self) -> List[str]:
        return list(self.message.get("labelIds") or [])

    @property
    def size_estimate(self) -> Optional[int]:
        return self.message.get("sizeEstimate")

    @property
    def internal_date(self) -> Optional[datetime]:
        return from_epoch_millis(self.message.get("internalDate"))

    @property
    def received_at(self) -> Optional[datetime]:
        """Date header, falling back to the mailbox's internal date."""
        return parse_date_header(self.headers.get("date")) or self.internal_date


class MailSource(Protocol):

    def fetch_message_payload(self, message_id: str) -> Optional[MessagePayload]:
        ...

    def list_messages(
        self,
        query: str,
        max_results: int = 25,
        page_token: Optional[str] = None,
    ) -> ListMessagesResult:
        ...
