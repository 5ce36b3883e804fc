"""
Gmail implementation of the mail source.

Uses the refresh-token OAuth flow: an access token is minted on the first
request and refreshed by google-auth when it expires.
"""

import base64
import binascii
import logging
from typing import Dict, List, Optional, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import settings
from .mail_source import ListMessagesResult, MailTransportError, MessagePayload, MessageRef

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _decode_data(data: Optional[str]) -> str:
    if not data:
        return ""
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="ignore")
    except (binascii.Error, ValueError):
        logger.debug("Skipping undecodable message part")
        return ""


def _collect_parts(part: Optional[dict], text: List[str], html: List[str]) -> None:
    """Walk a MIME tree depth-first, collecting text/plain and text/html bodies."""
    if not part:
        return
    mime = part.get("mimeType") or ""
    data = (part.get("body") or {}).get("data")
    if data:
        if mime.startswith("text/plain"):
            text.append(_decode_data(data))
        elif mime.startswith("text/html"):
            html.append(_decode_data(data))
    for child in part.get("parts") or []:
        _collect_parts(child, text, html)


def extract_bodies(payload: Optional[dict]) -> Tuple[str, Optional[str]]:
    """Return (text_body, html_body) for a Gmail message payload."""
    text: List[str] = []
    html: List[str] = []
    _collect_parts(payload, text, html)

    # single-part messages carry the body on the root part
    root_data = ((payload or {}).get("body") or {}).get("data")
    if not text and root_data:
        text.append(_decode_data(root_data))
    if not html and root_data and "html" in ((payload or {}).get("mimeType") or ""):
        html.append(_decode_data(root_data))

    return "\n".join(text).strip(), ("\n".join(html) if html else None)


def build_headers(payload: Optional[dict]) -> Dict[str, str]:
    headers = {}
    for header in (payload or {}).get("headers") or []:
        name = header.get("name")
        if name:
            headers[name.lower()] = header.get("value") or ""
    return headers


class GmailMailSource:
    """Reads booking notifications from one Gmail mailbox."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        user_id: Optional[str] = None,
        num_retries: Optional[int] = None,
        service=None,
    ):
        self.client_id = client_id or settings.gmail_client_id
        self.client_secret = client_secret or settings.gmail_client_secret
        self.refresh_token = refresh_token or settings.gmail_refresh_token
        self.user_id = user_id or settings.gmail_user
        self.num_retries = settings.gmail_num_retries if num_retries is None else num_retries
        self._service = service

    @property
    def service(self):
        if self._service is None:
            if not (self.client_id and self.client_secret and self.refresh_token):
                raise MailTransportError("Missing Google API credentials for Gmail ingestion")
            creds = Credentials(
                token=None,
                refresh_token=self.refresh_token,
                token_uri=TOKEN_URI,
                client_id=self.client_id,
                client_secret=self.client_secret,
                scopes=GMAIL_SCOPES,
            )
            self._service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return self._service

    def list_messages(
        self,
        query: str,
        max_results: int = 25,
        page_token: Optional[str] = None,
    ) -> ListMessagesResult:
        params = {"userId": self.user_id, "q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        try:
            data = self.service.users().messages().list(**params).execute(num_retries=self.num_retries)
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            logger.error(f"Gmail list failed for query {query!r}: {e}")
            raise MailTransportError(f"Gmail list failed: {e}", status_code=status) from e

        return ListMessagesResult(
            messages=[
                MessageRef(id=m["id"], thread_id=m.get("threadId"))
                for m in data.get("messages") or []
                if m.get("id")
            ],
            next_page_token=data.get("nextPageToken"),
            total_size_estimate=data.get("resultSizeEstimate"),
        )

    def fetch_message_payload(self, message_id: str) -> Optional[MessagePayload]:
        try:
            data = (
                self.service.users()
                .messages()
                .get(userId=self.user_id, id=message_id, format="full")
                .execute(num_retries=self.num_retries)
            )
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            logger.error(f"Failed to fetch Gmail message {message_id}: {e}")
            raise MailTransportError(f"Gmail fetch failed for {message_id}: {e}", status_code=status) from e

        if not data:
            return None

        payload = data.get("payload") or {}
        text_body, html_body = extract_bodies(payload)
        message = {k: v for k, v in data.items() if k != "payload"}
        return MessagePayload(
            message=message,
            headers=build_headers(payload),
            text_body=text_body,
            html_body=html_body,
        )
