"""
Gmail Connector

Reads candidate messages from a mailbox (source side) and sends review
requests (notification side) through the Gmail REST API. Token exchange is
out of scope: both classes take a ready bearer access token.
"""

import base64
import logging
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from ...common.config import GmailConfig
from ...common.errors import MalformedResponseError
from .base import CandidateList, HttpClientMixin, Item, MailSender, SourceConnector

logger = logging.getLogger("kbdraft.pipeline.connectors.gmail")


def encode_message(to: str, subject: str, html_body: str, sender: str = "") -> str:
    """
    Build an RFC 2822 message and return it base64url-encoded for the
    Gmail `raw` field.
    """
    message = EmailMessage()
    message["To"] = to
    if sender:
        message["From"] = sender
    message["Subject"] = subject
    message.set_content("This message requires an HTML-capable mail client.")
    message.add_alternative(html_body, subtype="html")
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


def _decode_body(data: str) -> str:
    """Decode a base64url body part, tolerating missing padding."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (ValueError, UnicodeEncodeError):
        logger.debug("Undecodable body part skipped")
        return ""


def _find_plain_text(part: Dict[str, Any]) -> str:
    """Depth-first search for the first text/plain body."""
    if not isinstance(part, dict):
        return ""
    if part.get("mimeType") == "text/plain":
        text = _decode_body((part.get("body") or {}).get("data", ""))
        if text:
            return text
    for child in part.get("parts") or []:
        text = _find_plain_text(child)
        if text:
            return text
    return ""


def _headers(payload: Dict[str, Any]) -> Dict[str, str]:
    headers = {}
    for header in payload.get("headers") or []:
        name = header.get("name")
        if name:
            headers[name.lower()] = header.get("value") or ""
    return headers


def _parse_received_at(headers: Dict[str, str], internal_date: Optional[str]) -> Optional[datetime]:
    date_header = headers.get("date")
    if date_header:
        try:
            return parsedate_to_datetime(date_header)
        except (TypeError, ValueError):
            pass
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    return None


class GmailConnector(HttpClientMixin, SourceConnector):
    """Lists and fetches messages matching a subject filter."""

    service_name = "gmail"

    def __init__(self, config: GmailConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__("gmail")
        self._config = config
        self._client = self._build_client(
            config.base_url,
            headers={"Authorization": f"Bearer {config.access_token}"},
            transport=transport,
        )
        self._prefix = f"/users/{config.user_id}/messages"

    @property
    def default_filter(self) -> str:
        return self._config.query

    def build_query(self, filter: str, since: Optional[datetime] = None) -> str:
        """Gmail search query, narrowed to messages after the last poll (minus overlap)."""
        query = filter or self.default_filter
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            after = since - timedelta(seconds=self._config.overlap_seconds)
            query = f"{query} after:{int(after.timestamp())}".strip()
        return query

    async def list_candidates(self, filter: str, limit: int, since: Optional[datetime] = None) -> CandidateList:
        """Follow nextPageToken until the query is exhausted.

        Gmail lists newest first; the result is reversed so the oldest
        message is queued first.
        """
        query = self.build_query(filter, since)
        message_ids: List[str] = []
        listed = set()
        tokens_seen = set()
        page_token = None
        complete = True

        while True:
            params = {"q": query, "maxResults": limit}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", self._prefix, params=params)
            if not isinstance(data, dict):
                raise MalformedResponseError("gmail list response is not an object")

            for ref in data.get("messages") or []:
                message_id = ref.get("id") if isinstance(ref, dict) else None
                if message_id and message_id not in listed:
                    listed.add(message_id)
                    message_ids.append(message_id)

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            if page_token in tokens_seen:
                logger.warning("Gmail repeated page token %s, listing stopped early", page_token)
                complete = False
                break
            tokens_seen.add(page_token)

        logger.debug("Gmail query %r matched %d messages", query, len(message_ids))
        message_ids.reverse()
        return CandidateList([Item(id=m, source="gmail") for m in message_ids], complete=complete)

    async def fetch_detail(self, item_id: str) -> Item:
        data = await self._request("GET", f"{self._prefix}/{item_id}", params={"format": "full"})
        if not isinstance(data, dict):
            raise MalformedResponseError(f"gmail message {item_id} is not an object")

        payload = data.get("payload") or {}
        headers = _headers(payload)
        body = _find_plain_text(payload) or data.get("snippet") or ""

        return Item(
            id=data.get("id") or item_id,
            subject=headers.get("subject", ""),
            sender=headers.get("from", ""),
            received_at=_parse_received_at(headers, data.get("internalDate")),
            raw_content=body,
            source="gmail",
        )


class GmailSender(HttpClientMixin, MailSender):
    """Sends one message per call through users.messages.send."""

    service_name = "gmail"

    def __init__(self, config: GmailConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._client = self._build_client(
            config.base_url,
            headers={"Authorization": f"Bearer {config.access_token}"},
            transport=transport,
        )

    async def send(self, to: str, subject: str, html_body: str) -> str:
        raw = encode_message(to, subject, html_body, sender=self._config.sender_address)
        data = await self._request(
            "POST", f"/users/{self._config.user_id}/messages/send", json={"raw": raw}
        )
        return str((data or {}).get("id", ""))
