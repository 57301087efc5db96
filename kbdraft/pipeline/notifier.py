"""
Notifier

Sends one review request per staged entry to the responsible human. The
message names the entry and links the control-surface actions that publish
or discard it.
"""

import html
import logging
from typing import Optional

from ..common.schemas import EntryState, QueueEntry
from .connectors.base import MailSender
from .enricher import to_storage_html

logger = logging.getLogger("kbdraft.pipeline.notifier")


class Notifier:
    """
    Review request delivery.

    Recipient resolution:
    - the correlated assignee, when there is one
    - otherwise the default recipient, unless correlation is required
    - otherwise nobody: the entry stays staged
    """

    def __init__(
        self,
        sender: MailSender,
        default_recipient: str = "",
        action_base_url: str = "http://localhost:3000",
        require_correlation: bool = False,
    ):
        self._sender = sender
        self._default_recipient = default_recipient
        self._action_base_url = action_base_url.rstrip("/")
        self._require_correlation = require_correlation

    def resolve_recipient(self, entry: QueueEntry) -> Optional[str]:
        if entry.correlated_assignee:
            return entry.correlated_assignee
        if self._require_correlation:
            return None
        return self._default_recipient or None

    def build_subject(self, entry: QueueEntry) -> str:
        prefix = f"[{entry.correlated_ticket_key}] " if entry.correlated_ticket_key and \
            entry.correlated_ticket_key not in entry.subject else ""
        return f"Review needed: {prefix}{entry.subject or entry.source_id}"

    def build_body(self, entry: QueueEntry) -> str:
        """HTML body. Every value from the item or the summarizer is escaped."""
        publish_url = f"{self._action_base_url}/run"
        review_url = f"{self._action_base_url}/review/{entry.source_id}"
        discard_url = f"{review_url}/discard"

        parts = [
            "<p>A new item is waiting for review before it is published to the knowledge base.</p>",
            f"<p><strong>Subject:</strong> {html.escape(entry.subject or '')}<br />",
            f"<strong>From:</strong> {html.escape(entry.sender or 'unknown')}<br />",
        ]
        if entry.correlated_ticket_key:
            status = html.escape(entry.ticket_status or "unknown")
            parts.append(
                f"<strong>Ticket:</strong> {html.escape(entry.correlated_ticket_key)} ({status})<br />"
            )
        parts.append(f"<strong>Review id:</strong> {html.escape(entry.source_id)}</p>")
        parts.append("<h3>Summary</h3>")
        parts.append(to_storage_html(entry.summary) or "<p>(empty)</p>")
        parts.append(
            "<p>"
            f'Review: <a href="{html.escape(review_url)}">{html.escape(review_url)}</a><br />'
            f'Approve and publish pending items: <a href="{html.escape(publish_url)}">{html.escape(publish_url)}</a><br />'
            f"Discard: POST {html.escape(discard_url)}"
            "</p>"
        )
        return "".join(parts)

    async def notify(self, entry: QueueEntry) -> bool:
        """
        Send the review request for `entry`.

        Returns True when a message was sent. Returns False, without sending,
        when no recipient can be resolved or the entry is not staged. Delivery
        errors propagate to the caller, which records them on the entry.
        """
        if entry.state != EntryState.STAGED:
            return False

        recipient = self.resolve_recipient(entry)
        if not recipient:
            logger.info("No recipient for %s, leaving it staged", entry.source_id)
            return False

        message_id = await self._sender.send(
            to=recipient,
            subject=self.build_subject(entry),
            html_body=self.build_body(entry),
        )
        logger.info("Review request for %s sent to %s (%s)", entry.source_id, recipient, message_id)
        return True

    async def aclose(self) -> None:
        await self._sender.aclose()
