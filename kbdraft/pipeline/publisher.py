"""
Publisher

Renders an approved queue entry as a storage-format page and creates it in
the knowledge base.
"""

import html
import logging
from typing import Optional

from ..common.config import ConfluenceConfig
from ..common.schemas import QueueEntry
from .connectors.base import KnowledgeBase
from .enricher import to_storage_html

logger = logging.getLogger("kbdraft.pipeline.publisher")


def render_page_body(entry: QueueEntry) -> str:
    """Metadata table followed by the summary paragraphs."""
    rows = [
        ("Subject", entry.subject),
        ("From", entry.sender),
        ("Received", entry.received_at.isoformat() if entry.received_at else ""),
        ("Source id", entry.source_id),
    ]
    if entry.correlated_ticket_key:
        rows.append(("Ticket", entry.correlated_ticket_key))
    if entry.ticket_status:
        rows.append(("Status", entry.ticket_status))
    if entry.correlated_assignee:
        rows.append(("Assignee", entry.correlated_assignee))

    table = "".join(
        f"<tr><th>{html.escape(label)}</th><td>{html.escape(value or '')}</td></tr>"
        for label, value in rows
    )
    summary = to_storage_html(entry.summary) or "<p>(no content)</p>"
    return f"<table><tbody>{table}</tbody></table><h2>Summary</h2>{summary}"


class Publisher:
    """Creates one knowledge-base page per entry"""

    def __init__(
        self,
        knowledge_base: KnowledgeBase,
        space_key: str,
        title_prefix: str = "Internal Ticket Summary",
        draft: bool = True,
        label: Optional[str] = "review-needed",
    ):
        self._kb = knowledge_base
        self._space_key = space_key
        self._title_prefix = title_prefix
        self._draft = draft
        self._labels = [label] if label else []

    @classmethod
    def from_config(cls, knowledge_base: KnowledgeBase, config: ConfluenceConfig) -> "Publisher":
        return cls(
            knowledge_base,
            space_key=config.space_key,
            title_prefix=config.title_prefix,
            draft=config.draft,
            label=config.label,
        )

    def build_title(self, entry: QueueEntry) -> str:
        subject = (entry.subject or entry.source_id).strip()
        if not self._title_prefix:
            return subject
        return f"{self._title_prefix}: {subject}"

    async def publish(self, entry: QueueEntry) -> str:
        """Create the page for `entry`. Raises PublishError."""
        title = self.build_title(entry)
        page_id = await self._kb.create_page(
            title=title,
            html_body=render_page_body(entry),
            space_key=self._space_key,
            draft=self._draft,
            labels=self._labels,
        )
        logger.debug("Entry %s -> page %s", entry.source_id, page_id)
        return page_id

    async def aclose(self) -> None:
        await self._kb.aclose()
