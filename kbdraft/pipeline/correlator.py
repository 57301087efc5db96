"""
Correlator

Maps a queue entry to the ticket named in its subject line, so the review
request can go to the ticket's assignee.
"""

import logging
import re
from typing import Optional

from ..common.schemas import QueueEntry
from .connectors.base import TicketInfo, TrackerClient

logger = logging.getLogger("kbdraft.pipeline.correlator")

# Uppercase project code, hyphen, digits: ABC-123, OPS2-7
TICKET_KEY_PATTERN = re.compile(r"(?<![A-Za-z0-9])([A-Z][A-Z0-9]+-\d+)(?![A-Za-z0-9])")


def extract_ticket_key(subject) -> Optional[str]:
    """First ticket key in `subject`, or None. Never raises."""
    if not isinstance(subject, str) or not subject:
        return None
    match = TICKET_KEY_PATTERN.search(subject)
    return match.group(1) if match else None


class Correlator:
    """Attaches ticket key, status and assignee to queue entries."""

    def __init__(self, tracker: TrackerClient):
        self._tracker = tracker

    async def lookup_ticket(self, key: str) -> Optional[TicketInfo]:
        return await self._tracker.lookup_ticket(key)

    async def aclose(self) -> None:
        await self._tracker.aclose()

    async def correlate(self, entry: QueueEntry) -> bool:
        """
        Resolve the entry's ticket and attach routing metadata.

        Returns True when an assignee was attached. A missing key, a missing
        ticket, a ticket without assignee or a lookup failure all leave the
        entry without an assignee.
        """
        key = entry.correlated_ticket_key or extract_ticket_key(entry.subject)
        if not key:
            return False
        entry.correlated_ticket_key = key

        try:
            ticket = await self.lookup_ticket(key)
        except Exception as e:
            logger.warning("Ticket lookup failed for %s (%s): %s", key, entry.source_id, e)
            return False

        if ticket is None:
            logger.info("No ticket found for %s (%s)", key, entry.source_id)
            return False

        entry.ticket_status = ticket.status or None
        if not ticket.assignee_email:
            logger.info("Ticket %s has no assignee, %s stays unnotified", key, entry.source_id)
            return False

        entry.correlated_assignee = ticket.assignee_email
        return True
