"""
Review Queue

Stages enriched items for human approval and drains approved items to the
publisher.

Workflow:
1. The scheduler enqueues an entry (staged)
2. The notifier asks a human to review it (notified)
3. An operator triggers a drain: each pending entry is published and removed
4. Or an operator discards it

Entries keep arrival order; a drain publishes in that order. The queue is
persisted in the shared state file under the "queue" section.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from ..common.errors import PersistenceError
from ..common.schemas import EntryState, QueueEntry
from .state_file import StateFile

logger = logging.getLogger("kbdraft.pipeline.review_queue")

PublishFn = Callable[[QueueEntry], Awaitable[str]]


@dataclass
class DrainResult:
    """Outcome of one drain"""
    published: int = 0
    failed: int = 0
    remaining: int = 0
    page_ids: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.published == 0 and self.failed == 0:
            return "0 published"
        text = f"{self.published} published"
        if self.failed:
            text += f", {self.failed} failed"
        return text


class ReviewQueue:
    """
    FIFO of entries awaiting approval.

    Only pending entries (staged or notified) live in the queue; published and
    discarded entries are removed when they reach their terminal state.
    """

    SECTION = "queue"

    def __init__(self, state_file: StateFile):
        self._state = state_file
        self._queue: List[QueueEntry] = []

    def load(self) -> None:
        """Load queue from the state file, skipping malformed entries"""
        raw = self._state.read_section(self.SECTION, [])
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed queue section (%s)", type(raw).__name__)
            raw = []

        entries = []
        seen = set()
        for data in raw:
            try:
                entry = QueueEntry.from_dict(data)
            except Exception as e:
                logger.warning("Skipping unreadable queue entry: %s", e)
                continue
            if not entry.is_pending or entry.source_id in seen:
                continue
            seen.add(entry.source_id)
            entries.append(entry)

        self._queue = entries
        logger.info("Review queue loaded: %d pending", len(self._queue))

    def snapshot(self) -> dict:
        return {self.SECTION: [entry.to_dict() for entry in self._queue]}

    def flush(self) -> None:
        """Persist the queue. Raises PersistenceError."""
        self._state.update_sections(self.snapshot())

    def _try_flush(self) -> bool:
        try:
            self.flush()
            return True
        except PersistenceError as e:
            logger.error("Queue not persisted, will retry next cycle: %s", e)
            return False

    def enqueue(self, entry: QueueEntry) -> bool:
        """
        Append an entry at the tail.

        Returns False (and changes nothing) if an entry with the same
        source_id is already queued.
        """
        if entry.state != EntryState.STAGED:
            raise ValueError(f"only staged entries can be enqueued, got {entry.state.value}")
        if self.get(entry.source_id) is not None:
            logger.debug("Entry %s already queued", entry.source_id)
            return False
        self._queue.append(entry)
        logger.info("Queued %s for review: %s", entry.source_id, entry.subject[:80])
        return True

    def get(self, source_id: str) -> Optional[QueueEntry]:
        for entry in self._queue:
            if entry.source_id == source_id:
                return entry
        return None

    def pending(self) -> List[QueueEntry]:
        """Pending entries in arrival order"""
        return [entry for entry in self._queue if entry.is_pending]

    def staged(self) -> List[QueueEntry]:
        """Entries still waiting for a review request"""
        return [entry for entry in self._queue if entry.state == EntryState.STAGED]

    def mark_notified(self, source_id: str) -> QueueEntry:
        entry = self._require(source_id)
        entry.transition(EntryState.NOTIFIED)
        entry.notified_at = datetime.now(timezone.utc)
        entry.notify_attempts += 1
        entry.last_error = None
        return entry

    def record_notify_failure(self, source_id: str, error: str) -> None:
        entry = self.get(source_id)
        if entry is None:
            return
        entry.notify_attempts += 1
        entry.last_error = error[:500]

    def discard(self, source_id: str, reason: Optional[str] = None) -> Optional[QueueEntry]:
        """Operator rejection: terminal, removes the entry and persists."""
        entry = self.get(source_id)
        if entry is None:
            return None
        entry.transition(EntryState.DISCARDED)
        if reason:
            entry.last_error = f"discarded: {reason}"[:500]
        self._queue.remove(entry)
        self._try_flush()
        logger.info("Discarded %s%s", source_id, f" ({reason})" if reason else "")
        return entry

    def _require(self, source_id: str) -> QueueEntry:
        entry = self.get(source_id)
        if entry is None:
            raise KeyError(source_id)
        return entry

    async def drain(self, publish: PublishFn) -> DrainResult:
        """
        Publish every pending entry in arrival order.

        An entry is removed and the removal committed before it counts as
        published. A failed publish leaves the entry in place for the next
        drain.
        """
        result = DrainResult()
        for entry in list(self.pending()):
            entry.publish_attempts += 1
            try:
                page_id = await publish(entry)
            except Exception as e:
                result.failed += 1
                result.errors[entry.source_id] = str(e)[:200]
                entry.last_error = str(e)[:500]
                logger.warning("Publish failed for %s: %s", entry.source_id, e)
                continue

            # Discarded by an operator while the publish call was in flight
            if self.get(entry.source_id) is not entry:
                logger.warning("%s was removed during publish (page %s)", entry.source_id, page_id)
                continue

            entry.transition(EntryState.PUBLISHED)
            entry.page_id = page_id
            entry.last_error = None
            self._queue.remove(entry)
            self._try_flush()
            result.published += 1
            result.page_ids[entry.source_id] = page_id
            logger.info("Published %s as page %s", entry.source_id, page_id)

        if result.failed:
            # keep failure metadata across restarts
            self._try_flush()
        result.remaining = len(self.pending())
        return result

    def get_stats(self) -> Dict[str, int]:
        """Get queue statistics"""
        stats = {
            "total": len(self._queue),
            EntryState.STAGED.value: 0,
            EntryState.NOTIFIED.value: 0,
        }
        for entry in self._queue:
            if entry.state.value in stats:
                stats[entry.state.value] += 1
        return stats

    def format_for_review(self, entry: QueueEntry) -> str:
        """Format an entry for display"""
        lines = [
            "=" * 60,
            f"REVIEW ITEM: {entry.source_id}",
            f"State: {entry.state.value}",
            f"Queued: {entry.created_at.isoformat()}",
            "=" * 60,
            "",
            f"Subject: {entry.subject or 'N/A'}",
            f"From: {entry.sender or 'N/A'}",
            f"Received: {entry.received_at.isoformat() if entry.received_at else 'N/A'}",
        ]
        if entry.correlated_ticket_key:
            lines.append(f"Ticket: {entry.correlated_ticket_key} ({entry.ticket_status or 'unknown status'})")
        lines.append(f"Assignee: {entry.correlated_assignee or '(none)'}")
        if entry.last_error:
            lines.append(f"Last error: {entry.last_error}")
        lines.extend([
            "",
            "Summary:",
            f"  {entry.summary[:1000] if entry.summary else '(empty)'}",
            "=" * 60,
        ])
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._queue)
