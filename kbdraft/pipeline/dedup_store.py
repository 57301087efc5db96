"""
Dedup Store

Durable set of item ids that have entered the pipeline. An id is recorded when
its entry is queued, so a later poll never re-summarizes, re-queues or
re-notifies it, including after a restart.

Ids are kept in the order they were recorded. With a positive `max_entries`
the oldest ids are dropped once the store grows past it; 0 keeps every id.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from .state_file import StateFile

logger = logging.getLogger("kbdraft.pipeline.dedup_store")


class DedupStore:
    """Set of seen item ids plus the time of the last completed poll."""

    SECTION = "seen_ids"
    LAST_POLL_SECTION = "last_poll_at"

    def __init__(self, state_file: StateFile, max_entries: int = 0):
        self._state = state_file
        self.max_entries = max(0, int(max_entries or 0))
        self._seen: Dict[str, None] = {}
        self._last_poll_at: Optional[datetime] = None
        self._dirty = False

    def load(self) -> None:
        """Load seen ids from the state file (empty on missing/corrupt state)."""
        raw_ids = self._state.read_section(self.SECTION, [])
        if not isinstance(raw_ids, list):
            logger.warning("Ignoring malformed seen_ids section (%s)", type(raw_ids).__name__)
            raw_ids = []
        self._seen = dict.fromkeys(str(i) for i in raw_ids if i is not None)
        self._evict()

        raw_poll = self._state.read_section(self.LAST_POLL_SECTION)
        self._last_poll_at = None
        if raw_poll:
            try:
                self._last_poll_at = datetime.fromisoformat(str(raw_poll))
            except ValueError:
                logger.warning("Ignoring malformed last_poll_at: %r", raw_poll)

        self._dirty = False
        logger.info("Dedup store loaded: %d seen ids", len(self._seen))

    def has(self, item_id: str) -> bool:
        return item_id in self._seen

    def mark_seen(self, item_id: str) -> None:
        """Record `item_id`. Marking an id twice is a no-op."""
        if item_id in self._seen:
            return
        self._seen[item_id] = None
        self._evict()
        self._dirty = True

    def _evict(self) -> None:
        if not self.max_entries:
            return
        excess = len(self._seen) - self.max_entries
        if excess <= 0:
            return
        for item_id in list(self._seen)[:excess]:
            del self._seen[item_id]
        logger.debug("Dropped %d oldest seen ids (limit %d)", excess, self.max_entries)

    @property
    def last_poll_at(self) -> Optional[datetime]:
        return self._last_poll_at

    def record_poll(self, when: datetime) -> None:
        self._last_poll_at = when
        self._dirty = True

    def snapshot(self) -> dict:
        """Sections this store owns, ready to be committed."""
        return {
            self.SECTION: list(self._seen),
            self.LAST_POLL_SECTION: self._last_poll_at.isoformat() if self._last_poll_at else None,
        }

    def flush(self) -> None:
        """Durably write the seen ids. Raises PersistenceError."""
        self._state.update_sections(self.snapshot())
        self._dirty = False

    def mark_clean(self) -> None:
        """Called when a combined commit already persisted this store's sections."""
        self._dirty = False

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def __contains__(self, item_id: str) -> bool:
        return self.has(item_id)

    def __len__(self) -> int:
        return len(self._seen)
