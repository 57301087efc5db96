"""
Queue Entry Schema

A QueueEntry is an enriched item staged for human review. It is the only
pipeline object that is persisted besides the set of seen ids.

State machine:
    staged -> notified -> published   (terminal)
    staged -> notified -> discarded   (terminal, operator-driven)
    staged -> published | discarded   (publish/discard before notification)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .errors import InvalidTransitionError


class EntryState(str, Enum):
    """Lifecycle state of a queue entry"""
    STAGED = "staged"
    NOTIFIED = "notified"
    PUBLISHED = "published"
    DISCARDED = "discarded"


_TRANSITIONS = {
    EntryState.STAGED: {EntryState.NOTIFIED, EntryState.PUBLISHED, EntryState.DISCARDED},
    EntryState.NOTIFIED: {EntryState.PUBLISHED, EntryState.DISCARDED},
    EntryState.PUBLISHED: set(),
    EntryState.DISCARDED: set(),
}

PENDING_STATES = (EntryState.STAGED, EntryState.NOTIFIED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueEntry(BaseModel):
    """An item awaiting approval"""
    source_id: str
    subject: str = ""
    summary: str = ""
    sender: str = ""
    received_at: Optional[datetime] = None

    # Routing metadata attached by the correlator
    correlated_assignee: Optional[str] = None
    correlated_ticket_key: Optional[str] = None
    ticket_status: Optional[str] = None

    state: EntryState = EntryState.STAGED
    created_at: datetime = Field(default_factory=_utcnow)
    notified_at: Optional[datetime] = None
    notify_attempts: int = 0
    publish_attempts: int = 0
    last_error: Optional[str] = None
    page_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_STATES

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def transition(self, target: EntryState) -> None:
        """Move to `target`, raising InvalidTransitionError on an illegal edge."""
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.source_id}: cannot move from {self.state.value} to {target.value}"
            )
        self.state = target

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> "QueueEntry":
        return cls.model_validate(data)
