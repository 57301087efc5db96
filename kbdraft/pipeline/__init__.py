"""
Pipeline: poll, dedupe, enrich, review, publish

Key Components:
- DedupStore: Durable set of handled item ids
- Enricher: Best-effort LLM summaries with raw-content fallback
- Correlator: Ticket key -> assignee routing
- ReviewQueue: FIFO of entries awaiting approval
- Notifier: Review requests to the responsible human
- Publisher: Draft pages in the knowledge base
- PipelineScheduler: Poll and drain timers over all of the above

Rules:
1. An id is marked seen when its entry is queued, never later
2. A summary failure never blocks an item: the raw content is used
3. Entries publish in the order they were queued
4. State is written atomically after every mutating step
"""

from .state_file import StateFile
from .dedup_store import DedupStore
from .enricher import Enricher, to_storage_html
from .correlator import Correlator, extract_ticket_key
from .review_queue import ReviewQueue, DrainResult
from .notifier import Notifier
from .publisher import Publisher, render_page_body
from .scheduler import PipelineScheduler, PollResult

__all__ = [
    "StateFile",
    "DedupStore",
    "Enricher",
    "to_storage_html",
    "Correlator",
    "extract_ticket_key",
    "ReviewQueue",
    "DrainResult",
    "Notifier",
    "Publisher",
    "render_page_body",
    "PipelineScheduler",
    "PollResult",
]
