"""
Pipeline Scheduler

Owns the dedup store, review queue and every external collaborator, and runs
two independent timers on the event loop:

- poll:  source -> dedup -> enrich -> correlate -> queue -> notify
- drain: queue -> publish

Each timer awaits its own cycle before sleeping, so a cycle never overlaps
itself; the manual triggers take the same per-timer locks. Poll and drain
cycles may interleave with each other. All state mutations happen on the
event loop thread, between awaits.

Errors are contained at two levels: per item (the cycle moves on to the next
item) and per cycle (the timer logs and waits for its next tick).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..common.errors import PersistenceError
from ..common.schemas import QueueEntry
from .connectors.base import Item, SourceConnector
from .correlator import Correlator
from .dedup_store import DedupStore
from .enricher import Enricher
from .notifier import Notifier
from .publisher import Publisher
from .review_queue import DrainResult, ReviewQueue
from .state_file import StateFile

logger = logging.getLogger("kbdraft.pipeline.scheduler")


@dataclass
class PollResult:
    """Outcome of one poll cycle"""
    candidates: int = 0
    queued: int = 0
    skipped: int = 0
    failed: int = 0
    notified: int = 0
    complete: bool = True
    error: Optional[str] = None
    failed_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates": self.candidates,
            "queued": self.queued,
            "skipped": self.skipped,
            "failed": self.failed,
            "notified": self.notified,
            "complete": self.complete,
            "error": self.error,
        }


class PipelineScheduler:
    """Single owner of pipeline state and timers."""

    def __init__(
        self,
        state_file: StateFile,
        source: SourceConnector,
        enricher: Enricher,
        publisher: Publisher,
        notifier: Optional[Notifier] = None,
        correlator: Optional[Correlator] = None,
        source_filter: str = "",
        max_results: int = 5,
        poll_interval: float = 300,
        drain_interval: float = 900,
        seen_ids_limit: int = 0,
        dedup: Optional[DedupStore] = None,
        queue: Optional[ReviewQueue] = None,
    ):
        self.state_file = state_file
        self.dedup = dedup or DedupStore(state_file, max_entries=seen_ids_limit)
        self.queue = queue or ReviewQueue(state_file)
        self.source = source
        self.enricher = enricher
        self.publisher = publisher
        self.notifier = notifier
        self.correlator = correlator
        self.source_filter = source_filter
        self.max_results = max_results
        self.poll_interval = poll_interval
        self.drain_interval = drain_interval

        self._poll_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._loaded = False

        self.last_poll: Optional[PollResult] = None
        self.last_poll_finished_at: Optional[datetime] = None
        self.last_drain: Optional[DrainResult] = None
        self.last_drain_finished_at: Optional[datetime] = None

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    def load(self) -> None:
        """Read persisted state once (empty state on a corrupt file)."""
        self.state_file.load()
        self.dedup.load()
        self.queue.load()
        self._loaded = True

    def _commit(self) -> bool:
        """Write dedup ids and queue together; a failure is retried next cycle."""
        try:
            self.state_file.update_sections({**self.dedup.snapshot(), **self.queue.snapshot()})
            self.dedup.mark_clean()
            return True
        except PersistenceError as e:
            logger.error("State not persisted, will retry next cycle: %s", e)
            return False

    # ------------------------------------------------------------------ #
    # Poll cycle
    # ------------------------------------------------------------------ #

    async def poll_once(self) -> PollResult:
        """Run one intake cycle. Never raises."""
        async with self._poll_lock:
            result = PollResult()
            started_at = datetime.now(timezone.utc)
            handled: Set[str] = set()

            try:
                candidates = await self.source.list_candidates(
                    self.source_filter or self.source.default_filter,
                    self.max_results,
                    since=self.dedup.last_poll_at,
                )
            except Exception as e:
                logger.error("Poll failed, retrying next tick: %s", e)
                result.error = str(e)[:200]
                self._finish_poll(result)
                return result

            result.candidates = len(candidates)
            result.complete = getattr(candidates, "complete", True)
            for candidate in candidates:
                if not candidate.is_valid:
                    continue
                item_id = str(candidate.id)
                if self.dedup.has(item_id) or item_id in handled:
                    result.skipped += 1
                    continue
                handled.add(item_id)

                try:
                    entry = await self._intake(item_id)
                except Exception as e:
                    result.failed += 1
                    result.failed_ids.append(item_id)
                    logger.warning("Item %s failed intake, will retry next poll: %s", item_id, e)
                    continue

                result.queued += 1
                if await self._notify_entry(entry):
                    result.notified += 1

            result.notified += await self.process_queue_once(exclude=handled)

            # Failed or unlisted items must stay inside the next poll's window
            if not result.failed and result.complete:
                self.dedup.record_poll(started_at)
            elif not result.complete:
                logger.warning("Source listing was cut short, poll window not advanced")
            self._commit()
            logger.info(
                "Poll done: %d candidates, %d queued, %d skipped, %d failed, %d notified",
                result.candidates, result.queued, result.skipped, result.failed, result.notified,
            )
            self._finish_poll(result)
            return result

    def _finish_poll(self, result: PollResult) -> None:
        self.last_poll = result
        self.last_poll_finished_at = datetime.now(timezone.utc)

    async def _intake(self, item_id: str) -> QueueEntry:
        """Fetch, enrich, correlate and queue one item; the id is marked seen at enqueue."""
        item: Item = await self.source.fetch_detail(item_id)
        summary = await self.enricher.summarize(item.raw_content)

        entry = QueueEntry(
            source_id=item_id,
            subject=item.subject,
            summary=summary,
            sender=item.sender,
            received_at=item.received_at,
        )
        if self.correlator is not None:
            await self._correlate(entry)

        self.dedup.mark_seen(item_id)
        self.queue.enqueue(entry)
        self._commit()
        return entry

    async def _correlate(self, entry: QueueEntry) -> None:
        try:
            await self.correlator.correlate(entry)
        except Exception as e:
            logger.warning("Correlation failed for %s: %s", entry.source_id, e)

    async def _notify_entry(self, entry: QueueEntry) -> bool:
        """Send the review request; failures stay on the entry for the next tick."""
        if self.notifier is None:
            return False
        try:
            sent = await self.notifier.notify(entry)
        except Exception as e:
            logger.warning("Notification failed for %s, will retry next tick: %s", entry.source_id, e)
            self.queue.record_notify_failure(entry.source_id, str(e))
            self._commit()
            return False

        if not sent:
            return False
        if self.queue.get(entry.source_id) is entry:
            self.queue.mark_notified(entry.source_id)
            self._commit()
        return True

    async def process_queue_once(self, exclude: Optional[Set[str]] = None) -> int:
        """
        Retry review requests for entries still staged.

        Uncorrelated entries get another correlation attempt first. Returns
        the number of requests sent.
        """
        if self.notifier is None:
            return 0
        exclude = exclude or set()
        sent = 0
        for entry in list(self.queue.staged()):
            if entry.source_id in exclude:
                continue
            if self.correlator is not None and not entry.correlated_assignee:
                await self._correlate(entry)
            if await self._notify_entry(entry):
                sent += 1
        return sent

    # ------------------------------------------------------------------ #
    # Drain cycle
    # ------------------------------------------------------------------ #

    async def drain_and_publish(self) -> DrainResult:
        """Publish every pending entry in arrival order. Never raises."""
        async with self._drain_lock:
            if not self.queue.pending():
                result = DrainResult()
            else:
                try:
                    result = await self.queue.drain(self.publisher.publish)
                except Exception as e:
                    logger.error("Drain aborted: %s", e, exc_info=True)
                    result = DrainResult(remaining=len(self.queue.pending()))
                    result.errors["drain"] = str(e)[:200]

            self.last_drain = result
            self.last_drain_finished_at = datetime.now(timezone.utc)
            if result.published or result.failed:
                logger.info("Drain done: %s, %d pending", result.message, result.remaining)
            return result

    # ------------------------------------------------------------------ #
    # Timers
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return bool(self._tasks) and self._stop_event is not None and not self._stop_event.is_set()

    async def start(self) -> None:
        """Load state and start both timers."""
        if self.running:
            logger.warning("Scheduler is already running")
            return
        if not self._loaded:
            self.load()

        self._stop_event = asyncio.Event()
        self._tasks = [asyncio.create_task(self._run_timer("poll", self.poll_interval, self.poll_once))]
        if self.drain_interval and self.drain_interval > 0:
            self._tasks.append(
                asyncio.create_task(self._run_timer("drain", self.drain_interval, self.drain_and_publish))
            )
        else:
            logger.info("Drain timer disabled, publishing on manual trigger only")
        logger.info(
            "Scheduler started (poll every %ss, drain every %ss)",
            self.poll_interval, self.drain_interval or "-",
        )

    async def stop(self) -> None:
        """Stop the timers after their current cycle completes."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")

    async def _run_timer(self, name: str, interval: float, cycle) -> None:
        logger.info("%s timer started", name)
        while not self._stop_event.is_set():
            try:
                await cycle()
            except Exception as e:
                logger.error("%s cycle error: %s", name, e, exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("%s timer stopped", name)

    async def aclose(self) -> None:
        """Close every external client; one failing close does not skip the rest."""
        components = [self.source, self.publisher, self.notifier, self.correlator]
        for component in components:
            if component is None:
                continue
            try:
                await component.aclose()
            except Exception as e:
                logger.warning("Error closing %s: %s", type(component).__name__, e)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "seen_ids": len(self.dedup),
            "queue": self.queue.get_stats(),
            "last_poll_at": self.dedup.last_poll_at.isoformat() if self.dedup.last_poll_at else None,
            "last_poll": self.last_poll.to_dict() if self.last_poll else None,
            "last_drain": {
                "published": self.last_drain.published,
                "failed": self.last_drain.failed,
                "remaining": self.last_drain.remaining,
                "finished_at": self.last_drain_finished_at.isoformat() if self.last_drain_finished_at else None,
            } if self.last_drain else None,
            "enricher_available": self.enricher.is_available,
            "correlation_enabled": self.correlator is not None,
        }
