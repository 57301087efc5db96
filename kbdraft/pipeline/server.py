"""
kbdraft Server

FastAPI control surface for the pipeline. The scheduler runs on the same
event loop as the endpoints.

Endpoints:
- GET /health: Liveness message
- GET|POST /run: Publish every pending entry now (manual approval)
- POST /poll: Run one intake cycle now
- GET /review: Pending entries
- GET /review/{source_id}: One entry
- POST /review/{source_id}/discard: Discard an entry
- GET /stats: Scheduler and queue statistics
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..common.config import KbDraftConfig, load_config, validate_config, ensure_directories
from ..common.llm_client import LLMClient
from ..common.logging_setup import setup_logging
from .connectors import (
    ConfluenceClient,
    GmailConnector,
    GmailSender,
    JiraConnector,
    JiraTracker,
)
from .correlator import Correlator
from .enricher import Enricher
from .notifier import Notifier
from .publisher import Publisher
from .scheduler import PipelineScheduler
from .state_file import StateFile

logger = logging.getLogger("kbdraft.pipeline.server")

# Global state
scheduler: Optional[PipelineScheduler] = None


def build_scheduler(config: KbDraftConfig) -> PipelineScheduler:
    """Wire every component from configuration."""
    if config.source.kind == "jira":
        source = JiraConnector(config.jira)
    else:
        source = GmailConnector(config.gmail)

    llm_client = None
    if config.enricher.enabled:
        llm_client = LLMClient.from_config(config.llm)
        if llm_client.is_available:
            logger.info("Summaries enabled (%s %s)", llm_client.provider, llm_client.model)
        else:
            logger.info("Summarization backend unavailable, raw content will be queued")
    enricher = Enricher(
        llm_client,
        timeout=config.enricher.timeout,
        max_tokens=config.enricher.max_tokens,
        max_input_chars=config.enricher.max_input_chars,
    )

    correlator = None
    if config.jira.is_configured:
        correlator = Correlator(JiraTracker(config.jira))
        logger.info("Ticket correlation enabled (%s)", config.jira.base_url)

    notifier = None
    if config.notify.enabled:
        notifier = Notifier(
            GmailSender(config.gmail),
            default_recipient=config.notify.default_recipient,
            action_base_url=config.server.base_url,
            require_correlation=correlator is not None,
        )

    publisher = Publisher.from_config(ConfluenceClient(config.confluence), config.confluence)

    return PipelineScheduler(
        state_file=StateFile(config.state_path),
        source=source,
        enricher=enricher,
        publisher=publisher,
        notifier=notifier,
        correlator=correlator,
        source_filter=config.source.query,
        max_results=config.source.max_results,
        seen_ids_limit=config.source.seen_ids_limit,
        poll_interval=config.scheduler.poll_interval,
        drain_interval=config.scheduler.drain_interval,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start the pipeline; configuration errors abort startup"""
    global scheduler

    logger.info("Starting up...")
    ensure_directories()

    config = load_config()
    validate_config(config)

    scheduler = build_scheduler(config)
    await scheduler.start()
    logger.info("Ready (source: %s, space: %s)", config.source.kind, config.confluence.space_key)

    yield

    logger.info("Shutting down...")
    await scheduler.stop()
    await scheduler.aclose()


app = FastAPI(
    title="kbdraft",
    description="Mailbox/tracker to knowledge-base drafting pipeline",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# Request/Response Models
# =============================================================================

class DiscardRequest(BaseModel):
    """Discard request"""
    reason: Optional[str] = None
    operator: Optional[str] = None


def _require_scheduler() -> PipelineScheduler:
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return scheduler


def _entry_summary(entry) -> dict:
    return {
        "source_id": entry.source_id,
        "subject": entry.subject,
        "state": entry.state.value,
        "created_at": entry.created_at.isoformat(),
        "assignee": entry.correlated_assignee,
        "ticket_key": entry.correlated_ticket_key,
    }


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "message": "kbdraft running",
        "initialized": scheduler is not None,
        "scheduler_running": scheduler.running if scheduler else False,
        "pending_reviews": len(scheduler.queue.pending()) if scheduler else 0,
    }


@app.api_route("/run", methods=["GET", "POST"])
async def run_drain():
    """Publish every pending entry now"""
    sched = _require_scheduler()
    try:
        result = await sched.drain_and_publish()
    except Exception as e:
        logger.error("Manual drain failed: %s", e, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"published": 0, "message": "Error publishing review queue."},
        )

    return {
        "published": result.published,
        "failed": result.failed,
        "pending": result.remaining,
        "message": f"{result.message}. Draft KB pages created." if result.published else result.message,
    }


@app.post("/poll")
async def run_poll():
    """Run one intake cycle now"""
    sched = _require_scheduler()
    try:
        result = await sched.poll_once()
    except Exception as e:
        logger.error("Manual poll failed: %s", e, exc_info=True)
        return JSONResponse(status_code=500, content={"queued": 0, "message": "Error polling source."})

    body = result.to_dict()
    if body.get("error"):
        body["error"] = "source unavailable"
    return body


@app.get("/review")
async def get_reviews():
    """Get pending reviews"""
    sched = _require_scheduler()
    pending = sched.queue.pending()
    return {
        "pending_count": len(pending),
        "items": [_entry_summary(entry) for entry in pending],
    }


@app.get("/review/{source_id}")
async def get_review_item(source_id: str):
    """Get a specific review item"""
    sched = _require_scheduler()
    entry = sched.queue.get(source_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Item not found")

    return {
        **_entry_summary(entry),
        "summary": entry.summary,
        "sender": entry.sender,
        "ticket_status": entry.ticket_status,
        "notify_attempts": entry.notify_attempts,
        "last_error": entry.last_error,
        "formatted": sched.queue.format_for_review(entry),
    }


@app.post("/review/{source_id}/discard")
async def discard_review(source_id: str, request: Optional[DiscardRequest] = None):
    """Discard a review item"""
    sched = _require_scheduler()
    reason = None
    if request is not None:
        reason = request.reason
        if request.operator:
            reason = f"{reason or 'no reason'} (by {request.operator})"

    entry = sched.queue.discard(source_id, reason=reason)
    if entry is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return {"status": "discarded", "source_id": source_id}


@app.get("/stats")
async def get_stats():
    """Get pipeline statistics"""
    sched = _require_scheduler()
    return {
        "service": "kbdraft",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **sched.status(),
    }


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the kbdraft server"""
    import uvicorn

    config = load_config()
    setup_logging(config.log_level)
    port = config.server.port

    logger.info("Starting server on port %s", port)
    uvicorn.run(
        "kbdraft.pipeline.server:app",
        host=config.server.host,
        port=port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    run_server()
