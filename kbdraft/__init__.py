"""
kbdraft

Polls a mailbox or issue tracker, summarizes new items, stages them for human
review and publishes approved items as draft knowledge-base pages.

Philosophy:
- An item id is handled at most once, even across restarts
- Summaries are best-effort: the raw content is always a valid fallback
- Nothing is published without passing through the review queue

Usage:
    from kbdraft.common import load_config
    from kbdraft.pipeline import PipelineScheduler, ReviewQueue, DedupStore
"""

__version__ = "0.1.0"
