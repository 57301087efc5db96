"""
Connectors

Boundaries to the external systems. Each converts a REST API into the
pipeline's own types.

Available Connectors:
- GmailConnector / GmailSender: mailbox source and review-request delivery
- JiraConnector / JiraTracker: ticket source and ticket lookup
- ConfluenceClient: draft page publishing
"""

from .base import (
    Item,
    CandidateList,
    TicketInfo,
    SourceConnector,
    TrackerClient,
    MailSender,
    KnowledgeBase,
)
from .gmail import GmailConnector, GmailSender, encode_message
from .jira import JiraConnector, JiraTracker
from .confluence import ConfluenceClient

__all__ = [
    "Item",
    "CandidateList",
    "TicketInfo",
    "SourceConnector",
    "TrackerClient",
    "MailSender",
    "KnowledgeBase",
    "GmailConnector",
    "GmailSender",
    "encode_message",
    "JiraConnector",
    "JiraTracker",
    "ConfluenceClient",
]
