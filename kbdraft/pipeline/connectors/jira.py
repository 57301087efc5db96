"""
Jira Connector

Two roles over the same REST API (v2, basic auth):
- JiraConnector: source of recently resolved tickets
- JiraTracker: ticket lookup for the correlator
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ...common.config import JiraConfig
from ...common.errors import MalformedResponseError, TransientExternalError
from .base import CandidateList, HttpClientMixin, Item, SourceConnector, TicketInfo, TrackerClient

logger = logging.getLogger("kbdraft.pipeline.connectors.jira")

TICKET_FIELDS = [
    "summary",
    "status",
    "resolutiondate",
    "assignee",
    "description",
    "comment",
    "resolution",
]


def default_jql(trailing_days: int) -> str:
    """Tickets resolved within the trailing window, oldest first."""
    return f"statusCategory = Done AND resolved >= -{int(trailing_days)}d ORDER BY resolved ASC"


def _parse_jira_datetime(value: Optional[str]) -> Optional[datetime]:
    """Jira timestamps look like 2024-05-01T10:20:30.000+0000."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    logger.debug("Unparseable Jira timestamp: %r", value)
    return None


def _latest_comment(fields: Dict[str, Any]) -> str:
    comments = (fields.get("comment") or {}).get("comments") or []
    if not comments:
        return ""
    return (comments[-1] or {}).get("body") or ""


def _resolution_notes(fields: Dict[str, Any]) -> str:
    resolution = fields.get("resolution") or {}
    name = resolution.get("name") or ""
    description = resolution.get("description") or ""
    if name and description:
        return f"{name}: {description}"
    return name or description


def ticket_content(fields: Dict[str, Any]) -> str:
    """Plain-text body assembled from description, latest comment and resolution."""
    sections = []
    description = fields.get("description") or ""
    if description:
        sections.append(description.strip())
    comment = _latest_comment(fields)
    if comment:
        sections.append(f"Latest comment:\n{comment.strip()}")
    notes = _resolution_notes(fields)
    if notes:
        sections.append(f"Resolution: {notes.strip()}")
    return "\n\n".join(sections)


def ticket_from_issue(issue: Dict[str, Any]) -> TicketInfo:
    fields = issue.get("fields") or {}
    assignee = fields.get("assignee") or {}
    return TicketInfo(
        key=issue.get("key", ""),
        status=(fields.get("status") or {}).get("name", ""),
        assignee_email=assignee.get("emailAddress") or None,
        summary=fields.get("summary") or "",
    )


class _JiraBase(HttpClientMixin):
    service_name = "jira"

    def _init_client(self, config: JiraConfig, transport: Optional[httpx.AsyncBaseTransport]) -> None:
        self._config = config
        self._client = self._build_client(
            config.base_url,
            auth=httpx.BasicAuth(config.email, config.api_token),
            transport=transport,
        )

    async def _get_issue(self, key: str) -> Dict[str, Any]:
        data = await self._request(
            "GET", f"/rest/api/2/issue/{key}", params={"fields": ",".join(TICKET_FIELDS)}
        )
        if not isinstance(data, dict):
            raise MalformedResponseError(f"jira issue {key} is not an object")
        return data


class JiraConnector(_JiraBase, SourceConnector):
    """Polls resolved tickets as pipeline items."""

    def __init__(self, config: JiraConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        SourceConnector.__init__(self, "jira")
        self._init_client(config, transport)

    @property
    def default_filter(self) -> str:
        return default_jql(self._config.trailing_days)

    async def list_candidates(self, filter: str, limit: int, since: Optional[datetime] = None) -> CandidateList:
        """Page through the whole search with startAt, in JQL order."""
        jql = filter or self.default_filter
        keys: List[str] = []
        listed = set()
        start_at = 0

        while True:
            params = {
                "jql": jql,
                "startAt": start_at,
                "maxResults": limit,
                "fields": "key",
            }
            data = await self._request("GET", "/rest/api/2/search", params=params)
            if not isinstance(data, dict):
                raise MalformedResponseError("jira search response is not an object")

            issues = data.get("issues") or []
            for issue in issues:
                key = issue.get("key") if isinstance(issue, dict) else None
                if key and key not in listed:
                    listed.add(key)
                    keys.append(key)

            if not issues:
                break
            start_at += len(issues)
            total = data.get("total")
            if isinstance(total, int):
                if start_at >= total:
                    break
            elif len(issues) < limit:
                break

        logger.debug("Jira search matched %d tickets", len(keys))
        return CandidateList([Item(id=k, source="jira") for k in keys])

    async def fetch_detail(self, item_id: str) -> Item:
        issue = await self._get_issue(item_id)
        fields = issue.get("fields") or {}
        key = issue.get("key") or item_id
        assignee = fields.get("assignee") or {}
        summary = fields.get("summary") or ""

        return Item(
            id=key,
            subject=f"[{key}] {summary}".strip(),
            sender=assignee.get("emailAddress") or assignee.get("displayName") or "",
            received_at=_parse_jira_datetime(fields.get("resolutiondate")),
            raw_content=ticket_content(fields),
            source="jira",
        )


class JiraTracker(_JiraBase, TrackerClient):
    """Resolves ticket keys for the correlator."""

    def __init__(self, config: JiraConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._init_client(config, transport)

    async def lookup_ticket(self, key: str) -> Optional[TicketInfo]:
        try:
            issue = await self._get_issue(key)
        except TransientExternalError as e:
            if e.status_code == 404:
                logger.info("Ticket %s not found", key)
                return None
            raise
        return ticket_from_issue(issue)
