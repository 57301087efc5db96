"""
Base Connectors

Abstract interfaces for the external systems the pipeline talks to, plus the
common Item format every source produces.

- SourceConnector: lists and fetches items from a mailbox or tracker
- TrackerClient: resolves a ticket key to its status and assignee
- MailSender: delivers a single message to a single recipient
- KnowledgeBase: creates a page in a named space
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ...common.errors import MalformedResponseError, TransientExternalError

logger = logging.getLogger("kbdraft.pipeline.connectors")

DEFAULT_TIMEOUT = 30.0


@dataclass
class Item:
    """
    Common item format for all sources.

    Missing headers or body parts map to the defaults below, so downstream
    code never has to handle None text.
    """
    id: str
    subject: str = ""
    sender: str = ""
    received_at: Optional[datetime] = None
    raw_content: str = ""
    source: str = ""

    @property
    def is_valid(self) -> bool:
        """Check if item has minimum required fields"""
        return bool(self.id and str(self.id).strip())


@dataclass
class TicketInfo:
    """Tracker record an item was correlated with"""
    key: str
    status: str = ""
    assignee_email: Optional[str] = None
    summary: str = ""


class CandidateList(list):
    """
    Candidates from one listing.

    `complete` is False when the listing stopped before the source ran out of
    results, so callers must not treat anything past it as handled.
    """

    def __init__(self, items: Sequence[Item] = (), complete: bool = True):
        super().__init__(items)
        self.complete = complete


class SourceConnector(ABC):
    """
    Abstract base class for item sources.

    One poll makes one list_candidates call, which pages through every match
    of the filter and returns them oldest first. Candidates carry at least an
    id. fetch_detail returns the full item.
    """

    def __init__(self, source_name: str):
        self.source_name = source_name

    @property
    def default_filter(self) -> str:
        return ""

    @abstractmethod
    async def list_candidates(
        self,
        filter: str,
        limit: int,
        since: Optional[datetime] = None,
    ) -> Sequence[Item]:
        """
        List lightweight references to candidate items.

        Args:
            filter: Source-specific filter expression
            limit: Page size of each list request
            since: Last completed poll, if any

        Returns:
            Items with at least `id` populated, oldest first. A CandidateList
            with complete=False means the listing was cut short.
        """
        pass

    @abstractmethod
    async def fetch_detail(self, item_id: str) -> Item:
        """Fetch the full item for `item_id`."""
        pass

    async def aclose(self) -> None:
        pass


class TrackerClient(ABC):
    """Ticket lookup used by the correlator"""

    @abstractmethod
    async def lookup_ticket(self, key: str) -> Optional[TicketInfo]:
        """Return the ticket for `key`, or None when it does not exist."""
        pass

    async def aclose(self) -> None:
        pass


class MailSender(ABC):
    """Single-recipient message delivery"""

    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str) -> str:
        """Send a message and return the provider's message id."""
        pass

    async def aclose(self) -> None:
        pass


class KnowledgeBase(ABC):
    """Page creation in the knowledge-base service"""

    @abstractmethod
    async def create_page(
        self,
        title: str,
        html_body: str,
        space_key: str,
        draft: bool = True,
        labels: Optional[List[str]] = None,
    ) -> str:
        """Create a page and return its id. Raises PublishError."""
        pass

    async def aclose(self) -> None:
        pass


class HttpClientMixin:
    """
    Shared httpx plumbing for REST connectors.

    Every transport, auth or status failure becomes TransientExternalError and
    a non-JSON body becomes MalformedResponseError.
    """

    _client: httpx.AsyncClient
    service_name = "external"

    @staticmethod
    def _build_client(
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[Any] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {
            "base_url": base_url.rstrip("/"),
            "headers": {"Accept": "application/json", **(headers or {})},
            "timeout": httpx.Timeout(timeout),
        }
        if auth is not None:
            kwargs["auth"] = auth
        if transport is not None:
            kwargs["transport"] = transport
        return httpx.AsyncClient(**kwargs)

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Make an API request and return the decoded JSON body."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"{self.service_name} request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise TransientExternalError(f"{self.service_name} request failed: {method} {url}: {e}") from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            logger.warning("%s rate limited (retry after %ss)", self.service_name, retry_after)
            raise TransientExternalError(
                f"{self.service_name} rate limited", status_code=429, retry_after=retry_after
            )

        if response.status_code >= 400:
            raise TransientExternalError(
                f"{self.service_name} returned {response.status_code} for {method} {url}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.service_name} returned non-JSON body for {method} {url}"
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()
