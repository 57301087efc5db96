"""
Confluence Connector

Creates pages in storage representation under a space, optionally as drafts
with a label. Every failure is reported as PublishError.
"""

import logging
from typing import List, Optional

import httpx

from ...common.config import ConfluenceConfig
from ...common.errors import MalformedResponseError, PublishError, TransientExternalError
from .base import HttpClientMixin, KnowledgeBase

logger = logging.getLogger("kbdraft.pipeline.connectors.confluence")


def build_page_payload(
    title: str,
    html_body: str,
    space_key: str,
    draft: bool = True,
    labels: Optional[List[str]] = None,
) -> dict:
    payload = {
        "type": "page",
        "title": title,
        "space": {"key": space_key},
        "body": {"storage": {"value": html_body, "representation": "storage"}},
    }
    if draft:
        payload["status"] = "draft"
    if labels:
        payload["metadata"] = {
            "labels": [{"prefix": "global", "name": label} for label in labels]
        }
    return payload


class ConfluenceClient(HttpClientMixin, KnowledgeBase):
    """Confluence REST content API"""

    service_name = "confluence"

    def __init__(self, config: ConfluenceConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config
        self._client = self._build_client(
            config.base_url,
            headers={"Content-Type": "application/json"},
            auth=httpx.BasicAuth(config.email, config.api_key),
            transport=transport,
        )

    async def create_page(
        self,
        title: str,
        html_body: str,
        space_key: str,
        draft: bool = True,
        labels: Optional[List[str]] = None,
    ) -> str:
        payload = build_page_payload(title, html_body, space_key, draft=draft, labels=labels)
        try:
            data = await self._request("POST", "/rest/api/content/", json=payload)
        except TransientExternalError as e:
            raise PublishError(str(e), status_code=e.status_code, retry_after=e.retry_after) from e
        except MalformedResponseError as e:
            raise PublishError(str(e)) from e

        page_id = (data or {}).get("id") if isinstance(data, dict) else None
        if not page_id:
            raise PublishError(f"confluence response for {title!r} has no page id")

        logger.info("Confluence page created: %s (%s)", page_id, title)
        return str(page_id)
