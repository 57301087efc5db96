"""Tests for the Gmail, Jira and Confluence connectors against mocked HTTP."""

import base64
import email
import json
from datetime import datetime, timezone

import httpx
import pytest

from kbdraft.common.config import ConfluenceConfig, GmailConfig, JiraConfig
from kbdraft.common.errors import MalformedResponseError, PublishError, TransientExternalError
from kbdraft.pipeline.connectors import (
    ConfluenceClient,
    GmailConnector,
    GmailSender,
    JiraConnector,
    JiraTracker,
    encode_message,
)
from kbdraft.pipeline.connectors.confluence import build_page_payload
from kbdraft.pipeline.connectors.jira import default_jql, ticket_content


def _b64(text):
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


class Recorder:
    """MockTransport handler that records requests and replays canned responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def transport(self):
        return httpx.MockTransport(self)


# ============================================================================
# Gmail
# ============================================================================

class TestGmailConnector:
    @pytest.fixture
    def config(self):
        return GmailConfig(access_token="tok", overlap_seconds=60)

    @pytest.mark.asyncio
    async def test_list_candidates(self, config):
        rec = Recorder(httpx.Response(200, json={"messages": [{"id": "m1"}, {"id": "m2"}, {}]}))
        connector = GmailConnector(config, transport=rec.transport)

        items = await connector.list_candidates(connector.default_filter, 5)

        assert [i.id for i in items] == ["m2", "m1"]
        assert items.complete
        assert len(rec.requests) == 1
        request = rec.requests[0]
        assert request.url.path == "/gmail/v1/users/me/messages"
        assert request.url.params["q"] == "subject:Internal"
        assert request.url.params["maxResults"] == "5"
        assert request.headers["Authorization"] == "Bearer tok"
        await connector.aclose()

    @pytest.mark.asyncio
    async def test_no_messages_key(self, config):
        rec = Recorder(httpx.Response(200, json={"resultSizeEstimate": 0}))
        connector = GmailConnector(config, transport=rec.transport)
        assert await connector.list_candidates("subject:Internal", 5) == []

    @pytest.mark.asyncio
    async def test_list_candidates_follows_page_tokens(self, config):
        rec = Recorder(
            httpx.Response(200, json={"messages": [{"id": "m7"}, {"id": "m6"}], "nextPageToken": "p2"}),
            httpx.Response(200, json={"messages": [{"id": "m5"}, {"id": "m4"}], "nextPageToken": "p3"}),
            httpx.Response(200, json={"messages": [{"id": "m3"}, {"id": "m4"}]}),
        )
        connector = GmailConnector(config, transport=rec.transport)

        items = await connector.list_candidates("subject:Internal", 2)

        assert [i.id for i in items] == ["m3", "m4", "m5", "m6", "m7"]
        assert items.complete
        assert "pageToken" not in rec.requests[0].url.params
        assert [r.url.params["pageToken"] for r in rec.requests[1:]] == ["p2", "p3"]
        assert {r.url.params["maxResults"] for r in rec.requests} == {"2"}

    @pytest.mark.asyncio
    async def test_repeated_page_token_marks_listing_incomplete(self, config):
        rec = Recorder(
            httpx.Response(200, json={"messages": [{"id": "m2"}], "nextPageToken": "same"}),
            httpx.Response(200, json={"messages": [{"id": "m1"}], "nextPageToken": "same"}),
        )
        connector = GmailConnector(config, transport=rec.transport)

        items = await connector.list_candidates("subject:Internal", 1)

        assert [i.id for i in items] == ["m1", "m2"]
        assert not items.complete

    def test_build_query_with_since(self, config):
        connector = GmailConnector(config)
        since = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
        expected = int(since.timestamp()) - 60
        assert connector.build_query("subject:Internal", since) == f"subject:Internal after:{expected}"
        assert connector.build_query("", None) == "subject:Internal"

    @pytest.mark.asyncio
    async def test_fetch_detail_multipart(self, config):
        message = {
            "id": "m1",
            "snippet": "snippet text",
            "internalDate": "1714557600000",
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": [
                    {"name": "Subject", "value": "Internal: printer issue"},
                    {"name": "From", "value": "Ops <ops@example.com>"},
                    {"name": "Date", "value": "Wed, 01 May 2024 10:00:00 +0000"},
                ],
                "parts": [
                    {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
                    {"mimeType": "text/plain", "body": {"data": _b64("Printer on floor 3 is out of toner")}},
                ],
            },
        }
        rec = Recorder(httpx.Response(200, json=message))
        connector = GmailConnector(config, transport=rec.transport)

        item = await connector.fetch_detail("m1")

        assert item.subject == "Internal: printer issue"
        assert item.sender == "Ops <ops@example.com>"
        assert item.raw_content == "Printer on floor 3 is out of toner"
        assert item.received_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert rec.requests[0].url.params["format"] == "full"

    @pytest.mark.asyncio
    async def test_fetch_detail_missing_parts(self, config):
        rec = Recorder(httpx.Response(200, json={"id": "m1", "snippet": "only a snippet", "payload": {}}))
        connector = GmailConnector(config, transport=rec.transport)

        item = await connector.fetch_detail("m1")

        assert item.subject == ""
        assert item.sender == ""
        assert item.raw_content == "only a snippet"
        assert item.received_at is None

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self, config):
        rec = Recorder(httpx.Response(401, text="invalid credentials"))
        connector = GmailConnector(config, transport=rec.transport)
        with pytest.raises(TransientExternalError) as exc_info:
            await connector.list_candidates("subject:Internal", 5)
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self, config):
        rec = Recorder(httpx.Response(429, headers={"Retry-After": "30"}))
        connector = GmailConnector(config, transport=rec.transport)
        with pytest.raises(TransientExternalError) as exc_info:
            await connector.list_candidates("subject:Internal", 5)
        assert exc_info.value.retry_after == 30.0

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, config):
        rec = Recorder(httpx.ConnectError("connection refused"))
        connector = GmailConnector(config, transport=rec.transport)
        with pytest.raises(TransientExternalError, match="request failed"):
            await connector.fetch_detail("m1")

    @pytest.mark.asyncio
    async def test_non_json_is_malformed(self, config):
        rec = Recorder(httpx.Response(200, text="<html>proxy</html>"))
        connector = GmailConnector(config, transport=rec.transport)
        with pytest.raises(MalformedResponseError):
            await connector.list_candidates("subject:Internal", 5)


class TestGmailSender:
    def test_encode_message(self):
        raw = encode_message("a@x.com", "Review needed: X", "<p>Hello</p>", sender="bot@x.com")
        parsed = email.message_from_bytes(base64.urlsafe_b64decode(raw))
        assert parsed["To"] == "a@x.com"
        assert parsed["From"] == "bot@x.com"
        assert parsed["Subject"] == "Review needed: X"
        html_parts = [p for p in parsed.walk() if p.get_content_type() == "text/html"]
        assert "<p>Hello</p>" in html_parts[0].get_payload(decode=True).decode()

    @pytest.mark.asyncio
    async def test_send(self):
        rec = Recorder(httpx.Response(200, json={"id": "sent-1", "threadId": "t"}))
        sender = GmailSender(GmailConfig(access_token="tok"), transport=rec.transport)

        assert await sender.send("a@x.com", "Subject", "<p>Body</p>") == "sent-1"

        request = rec.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/gmail/v1/users/me/messages/send"
        assert "raw" in json.loads(request.content)


# ============================================================================
# Jira
# ============================================================================

def _issue(key="ABC-123", assignee=None, **fields):
    data = {
        "summary": "Internal outage",
        "status": {"name": "Resolved"},
        "resolutiondate": "2024-05-01T10:20:30.000+0000",
        "assignee": assignee,
        "description": "VPN was down.",
        "comment": {"comments": [{"body": "first"}, {"body": "Rebooted the gateway."}]},
        "resolution": {"name": "Fixed", "description": "Work completed"},
    }
    data.update(fields)
    return {"key": key, "fields": data}


class TestJiraConnector:
    @pytest.fixture
    def config(self):
        return JiraConfig(base_url="https://x.atlassian.net", email="bot@x.com", api_token="t", trailing_days=5)

    def test_default_jql(self):
        assert default_jql(5) == "statusCategory = Done AND resolved >= -5d ORDER BY resolved ASC"

    @pytest.mark.asyncio
    async def test_list_candidates(self, config):
        rec = Recorder(httpx.Response(200, json={"issues": [{"key": "ABC-1"}, {"key": "ABC-2"}]}))
        connector = JiraConnector(config, transport=rec.transport)

        items = await connector.list_candidates(connector.default_filter, 5)

        assert [i.id for i in items] == ["ABC-1", "ABC-2"]
        request = rec.requests[0]
        assert request.url.path == "/rest/api/2/search"
        assert request.url.params["startAt"] == "0"
        assert request.url.params["maxResults"] == "5"
        assert request.url.params["jql"] == default_jql(5)
        assert request.headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_list_candidates_pages_with_start_at(self, config):
        keys = [f"OPS-{n}" for n in range(1, 8)]
        rec = Recorder(
            httpx.Response(200, json={"startAt": 0, "total": 7, "issues": [{"key": k} for k in keys[:5]]}),
            httpx.Response(200, json={"startAt": 5, "total": 7, "issues": [{"key": k} for k in keys[5:]]}),
        )
        connector = JiraConnector(config, transport=rec.transport)

        items = await connector.list_candidates(connector.default_filter, 5)

        assert [i.id for i in items] == keys
        assert items.complete
        assert [r.url.params["startAt"] for r in rec.requests] == ["0", "5"]

    @pytest.mark.asyncio
    async def test_short_page_without_total_ends_listing(self, config):
        rec = Recorder(
            httpx.Response(200, json={"issues": [{"key": "ABC-1"}, {"key": "ABC-2"}]}),
            httpx.Response(200, json={"issues": [{"key": "ABC-3"}]}),
        )
        connector = JiraConnector(config, transport=rec.transport)

        items = await connector.list_candidates(connector.default_filter, 2)

        assert [i.id for i in items] == ["ABC-1", "ABC-2", "ABC-3"]
        assert [r.url.params["startAt"] for r in rec.requests] == ["0", "2"]

    @pytest.mark.asyncio
    async def test_fetch_detail(self, config):
        rec = Recorder(httpx.Response(200, json=_issue(assignee={"emailAddress": "a@x.com", "displayName": "A"})))
        connector = JiraConnector(config, transport=rec.transport)

        item = await connector.fetch_detail("ABC-123")

        assert item.subject == "[ABC-123] Internal outage"
        assert item.sender == "a@x.com"
        assert item.received_at == datetime(2024, 5, 1, 10, 20, 30, tzinfo=timezone.utc)
        assert "VPN was down." in item.raw_content
        assert "Rebooted the gateway." in item.raw_content
        assert "first" not in item.raw_content
        assert "Resolution: Fixed: Work completed" in item.raw_content

    def test_ticket_content_empty_fields(self):
        assert ticket_content({}) == ""


class TestJiraTracker:
    @pytest.fixture
    def config(self):
        return JiraConfig(base_url="https://x.atlassian.net", email="bot@x.com", api_token="t")

    @pytest.mark.asyncio
    async def test_lookup(self, config):
        rec = Recorder(httpx.Response(200, json=_issue(assignee={"emailAddress": "a@x.com"})))
        tracker = JiraTracker(config, transport=rec.transport)

        ticket = await tracker.lookup_ticket("ABC-123")

        assert ticket.key == "ABC-123"
        assert ticket.status == "Resolved"
        assert ticket.assignee_email == "a@x.com"
        assert rec.requests[0].url.path == "/rest/api/2/issue/ABC-123"

    @pytest.mark.asyncio
    async def test_unassigned(self, config):
        rec = Recorder(httpx.Response(200, json=_issue(assignee=None)))
        ticket = await JiraTracker(config, transport=rec.transport).lookup_ticket("ABC-123")
        assert ticket.assignee_email is None

    @pytest.mark.asyncio
    async def test_not_found_is_none(self, config):
        rec = Recorder(httpx.Response(404, json={"errorMessages": ["Issue does not exist"]}))
        assert await JiraTracker(config, transport=rec.transport).lookup_ticket("ABC-999") is None

    @pytest.mark.asyncio
    async def test_server_error_propagates(self, config):
        rec = Recorder(httpx.Response(503))
        with pytest.raises(TransientExternalError):
            await JiraTracker(config, transport=rec.transport).lookup_ticket("ABC-123")


# ============================================================================
# Confluence
# ============================================================================

class TestConfluenceClient:
    @pytest.fixture
    def config(self):
        return ConfluenceConfig(
            base_url="https://x.atlassian.net/wiki", email="bot@x.com", api_key="k", space_key="KB"
        )

    def test_payload(self):
        payload = build_page_payload("Title", "<p>x</p>", "KB", draft=True, labels=["review-needed"])
        assert payload == {
            "type": "page",
            "title": "Title",
            "space": {"key": "KB"},
            "body": {"storage": {"value": "<p>x</p>", "representation": "storage"}},
            "status": "draft",
            "metadata": {"labels": [{"prefix": "global", "name": "review-needed"}]},
        }

    def test_payload_published_without_labels(self):
        payload = build_page_payload("Title", "<p>x</p>", "KB", draft=False)
        assert "status" not in payload
        assert "metadata" not in payload

    @pytest.mark.asyncio
    async def test_create_page(self, config):
        rec = Recorder(httpx.Response(200, json={"id": "98765", "type": "page"}))
        client = ConfluenceClient(config, transport=rec.transport)

        page_id = await client.create_page("Title", "<p>x</p>", "KB", draft=True, labels=["review-needed"])

        assert page_id == "98765"
        request = rec.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/wiki/rest/api/content/"
        assert json.loads(request.content)["status"] == "draft"

    @pytest.mark.asyncio
    async def test_error_status_is_publish_error(self, config):
        rec = Recorder(httpx.Response(400, json={"message": "space does not exist"}))
        client = ConfluenceClient(config, transport=rec.transport)
        with pytest.raises(PublishError) as exc_info:
            await client.create_page("Title", "<p>x</p>", "NOPE")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_id_is_publish_error(self, config):
        rec = Recorder(httpx.Response(200, json={"type": "page"}))
        client = ConfluenceClient(config, transport=rec.transport)
        with pytest.raises(PublishError, match="no page id"):
            await client.create_page("Title", "<p>x</p>", "KB")

    @pytest.mark.asyncio
    async def test_non_json_is_publish_error(self, config):
        rec = Recorder(httpx.Response(200, text="<html>login</html>"))
        client = ConfluenceClient(config, transport=rec.transport)
        with pytest.raises(PublishError):
            await client.create_page("Title", "<p>x</p>", "KB")
