"""
Unit tests for work item processors.
"""

import json
from datetime import datetime, timezone
from uuid import uuid4

import httpx
import pytest

from jobcoord.errors import PermanentDownstreamError, TransientDownstreamError
from jobcoord.processors import (
    get_processor,
    list_processors,
    process_echo,
    process_failing,
    process_http_request,
    process_rejecting,
    register_processor,
)
from jobcoord.types.job import ItemContext


def make_context(payload: dict) -> ItemContext:
    return ItemContext(
        item_id=uuid4(),
        job_name="test-job",
        execution_id=uuid4(),
        fencing_token=1,
        worker_id="test-worker",
        payload_ref=None,
        payload=payload,
        retry_count=0,
        claimed_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def mock_http(monkeypatch):
    """Route httpx.AsyncClient through a handler instead of the network."""
    responses: dict[str, httpx.Response] = {}
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return responses.get(str(request.url), httpx.Response(404))

    original = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        return original(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)
    return responses, requests


class TestProcessorRegistry:
    """Tests for the processor registry."""

    def test_list_processors(self):
        """Test listing registered processors."""
        processors = list_processors()

        assert "echo" in processors
        assert "sleep" in processors
        assert "http_request" in processors

    def test_get_processor_exists(self):
        """Test getting an existing processor."""
        assert get_processor("echo") is process_echo

    def test_get_processor_not_exists(self):
        """Test getting a non-existent processor."""
        assert get_processor("nonexistent") is None

    def test_register_processor(self):
        """Test registering a processor under a job name."""
        @register_processor("test-registered-job")
        async def custom(context: ItemContext) -> None:
            return None

        assert get_processor("test-registered-job") is custom


class TestBuiltinProcessors:
    """Tests for the built-in processors."""

    @pytest.mark.asyncio
    async def test_echo(self):
        """Test the echo processor."""
        context = make_context({"message": "test"})

        assert await process_echo(context) == {"echo": {"message": "test"}}

    @pytest.mark.asyncio
    async def test_failing_is_retryable(self):
        """Test that the failing processor raises a retryable error."""
        with pytest.raises(TransientDownstreamError, match="Intentional failure"):
            await process_failing(make_context({}))

    @pytest.mark.asyncio
    async def test_rejecting_is_permanent(self):
        """Test that the rejecting processor raises a non-retryable error."""
        with pytest.raises(PermanentDownstreamError):
            await process_rejecting(make_context({}))


class TestHttpRequestProcessor:
    """Tests for the HTTP request processor."""

    @pytest.mark.asyncio
    async def test_success(self, mock_http):
        """Test a successful request returns status and body."""
        responses, requests = mock_http
        responses["https://downstream.test/ok"] = httpx.Response(200, text="fine")

        result = await process_http_request(
            make_context({"url": "https://downstream.test/ok"})
        )

        assert result == {"status_code": 200, "body": "fine"}
        assert requests[0].method == "GET"

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, mock_http):
        """Test that POST requests carry the JSON body."""
        responses, requests = mock_http
        responses["https://downstream.test/items"] = httpx.Response(201, json={"id": 7})

        await process_http_request(
            make_context({
                "url": "https://downstream.test/items",
                "method": "post",
                "body": {"name": "widget"},
            })
        )

        assert requests[0].method == "POST"
        assert json.loads(requests[0].content) == {"name": "widget"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 503, 429])
    async def test_retryable_statuses(self, mock_http, status_code):
        """Test that server errors and throttling are retryable."""
        responses, _ = mock_http
        responses["https://downstream.test/busy"] = httpx.Response(status_code)

        with pytest.raises(TransientDownstreamError):
            await process_http_request(make_context({"url": "https://downstream.test/busy"}))

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, mock_http):
        """Test that other 4xx responses are not retried."""
        with pytest.raises(PermanentDownstreamError, match="HTTP 404"):
            await process_http_request(make_context({"url": "https://downstream.test/missing"}))

    @pytest.mark.asyncio
    async def test_missing_url(self):
        """Test that a payload without a URL is rejected."""
        with pytest.raises(PermanentDownstreamError, match="Missing 'url'"):
            await process_http_request(make_context({}))
