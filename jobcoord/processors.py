"""
Work item processors registry and implementations.

A processor is the downstream call for one work item of a named job. It
returns an optional result dict or raises: TransientDownstreamError (and
timeouts / connection errors) are retried, anything else fails the item.

Processors must be idempotent - an item may be processed again after a
stale claim is reclaimed from a crashed or stalled worker.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from jobcoord.errors import PermanentDownstreamError, TransientDownstreamError
from jobcoord.types.job import ItemContext

logger = logging.getLogger(__name__)

# Type alias for processor functions
Processor = Callable[[ItemContext], Awaitable[dict[str, Any] | None]]

# Processor registry, keyed by job name
_processors: dict[str, Processor] = {}


def register_processor(job_name: str) -> Callable[[Processor], Processor]:
    """
    Decorator to register the processor for a job.

    Example:
        @register_processor("sync_invoices")
        async def process_invoice(context: ItemContext) -> dict | None:
            ...
    """
    def decorator(processor: Processor) -> Processor:
        _processors[job_name] = processor
        logger.info(f"Registered processor for job: {job_name}")
        return processor
    return decorator


def get_processor(job_name: str) -> Processor | None:
    """Get the processor for a job, or None if the job is unknown."""
    return _processors.get(job_name)


def list_processors() -> list[str]:
    """List all registered job names."""
    return list(_processors.keys())


# ============================================================================
# Built-in processors
# ============================================================================


@register_processor("echo")
async def process_echo(context: ItemContext) -> dict[str, Any]:
    """Return the item payload unchanged."""
    return {"echo": context.payload}


@register_processor("sleep")
async def process_sleep(context: ItemContext) -> dict[str, Any]:
    """
    Sleep for ``duration_seconds`` from the payload (default 1).
    """
    duration = context.payload.get("duration_seconds", 1)
    await asyncio.sleep(duration)
    return {"slept_for": duration}


@register_processor("failing")
async def process_failing(context: ItemContext) -> dict[str, Any]:
    """Always fails with a retryable error - for exercising retries and the circuit."""
    raise TransientDownstreamError(f"Intentional failure for item {context.item_id}")


@register_processor("rejecting")
async def process_rejecting(context: ItemContext) -> dict[str, Any]:
    """Always fails with a non-retryable error."""
    raise PermanentDownstreamError(f"Item {context.item_id} rejected by downstream")


@register_processor("flaky")
async def process_flaky(context: ItemContext) -> dict[str, Any]:
    """
    Fail at random with a retryable error.

    Payload may contain:
    - failure_rate: Probability of failure (0.0 to 1.0, default 0.5)
    """
    failure_rate = context.payload.get("failure_rate", 0.5)
    if random.random() < failure_rate:
        raise TransientDownstreamError(f"Random failure for item {context.item_id}")
    return {"message": "Succeeded this time!"}


@register_processor("http_request")
async def process_http_request(context: ItemContext) -> dict[str, Any]:
    """
    Make an HTTP request.

    Payload should contain:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional JSON request body
    - timeout_seconds: Optional timeout (default 30)

    5xx and 429 responses are retryable; other 4xx are not. Transport
    errors (including timeouts) propagate and are retried.
    """
    url = context.payload.get("url")
    method = context.payload.get("method", "GET").upper()
    headers = context.payload.get("headers", {})
    body = context.payload.get("body")
    timeout = context.payload.get("timeout_seconds", 30.0)

    if not url:
        raise PermanentDownstreamError("Missing 'url' in payload")

    logger.info(
        "HTTP request",
        extra={"item_id": str(context.item_id), "method": method, "url": url},
    )

    async with httpx.AsyncClient() as client:
        response = await client.request(
            method=method,
            url=url,
            headers=headers,
            json=body if method in ["POST", "PUT", "PATCH"] else None,
            timeout=timeout,
        )

    if response.status_code >= 500 or response.status_code == 429:
        raise TransientDownstreamError(f"HTTP {response.status_code} from {url}")
    if not response.is_success:
        raise PermanentDownstreamError(f"HTTP {response.status_code} from {url}")

    return {
        "status_code": response.status_code,
        "body": response.text[:1000],  # Truncate response
    }
