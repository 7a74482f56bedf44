"""
Request metrics middleware.
"""

import time
from typing import Callable

from fastapi import Request

from jobcoord.observability.metrics import get_metrics

SKIP_PATHS = frozenset({"/metrics", "/live"})


def create_request_metrics_middleware() -> Callable:
    """
    Create middleware recording request counts and latency.

    The endpoint label is the matched route template (``/v1/executions/{execution_id}``),
    not the raw path, to keep label cardinality bounded.
    """

    async def request_metrics_middleware(request: Request, call_next: Callable):
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)

        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        get_metrics().record_api_request(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
            duration_seconds=time.perf_counter() - started,
        )
        return response

    return request_metrics_middleware
