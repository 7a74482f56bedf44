"""
Work item inspection and remediation routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from jobcoord.api.dependencies import Runtime
from jobcoord.constants import API_V1_PREFIX, WorkItemStatus
from jobcoord.types.api import (
    RearmResponse,
    WorkItemListResponse,
    WorkItemResponse,
    WorkItemStatsResponse,
)
from jobcoord.types.records import WorkItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/work-items", tags=["Work Items"])


def _item_to_response(item: WorkItem) -> WorkItemResponse:
    """Convert a WorkItem to a WorkItemResponse."""
    return WorkItemResponse(
        id=item.id,
        job_name=item.job_name,
        payload_ref=item.payload_ref,
        payload=item.payload,
        status=item.status,
        claim_owner=item.claim_owner,
        claimed_at=item.claimed_at,
        retry_count=item.retry_count,
        last_error=item.last_error,
        created_at=item.created_at,
        last_updated_at=item.last_updated_at,
    )


@router.get(
    "",
    response_model=WorkItemListResponse,
    summary="List work items",
    description="List work items in FIFO order with optional filtering.",
)
async def list_work_items(
    runtime: Runtime,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: WorkItemStatus | None = Query(default=None),
    owner: str | None = Query(default=None, description="Claim owner (worker id)"),
    job_name: str | None = Query(default=None),
) -> WorkItemListResponse:
    """List work items. Read-only; takes no row locks."""
    offset = (page - 1) * page_size
    items, total = await runtime.stores.work_items.list_items(
        job_name=job_name,
        status=status,
        owner=owner,
        limit=page_size,
        offset=offset,
    )

    return WorkItemListResponse(
        items=[_item_to_response(i) for i in items],
        total=total,
        page=page,
        page_size=page_size,
        has_next=offset + len(items) < total,
    )


@router.get(
    "/stats",
    response_model=WorkItemStatsResponse,
    summary="Work item counts by status",
)
async def work_item_stats(
    runtime: Runtime,
    job_name: str | None = Query(default=None),
) -> WorkItemStatsResponse:
    counts = await runtime.stores.work_items.get_stats(job_name)
    return WorkItemStatsResponse(
        job_name=job_name,
        counts=counts,
        total=sum(counts.values()),
    )


@router.post(
    "/{item_id}/rearm",
    response_model=RearmResponse,
    summary="Re-arm a failed work item",
    description="Move a FAILED work item back to PENDING so a later execution retries it.",
)
async def rearm_work_item(
    item_id: UUID,
    runtime: Runtime,
    reset_retries: bool = Query(default=False),
) -> RearmResponse:
    """
    Re-arm a FAILED work item.

    Raises:
        HTTPException: 404 if the item does not exist, 409 if it is not FAILED.
    """
    item = await runtime.stores.work_items.rearm(item_id, reset_retries=reset_retries)

    if item is None:
        existing = await runtime.stores.work_items.get_item(item_id)
        if existing is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Work item not found",
            )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot re-arm work item in {existing.status.value} status",
        )

    logger.info("Work item re-armed via API", extra={"item_id": str(item_id)})

    return RearmResponse(
        id=item.id,
        status=item.status,
        retry_count=item.retry_count,
    )
