"""
Execution inspection routes.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from jobcoord.api.dependencies import Runtime
from jobcoord.constants import API_V1_PREFIX, ExecutionStatus
from jobcoord.types.api import ExecutionListResponse, ExecutionResponse
from jobcoord.types.records import ExecutionRecord

router = APIRouter(prefix=f"{API_V1_PREFIX}/executions", tags=["Executions"])


def _execution_to_response(record: ExecutionRecord) -> ExecutionResponse:
    """Convert an ExecutionRecord to an ExecutionResponse."""
    return ExecutionResponse(
        execution_id=record.execution_id,
        job_name=record.job_name,
        status=record.status,
        started_at=record.started_at,
        ended_at=record.ended_at,
        heartbeat_at=record.heartbeat_at,
        fencing_token=record.fencing_token,
        holder_id=record.holder_id,
        reason=record.reason,
        summary=record.summary,
    )


@router.get(
    "",
    response_model=ExecutionListResponse,
    summary="List executions",
    description="List executions, newest first, with optional filtering.",
)
async def list_executions(
    runtime: Runtime,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: ExecutionStatus | None = Query(default=None),
    job_name: str | None = Query(default=None),
) -> ExecutionListResponse:
    """List executions. Read-only; takes no row locks."""
    offset = (page - 1) * page_size
    records, total = await runtime.stores.executions.list_executions(
        job_name=job_name,
        status=status,
        limit=page_size,
        offset=offset,
    )

    return ExecutionListResponse(
        executions=[_execution_to_response(r) for r in records],
        total=total,
        page=page,
        page_size=page_size,
        has_next=offset + len(records) < total,
    )


@router.get(
    "/{execution_id}",
    response_model=ExecutionResponse,
    summary="Get execution details",
)
async def get_execution(execution_id: UUID, runtime: Runtime) -> ExecutionResponse:
    record = await runtime.stores.executions.get(execution_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Execution not found",
        )
    return _execution_to_response(record)
