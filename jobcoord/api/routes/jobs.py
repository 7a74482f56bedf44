"""
Job trigger routes.
"""

import logging

from fastapi import APIRouter, Response, status

from jobcoord.api.dependencies import Runtime
from jobcoord.constants import API_V1_PREFIX, RejectionReason
from jobcoord.types.api import TriggerResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])

REJECTION_STATUS = {
    RejectionReason.NOT_LEADER: status.HTTP_503_SERVICE_UNAVAILABLE,
    RejectionReason.ALREADY_RUNNING: status.HTTP_409_CONFLICT,
    RejectionReason.UNKNOWN_JOB: status.HTTP_404_NOT_FOUND,
}


@router.post(
    "/{job_name}/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger a job",
    description=(
        "Start an execution of the job on the leader. Returns immediately; "
        "the execution runs in the background."
    ),
    responses={
        status.HTTP_404_NOT_FOUND: {"model": TriggerResponse},
        status.HTTP_409_CONFLICT: {"model": TriggerResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": TriggerResponse},
    },
)
async def trigger_job(
    job_name: str,
    response: Response,
    runtime: Runtime,
) -> TriggerResponse:
    """
    Trigger an execution of ``job_name``.

    A follower answers 503 with the current leader (when known) so callers
    can route the request; a job already running answers 409.
    """
    result = await runtime.coordinator.trigger(job_name)

    if not result.accepted:
        response.status_code = REJECTION_STATUS[result.reason]
        logger.info(
            f"Trigger rejected: {result.reason.value}",
            extra={"job_name": job_name, "leader_id": result.leader_id},
        )

    return TriggerResponse(
        job_name=job_name,
        accepted=result.accepted,
        execution_id=result.execution_id,
        reason=result.reason,
        leader_id=result.leader_id,
    )
