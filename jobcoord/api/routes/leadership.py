"""
Leadership inspection route.
"""

from fastapi import APIRouter

from jobcoord.api.dependencies import Runtime
from jobcoord.constants import API_V1_PREFIX
from jobcoord.types.api import CircuitResponse, LeadershipResponse

router = APIRouter(prefix=API_V1_PREFIX, tags=["Leadership"])


@router.get(
    "/leadership",
    response_model=LeadershipResponse,
    summary="Leadership view",
    description="This replica's leadership state, the current leader, and its circuit breakers.",
)
async def get_leadership(runtime: Runtime) -> LeadershipResponse:
    snapshot = runtime.elector.leadership()
    current_leader = await runtime.elector.current_leader()

    return LeadershipResponse(
        instance_id=snapshot.holder_id,
        is_leader=snapshot.is_leader,
        fencing_token=snapshot.fencing_token,
        lease_key=snapshot.lease_key,
        current_leader=current_leader,
        circuits=[
            CircuitResponse(
                name=c.name,
                state=c.state,
                failure_rate=c.failure_rate,
                window=c.window,
            )
            for c in runtime.coordinator.retry_executor.snapshots()
        ],
    )
