"""
FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from jobcoord.runtime import CoordinationRuntime


def get_runtime(request: Request) -> CoordinationRuntime:
    """Get the replica's coordination runtime from application state."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Coordination runtime not initialized",
        )
    return runtime


Runtime = Annotated[CoordinationRuntime, Depends(get_runtime)]
