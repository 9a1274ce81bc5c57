"""Shared API dependencies."""

from fastapi import HTTPException, Request, status

from tracker.engine.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Return the tracker runtime started by the application lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Tracker is not running",
        )
    return runtime
