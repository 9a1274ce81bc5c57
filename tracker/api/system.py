"""System API: health check, tracker status, manual flush and roster refresh."""

from fastapi import APIRouter, Depends, HTTPException

from tracker.api.deps import get_runtime
from tracker.engine.runtime import Runtime

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/status")
def tracker_status(runtime: Runtime = Depends(get_runtime)):
    """Sessions, open lanes, pending writes and scheduler jobs."""
    from tracker.engine.scheduler import get_scheduler_status

    result = runtime.status()
    result["scheduler"] = get_scheduler_status()
    return result


@router.post("/flush")
async def trigger_flush(runtime: Runtime = Depends(get_runtime)):
    """Write pending ledger rows now instead of waiting for the next tick."""
    try:
        flushed = await runtime.pipeline.flush()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "flushed": flushed}


@router.post("/reconcile")
async def trigger_reconcile(runtime: Runtime = Depends(get_runtime)):
    """Reload the trader roster and open/close sessions to match."""
    try:
        diff = await runtime.reconciler.reconcile()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "opened": diff.opened, "closed": diff.closed}
