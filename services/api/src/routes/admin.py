"""Admin endpoints for the scheduled sweeps."""

from fastapi import APIRouter, Depends, HTTPException

from sweeps.scheduler import job_status, run_job
from utils import log

from .dependencies import require_admin

logger = log.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/sweeps")
async def admin_get_sweeps():
    """Last run, last result and next run of every sweep job."""
    statuses = job_status()
    return {
        "jobs": [status.model_dump(mode="json") for status in statuses.values()],
        "total": len(statuses),
    }


@router.post("/sweeps/{job_id}")
async def admin_trigger_sweep(job_id: str):
    """Run a sweep now. Skipped when another instance holds its lock."""
    try:
        result = await run_job(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown sweep job: {job_id}")

    if result is None:
        return {"status": "skipped", "job_id": job_id, "message": "Sweep is running on another instance"}
    return {"status": "ok", "job_id": job_id, "result": result.model_dump(mode="json")}
