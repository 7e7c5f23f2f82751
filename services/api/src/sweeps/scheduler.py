"""
APScheduler setup for the time-driven sweeps.

Every job is wrapped by ``_run_locked``: it runs only while this instance
holds the job's Couchbase lock, so several API replicas can share one
bucket without double-processing. Sweeps are idempotent, so a run that
overlaps a lock expiry is harmless.
"""

import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

import conf
from models.operations.auctions import (
    auction_end_due,
    auction_notify_ending_soon,
    auction_start_due,
)
from models.operations.negotiations import negotiation_expire_due
from models.operations.scheduler_locks import scheduler_lock_acquire, scheduler_lock_release
from models.operations.settlements import settlement_reconcile
from models.operations.sweeps import SweepResult
from utils import log

logger = log.get_logger(__name__)

JOB_AUCTIONS = "auction_sweep"
JOB_NEGOTIATIONS = "negotiation_expiry"
JOB_ENDING_SOON = "auction_ending_soon"
JOB_RECONCILE = "settlement_reconcile"

_scheduler: Optional[AsyncIOScheduler] = None

# Identifies this process as lock owner.
_owner = f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class JobStatus(BaseModel):
    job_id: str
    name: str
    interval_seconds: int
    last_run_at: Optional[datetime] = None
    last_skipped_at: Optional[datetime] = None
    last_result: Optional[SweepResult] = None
    next_run_at: Optional[datetime] = None


_status: Dict[str, JobStatus] = {}


async def auctions_job() -> SweepResult:
    """Start due auctions, then end due ones."""
    now = datetime.now(timezone.utc)
    started = await auction_start_due(now)
    ended = await auction_end_due(now)
    return started.merge(ended)


async def negotiations_job() -> SweepResult:
    return await negotiation_expire_due(datetime.now(timezone.utc))


async def ending_soon_job() -> SweepResult:
    return await auction_notify_ending_soon(
        datetime.now(timezone.utc),
        window_start=timedelta(hours=1),
        window_end=timedelta(hours=2),
    )


async def reconcile_job() -> SweepResult:
    scheduler_conf = conf.get_scheduler_conf()
    return await settlement_reconcile(
        datetime.now(timezone.utc),
        grace_seconds=scheduler_conf.settlement_grace_seconds,
    )


JOBS: Dict[str, Callable[[], Awaitable[SweepResult]]] = {
    JOB_AUCTIONS: auctions_job,
    JOB_NEGOTIATIONS: negotiations_job,
    JOB_ENDING_SOON: ending_soon_job,
    JOB_RECONCILE: reconcile_job,
}

JOB_NAMES = {
    JOB_AUCTIONS: "Auction start/end sweep",
    JOB_NEGOTIATIONS: "Negotiation expiry sweep",
    JOB_ENDING_SOON: "Auction ending soon notifications",
    JOB_RECONCILE: "Settlement reconciliation",
}


def _job_intervals() -> Dict[str, int]:
    scheduler_conf = conf.get_scheduler_conf()
    return {
        JOB_AUCTIONS: scheduler_conf.auctions_interval_seconds,
        JOB_NEGOTIATIONS: scheduler_conf.negotiations_interval_seconds,
        JOB_ENDING_SOON: scheduler_conf.ending_soon_interval_seconds,
        JOB_RECONCILE: scheduler_conf.reconcile_interval_seconds,
    }


def _job_status(job_id: str) -> JobStatus:
    if job_id not in _status:
        _status[job_id] = JobStatus(
            job_id=job_id,
            name=JOB_NAMES[job_id],
            interval_seconds=_job_intervals()[job_id],
        )
    return _status[job_id]


async def _run_locked(job_id: str) -> Optional[SweepResult]:
    """Run one job under its lock. Returns None when another instance holds it."""
    status = _job_status(job_id)
    ttl = conf.get_scheduler_conf().lock_ttl_seconds

    if not await scheduler_lock_acquire(job_id, _owner, ttl):
        status.last_skipped_at = datetime.now(timezone.utc)
        logger.debug(f"Sweep {job_id} skipped: lock held elsewhere")
        return None

    try:
        result = await JOBS[job_id]()
    except Exception as e:
        logger.error(f"Sweep {job_id} failed: {e}", exc_info=True)
        result = SweepResult()
        result.record_error("*", e)
    finally:
        try:
            await scheduler_lock_release(job_id, _owner)
        except Exception as e:
            logger.warning(f"Failed to release lock for sweep {job_id}: {e}")

    status.last_run_at = datetime.now(timezone.utc)
    status.last_result = result
    if result.processed or result.errors:
        logger.info(f"Sweep {job_id}: {result.processed} processed, {len(result.errors)} errors")
    return result


async def run_job(job_id: str) -> Optional[SweepResult]:
    """Trigger a job now, outside its schedule. Raises KeyError for unknown jobs."""
    if job_id not in JOBS:
        raise KeyError(job_id)
    logger.info(f"Sweep {job_id} triggered manually")
    return await _run_locked(job_id)


def job_status() -> Dict[str, JobStatus]:
    statuses = {job_id: _job_status(job_id) for job_id in JOBS}
    if _scheduler:
        for job_id, status in statuses.items():
            job = _scheduler.get_job(job_id)
            status.next_run_at = getattr(job, "next_run_time", None) if job else None
    return statuses


def init_scheduler() -> AsyncIOScheduler:
    """Start the APScheduler with one interval job per sweep."""
    global _scheduler
    _scheduler = AsyncIOScheduler()

    for job_id, interval in _job_intervals().items():
        _scheduler.add_job(
            _run_locked,
            trigger=IntervalTrigger(seconds=interval),
            args=[job_id],
            id=job_id,
            name=JOB_NAMES[job_id],
            replace_existing=True,
            max_instances=1,  # prevent overlap
            coalesce=True,
        )

    _scheduler.start()
    logger.info(f"APScheduler started with sweeps: {', '.join(JOBS)} (owner {_owner})")
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
