"""
Single-leader guard for scheduler jobs.

A lock is a document ``lock::<job_id>`` created with insert, so only one
scheduler instance can hold it. The document carries a Couchbase expiry, so a
crashed holder cannot block the job past ``ttl_seconds``.
"""

import logging
from datetime import datetime, timedelta, timezone

from couchbase.exceptions import CASMismatchException, DocumentExistsException

from models.entities.couchbase.scheduler_locks import SchedulerLock, SchedulerLockData

logger = logging.getLogger(__name__)


def scheduler_lock_key(job_id: str) -> str:
    return f"lock::{job_id}"


async def scheduler_lock_acquire(job_id: str, owner: str, ttl_seconds: int) -> bool:
    now = datetime.now(timezone.utc)
    data = SchedulerLockData(
        job_id=job_id,
        owner=owner,
        acquired_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
        created_at=now,
        updated_at=now,
    )
    try:
        await SchedulerLock.get_keyspace().insert(
            SchedulerLock.to_document(data),
            key=scheduler_lock_key(job_id),
            expiry=timedelta(seconds=ttl_seconds),
        )
    except DocumentExistsException:
        logger.debug(f"Lock for job {job_id} is held by another scheduler instance")
        return False
    return True


async def scheduler_lock_release(job_id: str, owner: str) -> bool:
    """Release the lock if *owner* still holds it.

    The remove is CAS-guarded on the read, so a lock that expired and was
    taken by another instance in between is left alone.
    """
    lock = await SchedulerLock.get(scheduler_lock_key(job_id))
    if not lock:
        return False
    if lock.data.owner != owner:
        logger.warning(f"Lock for job {job_id} now belongs to {lock.data.owner}, not releasing")
        return False
    try:
        return await SchedulerLock.delete(lock.id, cas=lock.cas)
    except CASMismatchException:
        logger.warning(f"Lock for job {job_id} changed while releasing, not releasing")
        return False
