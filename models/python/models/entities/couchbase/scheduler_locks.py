from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class SchedulerLockData(BaseCouchbaseEntityData):
    job_id: str
    owner: str
    acquired_at: datetime
    expires_at: datetime


class SchedulerLock(BaseModelCouchbase[SchedulerLockData]):
    _collection_name = "scheduler_locks"
