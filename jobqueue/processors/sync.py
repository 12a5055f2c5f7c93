from enum import Enum
from typing import Optional

from ..models import JobContext
from .base import KindProcessor, require
from .ports import Lms, LoggingLms


class SyncJob(str, Enum):
    INITIAL_SYNC = "initial-sync"
    PERIODIC_SYNC = "periodic-sync"
    SYNC_USER_ENROLLMENT = "sync-user-enrollment"
    FORCE_SYNC_USERS = "force-sync-users"
    FORCE_SYNC_COURSES = "force-sync-courses"
    FORCE_SYNC_ENROLLMENTS = "force-sync-enrollments"


SCOPES = {
    SyncJob.INITIAL_SYNC: "all",
    SyncJob.PERIODIC_SYNC: "changes",
    SyncJob.FORCE_SYNC_USERS: "users",
    SyncJob.FORCE_SYNC_COURSES: "courses",
    SyncJob.FORCE_SYNC_ENROLLMENTS: "enrollments",
}


class SyncProcessor(KindProcessor):
    queue_name = "sync"
    kinds = SyncJob

    def __init__(self, lms: Optional[Lms] = None):
        self.lms = lms or LoggingLms()
        super().__init__()

    def handlers(self):
        table = {kind: self.sync_scope for kind in SCOPES}
        table[SyncJob.SYNC_USER_ENROLLMENT] = self.sync_user
        return table

    def sync_scope(self, job: JobContext):
        scope = SCOPES[self.kind_of(job)]
        counts = self.lms.sync(scope)
        job.update_progress(100)
        return {"scope": scope, **counts}

    def sync_user(self, job: JobContext):
        (user_id,) = require(job.payload, "user_id")
        return {"scope": "user", "user_id": user_id, **self.lms.sync("user", user_id=user_id)}
