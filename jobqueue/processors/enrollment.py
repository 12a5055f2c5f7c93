from enum import Enum
from typing import Optional

from ..models import JobContext
from .base import KindProcessor, require
from .ports import Lms, LoggingLms


class EnrollmentJob(str, Enum):
    SYNC_MOODLE_ENROLLMENT = "sync-moodle-enrollment"
    CREATE_MOODLE_ACCOUNT = "create-moodle-account"
    INITIALIZE_PROGRESS = "initialize-progress"
    CALCULATE_PROGRESS = "calculate-progress"
    SYNC_COURSE_COMPLETION = "sync-course-completion"


class EnrollmentProcessor(KindProcessor):
    queue_name = "enrollment"
    kinds = EnrollmentJob

    def __init__(self, lms: Optional[Lms] = None):
        self.lms = lms or LoggingLms()
        super().__init__()

    def handlers(self):
        return {
            EnrollmentJob.SYNC_MOODLE_ENROLLMENT: self.sync_enrollment,
            EnrollmentJob.CREATE_MOODLE_ACCOUNT: self.create_account,
            EnrollmentJob.INITIALIZE_PROGRESS: self.calculate_progress,
            EnrollmentJob.CALCULATE_PROGRESS: self.calculate_progress,
            EnrollmentJob.SYNC_COURSE_COMPLETION: self.sync_completion,
        }

    def create_account(self, job: JobContext):
        (user_id,) = require(job.payload, "user_id")
        return {"user_id": user_id, "account": self.lms.ensure_account(user_id)}

    def sync_enrollment(self, job: JobContext):
        user_id, course_id = require(job.payload, "user_id", "course_id")
        self.lms.ensure_account(user_id)
        job.update_progress(50)
        return {"user_id": user_id, "course_id": course_id, "enrollment": self.lms.enroll(user_id, course_id)}

    def calculate_progress(self, job: JobContext):
        user_id, course_id = require(job.payload, "user_id", "course_id")
        pct = float(self.lms.progress(user_id, course_id))
        return {"user_id": user_id, "course_id": course_id, "progress": round(pct, 2)}

    def sync_completion(self, job: JobContext):
        user_id, course_id = require(job.payload, "user_id", "course_id")
        pct = float(self.lms.progress(user_id, course_id))
        return {"user_id": user_id, "course_id": course_id, "completed": pct >= 100.0}
