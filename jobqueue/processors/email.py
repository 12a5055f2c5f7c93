from enum import Enum
from typing import Any, Dict, Optional

from ..models import JobContext
from .base import KindProcessor, require
from .ports import LoggingMailer, Mailer


class EmailJob(str, Enum):
    SEND_VERIFICATION_CODE = "send-verification-code"
    SEND_WELCOME_EMAIL = "send-welcome-email"
    SEND_COURSE_ENROLLMENT = "send-course-enrollment"
    SEND_PASSWORD_RESET = "send-password-reset"
    SEND_PAYMENT_RECEIPT = "send-payment-receipt"
    SEND_COURSE_COMPLETION = "send-course-completion"
    SEND_ENROLLMENT_REMINDER = "send-enrollment-reminder"
    SEND_PAYMENT_REMINDER = "send-payment-reminder"


# kind -> (subject, body, payload fields the templates need besides "email")
TEMPLATES = {
    EmailJob.SEND_VERIFICATION_CODE: (
        "Your verification code",
        "Hi {first_name}, your verification code is {code}.",
        ("first_name", "code"),
    ),
    EmailJob.SEND_WELCOME_EMAIL: (
        "Welcome aboard",
        "Hi {first_name}, your account is ready.",
        ("first_name",),
    ),
    EmailJob.SEND_COURSE_ENROLLMENT: (
        "Enrolled: {course_title}",
        "Hi {first_name}, you are now enrolled in {course_title}.",
        ("first_name", "course_title"),
    ),
    EmailJob.SEND_PASSWORD_RESET: (
        "Reset your password",
        "Use this link to reset your password: {reset_url}",
        ("reset_url",),
    ),
    EmailJob.SEND_PAYMENT_RECEIPT: (
        "Payment receipt {reference}",
        "We received {amount} {currency} for {course_title}. Reference: {reference}.",
        ("amount", "currency", "course_title", "reference"),
    ),
    EmailJob.SEND_COURSE_COMPLETION: (
        "Congratulations on finishing {course_title}",
        "Hi {first_name}, you completed {course_title}.",
        ("first_name", "course_title"),
    ),
    EmailJob.SEND_ENROLLMENT_REMINDER: (
        "Continue {course_title}",
        "Hi {first_name}, pick up where you left off in {course_title}.",
        ("first_name", "course_title"),
    ),
    EmailJob.SEND_PAYMENT_REMINDER: (
        "Complete your payment for {course_title}",
        "Hi {first_name}, your payment for {course_title} is still pending.",
        ("first_name", "course_title"),
    ),
}


class EmailProcessor(KindProcessor):
    queue_name = "email"
    kinds = EmailJob

    def __init__(self, mailer: Optional[Mailer] = None):
        self.mailer = mailer or LoggingMailer()
        super().__init__()

    def handlers(self):
        return {kind: self._send for kind in TEMPLATES}

    def _send(self, job: JobContext) -> Dict[str, Any]:
        subject_tpl, body_tpl, fields = TEMPLATES[self.kind_of(job)]
        (to,) = require(job.payload, "email")
        require(job.payload, *fields)
        job.update_progress(50)
        message_id = self.mailer.send(to, subject_tpl.format(**job.payload), body_tpl.format(**job.payload))
        job.update_progress(100)
        return {"to": to, "message_id": message_id}
