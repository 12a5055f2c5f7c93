from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..models import JobContext, JobResult
from .base import KindProcessor, require
from .ports import LoggingPaymentGateway, PaymentGateway

Enqueue = Callable[..., str]

PENDING_POLL_AGE_S = 15 * 60
ABANDONED_AGE_S = 24 * 3600

# what the enrollment queue needs to enroll the payer
ENROLLMENT_FIELDS = ("enrollment_id", "user_id", "course_id")


def _enrollment_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: payload[k] for k in ENROLLMENT_FIELDS if k in payload}


class PaymentJob(str, Enum):
    VERIFY_PAYMENT = "verify-payment"
    COMPLETE_ENROLLMENT = "complete-enrollment"
    POLL_PENDING_PAYMENTS = "poll-pending-payments"
    RETRY_FAILED_ENROLLMENT = "retry-failed-enrollment"
    CLEANUP_ABANDONED_PAYMENTS = "cleanup-abandoned-payments"
    PROCESS_WEBHOOK = "process-webhook"


class PaymentProcessor(KindProcessor):
    """
    Verifies payments with the gateway and hands successful ones to the
    enrollment queue. ``enqueue`` has the signature of ``QueueManager.add_job``.
    """

    queue_name = "payment"
    kinds = PaymentJob

    def __init__(self, gateway: Optional[PaymentGateway] = None, enqueue: Optional[Enqueue] = None):
        self.gateway = gateway or LoggingPaymentGateway()
        self.enqueue = enqueue
        super().__init__()

    def handlers(self):
        return {
            PaymentJob.VERIFY_PAYMENT: self.verify_payment,
            PaymentJob.COMPLETE_ENROLLMENT: self.complete_enrollment,
            PaymentJob.POLL_PENDING_PAYMENTS: self.poll_pending,
            PaymentJob.RETRY_FAILED_ENROLLMENT: self.complete_enrollment,
            PaymentJob.CLEANUP_ABANDONED_PAYMENTS: self.cleanup_abandoned,
            PaymentJob.PROCESS_WEBHOOK: self.process_webhook,
        }

    def _follow_up(self, queue: str, name: str, payload: Dict[str, Any], **options) -> Optional[str]:
        if self.enqueue is None:
            return None
        return self.enqueue(queue, name, payload, options or None)

    def verify_payment(self, job: JobContext):
        (reference,) = require(job.payload, "reference")
        job.update_progress(40)
        outcome = self.gateway.verify(reference)
        status = outcome.get("status")
        job.update_progress(80)
        if status == "pending":
            # still pending on the gateway side; a failed attempt buys a backoff and another look
            return JobResult.fail(f"payment {reference} still pending")
        if status != "success":
            return {"reference": reference, "status": status}
        follow_up = None
        if job.payload.get("enrollment_id") is not None:
            follow_up = self._follow_up(
                "payment", PaymentJob.COMPLETE_ENROLLMENT.value,
                dict(_enrollment_fields(job.payload), reference=reference),
            )
        return {"reference": reference, "status": status, "follow_up": follow_up}

    def complete_enrollment(self, job: JobContext):
        enrollment_id, _, _ = require(job.payload, *ENROLLMENT_FIELDS)
        follow_up = self._follow_up(
            "enrollment", "sync-moodle-enrollment", _enrollment_fields(job.payload), priority=1,
        )
        return {"enrollment_id": enrollment_id, "follow_up": follow_up}

    def poll_pending(self, job: JobContext):
        older = float(job.payload.get("older_than_s", PENDING_POLL_AGE_S))
        references = self.gateway.pending_references(older)
        queued = [
            self._follow_up("payment", PaymentJob.VERIFY_PAYMENT.value, {"reference": ref})
            for ref in references
        ]
        return {"pending": len(references), "queued": len([q for q in queued if q])}

    def cleanup_abandoned(self, job: JobContext):
        older = float(job.payload.get("older_than_s", ABANDONED_AGE_S))
        return {"expired": self.gateway.expire_abandoned(older)}

    def process_webhook(self, job: JobContext):
        event, data = require(job.payload, "event", "data")
        if event != "charge.success":
            return {"event": event, "ignored": True}
        (reference,) = require(data, "reference")
        job_id = self._follow_up("payment", PaymentJob.VERIFY_PAYMENT.value, {"reference": reference},
                                 priority=1)
        return {"event": event, "reference": reference, "follow_up": job_id}
