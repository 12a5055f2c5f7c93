"""
Interfaces the bundled processors call out to. The real implementations
(mail transport, payment gateway, LMS) live with the applications; the
``Logging*`` versions only log, for local runs and tests.
"""
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..log import get_logger

log = get_logger("jobqueue.ports")


class Mailer(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, body: str) -> str:
        """Deliver one message and return the provider's message id."""


class PaymentGateway(ABC):
    @abstractmethod
    def verify(self, reference: str) -> Dict[str, Any]:
        """Return at least ``{"status": "success" | "failed" | "pending"}``."""

    @abstractmethod
    def pending_references(self, older_than_s: float) -> List[str]: ...

    @abstractmethod
    def expire_abandoned(self, older_than_s: float) -> int: ...


class Lms(ABC):
    @abstractmethod
    def ensure_account(self, user_id: Any) -> Any: ...

    @abstractmethod
    def enroll(self, user_id: Any, course_id: Any) -> Any: ...

    @abstractmethod
    def progress(self, user_id: Any, course_id: Any) -> float: ...

    @abstractmethod
    def sync(self, scope: str, **filters: Any) -> Dict[str, int]: ...


class LoggingMailer(Mailer):
    def send(self, to: str, subject: str, body: str) -> str:
        message_id = uuid.uuid4().hex
        log.info("email_logged", to=to, subject=subject, message_id=message_id)
        return message_id


class LoggingPaymentGateway(PaymentGateway):
    def verify(self, reference: str) -> Dict[str, Any]:
        log.info("payment_verify_logged", reference=reference)
        return {"status": "pending", "reference": reference}

    def pending_references(self, older_than_s: float) -> List[str]:
        return []

    def expire_abandoned(self, older_than_s: float) -> int:
        return 0


class LoggingLms(Lms):
    def ensure_account(self, user_id: Any) -> Any:
        log.info("lms_account_logged", user_id=user_id)
        return user_id

    def enroll(self, user_id: Any, course_id: Any) -> Any:
        log.info("lms_enroll_logged", user_id=user_id, course_id=course_id)
        return {"user_id": user_id, "course_id": course_id}

    def progress(self, user_id: Any, course_id: Any) -> float:
        return 0.0

    def sync(self, scope: str, **filters: Any) -> Dict[str, int]:
        log.info("lms_sync_logged", scope=scope, **filters)
        return {"synced": 0}
