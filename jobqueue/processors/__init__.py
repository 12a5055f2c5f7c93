from .base import KindProcessor
from .email import EmailJob, EmailProcessor
from .enrollment import EnrollmentJob, EnrollmentProcessor
from .payment import PaymentJob, PaymentProcessor
from .sync import SyncJob, SyncProcessor

__all__ = [
    "KindProcessor",
    "EmailJob", "EmailProcessor",
    "EnrollmentJob", "EnrollmentProcessor",
    "PaymentJob", "PaymentProcessor",
    "SyncJob", "SyncProcessor",
]
