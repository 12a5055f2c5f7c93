"""
Composition root: wires a store, the bundled processors and their recurring
schedules into one QueueManager. Nothing in the package keeps a global manager;
callers own the instance returned here and call ``shutdown()`` and ``store.close()``.
"""
from typing import Iterable, Optional

from .log import get_logger
from .manager import QueueManager
from .observer import JobObserver
from .processors import EmailProcessor, EnrollmentProcessor, PaymentProcessor, SyncProcessor
from .processors.payment import PaymentJob
from .processors.ports import Lms, Mailer, PaymentGateway
from .processors.sync import SyncJob
from .store import JobStore, SqliteJobStore

log = get_logger("jobqueue.app")

# (queue, job name, cron, payload, options)
DEFAULT_SCHEDULES = [
    ("payment", PaymentJob.POLL_PENDING_PAYMENTS.value, "*/15 * * * *",
     {"older_than_s": 15 * 60}, {"priority": 5}),
    ("payment", PaymentJob.CLEANUP_ABANDONED_PAYMENTS.value, "0 2 * * *",
     {"older_than_s": 72 * 3600}, {"priority": 10}),
    ("sync", SyncJob.PERIODIC_SYNC.value, "* * * * *", {}, None),
]


def build_manager(
    db: Optional[str] = None,
    *,
    store: Optional[JobStore] = None,
    observers: Optional[Iterable[JobObserver]] = None,
    mailer: Optional[Mailer] = None,
    gateway: Optional[PaymentGateway] = None,
    lms: Optional[Lms] = None,
) -> QueueManager:
    """Register the email, payment, enrollment and sync processors. Not initialized yet."""
    store = store or SqliteJobStore(db)
    manager = QueueManager(store, observers=observers)
    manager.register_processor("email", EmailProcessor(mailer))
    manager.register_processor("payment", PaymentProcessor(gateway, enqueue=manager.add_job))
    manager.register_processor("enrollment", EnrollmentProcessor(lms))
    manager.register_processor("sync", SyncProcessor(lms))
    return manager


def schedule_defaults(manager: QueueManager):
    """Upsert the bundled recurring jobs once the manager is initialized; safe on every start."""
    for queue, job_name, cron, payload, options in DEFAULT_SCHEDULES:
        manager.add_recurring(queue, job_name, payload, cron, options)
    log.info("default_schedules_registered", count=len(DEFAULT_SCHEDULES))
