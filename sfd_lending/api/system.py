"""
Lending system container and FastAPI dependency
"""

from decimal import Decimal
from typing import Optional
import threading

from ..config import LendingConfig, get_config
from ..currency import Currency
from ..storage import StorageInterface, create_storage
from ..audit import ActivityLog
from ..notifications import NotificationChannel, NotificationDispatcher, WebhookChannelProvider
from ..plans import LoanPlanCatalog
from ..loans import LoanRecordStore
from ..subsidies import SubsidyAllocationLedger
from ..subsidy_requests import SubsidyRequestWorkflow
from ..disbursement import DisbursementCoordinator
from ..payments import PaymentRecorder
from ..reminders import PaymentReminderService


class LendingSystem:
    """Lending engine with all components wired over one storage backend"""

    def __init__(self, config: Optional[LendingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        cfg = self.config

        self.storage = storage or create_storage(cfg.database_url, cfg.use_in_memory_storage)
        currency = Currency.from_code(cfg.currency)

        self.activity_log = ActivityLog(self.storage)
        self.notifier = self._create_notifier()

        self.plans = LoanPlanCatalog(self.storage, self.activity_log)
        self.loans = LoanRecordStore(
            self.storage, self.activity_log, self.plans, self.notifier,
            currency=currency,
            grace_period_days=cfg.grace_period_days,
            payment_cadence_months=cfg.payment_cadence_months
        )
        self.ledger = SubsidyAllocationLedger(
            self.storage, self.activity_log, self.notifier,
            currency=currency, max_retries=cfg.max_concurrency_retries
        )
        self.subsidy_requests = SubsidyRequestWorkflow(
            self.storage, self.activity_log, self.ledger, self.notifier,
            currency=currency,
            max_approval_ratio=Decimal(cfg.max_subsidy_approval_ratio),
            max_retries=cfg.max_concurrency_retries
        )
        self.disbursements = DisbursementCoordinator(
            self.storage, self.loans, self.ledger,
            max_retries=cfg.max_concurrency_retries
        )
        self.payments = PaymentRecorder(
            self.storage, self.activity_log, self.loans,
            currency=currency, payment_cadence_months=cfg.payment_cadence_months,
            late_penalty_rate=Decimal(cfg.late_penalty_rate),
            late_penalty_after_days=cfg.late_penalty_after_days
        )
        self.reminders = PaymentReminderService(
            self.storage, self.activity_log, self.loans, self.notifier,
            days_before=cfg.payment_reminder_days_before
        )

    def _create_notifier(self) -> NotificationDispatcher:
        """Create the notification dispatcher based on configuration"""
        cfg = self.config
        notifier = NotificationDispatcher(
            self.storage,
            channels=[NotificationChannel.IN_APP],
            enabled=cfg.notifications_enabled,
            max_retries=cfg.notification_max_retries
        )

        # Only add the webhook channel if a URL is configured
        if cfg.notification_webhook_url:
            notifier.register_provider(
                NotificationChannel.WEBHOOK,
                WebhookChannelProvider(cfg.notification_webhook_url,
                                       timeout=cfg.notification_timeout_seconds)
            )
        return notifier

    def close(self) -> None:
        self.storage.close()


_lending_system: Optional[LendingSystem] = None
_system_lock = threading.Lock()


def get_lending_system() -> LendingSystem:
    """Dependency returning the process-wide lending system, built on first use"""
    global _lending_system
    with _system_lock:
        if _lending_system is None:
            _lending_system = LendingSystem()
    return _lending_system
