"""
Payment Reminder Module

Reminds borrowers of their next installment ``days_before`` days ahead of
the due date. One reminder row is kept per loan and due date, so a scan can
run any number of times a day: reminders already delivered are skipped and
missed ones are caught up.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from .storage import StorageInterface, StorageRecord
from .audit import ActivityLog, ActivityType
from .loans import Loan, LoanRecordStore, LoanStatus
from .notifications import NotificationDispatcher, NotificationStatus, NotificationType


logger = logging.getLogger("sfd_lending.reminders")


@dataclass
class PaymentReminder(StorageRecord):
    """Reminder for one installment of one loan"""
    loan_id: str
    client_id: str
    sfd_id: str
    payment_date: date
    reminder_date: date
    amount: Decimal
    is_sent: bool = False
    sent_at: Optional[datetime] = None
    channel_statuses: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentReminder':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['reminder_date'] = date.fromisoformat(data['reminder_date'])
        if data.get('sent_at'):
            data['sent_at'] = datetime.fromisoformat(data['sent_at'])
        return super().from_dict(data)


class PaymentReminderService:
    """Scans active loans and sends due payment reminders"""

    def __init__(
        self,
        storage: StorageInterface,
        activity_log: ActivityLog,
        loans: LoanRecordStore,
        notifier: Optional[NotificationDispatcher] = None,
        days_before: int = 3
    ):
        self.storage = storage
        self.activity_log = activity_log
        self.loans = loans
        self.notifier = notifier
        self.days_before = days_before
        self.table_name = "loan_payment_reminders"

    @staticmethod
    def reminder_id(loan_id: str, payment_date: date) -> str:
        return f"{loan_id}:{payment_date.isoformat()}"

    def send_due_reminders(self, as_of: Optional[date] = None) -> Dict[str, int]:
        """
        Send the reminder of every active loan whose reminder date has come.

        A failure on one loan is logged and counted; the scan carries on.

        Returns:
            Counts of loans checked, reminders sent, loans skipped and failures
        """
        as_of = as_of or date.today()
        results = {"checked": 0, "sent": 0, "skipped": 0, "failed": 0}

        for loan in self.loans.list_by_status(LoanStatus.ACTIVE):
            results["checked"] += 1
            if loan.next_payment_date is None or \
                    as_of < loan.next_payment_date - timedelta(days=self.days_before):
                results["skipped"] += 1
                continue
            try:
                outcome = self._send(loan, as_of)
            except Exception:
                results["failed"] += 1
                logger.exception(f"Failed to send payment reminder for loan {loan.id}")
                continue
            results[outcome] += 1

        logger.info(f"Payment reminders as of {as_of.isoformat()}: {results}")
        return results

    def _send(self, loan: Loan, as_of: date) -> str:
        reminder_id = self.reminder_id(loan.id, loan.next_payment_date)

        with self.storage.atomic():
            data = self.storage.load(self.table_name, reminder_id)
            if data:
                reminder = PaymentReminder.from_dict(data)
                if reminder.is_sent:
                    return "skipped"
            else:
                now = datetime.now(timezone.utc)
                reminder = PaymentReminder(
                    id=reminder_id,
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    client_id=loan.client_id,
                    sfd_id=loan.sfd_id,
                    payment_date=loan.next_payment_date,
                    reminder_date=loan.next_payment_date - timedelta(days=self.days_before),
                    amount=min(loan.monthly_payment, loan.outstanding_amount)
                )
                self.storage.save(self.table_name, reminder.id, reminder.to_dict())

        notifications = []
        if self.notifier is not None:
            notifications = self.notifier.notify(
                NotificationType.PAYMENT_REMINDER, loan.client_id, reminder.id, "due",
                {"loan_id": loan.id, "amount": reminder.amount,
                 "payment_date": reminder.payment_date.isoformat()}
            )
        # Nothing to deliver counts as delivered
        delivered = not notifications or \
            any(n.status == NotificationStatus.SENT for n in notifications)

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            reminder.channel_statuses = {n.channel.value: n.status.value for n in notifications}
            reminder.updated_at = now
            if delivered:
                reminder.is_sent = True
                reminder.sent_at = now
            self.storage.save(self.table_name, reminder.id, reminder.to_dict())
            if delivered:
                self.activity_log.record(
                    ActivityType.PAYMENT_REMINDER_SENT, "loan", loan.id,
                    f"Payment reminder sent for {reminder.amount} due on "
                    f"{reminder.payment_date.isoformat()}",
                    performed_by="system",
                    details={"reminder_id": reminder.id, "amount": reminder.amount,
                             "payment_date": reminder.payment_date,
                             "days_until_due": (reminder.payment_date - as_of).days}
                )

        if not delivered:
            logger.warning(f"Payment reminder {reminder.id} could not be delivered")
            return "failed"
        return "sent"

    def get(self, loan_id: str, payment_date: date) -> Optional[PaymentReminder]:
        data = self.storage.load(self.table_name, self.reminder_id(loan_id, payment_date))
        if data:
            return PaymentReminder.from_dict(data)
        return None

    def list_for_loan(self, loan_id: str) -> List[PaymentReminder]:
        reminders = [PaymentReminder.from_dict(d)
                     for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        reminders.sort(key=lambda r: r.payment_date)
        return reminders
