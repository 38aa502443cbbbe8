"""
Notification Dispatcher Module

Sends lifecycle notifications (loan approved, disbursed, payment received,
subsidy decisions, low subsidy balance) through pluggable channel providers.

Dispatch always happens after the unit of work that caused it has committed.
Every notification is written to an outbox table keyed by
``{subject_id}:{status}:{channel}`` so replays are idempotent: a notification
already sent is never sent again, and a failed one stays in the outbox for
``retry_failed``. Delivery failures are logged, never raised to the caller.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import requests
from abc import ABC, abstractmethod

from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("sfd_lending.notifications")


class NotificationChannel(Enum):
    """Available notification channels"""
    LOG = "log"
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class NotificationType(Enum):
    """Types of notifications"""
    # Loan notifications
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_COMPLETED = "loan_completed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REMINDER = "payment_reminder"

    # Subsidy notifications
    SUBSIDY_REQUEST_DECIDED = "subsidy_request_decided"
    SUBSIDY_LOW_BALANCE = "subsidy_low_balance"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Subject and body templates with {placeholders}
TEMPLATES: Dict[NotificationType, tuple] = {
    NotificationType.LOAN_APPROVED: (
        "Loan {loan_id} approved",
        "Your loan request of {amount} over {duration_months} months has been approved. "
        "Monthly payment: {monthly_payment}."
    ),
    NotificationType.LOAN_REJECTED: (
        "Loan {loan_id} rejected",
        "Your loan request of {amount} was rejected: {reason}"
    ),
    NotificationType.LOAN_DISBURSED: (
        "Loan {loan_id} disbursed",
        "{amount} has been disbursed. First payment of {monthly_payment} is due on {next_payment_date}."
    ),
    NotificationType.LOAN_DEFAULTED: (
        "Loan {loan_id} in default",
        "No payment was received since {next_payment_date}. The loan has been declared in default."
    ),
    NotificationType.LOAN_COMPLETED: (
        "Loan {loan_id} fully repaid",
        "Total repaid: {amount_paid}. Thank you."
    ),
    NotificationType.PAYMENT_RECEIVED: (
        "Payment received for loan {loan_id}",
        "A payment of {amount} was recorded. Outstanding balance: {outstanding}."
    ),
    NotificationType.PAYMENT_REMINDER: (
        "Payment reminder for loan {loan_id}",
        "Your installment of {amount} is due on {payment_date}. Please prepare your payment."
    ),
    NotificationType.SUBSIDY_REQUEST_DECIDED: (
        "Subsidy request {request_id} {status}",
        "Your subsidy request of {amount} was {status}. {comments}"
    ),
    NotificationType.SUBSIDY_LOW_BALANCE: (
        "Low subsidy balance: {threshold_name}",
        "Remaining subsidy for {sfd_id} is {remaining_amount}, at or below the "
        "{threshold_amount} threshold."
    ),
}


@dataclass
class Notification(StorageRecord):
    """Individual notification instance (outbox row)"""
    notification_type: NotificationType
    channel: NotificationChannel
    recipient_id: str
    subject_id: str
    subject_status: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['notification_type'] = NotificationType(data['notification_type'])
        data['channel'] = NotificationChannel(data['channel'])
        data['status'] = NotificationStatus(data['status'])
        for key in ('created_at', 'updated_at', 'sent_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logging channel provider for development"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def send(self, notification: Notification) -> bool:
        self.log.info(
            f"{notification.channel.value.upper()} to {notification.recipient_id}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "in_app_notifications"

    def send(self, notification: Notification) -> bool:
        """Store notification for in-app display"""
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.table, notification.id, {
            "id": notification.id,
            "created_at": now,
            "updated_at": now,
            "recipient_id": notification.recipient_id,
            "type": notification.notification_type.value,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
            "metadata": notification.metadata
        })
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "subject_id": notification.subject_id,
            "status": notification.subject_status,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }

        try:
            response = requests.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning(f"Webhook send failed for {notification.id}: {e}")
            return False

        return 200 <= response.status_code < 300


class NotificationDispatcher:
    """Renders notifications, records them in the outbox and hands them to providers"""

    def __init__(
        self,
        storage: StorageInterface,
        channels: Optional[List[NotificationChannel]] = None,
        enabled: bool = True,
        max_retries: int = 3
    ):
        self.storage = storage
        self.enabled = enabled
        self.max_retries = max_retries
        self.notifications_table = "notifications"

        self.providers: Dict[NotificationChannel, ChannelProvider] = {
            NotificationChannel.LOG: LogChannelProvider(),
            NotificationChannel.IN_APP: InAppChannelProvider(storage),
        }
        self.channels = channels or [NotificationChannel.IN_APP]

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider):
        """Register (or replace) the provider for a channel"""
        self.providers[channel] = provider
        if channel not in self.channels:
            self.channels.append(channel)

    @staticmethod
    def outbox_id(subject_id: str, status: str, channel: NotificationChannel) -> str:
        return f"{subject_id}:{status}:{channel.value}"

    def notify(
        self,
        notification_type: NotificationType,
        recipient_id: str,
        subject_id: str,
        status: str,
        data: Dict[str, Any]
    ) -> List[Notification]:
        """
        Send a notification on every configured channel.

        Never raises: rendering, storage or delivery failures are logged and
        the notification is left ``failed`` in the outbox.

        Args:
            notification_type: Kind of notification (selects the template)
            recipient_id: Client or SFD the notification is addressed to
            subject_id: Entity the notification is about
            status: Entity status the notification reports, part of the dedupe key
            data: Template values

        Returns:
            Outbox rows touched by this call
        """
        if not self.enabled:
            return []

        results = []
        for channel in self.channels:
            try:
                notification = self._send_via_channel(
                    notification_type, channel, recipient_id, subject_id, status, data
                )
            except Exception:
                logger.exception(
                    f"Notification {notification_type.value} for {subject_id} on {channel.value} failed"
                )
                continue
            if notification is not None:
                results.append(notification)
        return results

    def _render(self, notification_type: NotificationType, data: Dict[str, Any]) -> tuple:
        subject_template, body_template = TEMPLATES[notification_type]
        return subject_template.format(**data), body_template.format(**data)

    def _send_via_channel(
        self,
        notification_type: NotificationType,
        channel: NotificationChannel,
        recipient_id: str,
        subject_id: str,
        status: str,
        data: Dict[str, Any]
    ) -> Optional[Notification]:
        notification_id = self.outbox_id(subject_id, status, channel)

        existing = self.storage.load(self.notifications_table, notification_id)
        if existing:
            notification = Notification.from_dict(existing)
            if notification.status == NotificationStatus.SENT:
                logger.debug(f"Notification {notification_id} already sent, skipping")
                return notification
            return self._deliver(notification)

        subject, body = self._render(notification_type, data)
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=notification_id,
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            channel=channel,
            recipient_id=recipient_id,
            subject_id=subject_id,
            subject_status=status,
            subject=subject,
            body=body,
            metadata={k: str(v) for k, v in data.items()}
        )
        return self._deliver(notification)

    def _deliver(self, notification: Notification) -> Notification:
        provider = self.providers.get(notification.channel)
        now = datetime.now(timezone.utc)

        if provider is None:
            success = False
            notification.last_error = f"No provider registered for channel: {notification.channel.value}"
        else:
            try:
                success = provider.send(notification)
                if not success:
                    notification.last_error = "Provider send failed"
            except Exception as e:
                success = False
                notification.last_error = str(e)

        if success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = now
            notification.last_error = None
        else:
            notification.status = NotificationStatus.FAILED
            logger.warning(
                f"Notification {notification.id} not delivered: {notification.last_error}"
            )

        notification.updated_at = now
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        return notification

    def get(self, notification_id: str) -> Optional[Notification]:
        data = self.storage.load(self.notifications_table, notification_id)
        return Notification.from_dict(data) if data else None

    def get_notifications(
        self,
        recipient_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        limit: int = 50
    ) -> List[Notification]:
        """Get notifications, newest first"""
        filters = {}
        if recipient_id:
            filters["recipient_id"] = recipient_id
        if status:
            filters["status"] = status.value

        notifications = [Notification.from_dict(d)
                         for d in self.storage.find(self.notifications_table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def retry_failed(self, max_retries: Optional[int] = None) -> Dict[str, int]:
        """Retry failed notifications that have not exhausted their retry budget"""
        max_retries = self.max_retries if max_retries is None else max_retries
        results = {"attempted": 0, "succeeded": 0, "failed": 0}

        failed_data = self.storage.find(self.notifications_table, {
            "status": NotificationStatus.FAILED.value
        })

        for data in failed_data:
            notification = Notification.from_dict(data)
            if notification.retry_count >= max_retries:
                continue

            results["attempted"] += 1
            notification.retry_count += 1
            notification = self._deliver(notification)

            if notification.status == NotificationStatus.SENT:
                results["succeeded"] += 1
            elif notification.retry_count >= max_retries:
                results["failed"] += 1
                logger.error(
                    f"Notification {notification.id} gave up after {notification.retry_count} retries"
                )

        return results
