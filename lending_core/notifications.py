"""
Notification Engine Module

Sends borrower and lender alerts for loan progression: upcoming installment
reminders, overdue notices and loan completion. Templates live in storage and
are rendered per notification type and channel; delivery goes through
pluggable async channel providers.
"""

import asyncio
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set
from enum import Enum
import uuid
import requests
from abc import ABC, abstractmethod

from .amortization import generate_schedule
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .events import DomainEvent, EventDispatcher, EventPayload
from .logging_config import get_logger
from .progression import LoanRepository, LoanStatus
from .storage import StorageInterface, StorageRecord


class NotificationChannel(Enum):
    """Available notification channels"""
    IN_APP = "in_app"
    WEBHOOK = "webhook"


class NotificationType(Enum):
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_OVERDUE = "payment_overdue"
    LOAN_COMPLETED = "loan_completed"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    READ = "read"


@dataclass
class NotificationTemplate(StorageRecord):
    """Template for notifications"""
    name: str
    notification_type: NotificationType
    channel: NotificationChannel
    subject_template: str  # Template with {placeholders}
    body_template: str     # Template with {placeholders}
    is_active: bool = True


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    channel: NotificationChannel
    recipient_id: str
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.PENDING
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes notifications to the log instead of delivering them"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("lending.notifications")

    async def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"{notification.channel.value.upper()} to {notification.recipient_address}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.logger = get_logger("lending.notifications")

    async def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        try:
            response = await asyncio.to_thread(
                requests.post,
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            self.logger.error(f"Webhook send failed: {e}")
            return False

        if not response.ok:
            self.logger.warning(f"Webhook returned HTTP {response.status_code} for {notification.id}")
        return response.ok


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider using storage"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "in_app_notifications"

    async def send(self, notification: Notification) -> bool:
        """Store notification for in-app display"""
        now = datetime.now(timezone.utc).isoformat()
        in_app_data = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "notification_id": notification.id,
            "recipient_id": notification.recipient_id,
            "type": notification.notification_type.value,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
            "metadata": notification.metadata
        }
        self.storage.save(self.table, in_app_data["id"], in_app_data)
        return True


DEFAULT_CHANNELS = {
    NotificationType.PAYMENT_REMINDER: [NotificationChannel.IN_APP],
    NotificationType.PAYMENT_OVERDUE: [NotificationChannel.IN_APP, NotificationChannel.WEBHOOK],
    NotificationType.LOAN_COMPLETED: [NotificationChannel.IN_APP, NotificationChannel.WEBHOOK],
}


class NotificationEngine:
    """Manages templates and sends notifications through channel providers"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[LendingConfig] = None,
        address_lookup: Optional[Callable[[str, NotificationChannel], Optional[str]]] = None
    ):
        self.storage = storage
        self.audit = audit_trail
        self.config = config or get_config()
        self._address_lookup = address_lookup
        self.logger = get_logger("lending.notifications")

        self.templates_table = "notification_templates"
        self.notifications_table = "notifications"

        self.providers: Dict[NotificationChannel, ChannelProvider] = {}
        self._initialize_default_providers()
        self._initialize_default_templates()

    def _initialize_default_providers(self):
        self.providers[NotificationChannel.IN_APP] = InAppChannelProvider(self.storage)
        if self.config.webhook_url:
            self.providers[NotificationChannel.WEBHOOK] = WebhookChannelProvider(
                self.config.webhook_url, timeout=self.config.webhook_timeout
            )

        # Log provider as fallback
        log_provider = LogChannelProvider(self.logger)
        for channel in NotificationChannel:
            if channel not in self.providers:
                self.providers[channel] = log_provider

    def _initialize_default_templates(self):
        now = datetime.now(timezone.utc)
        default_templates = [
            NotificationTemplate(
                id="payment_reminder_in_app",
                created_at=now,
                updated_at=now,
                name="Payment Reminder - In-App",
                notification_type=NotificationType.PAYMENT_REMINDER,
                channel=NotificationChannel.IN_APP,
                subject_template="Payment Due in {days} Day(s)",
                body_template="Reminder: Your payment of {amount} for installment {installment_number} "
                              "is due in {days} day(s) on {due_date}."
            ),
            NotificationTemplate(
                id="payment_overdue_in_app",
                created_at=now,
                updated_at=now,
                name="Payment Overdue - In-App",
                notification_type=NotificationType.PAYMENT_OVERDUE,
                channel=NotificationChannel.IN_APP,
                subject_template="Payment Overdue",
                body_template="URGENT: Your payment of {amount} for installment {installment_number} was due "
                              "on {due_date}. Please pay immediately to avoid additional charges."
            ),
            NotificationTemplate(
                id="payment_overdue_webhook",
                created_at=now,
                updated_at=now,
                name="Payment Overdue - Webhook",
                notification_type=NotificationType.PAYMENT_OVERDUE,
                channel=NotificationChannel.WEBHOOK,
                subject_template="Loan {loan_id} overdue",
                body_template="Installment {installment_number} of loan {loan_id} ({amount}) is "
                              "{days_overdue} day(s) overdue."
            ),
            NotificationTemplate(
                id="loan_completed_in_app",
                created_at=now,
                updated_at=now,
                name="Loan Completed - In-App",
                notification_type=NotificationType.LOAN_COMPLETED,
                channel=NotificationChannel.IN_APP,
                subject_template="Loan Fully Repaid",
                body_template="All {total_installments} installments of loan {loan_id} have been paid."
            ),
        ]

        # Only create templates that don't already exist
        for template in default_templates:
            if not self.storage.exists(self.templates_table, template.id):
                self.storage.save(self.templates_table, template.id, self._template_to_dict(template))

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider):
        """Register a channel provider"""
        self.providers[channel] = provider

    # Template Management

    def create_template(self, template: NotificationTemplate) -> str:
        """Create or replace a notification template"""
        if not template.id:
            template.id = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        template.created_at = now
        template.updated_at = now

        self.storage.save(self.templates_table, template.id, self._template_to_dict(template))
        return template.id

    def get_template(self, template_id: str) -> Optional[NotificationTemplate]:
        template_dict = self.storage.load(self.templates_table, template_id)
        if template_dict:
            return self._template_from_dict(template_dict)
        return None

    def list_templates(self) -> List[NotificationTemplate]:
        templates = [self._template_from_dict(data) for data in self.storage.load_all(self.templates_table)]
        templates.sort(key=lambda t: (t.notification_type.value, t.channel.value))
        return templates

    # Notification Sending

    async def send_notification(
        self,
        notification_type: NotificationType,
        recipient_id: str,
        data: Dict[str, Any],
        channels: Optional[List[NotificationChannel]] = None
    ) -> List[str]:
        """
        Send notification to recipient via specified channels

        Returns:
            IDs of notifications that were delivered
        """
        if channels is None:
            channels = DEFAULT_CHANNELS.get(notification_type, [NotificationChannel.IN_APP])

        sent_notifications = []
        for channel in channels:
            notification_id = await self._send_via_channel(notification_type, channel, recipient_id, data)
            if notification_id:
                sent_notifications.append(notification_id)
        return sent_notifications

    async def _send_via_channel(
        self,
        notification_type: NotificationType,
        channel: NotificationChannel,
        recipient_id: str,
        data: Dict[str, Any]
    ) -> Optional[str]:
        template = self._find_template(notification_type, channel)
        if not template:
            self.logger.warning(f"No template found for {notification_type.value} via {channel.value}")
            return None

        try:
            subject = template.subject_template.format(**data)
            body = template.body_template.format(**data)
        except KeyError as e:
            self.logger.error(f"Template {template.id} rendering failed - missing key: {e}")
            return None

        recipient_address = self._get_recipient_address(recipient_id, channel)
        if not recipient_address:
            self.logger.warning(f"No recipient address found for {recipient_id} via {channel.value}")
            return None

        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            notification_type=notification_type,
            channel=channel,
            recipient_id=recipient_id,
            recipient_address=recipient_address,
            subject=subject,
            body=body,
            metadata=data
        )

        provider = self.providers.get(channel)
        success = False
        try:
            success = await provider.send(notification)
            if success:
                notification.status = NotificationStatus.SENT
                notification.sent_at = now
            else:
                notification.status = NotificationStatus.FAILED
                notification.failed_reason = "Provider send failed"
        except Exception as e:
            self.logger.error(f"Provider for {channel.value} raised: {e}")
            notification.status = NotificationStatus.FAILED
            notification.failed_reason = str(e)

        self.storage.save(self.notifications_table, notification.id, self._notification_to_dict(notification))

        if self.audit:
            self.audit.log_event(
                AuditEventType.NOTIFICATION_SENT,
                "notification",
                notification.id,
                {
                    "type": notification_type.value,
                    "channel": channel.value,
                    "recipient_id": recipient_id,
                    "status": notification.status.value
                },
                "system"
            )

        return notification.id if success else None

    def _find_template(
        self,
        notification_type: NotificationType,
        channel: NotificationChannel
    ) -> Optional[NotificationTemplate]:
        """Exact channel match first, then any active template for the type"""
        templates_data = self.storage.find(self.templates_table, {
            "notification_type": notification_type.value,
            "channel": channel.value,
            "is_active": True
        })
        if not templates_data:
            templates_data = self.storage.find(self.templates_table, {
                "notification_type": notification_type.value,
                "is_active": True
            })
        if templates_data:
            return self._template_from_dict(templates_data[0])
        return None

    def _get_recipient_address(self, recipient_id: str, channel: NotificationChannel) -> Optional[str]:
        if self._address_lookup:
            return self._address_lookup(recipient_id, channel)
        if channel == NotificationChannel.WEBHOOK and self.config.webhook_url:
            return self.config.webhook_url
        return recipient_id

    # Notification Management

    def get_notifications(
        self,
        recipient_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 50
    ) -> List[Notification]:
        """Notifications for a recipient, newest first"""
        filters = {"recipient_id": recipient_id}
        if status:
            filters["status"] = status.value

        notifications = [
            self._notification_from_dict(data)
            for data in self.storage.find(self.notifications_table, filters)
        ]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def mark_as_read(self, notification_id: str) -> bool:
        notification_dict = self.storage.load(self.notifications_table, notification_id)
        if not notification_dict:
            return False

        notification = self._notification_from_dict(notification_dict)
        if notification.status != NotificationStatus.READ:
            notification.status = NotificationStatus.READ
            notification.read_at = datetime.now(timezone.utc)
            notification.updated_at = notification.read_at
            self.storage.save(self.notifications_table, notification_id, self._notification_to_dict(notification))
        return True

    def get_unread_count(self, recipient_id: str) -> int:
        return len(self.storage.find(self.notifications_table, {
            "recipient_id": recipient_id,
            "status": NotificationStatus.SENT.value
        }))

    # Serialization methods

    def _template_to_dict(self, template: NotificationTemplate) -> Dict:
        result = template.to_dict()
        result["notification_type"] = template.notification_type.value
        result["channel"] = template.channel.value
        return result

    def _template_from_dict(self, data: Dict) -> NotificationTemplate:
        data = dict(data)
        data["notification_type"] = NotificationType(data["notification_type"])
        data["channel"] = NotificationChannel(data["channel"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return NotificationTemplate(**data)

    def _notification_to_dict(self, notification: Notification) -> Dict:
        result = notification.to_dict()
        result["notification_type"] = notification.notification_type.value
        result["channel"] = notification.channel.value
        result["status"] = notification.status.value
        if notification.sent_at:
            result["sent_at"] = notification.sent_at.isoformat()
        if notification.read_at:
            result["read_at"] = notification.read_at.isoformat()
        return result

    def _notification_from_dict(self, data: Dict) -> Notification:
        data = dict(data)
        data["notification_type"] = NotificationType(data["notification_type"])
        data["channel"] = NotificationChannel(data["channel"])
        data["status"] = NotificationStatus(data["status"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        if data.get("sent_at"):
            data["sent_at"] = datetime.fromisoformat(data["sent_at"])
        if data.get("read_at"):
            data["read_at"] = datetime.fromisoformat(data["read_at"])
        return Notification(**data)


class LoanNotifier:
    """
    Bridges loan progression to the notification engine.

    Overdue and completion events are delivered without blocking the
    progression call that raised them; delivery failures are logged only.
    Inside a running event loop delivery is scheduled as a task. Otherwise it
    runs on a background worker thread with its own loop.
    """

    def __init__(
        self,
        engine: NotificationEngine,
        repository: LoanRepository,
        config: Optional[LendingConfig] = None,
        max_workers: int = 2
    ):
        self.engine = engine
        self.repository = repository
        self.config = config or get_config()
        self.logger = get_logger("lending.notifications")
        self._pending: Set[asyncio.Task] = set()
        self._futures: Set[Future] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="lending-notify"
        )

    def subscribe(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(DomainEvent.LOAN_OVERDUE, self.on_loan_overdue)
        dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, self.on_loan_completed)

    async def _guarded(self, coro, description: str) -> None:
        try:
            await coro
        except Exception as e:
            self.logger.error(f"Notification for {description} failed: {e}")

    def _dispatch(self, coro, description: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            future = self._executor.submit(asyncio.run, self._guarded(coro, description))
            self._futures.add(future)
            future.add_done_callback(self._futures.discard)
            return

        task = loop.create_task(self._guarded(coro, description))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _installment_amount(self, loan_id: str, installment_number: int) -> str:
        schedule = generate_schedule(self.repository.load_terms(loan_id))
        return schedule.item(installment_number).total_amount.to_string()

    def on_loan_overdue(self, event: EventPayload) -> None:
        borrower_id = event.data.get('borrower_id')
        if not borrower_id:
            return
        installment_number = event.data['current_installment_number']
        data = {
            'loan_id': event.entity_id,
            'installment_number': installment_number,
            'due_date': event.data['next_payment_due_date'],
            'days_overdue': event.data.get('days_overdue', 0),
            'amount': self._installment_amount(event.entity_id, installment_number),
        }
        self._dispatch(
            self.engine.send_notification(NotificationType.PAYMENT_OVERDUE, borrower_id, data),
            f"overdue loan {event.entity_id}"
        )

    def on_loan_completed(self, event: EventPayload) -> None:
        data = {
            'loan_id': event.entity_id,
            'total_installments': event.data.get('total_installments'),
        }
        for recipient_id in (event.data.get('borrower_id'), event.data.get('lender_id')):
            if recipient_id:
                self._dispatch(
                    self.engine.send_notification(NotificationType.LOAN_COMPLETED, recipient_id, data),
                    f"completed loan {event.entity_id}"
                )

    async def send_due_reminders(self, today: Optional[date] = None) -> List[str]:
        """
        Remind borrowers of installments due in each configured number of days

        Returns:
            IDs of delivered notifications
        """
        today = today or datetime.now(timezone.utc).date()
        reminder_days = set(self.config.reminder_days)
        sent = []

        for loan in self.repository.find_by_status(LoanStatus.ACTIVE):
            if not loan.borrower_id or loan.next_payment_due_date is None:
                continue
            days = (loan.next_payment_due_date - today).days
            if days not in reminder_days:
                continue

            data = {
                'loan_id': loan.id,
                'installment_number': loan.current_installment_number,
                'due_date': loan.next_payment_due_date.isoformat(),
                'days': days,
                'amount': self._installment_amount(loan.id, loan.current_installment_number),
            }
            sent.extend(await self.engine.send_notification(
                NotificationType.PAYMENT_REMINDER, loan.borrower_id, data
            ))

        if sent:
            self.logger.info(f"Sent {len(sent)} payment reminders for {today.isoformat()}")
        return sent

    async def drain(self) -> None:
        """Wait for every notification handed off so far"""
        if self._pending:
            await asyncio.gather(*list(self._pending))
        futures = list(self._futures)
        if futures:
            await asyncio.gather(*(asyncio.wrap_future(future) for future in futures))

    def close(self) -> None:
        """Finish queued deliveries and stop the worker threads"""
        self._executor.shutdown(wait=True)
