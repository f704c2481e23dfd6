"""
Notification Module

In-app notifications for lenders, borrowers and admins, mirrored to optional
channel providers (structured log, HTTP webhook). Notifications are advisory:
providers run on a background pool, and a provider that fails is logged and
skipped, never raised to the workflow that triggered it.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
from enum import Enum
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
import logging
import threading
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .clock import Clock, SystemClock
from .logging_config import log_action


logger = logging.getLogger("microlend.notifications")


class NotificationPriority(Enum):
    """Notification priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationType(Enum):
    """Types of notifications"""
    # Funding
    ESCROW_PENDING_APPROVAL = "escrow_pending_approval"
    FUNDING_CONFIRMED = "funding_confirmed"
    ESCROW_APPROVED = "escrow_approved"
    FUNDS_REFUNDED = "funds_refunded"

    # Disbursement
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_ACTIVE = "loan_active"

    # Repayment
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REMINDER = "payment_reminder"
    LOAN_COMPLETED = "loan_completed"

    # Portfolio
    ROI_MILESTONE = "roi_milestone"


@dataclass
class Notification(StorageRecord):
    """A notification delivered to one user"""
    recipient_id: str
    notification_type: NotificationType
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.MEDIUM
    is_read: bool = False
    read_at: Optional[datetime] = None
    loan_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(ABC):
    """Interface the lending workflows notify users through"""

    @abstractmethod
    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[Notification]:
        """Deliver a notification to a user"""
        pass


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Writes every notification to the application log"""

    def __init__(self, channel_logger: Optional[logging.Logger] = None):
        self.logger = channel_logger or logging.getLogger("microlend.notifications.log")

    def send(self, notification: Notification) -> bool:
        log_action(
            self.logger, "info",
            f"{notification.notification_type.value}: {notification.title}",
            user_id=notification.recipient_id, loan_id=notification.loan_id,
            action="notification_sent", resource=notification.id,
            extra={"priority": notification.priority.value, "body": notification.body[:200]},
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "priority": notification.priority.value,
            "recipient_id": notification.recipient_id,
            "title": notification.title,
            "body": notification.body,
            "loan_id": notification.loan_id,
            "timestamp": notification.created_at.isoformat(),
            "context": notification.context
        }

        try:
            response = self.session.post(
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            logger.warning("Webhook delivery of %s failed: %s", notification.id, e)
            return False

        if not response.ok:
            logger.warning("Webhook delivery of %s returned HTTP %s", notification.id, response.status_code)
        return response.ok


class NotificationEngine(NotificationDispatcher):
    """
    Stores in-app notifications and fans them out to channel providers

    The in-app record is written on the caller's thread. Provider delivery
    runs on a small background pool; notify returns once the record is stored.
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 providers: Optional[List[ChannelProvider]] = None, delivery_workers: int = 4):
        self.storage = storage
        self.clock = clock or SystemClock()

        self.notifications_table = "notifications"

        self.providers: List[ChannelProvider] = list(providers) if providers else [LogChannelProvider()]

        self._executor = ThreadPoolExecutor(max_workers=delivery_workers,
                                            thread_name_prefix="microlend-notify")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def register_provider(self, provider: ChannelProvider) -> None:
        """Register an additional delivery channel"""
        self.providers.append(provider)

    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        context: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """
        Store an unread in-app notification and queue it for every provider

        Args:
            user_id: Recipient
            notification_type: What happened
            title: Short headline
            body: Message text
            priority: Delivery priority
            context: Structured details (loan_id, amount, ...) kept with the record

        Returns:
            The stored notification
        """
        context = dict(context or {})
        now = self.clock.now()

        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            recipient_id=user_id,
            notification_type=notification_type,
            title=title,
            body=body,
            priority=priority,
            loan_id=context.get("loan_id"),
            context=context,
        )
        self.storage.save(self.notifications_table, notification.id,
                          self._notification_to_dict(notification))

        try:
            future = self._executor.submit(self._deliver, notification, list(self.providers))
        except RuntimeError:
            logger.warning("Notification engine is closed, %s stored without channel delivery",
                           notification.id)
            return notification

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

        return notification

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued provider deliveries

        Returns:
            True if every delivery finished within the timeout
        """
        with self._pending_lock:
            pending = set(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Finish queued deliveries and stop the delivery pool"""
        self._executor.shutdown(wait=True)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _deliver(self, notification: Notification, providers: List[ChannelProvider]) -> None:
        for provider in providers:
            try:
                delivered = provider.send(notification)
            except Exception:
                logger.warning("Provider %s raised while sending %s",
                               type(provider).__name__, notification.id, exc_info=True)
                continue
            if not delivered:
                logger.warning("Provider %s did not deliver %s", type(provider).__name__, notification.id)

    def get_notifications(self, recipient_id: str, unread_only: bool = False,
                          limit: int = 50) -> List[Notification]:
        """Get notifications for a recipient, newest first"""
        filters = {"recipient_id": recipient_id}
        if unread_only:
            filters["is_read"] = False

        notifications_data = self.storage.find(self.notifications_table, filters)
        notifications = [self._notification_from_dict(data) for data in notifications_data]

        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def mark_as_read(self, notification_id: str) -> bool:
        """Mark notification as read"""
        notification_dict = self.storage.load(self.notifications_table, notification_id)
        if not notification_dict:
            return False

        notification = self._notification_from_dict(notification_dict)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = self.clock.now()
            notification.updated_at = notification.read_at
            self.storage.save(self.notifications_table, notification_id,
                              self._notification_to_dict(notification))

        return True

    def get_unread_count(self, recipient_id: str) -> int:
        """Get count of unread notifications for recipient"""
        return len(self.storage.find(self.notifications_table, {
            "recipient_id": recipient_id,
            "is_read": False
        }))

    def _notification_to_dict(self, notification: Notification) -> Dict:
        """Convert notification to dictionary"""
        return {
            "id": notification.id,
            "created_at": notification.created_at.isoformat(),
            "updated_at": notification.updated_at.isoformat(),
            "recipient_id": notification.recipient_id,
            "notification_type": notification.notification_type.value,
            "title": notification.title,
            "body": notification.body,
            "priority": notification.priority.value,
            "is_read": notification.is_read,
            "read_at": notification.read_at.isoformat() if notification.read_at else None,
            "loan_id": notification.loan_id,
            "context": notification.context,
        }

    def _notification_from_dict(self, data: Dict) -> Notification:
        """Convert dictionary to notification"""
        data["notification_type"] = NotificationType(data["notification_type"])
        data["priority"] = NotificationPriority(data["priority"])

        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        if data.get("read_at"):
            data["read_at"] = datetime.fromisoformat(data["read_at"])

        return Notification(**data)
