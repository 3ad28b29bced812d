"""
Outbound e-mail/SMS notifications.

Each recipient gets its own Notification row. A row starts ``pending`` and is
delivered right away unless it is scheduled for later. A failed attempt
bumps ``retry_count``; once ``max_retries`` attempts have failed the row is
``failed`` for good (until an admin resends it). Nothing here raises into
the caller of ``send_email``/``send_sms``: the outcome lives on the row.
"""
from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy import func, or_
from sqlalchemy.orm import sessionmaker

from ..integrations.email_transport import EmailMessage, EmailTransport
from ..integrations.sms_transport import SmsMessage, SmsTransport
from ..models import Notification
from ..models.issue import new_id
from .errors import DeliveryError, NotificationNotFound, TransportNotConfigured

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"
    BOUNCED = "bounced"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationCategory(str, Enum):
    AUTH = "auth"
    ERROR_NOTIFICATION = "error-notification"
    SYSTEM = "system"
    SECURITY = "security"
    MARKETING = "marketing"
    REMINDER = "reminder"


RESENDABLE_STATUSES = (NotificationStatus.FAILED.value, NotificationStatus.BOUNCED.value)

Recipients = Union[str, Iterable[str]]


@dataclass
class SendEmailOptions:
    to: Recipients
    subject: str
    content: str
    category: NotificationCategory | str
    html_content: Optional[str] = None
    template_id: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None
    priority: NotificationPriority | str = NotificationPriority.NORMAL
    scheduled_for: Optional[datetime] = None
    user_id: Optional[str] = None
    sent_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class SendSMSOptions:
    to: Recipients
    content: str
    category: NotificationCategory | str
    priority: NotificationPriority | str = NotificationPriority.NORMAL
    scheduled_for: Optional[datetime] = None
    user_id: Optional[str] = None
    sent_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class NotificationFilters:
    type: Optional[NotificationType | str] = None
    status: Optional[NotificationStatus | str] = None
    category: Optional[NotificationCategory | str] = None
    user_id: Optional[str] = None
    search: Optional[str] = None
    limit: int = 50
    offset: int = 0


def _recipients(to: Recipients) -> List[str]:
    if isinstance(to, str):
        return [to]
    return list(to)


def _utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; aware values are converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def default_consumer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _release(notification: Notification) -> None:
    notification.locked_at = None
    notification.locked_by = None


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        email_transport: Optional[EmailTransport] = None,
        sms_transport: Optional[SmsTransport] = None,
        production: bool = False,
        max_retries: int = 3,
        lock_seconds: int = 300,
        consumer_id: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.email_transport = email_transport
        self.sms_transport = sms_transport
        self.production = production
        self.max_retries = max_retries
        self.lock_seconds = lock_seconds
        self.consumer_id = consumer_id or default_consumer_id()
        self._clock = clock

    def _lock_threshold(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.lock_seconds)

    def _unclaimed(self, now: datetime):
        return or_(Notification.locked_at.is_(None), Notification.locked_at < self._lock_threshold(now))

    # ---------- Sending ----------

    async def send_email(self, options: SendEmailOptions) -> List[str]:
        fields = dict(
            type=NotificationType.EMAIL.value,
            subject=options.subject,
            content=options.content,
            html_content=options.html_content,
            template_id=options.template_id,
            template_data=options.template_data,
            category=NotificationCategory(options.category).value,
            priority=NotificationPriority(options.priority).value,
            scheduled_for=_utc_naive(options.scheduled_for),
            user_id=options.user_id,
            sent_by=options.sent_by,
            meta=options.metadata,
        )
        return await self._create_and_dispatch(_recipients(options.to), fields)

    async def send_sms(self, options: SendSMSOptions) -> List[str]:
        fields = dict(
            type=NotificationType.SMS.value,
            subject=None,
            content=options.content,
            category=NotificationCategory(options.category).value,
            priority=NotificationPriority(options.priority).value,
            scheduled_for=_utc_naive(options.scheduled_for),
            user_id=options.user_id,
            sent_by=options.sent_by,
            meta=options.metadata,
        )
        return await self._create_and_dispatch(_recipients(options.to), fields)

    async def _create_and_dispatch(self, recipients: List[str], fields: Dict[str, Any]) -> List[str]:
        notification_ids: List[str] = []
        for recipient in recipients:
            notification_id = new_id()
            notification_ids.append(notification_id)
            now = self._clock()
            try:
                with self._session_factory() as db:
                    db.add(
                        Notification(
                            id=notification_id,
                            recipient=recipient,
                            status=NotificationStatus.PENDING.value,
                            retry_count=0,
                            max_retries=self.max_retries,
                            created_at=now,
                            updated_at=now,
                            **fields,
                        )
                    )
                    db.commit()
            except Exception:
                logger.exception("Failed to create %s notification for %s", fields["type"], recipient)
                continue

            scheduled_for = fields.get("scheduled_for")
            if scheduled_for is None or scheduled_for <= now:
                await self.deliver(notification_id)
        return notification_ids

    async def deliver(self, notification_id: str) -> Optional[Notification]:
        """
        Run one delivery attempt and record its outcome on the row.

        The row is claimed first so that a concurrent sweep or resend cannot
        start a second attempt; returns None when another attempt holds it.
        """
        now = self._clock()
        with self._session_factory() as db:
            claimed = (
                db.query(Notification)
                .filter(
                    Notification.id == notification_id,
                    Notification.status == NotificationStatus.PENDING.value,
                    self._unclaimed(now),
                )
                .update(
                    {"locked_at": now, "locked_by": self.consumer_id, "updated_at": now},
                    synchronize_session=False,
                )
            )
            db.commit()
            notification = db.get(Notification, notification_id)
        if notification is None:
            logger.error("Notification %s not found", notification_id)
            return None
        if not claimed:
            logger.debug("Notification %s is not pending or is claimed elsewhere; skipping", notification_id)
            return None

        try:
            response = await self._attempt(notification)
        except TransportNotConfigured as exc:
            logger.error("Cannot deliver notification %s: %s", notification_id, exc)
            return self._mark_failed(notification_id, str(exc))
        except Exception as exc:
            logger.warning("Failed to send %s notification %s: %s", notification.type, notification_id, exc)
            provider_response = exc.provider_response if isinstance(exc, DeliveryError) else None
            return self._record_failed_attempt(notification_id, str(exc) or repr(exc), provider_response)

        return self._mark_sent(notification_id, response)

    async def _attempt(self, notification: Notification) -> Optional[Dict[str, Any]]:
        if notification.type == NotificationType.EMAIL.value:
            if self.email_transport is None:
                if self.production:
                    raise TransportNotConfigured("SMTP not configured")
                logger.info(
                    "[DEV] Email notification to=%s subject=%r category=%s\n%s",
                    notification.recipient,
                    notification.subject,
                    notification.category,
                    notification.content,
                )
                return None
            return await self.email_transport.send(
                EmailMessage(
                    to=notification.recipient,
                    subject=notification.subject or "",
                    text=notification.content,
                    html=notification.html_content,
                )
            )

        if notification.type == NotificationType.SMS.value:
            if self.sms_transport is None:
                if self.production:
                    raise TransportNotConfigured("SMS gateway not configured")
                logger.info(
                    "[DEV] SMS notification to=%s category=%s\n%s",
                    notification.recipient,
                    notification.category,
                    notification.content,
                )
                return None
            return await self.sms_transport.send(
                SmsMessage(to=notification.recipient, body=notification.content)
            )

        raise TransportNotConfigured(f"Unknown notification type: {notification.type}")

    # ---------- Status transitions ----------

    def _mark_sent(self, notification_id: str, provider_response: Optional[Dict[str, Any]]) -> Optional[Notification]:
        with self._session_factory() as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                return None
            now = self._clock()
            notification.status = NotificationStatus.SENT.value
            notification.sent_at = now
            notification.failure_reason = None
            notification.provider_response = provider_response
            notification.updated_at = now
            _release(notification)
            db.commit()
            return notification

    def _mark_failed(self, notification_id: str, reason: str) -> Optional[Notification]:
        with self._session_factory() as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                return None
            notification.status = NotificationStatus.FAILED.value
            notification.failure_reason = reason
            notification.updated_at = self._clock()
            _release(notification)
            db.commit()
            return notification

    def _record_failed_attempt(
        self,
        notification_id: str,
        reason: str,
        provider_response: Optional[Dict[str, Any]] = None,
    ) -> Optional[Notification]:
        with self._session_factory() as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                return None
            _release(notification)
            if notification.status != NotificationStatus.PENDING.value:
                # status changed underneath the attempt (provider receipt); keep it
                db.commit()
                return notification
            notification.retry_count = min((notification.retry_count or 0) + 1, notification.max_retries)
            # the latest error is kept for the admin view even while retries remain
            notification.failure_reason = reason
            if provider_response is not None:
                notification.provider_response = provider_response
            if notification.retry_count >= notification.max_retries:
                notification.status = NotificationStatus.FAILED.value
            notification.updated_at = self._clock()
            db.commit()
            return notification

    def record_provider_status(
        self,
        notification_id: str,
        status: NotificationStatus | str,
        failure_reason: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """Apply a delivery receipt (delivered/bounced) reported by a provider."""
        status = NotificationStatus(status)
        if status not in (NotificationStatus.DELIVERED, NotificationStatus.BOUNCED):
            raise ValueError("provider status must be 'delivered' or 'bounced'")

        with self._session_factory() as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                raise NotificationNotFound(notification_id)
            now = self._clock()
            notification.status = status.value
            if status is NotificationStatus.DELIVERED:
                notification.sent_at = notification.sent_at or now
            else:
                notification.failure_reason = failure_reason or "Bounced by provider"
            if provider_response is not None:
                notification.provider_response = provider_response
            notification.updated_at = now
            db.commit()
            return notification

    async def resend(self, notification_id: str, sent_by: Optional[str] = None) -> bool:
        try:
            with self._session_factory() as db:
                notification = db.get(Notification, notification_id)
                if notification is None:
                    raise NotificationNotFound(notification_id)

                if not (
                    notification.status in RESENDABLE_STATUSES
                    or notification.retry_count < notification.max_retries
                ):
                    logger.warning(
                        "Notification %s is %s with no retries left; not resending",
                        notification_id,
                        notification.status,
                    )
                    return False

                now = self._clock()
                if notification.locked_at is not None and notification.locked_at >= self._lock_threshold(now):
                    logger.warning("Notification %s has a delivery in flight; not resending", notification_id)
                    return False

                notification.status = NotificationStatus.PENDING.value
                notification.retry_count = 0
                notification.failure_reason = None
                notification.sent_at = None
                notification.sent_by = sent_by or notification.sent_by
                notification.updated_at = now
                db.commit()
        except Exception:
            logger.exception("Failed to resend notification %s", notification_id)
            return False

        await self.deliver(notification_id)
        return True

    async def process_due(self, limit: int = 50) -> int:
        """
        Re-attempt pending notifications that are due: scheduled ones whose
        time has come and ones waiting for another retry.
        """
        now = self._clock()
        with self._session_factory() as db:
            due_ids = [
                row.id
                for row in db.query(Notification.id)
                .filter(
                    Notification.status == NotificationStatus.PENDING.value,
                    Notification.retry_count < Notification.max_retries,
                    or_(Notification.scheduled_for.is_(None), Notification.scheduled_for <= now),
                    self._unclaimed(now),
                )
                .order_by(Notification.created_at.asc())
                .limit(limit)
            ]

        for notification_id in due_ids:
            await self.deliver(notification_id)
        return len(due_ids)

    # ---------- Queries ----------

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        with self._session_factory() as db:
            return db.get(Notification, notification_id)

    def list_notifications(self, filters: Optional[NotificationFilters] = None) -> List[Notification]:
        filters = filters or NotificationFilters()
        conditions = []
        if filters.type:
            conditions.append(Notification.type == NotificationType(filters.type).value)
        if filters.status:
            conditions.append(Notification.status == NotificationStatus(filters.status).value)
        if filters.category:
            conditions.append(Notification.category == NotificationCategory(filters.category).value)
        if filters.user_id:
            conditions.append(Notification.user_id == filters.user_id)
        if filters.search:
            needle = f"%{filters.search.lower()}%"
            conditions.append(
                or_(
                    func.lower(Notification.recipient).like(needle),
                    func.lower(Notification.subject).like(needle),
                    func.lower(Notification.content).like(needle),
                )
            )

        try:
            with self._session_factory() as db:
                return (
                    db.query(Notification)
                    .filter(*conditions)
                    .order_by(Notification.created_at.desc())
                    .limit(filters.limit)
                    .offset(filters.offset)
                    .all()
                )
        except Exception:
            logger.exception("Failed to get notifications")
            return []

    def get_notification_stats(self) -> Dict[str, Any]:
        stats = _empty_stats()
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(Notification.status, Notification.type, Notification.category, func.count(Notification.id))
                    .group_by(Notification.status, Notification.type, Notification.category)
                    .all()
                )
        except Exception:
            logger.exception("Failed to get notification stats")
            return stats

        for status, type_, category, count in rows:
            stats["total"] += count
            if status in stats:
                stats[status] += count
            if type_ in stats["byType"]:
                stats["byType"][type_] += count
            if category in stats["byCategory"]:
                stats["byCategory"][category] += count
        return stats


def _empty_stats() -> Dict[str, Any]:
    return {
        "total": 0,
        **{status.value: 0 for status in NotificationStatus},
        "byType": {t.value: 0 for t in NotificationType},
        "byCategory": {c.value: 0 for c in NotificationCategory},
    }
