"""Application context tying the tracking pipeline together."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..integrations.email_transport import EmailTransport, build_email_transport
from ..integrations.sms_transport import SmsTransport, build_sms_transport
from ..models import AdminSettings, Issue, Notification
from ..server.capture import ServerCapture
from .admin_settings import get_or_create_settings, update_settings
from .handoff import IssueHandoff
from .issue_store import IssueFilters, IssueStore, LogErrorOptions
from .levels import ErrorLevel, IssueStatus
from .notifications import (
    NotificationDispatcher,
    NotificationFilters,
    SendEmailOptions,
    SendSMSOptions,
)
from .policy import AdminRoster, NotificationPolicy, SqlAdminRoster

logger = logging.getLogger(__name__)


class ErrorTracker:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        *,
        email_transport: Optional[EmailTransport] = None,
        sms_transport: Optional[SmsTransport] = None,
        roster: Optional[AdminRoster] = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory

        self.dispatcher = NotificationDispatcher(
            session_factory,
            email_transport=email_transport,
            sms_transport=sms_transport,
            production=settings.is_production,
            max_retries=settings.notification_max_retries,
            lock_seconds=settings.notification_lock_seconds,
        )
        self.policy = NotificationPolicy(
            session_factory,
            self.dispatcher,
            roster or SqlAdminRoster(session_factory),
            base_url=settings.public_base_url,
        )
        self.handoff = IssueHandoff(self.policy.evaluate)
        self.issues = IssueStore(
            session_factory,
            environment=settings.environment,
            on_new_issue=self.handoff,
        )
        self.server_capture = ServerCapture(self.issues.log_error, production=settings.is_production)

        self._retry_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker) -> "ErrorTracker":
        return cls(
            settings,
            session_factory,
            email_transport=build_email_transport(settings),
            sms_transport=build_sms_transport(settings),
        )

    # ---------- Lifecycle ----------

    async def init(self, *, process_hooks: bool = True, retry_loop: bool = True) -> None:
        self.handoff.start()
        if process_hooks:
            self.server_capture.install_process_hooks()
        if retry_loop and self._retry_task is None:
            self._retry_task = asyncio.create_task(
                self.retry_loop(self.settings.notification_retry_interval_sec),
                name="issuetrack-notification-retry",
            )
        logger.info("Error tracking initialized (environment=%s)", self.settings.environment)

    async def shutdown(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None
        await self.handoff.shutdown()
        self.server_capture.uninstall_process_hooks()

    async def retry_loop(self, interval_seconds: int = 60) -> None:
        """Background loop that re-attempts due and retryable notifications."""
        while True:
            try:
                processed = await self.dispatcher.process_due()
                if processed:
                    logger.info("Processed %d pending notifications", processed)
            except Exception:
                logger.exception("Notification retry sweep failed")
            await asyncio.sleep(interval_seconds)

    # ---------- Issues ----------

    async def log_error(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.issues.log_error(title, message, options)

    async def log_warning(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.issues.log_warning(title, message, options)

    async def log_info(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.issues.log_info(title, message, options)

    async def log_debug(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.issues.log_debug(title, message, options)

    def list_issues(self, filters: Optional[IssueFilters] = None) -> List[Issue]:
        return self.issues.list_issues(filters)

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        return self.issues.get_issue(issue_id)

    def update_issue_status(
        self, issue_id: str, status: IssueStatus | str, resolved_by: Optional[str] = None
    ) -> bool:
        return self.issues.update_issue_status(issue_id, status, resolved_by)

    def get_issue_stats(self) -> Dict[str, Any]:
        return self.issues.get_issue_stats()

    # ---------- Notifications ----------

    async def send_email(self, options: SendEmailOptions) -> List[str]:
        return await self.dispatcher.send_email(options)

    async def send_sms(self, options: SendSMSOptions) -> List[str]:
        return await self.dispatcher.send_sms(options)

    async def resend_notification(self, notification_id: str, sent_by: Optional[str] = None) -> bool:
        return await self.dispatcher.resend(notification_id, sent_by)

    def list_notifications(self, filters: Optional[NotificationFilters] = None) -> List[Notification]:
        return self.dispatcher.list_notifications(filters)

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        return self.dispatcher.get_notification(notification_id)

    def get_notification_stats(self) -> Dict[str, Any]:
        return self.dispatcher.get_notification_stats()

    # ---------- Admin settings ----------

    def get_settings(self) -> AdminSettings:
        with self.session_factory() as db:
            return get_or_create_settings(db)

    def update_settings(self, email_notifications_enabled: bool, notification_level: ErrorLevel | str) -> AdminSettings:
        with self.session_factory() as db:
            return update_settings(
                db,
                email_notifications_enabled=email_notifications_enabled,
                notification_level=notification_level,
            )
