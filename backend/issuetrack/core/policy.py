from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from ..models import Issue, User
from .admin_settings import get_or_create_settings
from .error_email import render_error_notification
from .levels import ErrorLevel, meets_threshold, priority_for_level
from .notifications import NotificationCategory, NotificationDispatcher, SendEmailOptions

logger = logging.getLogger(__name__)


@dataclass
class AdminRecipient:
    email: str
    name: Optional[str] = None
    user_id: Optional[str] = None


class AdminRoster(Protocol):
    def list_admin_recipients(self) -> List[AdminRecipient]:
        """Admins that have an e-mail address."""
        ...


class SqlAdminRoster:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def list_admin_recipients(self) -> List[AdminRecipient]:
        with self._session_factory() as db:
            admins = (
                db.query(User)
                .filter(User.role == "admin", User.email.is_not(None))
                .order_by(User.created_at.asc())
                .all()
            )
            return [AdminRecipient(email=u.email, name=u.name, user_id=u.id) for u in admins]


class NotificationPolicy:
    """Decides whether a newly created issue is worth an e-mail to the admins."""

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher,
        roster: AdminRoster,
        *,
        base_url: str = "http://localhost:8000",
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._roster = roster
        self._base_url = base_url

    def should_notify(self, level: ErrorLevel | str) -> bool:
        with self._session_factory() as db:
            config = get_or_create_settings(db)
            if not config.email_notifications_enabled:
                return False
            return meets_threshold(level, config.notification_level)

    async def evaluate(self, issue: Issue) -> List[str]:
        """Send the new-issue e-mail to every admin if settings allow it. Never raises."""
        try:
            if not self.should_notify(issue.level):
                return []

            notification_ids: List[str] = []
            for admin in self._roster.list_admin_recipients():
                if not admin.email:
                    continue
                notification_ids.extend(await self._notify_admin(issue, admin))
            return notification_ids
        except Exception:
            logger.exception("Failed to send error notification for issue %s", issue.id)
            return []

    async def _notify_admin(self, issue: Issue, admin: AdminRecipient) -> List[str]:
        admin_name = admin.name or "Admin"
        rendered = render_error_notification(
            issue_id=issue.id,
            title=issue.title,
            message=issue.message,
            level=issue.level,
            admin_name=admin_name,
            base_url=self._base_url,
        )
        ids = await self._dispatcher.send_email(
            SendEmailOptions(
                to=admin.email,
                subject=rendered.subject,
                content=rendered.text,
                html_content=rendered.html,
                category=NotificationCategory.ERROR_NOTIFICATION,
                priority=priority_for_level(issue.level),
                user_id=admin.user_id,
                metadata={
                    "issueId": issue.id,
                    "level": issue.level,
                    "adminName": admin_name,
                },
            )
        )
        logger.info("Error notification queued for %s (issue %s)", admin.email, issue.id)
        return ids
