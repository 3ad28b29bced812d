from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import AdminSettings
from ..models.admin_settings import SETTINGS_ROW_ID
from .levels import ErrorLevel

DEFAULT_NOTIFICATIONS_ENABLED = True
DEFAULT_NOTIFICATION_LEVEL = ErrorLevel.ERROR


def get_or_create_settings(db: Session) -> AdminSettings:
    """Return the settings row, inserting the defaults if it does not exist yet."""
    row = db.query(AdminSettings).first()
    if row is not None:
        return row

    row = AdminSettings(
        id=SETTINGS_ROW_ID,
        email_notifications_enabled=DEFAULT_NOTIFICATIONS_ENABLED,
        notification_level=DEFAULT_NOTIFICATION_LEVEL.value,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # another request created it first
        db.rollback()
        return db.query(AdminSettings).one()
    db.refresh(row)
    return row


def update_settings(
    db: Session,
    *,
    email_notifications_enabled: bool,
    notification_level: ErrorLevel | str,
) -> AdminSettings:
    row = get_or_create_settings(db)
    row.email_notifications_enabled = email_notifications_enabled
    row.notification_level = ErrorLevel(notification_level).value
    row.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    return row
