from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String

from ..core.database import Base

SETTINGS_ROW_ID = "default"


class AdminSettings(Base):
    __tablename__ = "admin_settings"

    # singleton: the only row ever written has id "default"
    id = Column(String, primary_key=True, default=SETTINGS_ROW_ID)
    email_notifications_enabled = Column(Boolean, nullable=False, default=True)
    notification_level = Column(String, nullable=False, default="error")

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
