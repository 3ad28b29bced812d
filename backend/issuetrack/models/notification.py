from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from ..core.database import Base
from .issue import new_id


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_id)
    type = Column(String, nullable=False)  # email | sms
    recipient = Column(String, nullable=False)

    subject = Column(String, nullable=True)  # always NULL for sms
    content = Column(Text, nullable=False)
    html_content = Column(Text, nullable=True)
    template_id = Column(String, nullable=True)
    template_data = Column(JSON, nullable=True)

    # auth | error-notification | system | security | marketing | reminder
    category = Column(String, nullable=False)
    priority = Column(String, nullable=False, default="normal")  # low | normal | high | urgent

    status = Column(String, nullable=False, default="pending", index=True)  # pending | sent | failed | delivered | bounced
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)

    scheduled_for = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)

    # claim held while a delivery attempt is in flight
    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(String, nullable=True)

    failure_reason = Column(Text, nullable=True)
    provider_response = Column(JSON, nullable=True)

    user_id = Column(String, nullable=True)
    sent_by = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
