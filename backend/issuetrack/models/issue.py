import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from ..core.database import Base


def new_id() -> str:
    return uuid.uuid4().hex


class Issue(Base):
    __tablename__ = "issues"

    id = Column(String, primary_key=True, default=new_id)
    fingerprint = Column(String, unique=True, nullable=False, index=True)

    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    stack = Column(Text, nullable=True)

    level = Column(String, nullable=False, default="error")  # error | warning | info | debug
    status = Column(String, nullable=False, default="open")  # open | resolved | closed

    count = Column(Integer, nullable=False, default=1)
    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    url = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    user_id = Column(String, nullable=True)  # weak reference, no FK
    environment = Column(String, nullable=True)

    tags = Column(JSON, nullable=False, default=list)
    # named "metadata" in the database; the attribute name is reserved by SQLAlchemy
    meta = Column("metadata", JSON, nullable=False, default=dict)

    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
