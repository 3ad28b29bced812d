from datetime import datetime

from sqlalchemy import Column, DateTime, String

from ..core.database import Base
from .issue import new_id


class User(Base):
    """Minimal view of the user directory: only what the admin roster needs."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, nullable=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="user")  # user | admin

    created_at = Column(DateTime, default=datetime.utcnow)
