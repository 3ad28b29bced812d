from .notification import Notification
from .issue import Issue
from .admin_settings import AdminSettings
from .user import User


__all__ = [
    "Notification",
    "Issue",
    "AdminSettings",
    "User",
]
