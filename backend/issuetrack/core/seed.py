from sqlalchemy.orm import Session

from ..config import Settings
from ..models import User
from .admin_settings import get_or_create_settings


def seed_initial_data(db: Session, app_settings: Settings) -> None:
    """Create the settings row and the configured admin if they are missing."""
    get_or_create_settings(db)

    if app_settings.admin_email:
        exists = db.query(User).filter(User.email == app_settings.admin_email).first()
        if exists is None:
            db.add(
                User(
                    email=app_settings.admin_email,
                    name=app_settings.admin_name,
                    role="admin",
                )
            )

    db.commit()
