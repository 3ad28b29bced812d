from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..core.levels import ErrorLevel
from ..core.tracker import ErrorTracker
from .deps import get_tracker

router = APIRouter(prefix="/admin/settings", tags=["settings"])


class AdminSettingsIn(BaseModel):
    email_notifications_enabled: bool
    notification_level: ErrorLevel


class AdminSettingsOut(AdminSettingsIn):
    updated_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=AdminSettingsOut)
def get_settings(tracker: ErrorTracker = Depends(get_tracker)):
    return tracker.get_settings()


@router.put("", response_model=AdminSettingsOut)
def update_settings(payload: AdminSettingsIn, tracker: ErrorTracker = Depends(get_tracker)):
    return tracker.update_settings(payload.email_notifications_enabled, payload.notification_level)
