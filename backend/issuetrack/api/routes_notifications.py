from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..core.errors import NotificationNotFound
from ..core.notifications import (
    NotificationCategory,
    NotificationFilters,
    NotificationStatus,
    NotificationType,
)
from ..core.tracker import ErrorTracker
from ..models import Notification
from .deps import get_acting_user, get_tracker

router = APIRouter(prefix="/admin/notifications", tags=["notifications"])


class NotificationOut(BaseModel):
    id: str
    type: str
    recipient: str
    subject: Optional[str]
    content: str
    html_content: Optional[str]
    category: str
    priority: str
    status: str
    retry_count: int
    max_retries: int
    scheduled_for: Optional[datetime]
    sent_at: Optional[datetime]
    failure_reason: Optional[str]
    provider_response: Optional[Any]
    user_id: Optional[str]
    sent_by: Optional[str]
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class ResendResponse(BaseModel):
    ok: bool
    id: str
    status: str
    retry_count: int
    failure_reason: Optional[str] = None


class ProviderStatusRequest(BaseModel):
    status: NotificationStatus
    failure_reason: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


class ProcessResponse(BaseModel):
    processed: int


def _notification_out(n: Notification) -> NotificationOut:
    return NotificationOut(
        id=n.id,
        type=n.type,
        recipient=n.recipient,
        subject=n.subject,
        content=n.content,
        html_content=n.html_content,
        category=n.category,
        priority=n.priority,
        status=n.status,
        retry_count=n.retry_count,
        max_retries=n.max_retries,
        scheduled_for=n.scheduled_for,
        sent_at=n.sent_at,
        failure_reason=n.failure_reason,
        provider_response=n.provider_response,
        user_id=n.user_id,
        sent_by=n.sent_by,
        metadata=n.meta,
        created_at=n.created_at,
        updated_at=n.updated_at,
    )


@router.get("", response_model=List[NotificationOut])
def list_notifications(
    type: Optional[NotificationType] = None,
    status: Optional[NotificationStatus] = None,
    category: Optional[NotificationCategory] = None,
    user_id: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tracker: ErrorTracker = Depends(get_tracker),
):
    notifications = tracker.list_notifications(
        NotificationFilters(
            type=type,
            status=status,
            category=category,
            user_id=user_id,
            search=search,
            limit=limit,
            offset=offset,
        )
    )
    return [_notification_out(n) for n in notifications]


@router.get("/stats")
def notification_stats(tracker: ErrorTracker = Depends(get_tracker)):
    return tracker.get_notification_stats()


@router.post("/process", response_model=ProcessResponse)
async def process_due_notifications(
    limit: int = Query(50, ge=1, le=500),
    tracker: ErrorTracker = Depends(get_tracker),
):
    processed = await tracker.dispatcher.process_due(limit=limit)
    return ProcessResponse(processed=processed)


@router.get("/{notification_id}", response_model=NotificationOut)
def get_notification(notification_id: str, tracker: ErrorTracker = Depends(get_tracker)):
    n = tracker.get_notification(notification_id)
    if not n:
        raise HTTPException(status_code=404, detail="Notification not found")
    return _notification_out(n)


@router.post("/{notification_id}/resend", response_model=ResendResponse)
async def resend_notification(
    notification_id: str,
    tracker: ErrorTracker = Depends(get_tracker),
    acting_user: Optional[str] = Depends(get_acting_user),
):
    if not tracker.get_notification(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")

    ok = await tracker.resend_notification(notification_id, sent_by=acting_user)
    if not ok:
        raise HTTPException(status_code=409, detail="Notification cannot be resent")

    n = tracker.get_notification(notification_id)
    return ResendResponse(
        ok=True,
        id=n.id,
        status=n.status,
        retry_count=n.retry_count,
        failure_reason=n.failure_reason,
    )


@router.post("/{notification_id}/status", response_model=NotificationOut)
def record_provider_status(
    notification_id: str,
    payload: ProviderStatusRequest,
    tracker: ErrorTracker = Depends(get_tracker),
):
    try:
        n = tracker.dispatcher.record_provider_status(
            notification_id,
            payload.status,
            failure_reason=payload.failure_reason,
            provider_response=payload.provider_response,
        )
    except NotificationNotFound:
        raise HTTPException(status_code=404, detail="Notification not found")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _notification_out(n)
