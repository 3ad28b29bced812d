from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..core.issue_store import CONSOLE_FALLBACK_ID, IssueFilters, LogErrorOptions
from ..core.levels import ErrorLevel, IssueStatus
from ..core.tracker import ErrorTracker
from ..models import Issue
from .deps import get_acting_user, get_tracker

router = APIRouter(tags=["issues"])


# ---------- Schemas ----------

class ErrorReportIn(BaseModel):
    title: str = Field(..., min_length=1)
    message: str
    level: ErrorLevel = ErrorLevel.ERROR
    url: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    tags: List[str] = []
    metadata: Dict[str, Any] = {}
    stack: Optional[str] = None
    fingerprint: Optional[str] = None


class ErrorReportAccepted(BaseModel):
    id: str
    stored: bool


class IssueOut(BaseModel):
    id: str
    fingerprint: str
    title: str
    message: str
    stack: Optional[str]
    level: str
    status: str
    count: int
    first_seen_at: datetime
    last_seen_at: datetime
    url: Optional[str]
    user_agent: Optional[str]
    user_id: Optional[str]
    environment: Optional[str]
    tags: List[str]
    metadata: Dict[str, Any]
    resolved_at: Optional[datetime]
    resolved_by: Optional[str]


class IssueStatusUpdate(BaseModel):
    status: IssueStatus


class LevelBreakdown(BaseModel):
    error: int
    warning: int
    info: int
    debug: int


class IssueStatsOut(BaseModel):
    total: int
    open: int
    closed: int
    resolved: int
    byLevel: LevelBreakdown


def _issue_out(issue: Issue) -> IssueOut:
    return IssueOut(
        id=issue.id,
        fingerprint=issue.fingerprint,
        title=issue.title,
        message=issue.message,
        stack=issue.stack,
        level=issue.level,
        status=issue.status,
        count=issue.count,
        first_seen_at=issue.first_seen_at,
        last_seen_at=issue.last_seen_at,
        url=issue.url,
        user_agent=issue.user_agent,
        user_id=issue.user_id,
        environment=issue.environment,
        tags=issue.tags or [],
        metadata=issue.meta or {},
        resolved_at=issue.resolved_at,
        resolved_by=issue.resolved_by,
    )


# ---------- Ingestion ----------

@router.post("/api/errors", response_model=ErrorReportAccepted, status_code=202)
async def ingest_error(
    payload: ErrorReportIn,
    tracker: ErrorTracker = Depends(get_tracker),
    acting_user: Optional[str] = Depends(get_acting_user),
):
    issue_id = await tracker.log_error(
        payload.title,
        payload.message,
        LogErrorOptions(
            level=payload.level,
            url=payload.url,
            user_agent=payload.user_agent,
            user_id=payload.user_id or acting_user,
            tags=payload.tags,
            metadata=payload.metadata,
            stack=payload.stack,
            fingerprint=payload.fingerprint,
        ),
    )
    return ErrorReportAccepted(id=issue_id, stored=issue_id != CONSOLE_FALLBACK_ID)


# ---------- Admin ----------

@router.get("/admin/issues", response_model=List[IssueOut])
def list_issues(
    status: Optional[IssueStatus] = None,
    level: Optional[ErrorLevel] = None,
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tracker: ErrorTracker = Depends(get_tracker),
):
    issues = tracker.list_issues(
        IssueFilters(status=status, level=level, search=search, limit=limit, offset=offset)
    )
    return [_issue_out(i) for i in issues]


@router.get("/admin/issues/stats", response_model=IssueStatsOut)
def issue_stats(tracker: ErrorTracker = Depends(get_tracker)):
    return tracker.get_issue_stats()


@router.get("/admin/issues/{issue_id}", response_model=IssueOut)
def get_issue(issue_id: str, tracker: ErrorTracker = Depends(get_tracker)):
    issue = tracker.get_issue(issue_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return _issue_out(issue)


@router.patch("/admin/issues/{issue_id}", response_model=IssueOut)
def update_issue_status(
    issue_id: str,
    payload: IssueStatusUpdate,
    tracker: ErrorTracker = Depends(get_tracker),
    acting_user: Optional[str] = Depends(get_acting_user),
):
    if not tracker.update_issue_status(issue_id, payload.status, resolved_by=acting_user):
        raise HTTPException(status_code=404, detail="Issue not found")
    return _issue_out(tracker.get_issue(issue_id))
