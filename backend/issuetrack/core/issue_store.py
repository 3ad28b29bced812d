"""
Deduplicated issue storage.

Every report is reduced to a fingerprint; the first report of a fingerprint
creates an Issue, later ones bump its counter, last-seen time and severity.
Storage problems never reach the caller: the report is written to the
issuetrack logger instead and a sentinel id is returned.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..models import Issue
from ..models.issue import new_id
from .fingerprint import fingerprint as compute_fingerprint
from .levels import ErrorLevel, IssueStatus, higher_level

logger = logging.getLogger(__name__)

CONSOLE_FALLBACK_ID = "console-fallback"

NewIssueHandler = Callable[[Issue], Awaitable[None]]


@dataclass
class LogErrorOptions:
    level: ErrorLevel | str = ErrorLevel.ERROR
    url: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack: Optional[str] = None
    fingerprint: Optional[str] = None


@dataclass
class IssueFilters:
    status: Optional[IssueStatus | str] = None
    level: Optional[ErrorLevel | str] = None
    search: Optional[str] = None
    limit: int = 50
    offset: int = 0


def merge_metadata(
    existing: Optional[Dict[str, Any]],
    incoming: Optional[Dict[str, Any]],
    last_occurrence: Dict[str, Any],
) -> Dict[str, Any]:
    """New keys override old ones; lastOccurrence always reflects the latest report."""
    merged = dict(existing or {})
    merged.update(incoming or {})
    merged["lastOccurrence"] = last_occurrence
    return merged


class IssueStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        environment: str = "development",
        on_new_issue: Optional[NewIssueHandler] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._environment = environment
        self._on_new_issue = on_new_issue
        self._clock = clock

    def set_new_issue_handler(self, handler: Optional[NewIssueHandler]) -> None:
        self._on_new_issue = handler

    # ---------- Logging ----------

    async def log_error(
        self,
        title: str,
        message: str,
        options: Optional[LogErrorOptions] = None,
    ) -> str:
        options = options or LogErrorOptions()
        try:
            created, issue = self._record_occurrence(title, message, options)
        except Exception:
            logger.exception("Failed to log error to database")
            logger.error(
                "Original error: title=%r message=%r level=%r url=%r stack=%r",
                title,
                message,
                options.level,
                options.url,
                options.stack,
            )
            return CONSOLE_FALLBACK_ID

        if created and self._on_new_issue is not None:
            try:
                await self._on_new_issue(issue)
            except Exception:
                logger.exception("New issue handler failed for issue %s", issue.id)

        return issue.id

    async def log_warning(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.log_error(title, message, self._with_level(options, ErrorLevel.WARNING))

    async def log_info(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.log_error(title, message, self._with_level(options, ErrorLevel.INFO))

    async def log_debug(self, title: str, message: str, options: Optional[LogErrorOptions] = None) -> str:
        return await self.log_error(title, message, self._with_level(options, ErrorLevel.DEBUG))

    @staticmethod
    def _with_level(options: Optional[LogErrorOptions], level: ErrorLevel) -> LogErrorOptions:
        return replace(options or LogErrorOptions(), level=level)

    def _record_occurrence(
        self, title: str, message: str, options: LogErrorOptions
    ) -> Tuple[bool, Issue]:
        level = ErrorLevel(options.level)
        fp = options.fingerprint or compute_fingerprint(title, message, options.stack)
        now = self._clock()

        with self._session_factory() as db:
            issue = self._find_by_fingerprint(db, fp)
            if issue is None:
                issue = Issue(
                    id=new_id(),
                    fingerprint=fp,
                    title=title,
                    message=message,
                    stack=options.stack,
                    level=level.value,
                    status=IssueStatus.OPEN.value,
                    count=1,
                    first_seen_at=now,
                    last_seen_at=now,
                    url=options.url,
                    user_agent=options.user_agent,
                    user_id=options.user_id,
                    environment=self._environment,
                    tags=list(options.tags or []),
                    meta=dict(options.metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
                db.add(issue)
                try:
                    db.commit()
                    return True, issue
                except IntegrityError:
                    # lost the race against a concurrent insert of the same fingerprint
                    db.rollback()
                    issue = self._find_by_fingerprint(db, fp)
                    if issue is None:
                        raise

            self._apply_occurrence(issue, level, options, now)
            db.commit()
            return False, issue

    @staticmethod
    def _find_by_fingerprint(db: Session, fp: str) -> Optional[Issue]:
        return db.query(Issue).filter(Issue.fingerprint == fp).first()

    @staticmethod
    def _apply_occurrence(
        issue: Issue, level: ErrorLevel, options: LogErrorOptions, now: datetime
    ) -> None:
        issue.count = (issue.count or 0) + 1
        issue.last_seen_at = max(now, issue.first_seen_at)
        issue.updated_at = now
        issue.level = higher_level(issue.level, level).value
        # assign a new dict so the JSON column is flagged dirty
        issue.meta = merge_metadata(
            issue.meta,
            options.metadata,
            {
                "url": options.url,
                "userAgent": options.user_agent,
                "userId": options.user_id,
                "timestamp": now.isoformat() + "Z",
            },
        )

    # ---------- Queries ----------

    def list_issues(self, filters: Optional[IssueFilters] = None) -> List[Issue]:
        filters = filters or IssueFilters()
        status = IssueStatus(filters.status) if filters.status else None
        level = ErrorLevel(filters.level) if filters.level else None
        try:
            with self._session_factory() as db:
                query = db.query(Issue)
                if status:
                    query = query.filter(Issue.status == status.value)
                if level:
                    query = query.filter(Issue.level == level.value)
                if filters.search:
                    needle = f"%{filters.search.lower()}%"
                    query = query.filter(
                        or_(
                            func.lower(Issue.title).like(needle),
                            func.lower(Issue.message).like(needle),
                        )
                    )
                return (
                    query.order_by(Issue.last_seen_at.desc())
                    .limit(filters.limit)
                    .offset(filters.offset)
                    .all()
                )
        except Exception:
            logger.exception("Failed to get issues")
            return []

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        with self._session_factory() as db:
            return db.get(Issue, issue_id)

    def update_issue_status(
        self,
        issue_id: str,
        status: IssueStatus | str,
        resolved_by: Optional[str] = None,
    ) -> bool:
        status = IssueStatus(status)
        try:
            with self._session_factory() as db:
                issue = db.get(Issue, issue_id)
                if issue is None:
                    return False

                now = self._clock()
                issue.status = status.value
                issue.updated_at = now
                if status is IssueStatus.OPEN:
                    issue.resolved_at = None
                    issue.resolved_by = None
                else:
                    issue.resolved_at = now
                    if resolved_by:
                        issue.resolved_by = resolved_by
                db.commit()
                return True
        except Exception:
            logger.exception("Failed to update issue status for %s", issue_id)
            return False

    def get_issue_stats(self) -> Dict[str, Any]:
        stats = _empty_stats()
        try:
            with self._session_factory() as db:
                for status, count in db.query(Issue.status, func.count(Issue.id)).group_by(Issue.status):
                    stats["total"] += count
                    if status in stats:
                        stats[status] = count
                for level, count in db.query(Issue.level, func.count(Issue.id)).group_by(Issue.level):
                    if level in stats["byLevel"]:
                        stats["byLevel"][level] = count
        except Exception:
            logger.exception("Failed to get issue stats")
            return _empty_stats()
        return stats


def _empty_stats() -> Dict[str, Any]:
    return {
        "total": 0,
        **{status.value: 0 for status in IssueStatus},
        "byLevel": {level.value: 0 for level in ErrorLevel},
    }
