from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

ERRORS_ENDPOINT = "/api/errors"
PENDING_LIMIT = 10


@dataclass
class ErrorReport:
    title: str
    message: str
    level: str = "error"
    url: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack: Optional[str] = None
    fingerprint: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class ReportForwarder:
    """
    Posts reports to the issuetrack server.

    Reports that cannot be delivered are kept in a small queue (oldest
    dropped first) and re-sent before the next report that gets through.
    The client used here is never instrumented, so forwarding failures
    cannot feed back into capture.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        pending_limit: int = PENDING_LIMIT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.pending: Deque[ErrorReport] = deque(maxlen=pending_limit)
        self._flush_lock = threading.Lock()
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def _post(self, report: ErrorReport) -> str:
        resp = self._client.post(ERRORS_ENDPOINT, json=report.to_payload())
        resp.raise_for_status()
        return resp.json()["id"]

    def send(self, report: ErrorReport) -> Optional[str]:
        """Forward one report; returns the issue id or None when it was queued instead."""
        try:
            issue_id = self._post(report)
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.warning("Failed to log error via server, queued for retry: %s", exc)
            self.pending.append(report)
            return None

        if self.pending:
            self.flush()
        return issue_id

    def flush(self) -> int:
        """Re-send queued reports in order; stops at the first one that still fails."""
        sent = 0
        # reports may be forwarded from worker threads; one flush at a time
        with self._flush_lock:
            while self.pending:
                report = self.pending[0]
                try:
                    self._post(report)
                except (httpx.HTTPError, ValueError, KeyError) as exc:
                    logger.debug("Pending report still undeliverable: %s", exc)
                    break
                self.pending.popleft()
                sent += 1
        return sent

    def close(self) -> None:
        self._client.close()
