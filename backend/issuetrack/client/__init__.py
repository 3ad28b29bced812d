from typing import Optional

from ..config import settings
from .capture import ClientCapture, HookRegistry
from .context import SessionContext
from .forwarder import ErrorReport, ReportForwarder


def create_client_capture(
    base_url: Optional[str] = None,
    *,
    url: Optional[str] = None,
    user_id: Optional[str] = None,
) -> ClientCapture:
    """Build a ClientCapture pointed at the issuetrack server; call init() to install it."""
    forwarder = ReportForwarder(base_url or settings.api_base_url)
    return ClientCapture(forwarder, session=SessionContext(url=url), user_id=user_id)


__all__ = [
    "ClientCapture",
    "HookRegistry",
    "SessionContext",
    "ErrorReport",
    "ReportForwarder",
    "create_client_capture",
]
