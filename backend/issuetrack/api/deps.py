from typing import Optional

from fastapi import Header, Request

from ..core.tracker import ErrorTracker


def get_tracker(request: Request) -> ErrorTracker:
    return request.app.state.tracker


# Authentication is handled upstream; the acting user arrives as an opaque id.
def get_acting_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_user_id
