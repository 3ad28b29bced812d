from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..core.tracker import ErrorTracker
from .deps import get_tracker

router = APIRouter(tags=["status"])


class HealthResponse(BaseModel):
    status: str
    time: str
    environment: str
    handoff_running: bool


@router.get("/health", response_model=HealthResponse)
def health(tracker: ErrorTracker = Depends(get_tracker)):
    return HealthResponse(
        status="ok",
        time=datetime.utcnow().isoformat() + "Z",
        environment=tracker.settings.environment,
        handoff_running=tracker.handoff.running,
    )
