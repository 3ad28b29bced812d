from __future__ import annotations

import platform
import random
import shutil
import string
import sys
import time
import tracemalloc
from datetime import datetime
from typing import Any, Dict, Optional

CLIENT_VERSION = "0.1.0"

_PROCESS_STARTED_AT = time.time()
_PROCESS_STARTED_MONOTONIC = time.monotonic()


def new_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


def default_user_agent(app_name: str = "issuetrack-client") -> str:
    return (
        f"{app_name}/{CLIENT_VERSION} "
        f"Python/{platform.python_version()} "
        f"({platform.system()} {platform.release()}; {platform.machine()})"
    )


def viewport() -> str:
    size = shutil.get_terminal_size()
    return f"{size.columns}x{size.lines}"


def memory_snapshot() -> Optional[Dict[str, int]]:
    if tracemalloc.is_tracing():
        current, peak = tracemalloc.get_traced_memory()
        return {"tracedCurrentBytes": current, "tracedPeakBytes": peak}
    if sys.platform == "win32":
        return None
    import resource

    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is KiB on Linux, bytes on macOS
    factor = 1 if sys.platform == "darwin" else 1024
    return {"maxRssBytes": usage.ru_maxrss * factor}


def timing_snapshot() -> Dict[str, Any]:
    return {
        "processStartedAt": datetime.utcfromtimestamp(_PROCESS_STARTED_AT).isoformat() + "Z",
        "uptimeSeconds": round(time.monotonic() - _PROCESS_STARTED_MONOTONIC, 3),
    }


class SessionContext:
    """Context attached to every client report. The session id is fixed for the object's lifetime."""

    def __init__(
        self,
        url: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.url = url or " ".join(sys.argv) or None
        self.user_agent = user_agent or default_user_agent()
        self.session_id = session_id or new_session_id()

    def snapshot(self) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "url": self.url,
            "userAgent": self.user_agent,
            "viewport": viewport(),
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "sessionId": self.session_id,
        }
        try:
            context["performance"] = {
                "memory": memory_snapshot(),
                "timing": timing_snapshot(),
            }
        except (OSError, ValueError):
            pass
        return context
