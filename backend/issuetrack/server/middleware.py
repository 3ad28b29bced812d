from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .capture import was_captured


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """
    Log exceptions escaping a route through the app's ServerCapture, then
    re-raise. Exceptions a wrapped handler already logged are passed through.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            tracker = getattr(request.app.state, "tracker", None)
            if tracker is not None and not was_captured(exc):
                await tracker.server_capture.handle_server_error(
                    exc,
                    request=request,
                    user_id=request.headers.get("x-user-id"),
                    action=f"{request.method} {request.url.path}",
                    tags=["api-route"],
                    metadata={"route": request.url.path, "method": request.method},
                )
            raise
