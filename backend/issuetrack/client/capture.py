"""
Client-side capture.

ClientCapture watches a client process for failures and forwards them to
the issuetrack server:

- uncaught exceptions (sys.excepthook, threading.excepthook)
- exceptions nobody retrieved in the asyncio loop
- failing HTTP calls made through the capturing httpx transports
- ERROR log records that look like real errors
- resources that fail to load, and errors caught by a boundary

A failure inside capture is never allowed to reach the host program or to
loop back into capture.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import threading
import traceback
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Set

import httpx

from .context import SessionContext
from .forwarder import ErrorReport, ReportForwarder

logger = logging.getLogger(__name__)

CLIENT_LOGGER_PREFIX = "issuetrack.client"
RECURSION_GUARD = ("Failed to log error", "Error caught by boundary")


def _stack_of(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


class HookRegistry:
    """Thin wrapper over the interpreter's hook points, swappable in tests."""

    def set_excepthook(self, hook):
        previous = sys.excepthook
        sys.excepthook = hook
        return previous

    def set_threading_excepthook(self, hook):
        previous = threading.excepthook
        threading.excepthook = hook
        return previous

    def set_loop_exception_handler(self, loop: asyncio.AbstractEventLoop, handler):
        previous = loop.get_exception_handler()
        loop.set_exception_handler(handler)
        return previous

    def add_logging_handler(self, handler: logging.Handler) -> None:
        logging.getLogger().addHandler(handler)

    def remove_logging_handler(self, handler: logging.Handler) -> None:
        logging.getLogger().removeHandler(handler)


class ConsoleErrorHandler(logging.Handler):
    """Forwards ERROR records that carry an exception or mention 'error'."""

    def __init__(self, capture: "ClientCapture") -> None:
        super().__init__(level=logging.ERROR)
        self._capture = capture
        self._local = threading.local()

    def should_report(self, record: logging.LogRecord, message: str) -> bool:
        if record.name.startswith(CLIENT_LOGGER_PREFIX):
            return False
        if not (record.exc_info or "error" in message.lower()):
            return False
        return not any(marker in message for marker in RECURSION_GUARD)

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self._local, "active", False):
            return
        self._local.active = True
        try:
            message = record.getMessage()
            if not self.should_report(record, message):
                return
            exc = record.exc_info[1] if record.exc_info else None
            self._capture.report(
                "Console Error",
                message,
                level="error",
                stack=_stack_of(exc) if exc is not None else None,
                tags=["console-error"],
                metadata={"logger": record.name, "consoleError": True},
            )
        except Exception:
            # reporting a log record must never raise into the code that logged it
            self.handleError(record)
        finally:
            self._local.active = False


class CapturingTransport(httpx.BaseTransport):
    """Wraps a sync httpx transport and reports failed requests."""

    def __init__(self, capture: "ClientCapture", inner: Optional[httpx.BaseTransport] = None) -> None:
        self._capture = capture
        self._inner = inner or httpx.HTTPTransport()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        try:
            response = self._inner.handle_request(request)
        except httpx.TransportError as exc:
            self._capture.report_network_failure(request, exc, client_tag="xhr")
            raise
        if response.status_code >= 400:
            self._capture.report_http_status(request, response, client_tag="xhr")
        return response

    def close(self) -> None:
        self._inner.close()


class AsyncCapturingTransport(httpx.AsyncBaseTransport):
    """Wraps an async httpx transport and reports failed requests."""

    def __init__(self, capture: "ClientCapture", inner: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._capture = capture
        self._inner = inner or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._inner.handle_async_request(request)
        except httpx.TransportError as exc:
            await asyncio.to_thread(self._capture.report_network_failure, request, exc, "fetch")
            raise
        if response.status_code >= 400:
            await asyncio.to_thread(self._capture.report_http_status, request, response, "fetch")
        return response

    async def aclose(self) -> None:
        await self._inner.aclose()


class ClientCapture:
    def __init__(
        self,
        forwarder: ReportForwarder,
        *,
        session: Optional[SessionContext] = None,
        user_id: Optional[str] = None,
        hooks: Optional[HookRegistry] = None,
    ) -> None:
        self.forwarder = forwarder
        self.session = session or SessionContext()
        self.user_id = user_id
        self.hooks = hooks or HookRegistry()
        self.console_handler = ConsoleErrorHandler(self)

        self._initialized = False
        self._previous_excepthook = None
        self._previous_threading_excepthook = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_loop_handler = None
        self._in_flight: Set[asyncio.Future] = set()

    # ---------- Installation ----------

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """Install every hook once. Later calls do nothing and return False."""
        if self._initialized:
            return False
        self._initialized = True

        self._previous_excepthook = self.hooks.set_excepthook(self._on_uncaught_exception)
        self._previous_threading_excepthook = self.hooks.set_threading_excepthook(self._on_thread_exception)
        self.hooks.add_logging_handler(self.console_handler)

        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            self._loop = loop
            self._previous_loop_handler = self.hooks.set_loop_exception_handler(loop, self._on_loop_exception)

        self.forwarder.flush()
        logger.info("Client error tracking initialized (session %s)", self.session.session_id)
        return True

    def shutdown(self) -> None:
        if not self._initialized:
            return
        self.hooks.set_excepthook(self._previous_excepthook)
        self.hooks.set_threading_excepthook(self._previous_threading_excepthook)
        self.hooks.remove_logging_handler(self.console_handler)
        if self._loop is not None and not self._loop.is_closed():
            self.hooks.set_loop_exception_handler(self._loop, self._previous_loop_handler)
        self._loop = None
        self._initialized = False

    # ---------- Reporting ----------

    def report(
        self,
        title: str,
        message: str,
        *,
        level: str = "error",
        stack: Optional[str] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        fingerprint: Optional[str] = None,
    ) -> Optional[str]:
        """Build a report with the session context and forward it. Never raises."""
        try:
            context = self.session.snapshot()
            report = ErrorReport(
                title=title,
                message=message,
                level=level,
                url=context.pop("url"),
                user_agent=context.pop("userAgent"),
                user_id=self.user_id,
                tags=list(tags or []),
                metadata={**context, **(metadata or {})},
                stack=stack,
                fingerprint=fingerprint,
            )
            return self._dispatch(report)
        except Exception:
            logger.exception("Failed to log error from client capture")
            return None

    def _dispatch(self, report: ErrorReport) -> Optional[str]:
        """
        Forward right away when called off the event loop. On the loop thread
        the blocking HTTP post goes to the default executor instead and no
        issue id is returned.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return self.forwarder.send(report)
        future = loop.run_in_executor(None, self._forward, report)
        self._in_flight.add(future)
        future.add_done_callback(self._in_flight.discard)
        return None

    def _forward(self, report: ErrorReport) -> Optional[str]:
        try:
            return self.forwarder.send(report)
        except Exception:
            logger.exception("Failed to log error from client capture")
            return None

    async def drain(self) -> None:
        """Wait for reports handed to the executor from the event loop."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight))

    def log_error(self, title: str, message: str, **kwargs) -> Optional[str]:
        return self.report(title, message, **{**kwargs, "level": "error"})

    def log_warning(self, title: str, message: str, **kwargs) -> Optional[str]:
        return self.report(title, message, **{**kwargs, "level": "warning"})

    def log_info(self, title: str, message: str, **kwargs) -> Optional[str]:
        return self.report(title, message, **{**kwargs, "level": "info"})

    def log_debug(self, title: str, message: str, **kwargs) -> Optional[str]:
        return self.report(title, message, **{**kwargs, "level": "debug"})

    def report_error(
        self,
        error: BaseException | str,
        *,
        level: str = "error",
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Manual reporting entrypoint for application code."""
        if isinstance(error, BaseException):
            title, message, stack = type(error).__name__, str(error), _stack_of(error)
        else:
            title, message, stack = "Manual Report", error, None
        return self.report(
            title,
            message,
            level=level,
            stack=stack,
            tags=list(tags or []) + ["manual-report"],
            metadata={**(metadata or {}), "manualReport": True},
        )

    def flush_pending(self) -> int:
        return self.forwarder.flush()

    # ---------- Hook callbacks ----------

    def _on_uncaught_exception(self, exc_type, exc, tb) -> None:
        if not issubclass(exc_type, KeyboardInterrupt):
            self.report(
                exc_type.__name__,
                str(exc) or exc_type.__name__,
                stack="".join(traceback.format_exception(exc_type, exc, tb)),
                tags=["uncaught-error"],
                metadata=self._frame_metadata(tb),
            )
        previous = self._previous_excepthook or sys.__excepthook__
        previous(exc_type, exc, tb)

    def _on_thread_exception(self, args) -> None:
        if args.exc_type is not SystemExit:
            metadata = self._frame_metadata(args.exc_traceback)
            metadata["thread"] = args.thread.name if args.thread else None
            self.report(
                args.exc_type.__name__,
                str(args.exc_value) or args.exc_type.__name__,
                stack="".join(traceback.format_exception(args.exc_type, args.exc_value, args.exc_traceback)),
                tags=["uncaught-error", "thread"],
                metadata=metadata,
            )
        previous = self._previous_threading_excepthook or threading.__excepthook__
        previous(args)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        reason = context.get("message") or "Unhandled exception in event loop"
        self.report(
            "Unhandled Promise Rejection",
            str(exc) if exc is not None else reason,
            stack=_stack_of(exc) if exc is not None else None,
            tags=["unhandled-promise"],
            metadata={"promiseRejection": True, "reason": reason},
        )
        if self._previous_loop_handler is not None:
            self._previous_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    @staticmethod
    def _frame_metadata(tb) -> Dict[str, Any]:
        if tb is None:
            return {}
        frame = traceback.extract_tb(tb)[-1]
        return {"filename": frame.filename, "lineno": frame.lineno, "function": frame.name}

    # ---------- Network ----------

    def transport(self, inner: Optional[httpx.BaseTransport] = None) -> CapturingTransport:
        """Transport for httpx.Client that reports failing requests."""
        return CapturingTransport(self, inner)

    def async_transport(self, inner: Optional[httpx.AsyncBaseTransport] = None) -> AsyncCapturingTransport:
        """Transport for httpx.AsyncClient that reports failing requests."""
        return AsyncCapturingTransport(self, inner)

    def report_http_status(self, request: httpx.Request, response: httpx.Response, client_tag: str) -> Optional[str]:
        status = response.status_code
        return self.report(
            "Network Request Failed",
            f"HTTP {status} {response.reason_phrase}: {request.url}",
            level="error" if status >= 500 else "warning",
            tags=["network-error", client_tag],
            metadata={
                "httpStatus": status,
                "httpStatusText": response.reason_phrase,
                "requestUrl": str(request.url),
                "requestMethod": request.method,
                "networkError": True,
            },
        )

    def report_network_failure(self, request: httpx.Request, exc: Exception, client_tag: str) -> Optional[str]:
        return self.report(
            "Network Request Failed",
            f"Network error: {exc}: {request.url}",
            level="error",
            stack=_stack_of(exc),
            tags=["network-error", client_tag, "network-failure"],
            metadata={
                "requestUrl": str(request.url),
                "requestMethod": request.method,
                "networkFailure": True,
                "errorType": type(exc).__name__,
            },
        )

    # ---------- Resources and boundaries ----------

    @contextmanager
    def watch_resource(self, kind: str, resource_url: str) -> Iterator[None]:
        """Report a resource (file, image, script...) that fails to load, then re-raise."""
        try:
            yield
        except (OSError, httpx.HTTPError) as exc:
            self.report(
                "Resource Loading Error",
                f"Failed to load {kind}: {resource_url}",
                level="warning",
                tags=["resource-error", kind.lower()],
                metadata={"resourceUrl": resource_url, "kind": kind, "reason": str(exc), "resourceError": True},
            )
            raise

    @contextmanager
    def boundary(self, component: str, *, reraise: bool = False) -> Iterator[None]:
        """Contain errors raised by one component: report them and, by default, swallow them."""
        try:
            yield
        except Exception as exc:
            logger.error("Error caught by boundary in %s: %s", component, exc)
            self.report(
                type(exc).__name__,
                str(exc),
                stack=_stack_of(exc),
                tags=["error-boundary"],
                metadata={"component": component, "errorBoundary": True},
            )
            if reraise:
                raise
