"""
Server-side capture: failures inside actions and routes, plus process-level
faults. Capture only observes. Wrapped callables re-raise what they raised,
and an uncaught exception still ends the process once it has been logged.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import os
import sys
import traceback
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from ..core.issue_store import LogErrorOptions
from ..core.levels import ErrorLevel

logger = logging.getLogger(__name__)

LogFn = Callable[[str, str, Optional[LogErrorOptions]], Awaitable[str]]

MAX_ARG_REPR = 500

# set on exceptions already logged, so an outer layer that sees them again skips them
CAPTURED_ATTR = "_issuetrack_captured"

# one set of process hooks per interpreter, whichever instance installed it
_hooks_owner: Optional["ServerCapture"] = None


def format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def serialize_args(args: tuple, kwargs: Mapping[str, Any]) -> Dict[str, Any]:
    def short(value: Any) -> str:
        text = repr(value)
        return text if len(text) <= MAX_ARG_REPR else text[:MAX_ARG_REPR] + "..."

    return {
        "args": [short(a) for a in args],
        "kwargs": {k: short(v) for k, v in kwargs.items()},
    }


def mark_captured(error: BaseException) -> None:
    try:
        setattr(error, CAPTURED_ATTR, True)
    except AttributeError:
        pass


def was_captured(error: BaseException) -> bool:
    return getattr(error, CAPTURED_ATTR, False) is True


def _timestamp() -> str:
    return datetime.utcnow().isoformat() + "Z"


class ServerCapture:
    def __init__(
        self,
        log_error: LogFn,
        *,
        production: bool = False,
        exit_process: Callable[[int], Any] = os._exit,
    ) -> None:
        self._log_error = log_error
        self.production = production
        self._exit_process = exit_process
        self._previous_excepthook = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_loop_handler = None
        self._background: Set[asyncio.Task] = set()

    # ---------- Reporting ----------

    async def handle_server_error(
        self,
        error: BaseException,
        *,
        request: Any = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        level: ErrorLevel | str = ErrorLevel.ERROR,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Log a server-side exception. Returns the issue id, or None if logging failed."""
        mark_captured(error)
        try:
            headers = self._header_context(request)
            all_tags = list(tags or []) + ["server-error"]
            if action:
                all_tags.append(f"action:{action}")

            return await self._log_error(
                type(error).__name__ or "Server Error",
                str(error),
                LogErrorOptions(
                    level=level,
                    stack=format_stack(error),
                    url=headers.get("referer"),
                    user_agent=headers.get("userAgent"),
                    user_id=user_id,
                    tags=all_tags,
                    metadata={
                        **(metadata or {}),
                        "serverSide": True,
                        "action": action,
                        "timestamp": _timestamp(),
                        "headers": headers,
                    },
                ),
            )
        except Exception:
            logger.exception("Failed to log server error")
            logger.error("Original error: %r", error)
            return None

    async def report_server_error(
        self,
        message: str,
        *,
        request: Any = None,
        level: ErrorLevel | str = ErrorLevel.ERROR,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[str]:
        """Manually record a server-side problem that is not an exception."""
        try:
            headers = self._header_context(request)
            return await self._log_error(
                "Server Report",
                message,
                LogErrorOptions(
                    level=level,
                    url=headers.get("referer"),
                    user_agent=headers.get("userAgent"),
                    user_id=user_id,
                    tags=list(tags or []) + ["server-report"],
                    metadata={
                        **(metadata or {}),
                        "serverSide": True,
                        "manualReport": True,
                        "timestamp": _timestamp(),
                    },
                ),
            )
        except Exception:
            logger.exception("Failed to report server error")
            return None

    def _header_context(self, request: Any) -> Dict[str, Any]:
        headers = getattr(request, "headers", None)
        if not headers:
            return {}
        context = {
            "userAgent": headers.get("user-agent"),
            "referer": headers.get("referer"),
        }
        if not self.production:
            context["host"] = headers.get("host")
            context["accept"] = headers.get("accept")
        return context

    # ---------- Wrappers ----------

    def with_error_handling(self, action_name: Optional[str] = None):
        """Decorator for server actions: log any exception, then re-raise it."""

        def decorator(fn):
            name = action_name or fn.__name__

            def context(args: tuple, kwargs: dict) -> Dict[str, Any]:
                return {
                    "action": name,
                    "tags": ["server-action"],
                    "metadata": {"args": None if self.production else serialize_args(args, kwargs)},
                }

            return self._wrap(fn, context)

        return decorator

    def with_api_error_handling(self, route_name: Optional[str] = None):
        """Decorator for route handlers: log any exception, then re-raise it."""

        def decorator(fn):
            def context(args: tuple, kwargs: dict) -> Dict[str, Any]:
                return {
                    "action": route_name or "api-route",
                    "tags": ["api-route"],
                    "metadata": {"route": route_name},
                }

            return self._wrap(fn, context)

        return decorator

    def _wrap(self, fn, context: Callable[[tuple, dict], Dict[str, Any]]):
        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    await self.handle_server_error(exc, **context(args, kwargs))
                    raise

            return async_wrapper

        @functools.wraps(fn)
        def sync_wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                self._run_soon(self.handle_server_error(exc, **context(args, kwargs)))
                raise

        return sync_wrapper

    def _run_soon(self, coro: Awaitable[Any]) -> None:
        """Run a logging coroutine from synchronous code."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---------- Process hooks ----------

    @property
    def hooks_installed(self) -> bool:
        return _hooks_owner is self

    def install_process_hooks(self) -> bool:
        """
        Install the uncaught-exception and unhandled-rejection hooks.
        Returns False when this process already has them.
        """
        global _hooks_owner
        if _hooks_owner is not None:
            return False
        _hooks_owner = self

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._handle_uncaught_exception

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        if self._loop is not None:
            self._previous_loop_handler = self._loop.get_exception_handler()
            self._loop.set_exception_handler(self._handle_unhandled_rejection)

        logger.info("Server error handling initialized")
        return True

    def uninstall_process_hooks(self) -> None:
        global _hooks_owner
        if _hooks_owner is not self:
            return
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
        if self._loop is not None and not self._loop.is_closed():
            self._loop.set_exception_handler(self._previous_loop_handler)
        self._previous_excepthook = None
        self._previous_loop_handler = None
        self._loop = None
        _hooks_owner = None

    def _handle_uncaught_exception(self, exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return

        logger.critical("Uncaught Exception", exc_info=(exc_type, exc, tb))
        try:
            self._run_soon(
                self._log_error(
                    "Uncaught Exception",
                    str(exc),
                    LogErrorOptions(
                        level=ErrorLevel.ERROR,
                        stack="".join(traceback.format_exception(exc_type, exc, tb)),
                        tags=["uncaught-exception", "critical"],
                        metadata={
                            "critical": True,
                            "uncaughtException": True,
                            "timestamp": _timestamp(),
                        },
                    ),
                )
            )
        except Exception:
            logger.exception("Failed to log uncaught exception")

        for handler in logging.getLogger().handlers + logging.getLogger("issuetrack").handlers:
            handler.flush()
        self._exit_process(1)

    def _handle_unhandled_rejection(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        reason = context.get("message") or "Unhandled exception in event loop"
        logger.error("Unhandled Rejection: %s", reason, exc_info=exc)

        message = str(exc) if exc is not None else reason
        try:
            task = loop.create_task(
                self._log_error(
                    "Unhandled Promise Rejection",
                    message,
                    LogErrorOptions(
                        level=ErrorLevel.ERROR,
                        stack=format_stack(exc) if exc is not None else None,
                        tags=["unhandled-rejection", "critical"],
                        metadata={
                            "critical": True,
                            "unhandledRejection": True,
                            "reason": reason,
                            "timestamp": _timestamp(),
                        },
                    ),
                )
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        except Exception:
            logger.exception("Failed to log unhandled rejection")
