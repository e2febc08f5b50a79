"""Structured JSON logger for fscrape.

Provides context-aware logging with automatic JSON formatting.

Usage:
    from fscrape.observability import get_logger, log_context

    logger = get_logger(__name__)

    with log_context(platform="reddit", session_id="3f2a..."):
        logger.info("Page committed", extra={"items": 25})
        # Output: {"timestamp": "...", "platform": "reddit", "session_id": "3f2a...", "message": "...", "items": 25}
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "fscrape"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


@dataclass
class LogContext:
    """Context for structured logging.

    Attributes are automatically included in all log messages
    within this context.
    """

    platform: str | None = None
    session_id: str | None = None
    query: str | None = None
    phase: str | None = None
    attempt: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        return {k: v for k, v in asdict(self).items() if v is not None}


# Context variable to store current log context
_log_context: contextvars.ContextVar[LogContext] = contextvars.ContextVar(
    "log_context",
    default=LogContext(),
)


class _ContextManager:
    """Context manager for setting log context."""

    def __init__(self, **kwargs: Any) -> None:
        unknown = set(kwargs) - {f.name for f in fields(LogContext)}
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")
        self.kwargs = kwargs
        self.token: contextvars.Token[LogContext] | None = None

    def __enter__(self) -> LogContext:
        current = _log_context.get()
        # Merge with current context
        merged = {**asdict(current), **self.kwargs}
        new_context = LogContext(**merged)
        self.token = _log_context.set(new_context)
        return new_context

    def __exit__(self, *args: Any) -> None:
        if self.token is not None:
            _log_context.reset(self.token)


def log_context(**kwargs: Any) -> _ContextManager:
    """Create a context manager for setting log context.

    Args:
        **kwargs: Context fields to set (platform, session_id, query, phase, attempt)

    Returns:
        Context manager that sets the context

    Example:
        with log_context(platform="hackernews", phase="fetch"):
            logger.info("Starting session")
    """
    return _ContextManager(**kwargs)


def current_context() -> LogContext:
    """Log context active in the current task."""
    return _log_context.get()


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with context support."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = _log_context.get()

        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(ctx.to_dict())
        entry.update(_record_extras(record))

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class PrettyFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        ctx = _log_context.get()

        color = self.COLORS.get(record.levelname, "") if self.use_color else ""
        reset = self.RESET if self.use_color else ""

        prefix_parts = []
        if ctx.platform:
            prefix_parts.append(f"[{ctx.platform}]")
        if ctx.session_id:
            prefix_parts.append(f"[{ctx.session_id[:8]}]")
        if ctx.phase:
            prefix_parts.append(f"[{ctx.phase}]")

        prefix = " ".join(prefix_parts)
        if prefix:
            prefix += " "

        timestamp = datetime.now().strftime("%H:%M:%S")
        level = record.levelname[:4]
        message = record.getMessage()

        extras = [f"{key}={value}" for key, value in _record_extras(record).items()]
        extra_str = " | " + ", ".join(extras) if extras else ""

        formatted = f"{timestamp} {color}{level}{reset} {prefix}{message}{extra_str}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


class _RichContextFormatter(logging.Formatter):
    """Message-only formatter for RichHandler, prefixed with the log context."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = _log_context.get()
        prefix = ""
        if ctx.session_id:
            prefix = f"[{ctx.platform or '?'}:{ctx.session_id[:8]}] "
        return prefix + record.getMessage()


# Track if logging has been set up
_logging_configured = False


def setup_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    quiet: bool = False,
    console: Console | None = None,
    force: bool = False,
) -> None:
    """Set up logging for fscrape.

    Args:
        level: Logging level (default: INFO)
        json_format: Use JSON format (default: False, use pretty format)
        quiet: Suppress all output except errors (default: False)
        console: Route output through a rich console (CLI use)
        force: Reconfigure even if logging was already set up
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    handler: logging.Handler
    if json_format:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(StructuredFormatter())
    elif console is not None:
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(_RichContextFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(PrettyFormatter(use_color=sys.stderr.isatty()))

    handler.setLevel(logging.ERROR if quiet else level)
    root.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger under the fscrape namespace
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return logging.getLogger(name)
