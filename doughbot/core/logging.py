"""
Structured Logging Module with Trace IDs
-----------------------------------------
Structured logging on top of loguru. Every record carries the current trace
ID, monitoring cycle number and loop phase when they are set, so a single
monitoring cycle can be followed from balance fetch to swap receipt.
"""

import contextvars
import functools
import json
import sys
import uuid
from typing import Any, Callable, Optional, TypeVar, cast

from loguru import logger

# Context variables for structured logging
trace_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "trace_id", default=None
)
cycle_ctx: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar("cycle", default=None)
phase_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("phase", default=None)

F = TypeVar("F", bound=Callable[..., Any])

CONTEXT_FIELDS = ("trace_id", "cycle", "phase")


def generate_trace_id() -> str:
    """Generate a short unique trace ID.

    Returns:
        str: UUID-based trace ID in short format (first 8 chars)
    """
    return str(uuid.uuid4())[:8]


def get_trace_id() -> Optional[str]:
    return trace_id_ctx.get()


def set_trace_id(trace_id: Optional[str]) -> None:
    trace_id_ctx.set(trace_id)


def get_cycle() -> Optional[int]:
    return cycle_ctx.get()


def set_cycle(cycle: Optional[int]) -> None:
    cycle_ctx.set(cycle)


def get_phase() -> Optional[str]:
    return phase_ctx.get()


def set_phase(phase: Optional[str]) -> None:
    phase_ctx.set(phase)


def get_context() -> dict[str, Any]:
    """Get all current context values as a dictionary."""
    return {
        "trace_id": get_trace_id(),
        "cycle": get_cycle(),
        "phase": get_phase(),
    }


class StructuredLogger:
    """
    Wrapper for loguru logger with automatic context injection.

    Binds trace ID, cycle number and loop phase to every message.
    """

    def __init__(self) -> None:
        self._logger = logger

    def _bind_context(self) -> Any:
        context = {k: v for k, v in get_context().items() if v is not None}
        # Keep the caller's frame as the record origin, not this wrapper
        bound = self._logger.bind(**context) if context else self._logger
        return bound.opt(depth=2)

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log("debug", message, *args, **kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log("info", message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log("warning", message, *args, **kwargs)

    def error(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log("error", message, *args, **kwargs)

    def success(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log("success", message, *args, **kwargs)

    def critical(self, message: str, *args: Any, **kwargs: Any) -> None:
        self._log("critical", message, *args, **kwargs)

    def _log(self, level: str, message: str, *args: Any, **kwargs: Any) -> None:
        getattr(self._bind_context(), level)(message, *args, **kwargs)


def with_trace_id(func: F) -> F:
    """
    Decorator to run a function under a fresh trace ID.

    The trace ID persists through all nested calls and is cleared when the
    function returns.

    Example:
        @with_trace_id
        def run_cycle(self) -> None:
            log.info("Polling balance")
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        token = trace_id_ctx.set(generate_trace_id())
        try:
            return func(*args, **kwargs)
        finally:
            trace_id_ctx.reset(token)

    return cast(F, wrapper)


def _serialize_record(record: dict[str, Any]) -> str:
    log_entry = {
        "time": record["time"].strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
        "level": record["level"].name,
        "message": record["message"],
        "module": record["module"],
        "function": record["function"],
        "line": record["line"],
    }

    extra = record.get("extra", {})
    for field in CONTEXT_FIELDS:
        if extra.get(field) is not None:
            log_entry[field] = extra[field]

    if record.get("exception"):
        exc = record["exception"]
        log_entry["exception"] = {
            "type": exc.type.__name__ if exc.type else None,
            "value": str(exc.value) if exc.value else None,
        }

    return json.dumps(log_entry, default=str)


def json_formatter(record: dict[str, Any]) -> str:
    """
    Format a log record as a single JSON line.

    loguru formats the returned template again, so the serialized entry is
    stashed in extra and referenced rather than returned verbatim.
    """
    record["extra"]["_json"] = _serialize_record(record)
    return "{extra[_json]}\n"


def human_readable_formatter(record: dict[str, Any]) -> str:
    """Format a log record in colored human-readable form with context."""
    fmt = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level>"

    extra = record.get("extra", {})
    if extra.get("trace_id"):
        fmt += " | <cyan>trace={extra[trace_id]}</cyan>"
    if extra.get("cycle") is not None:
        fmt += " | <yellow>cycle={extra[cycle]}</yellow>"
    if extra.get("phase"):
        fmt += " | <blue>{extra[phase]}</blue>"

    fmt += " | <level>{message}</level>\n"

    if record.get("exception"):
        fmt += "{exception}\n"

    return fmt


def inject_context(record: dict[str, Any]) -> None:
    """loguru patcher: add the current trace ID, cycle and phase to any record.

    Covers modules that log through the plain loguru logger; values bound
    explicitly on the record win.
    """
    extra = record["extra"]
    for key, value in get_context().items():
        if value is not None:
            extra.setdefault(key, value)


def configure_logging(
    level: str = "INFO",
    format: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Console output format - "human" or "json"
        log_file: Optional file path; file output is always JSON

    Example:
        configure_logging(level="DEBUG", format="human")
        configure_logging(level="INFO", format="json", log_file="logs/agent.log")
    """
    logger.remove()
    logger.configure(patcher=inject_context)

    json_output = format == "json"
    logger.add(
        sys.stderr,
        level=level,
        format=json_formatter if json_output else human_readable_formatter,
        colorize=not json_output,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        logger.add(
            log_file,
            level=level,
            format=json_formatter,
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            backtrace=True,
            diagnose=False,
        )


# Global structured logger instance
log = StructuredLogger()


def log_transaction(kind: str, tx_hash: str, **extra: Any) -> None:
    """Log a confirmed transaction with structured data."""
    details = " ".join(f"{k}={v}" for k, v in extra.items())
    log.success("Transaction confirmed: {} {} {}", kind, tx_hash, details)


def log_error_with_context(error: Exception, context: dict[str, Any]) -> None:
    """Log an error together with the loop context it occurred in."""
    log.error(
        "Error occurred: {} | Context: {}",
        str(error),
        json.dumps(context, default=str),
    )
