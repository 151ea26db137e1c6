"""
Structured logging with execution context attached to every record.

The executor sets the context once per execution and again per node; plain
``logger.info(...)`` calls anywhere below it pick up the fields without
passing ids around:

    WorkflowExecutor._drive()       -> execution_id, workflow_id
        WorkflowExecutor._execute() -> node_id, branch

Each parallel branch runs in its own asyncio task, which copies the
ContextVar on creation, so a branch can set ``branch``/``node_id`` without
leaking into its siblings.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Attributes passed through ``extra=`` that the formatters surface
_EXTRA_FIELDS = ("event", "node_id", "node_type", "latency_ms", "attempt", "model", "provider")


def strip_ansi_codes(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: base fields, execution context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line output for local runs."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def _context_prefix(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        execution_id = context.get("execution_id")
        fields = (
            ("exec", execution_id[-8:] if execution_id else None),
            ("wf", context.get("workflow_id")),
            ("node", getattr(record, "node_id", None) or context.get("node_id")),
            ("branch", context.get("branch")),
        )
        parts = [f"{label}:{value}" for label, value in fields if value]
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        event = getattr(record, "event", None)
        line = (
            f"{color}[{record.levelname:<8}]{self.RESET} "
            f"{self._context_prefix(record)}{record.getMessage()}"
        )
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure root logging once at startup (CLI entry point, runtime host, tests).

    ``format="auto"`` picks JSON when ``LOG_FORMAT=json`` or ``ENV=production``
    and the colorized human format otherwise.
    """
    if format == "auto":
        wants_json = (
            os.getenv("LOG_FORMAT", "").lower() == "json"
            or os.getenv("ENV", "development").lower() == "production"
        )
        format = "json" if wants_json else "human"

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if format == "json" else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    if format == "json":
        _route_libraries_through_root()


def _route_libraries_through_root() -> None:
    """Silence LiteLLM's own printing and send library records to the JSON handler."""
    os.environ["NO_COLOR"] = "1"
    import litellm

    litellm.suppress_debug_info = True
    for name in ("LiteLLM", "httpcore", "httpx"):
        library_logger = logging.getLogger(name)
        library_logger.handlers.clear()
        library_logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """Merge fields into the current execution context."""
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    trace_context.set(None)
