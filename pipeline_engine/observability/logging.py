"""
Log records tagged with the run and node they belong to.

The scheduler stores run_id/graph_id in a ContextVar when a run begins, and
each node worker adds node_id/attempt on top. asyncio copies the context into
every task it creates, so concurrent workers never see each other's tags, and
a plain logger.info() inside an executor is attributed to the right node.

Two renderings are provided: one JSON object per line for log shippers, and
a short colored line for terminals.
"""

import json
import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TextIO

_context: ContextVar[dict[str, Any] | None] = ContextVar("pipeline_trace", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# Record attributes (passed via extra=) that are worth keeping in JSON output
_EXTRA_FIELDS = ("node_id", "attempt", "latency_ms", "cache_hit", "status")

_LEVEL_COLORS = dict(
    zip(
        ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        (f"\x1b[{code}m" for code in (36, 32, 33, 31, 35)),
    )
)
_RESET = "\x1b[0m"


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


def _current() -> dict[str, Any]:
    return _context.get() or {}


class StructuredFormatter(logging.Formatter):
    """One JSON document per record: base fields, trace tags, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **_current(),
        }

        event = getattr(record, "event", None)
        if event is not None:
            entry["event"] = strip_ansi_codes(event) if isinstance(event, str) else event

        entry.update(
            (field, getattr(record, field))
            for field in _EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )

        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Terminal output: `[LEVEL   ] [run:xxxxxxxx | node:id] message`."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _tags(self) -> str:
        context = _current()
        tags = []
        if context.get("run_id"):
            tags.append(f"run:{context['run_id'][-8:]}")
        if context.get("node_id"):
            node = f"node:{context['node_id']}"
            if context.get("attempt", 1) > 1:
                node += f"#{context['attempt']}"
            tags.append(node)
        return f"[{' | '.join(tags)}] " if tags else ""

    def format(self, record: logging.LogRecord) -> str:
        level = f"[{record.levelname:<8}]"
        if self.use_color:
            level = f"{_LEVEL_COLORS.get(record.levelname, '')}{level}{_RESET}"

        line = f"{level} {self._tags()}{record.getMessage()}"
        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",
    stream: TextIO | None = None,
) -> None:
    """
    Install a single root handler for the process.

    Args:
        level: Standard level name, case-insensitive.
        format: "json", "human" or "auto". Auto picks JSON when LOG_FORMAT=json
            or ENV=production.
        stream: Destination, stderr by default.
    """
    stream = stream or sys.stderr
    if _resolve_format(format) == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        use_color = not os.getenv("NO_COLOR") and getattr(stream, "isatty", lambda: False)()
        formatter = HumanReadableFormatter(use_color=use_color)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def set_trace_context(**fields: Any) -> None:
    """Add fields to the current task's trace tags, overriding existing keys."""
    _context.set({**_current(), **fields})


def get_trace_context() -> dict:
    return dict(_current())


def clear_trace_context() -> None:
    _context.set(None)


@contextmanager
def trace_scope(**fields: Any) -> Iterator[None]:
    """Tag records with `fields` inside the block, then restore the prior tags."""
    token = _context.set({**_current(), **fields})
    try:
        yield
    finally:
        _context.reset(token)
