"""Logging setup and operator-facing diagnostics.

All progress and diagnostics go through stdlib logging. The default
handler renders records as colored, categorized lines
(``[INFO]``, ``[SUCCESS]``, ``[WARN]``, ``[ERROR]``); ``--log-json``
swaps in a structured JSON formatter for CI logs. Tables and summaries
that are program output rather than diagnostics are written with
``click.echo``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

import click

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_LEVEL_STYLES: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("DEBUG", "white"),
    logging.INFO: ("INFO", "blue"),
    SUCCESS: ("SUCCESS", "green"),
    logging.WARNING: ("WARN", "yellow"),
    logging.ERROR: ("ERROR", "red"),
    logging.CRITICAL: ("ERROR", "red"),
}

# Attributes every LogRecord has; anything else came in through ``extra``
_RESERVED_RECORD_KEYS = frozenset(
    (
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
    )
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_KEYS}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored ``[LEVEL] message`` lines, with the remediation hint if any."""

    def __init__(self, color: bool = True) -> None:
        super().__init__()
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        tag, fg = _LEVEL_STYLES.get(record.levelno, (record.levelname, "white"))
        prefix = f"[{tag}]"
        if self._color:
            prefix = click.style(prefix, fg=fg, bold=record.levelno >= logging.WARNING)

        lines = [f"{prefix} {record.getMessage()}"]

        remediation = getattr(record, "remediation", None)
        if remediation:
            lines.append(f"  Try: {remediation}")

        if record.exc_info and record.levelno <= logging.DEBUG:
            lines.append(self.formatException(record.exc_info))

        return "\n".join(lines)


def setup_logging(verbose: bool = False, json_output: bool = False) -> None:
    """Install the root handler.

    Args:
        verbose: Emit DEBUG records (Terraform command lines, poll attempts).
        json_output: Use the JSON formatter instead of colored lines.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from the SDKs
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def log_success(logger: logging.Logger, message: str, **extra: Any) -> None:
    """Log at the SUCCESS level."""
    logger.log(SUCCESS, message, extra=extra or None)


def banner(title: str, width: int = 46) -> None:
    """Print a section banner to stdout."""
    rule = "=" * width
    click.echo("")
    click.echo(rule)
    click.echo(f"  {title}")
    click.echo(rule)
    click.echo("")
