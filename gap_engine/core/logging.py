"""Log formatting for the engine: one readable line plus JSON extras."""

import json
import logging
import sys
from typing import Any

ROOT_LOGGER_NAME = "gap_engine"

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.NOTSET, "", 0, "", None, None))) | {
    "message",
    "asctime",
}


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Fields passed via ``extra={...}`` on the logging call."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class JSONExtrasFormatter(logging.Formatter):
    """``timestamp | LEVEL | logger | message`` followed by extras as JSON.

    Example:
        2026-01-15 10:30:45 | WARNING  | gap_engine.services.gaps.resolver | Keyword gap tier rejected, falling through {"tier": "direct", "reason": "coverage_shortfall"}
    """

    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = None

    def format(self, record: logging.LogRecord) -> str:
        line = " | ".join(
            (
                self.formatTime(record, self.datefmt),
                f"{record.levelname:<8}",
                record.name,
                record.getMessage(),
            )
        )

        extras = record_extras(record)
        if extras:
            line = f"{line} {json.dumps(extras, default=str, ensure_ascii=False)}"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        elif record.stack_info:
            line = f"{line}\n{self.formatStack(record.stack_info)}"
        return line


def setup_logging(debug: bool = False) -> logging.Logger:
    """Send ``gap_engine`` logs to stdout; repeat calls only adjust the level."""
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONExtrasFormatter())
        logger.addHandler(handler)
        logger.propagate = False

    return logger
