"""
Structured logging setup.

Human-readable lines for operators at a terminal, JSON lines for
production log shipping.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Record attributes set by ``extra=`` that are copied into JSON output
_CONTEXT_FIELDS = ("correlation_id", "provider", "tenant_id", "client_id", "run_id", "elapsed_ms")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "context") and isinstance(record.context, dict):
            log_entry.update(record.context)

        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    loggers: Optional[List[str]] = None,
) -> None:
    """Configure logging for the engine.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Emit JSON lines instead of human-readable text
        loggers: Extra logger names to route to the same handler
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # httpx logs every request at INFO; keep that out of operator output
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    for name in loggers or []:
        named = logging.getLogger(name)
        named.setLevel(log_level)
        named.handlers = [handler]
        named.propagate = False

    logging.getLogger(__name__).debug("Logging configured (level=%s, json=%s)", level, json_format)


def log_with_context(logger: logging.Logger, level: str, message: str, **context) -> None:
    """Log a message with structured context fields.

    Usage:
        log_with_context(logger, "info", "Run finished", correlation_id="abc")
    """
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(message, extra={"context": context})
