"""
Structured JSON logging for the provider layer.

Every record becomes one JSON object so provider events can be filtered by
provider id downstream. Credentials are never passed to the logger by this
package; the formatter does not try to scrub them.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from enum import Enum
from typing import TextIO

from provider_hub.exceptions import ProviderError

# Optional ``extra=`` fields copied into the JSON entry when present
_EXTRA_FIELDS = ("provider_id", "event", "correlation_id", "reason")

_PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for provider logs.

    Provider errors attached via ``exc_info`` also contribute their error code
    and retryable flag.

    Example:
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(JSONFormatter())
        >>> logger = logging.getLogger(__name__)
        >>> logger.addHandler(handler)
        >>> logger.info("Provider switched", extra={"provider_id": "groq"})
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Python logging.LogRecord

        Returns:
            JSON string with structured log data
        """
        created = datetime.fromtimestamp(record.created, UTC)
        log_entry = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value.value if isinstance(value, Enum) else value

        if record.exc_info:
            error = record.exc_info[1]
            if isinstance(error, ProviderError):
                log_entry["error_code"] = error.code.value
                log_entry["retryable"] = error.retryable
                log_entry.setdefault("provider_id", error.provider_id)
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", *, json_output: bool = True, stream: TextIO | None = None) -> None:
    """
    Configure root logging for an application embedding the provider layer.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Emit JSON objects; False uses a plain one-line format
        stream: Output stream (defaults to stdout)

    Example:
        >>> setup_logging(level="INFO")
        >>> logging.info("Provider layer started")
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # HTTP client request lines would drown provider events
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        "Logging configured", extra={"event": "logging_configured"}
    )
