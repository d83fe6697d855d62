"""Logging setup for processes embedding the account engine.

Two output modes are supported:

* plain text (default) for local development, and
* single-line JSON (``ACCOUNT_STRUCTURED_LOGGING=true``) for log
  aggregators that index fields without regex parsing.

Both modes install :class:`SecretRedactionFilter`, which masks anything
shaped like a raw credential before the record is formatted.  Raw
secrets must never reach a log sink, even through an exception message
or a debugging ``extra`` payload.
"""

from __future__ import annotations

import json
import logging
import re
import traceback
from datetime import UTC, datetime
from typing import Any

from account_engine.config import Settings

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_REDACTED = "[REDACTED_API_KEY]"


def _secret_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(re.escape(prefix) + r"[A-Za-z0-9]{8,}")


class SecretRedactionFilter(logging.Filter):
    """Mask raw credentials in log messages, arguments, and tracebacks."""

    def __init__(self, prefix: str = "slxdb_live_") -> None:
        super().__init__()
        self._pattern = _secret_pattern(prefix)

    def redact(self, text: str) -> str:
        return self._pattern.sub(_REDACTED, text)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and record.exc_info[0] is not None:
            formatted = "".join(traceback.format_exception(*record.exc_info))
            record.exc_text = self.redact(formatted)
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Structured context passed via ``extra={"principal_id": ...}``.
        for key in ("principal_id", "credential_id", "period_start", "event_id"):
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        if record.exc_text:
            payload["exc_info"] = record.exc_text
        elif record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(settings: Settings) -> None:
    """Replace the root handlers according to *settings*."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler()
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    handler.addFilter(SecretRedactionFilter(settings.api_key_prefix))

    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())
    if settings.structured_logging:
        logging.getLogger(__name__).info("Structured JSON logging enabled")
