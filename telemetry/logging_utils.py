from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict

from dotenv import load_dotenv

from telemetry.pii import sanitize_log_payload, scrub_text

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Attributes every LogRecord carries; anything else arrived through `extra=`.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_installed = False


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        name: _jsonable(value)
        for name, value in vars(record).items()
        if name not in _STANDARD_ATTRS and not name.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    """Render records as single-line JSON with lead PII scrubbed from message and extras."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        doc: Dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": scrub_text(record.getMessage()),
        }
        doc.update(sanitize_log_payload(_record_extras(record)))
        if record.exc_info:
            doc["exc_info"] = scrub_text(self.formatException(record.exc_info))
        return json.dumps(doc, ensure_ascii=False)


def install_json_logging(level: str = LOG_LEVEL) -> None:
    """Attach the JSON handler to the root logger once per process."""
    global _installed
    if _installed:
        return
    root = logging.getLogger()
    if not root.handlers:
        stream = logging.StreamHandler()
        stream.setFormatter(JsonFormatter())
        root.addHandler(stream)
    resolved = logging.getLevelName(level)
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    _installed = True


def get_logger(name: str) -> logging.Logger:
    install_json_logging()
    return logging.getLogger(name)
