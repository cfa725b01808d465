# src/tally/runtime/structured_logging.py
from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

Json = Dict[str, Any]

# LogRecord attribute carrying log_event() fields to the formatter
FIELDS_ATTR = "tally_fields"


class JsonLinesFormatter(logging.Formatter):
    """One JSON object per record: ts_ms, level, logger, event, then the event fields.

    Records that did not come through log_event() still render, with the
    message as the event name. Values JSON cannot encode fall back to a
    sorted key=value line rather than dropping the record.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Json = {
            "ts_ms": int(record.created * 1000),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        fields = getattr(record, FIELDS_ATTR, None)
        if isinstance(fields, dict):
            for k, v in fields.items():
                payload.setdefault(k, v)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError):
            return " ".join(f"{k}={payload[k]!r}" for k in sorted(payload))


def _level_from_env() -> int:
    name = (os.environ.get("TALLY_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _installed_handler(root: logging.Logger) -> Optional[logging.Handler]:
    for h in root.handlers:
        if isinstance(h.formatter, JsonLinesFormatter):
            return h
    return None


def configure_structured_logging(stream: Any = None) -> logging.Handler:
    """Attach a JSON-lines handler to the root logger (stderr by default).

    Level comes from TALLY_LOG_LEVEL (default INFO). Calling it again only
    re-reads the level. Handlers installed by others are left alone.
    """
    level = _level_from_env()
    root = logging.getLogger()

    handler = _installed_handler(root)
    if handler is None:
        handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
        handler.setFormatter(JsonLinesFormatter())
        root.addHandler(handler)

    handler.setLevel(level)
    root.setLevel(level)
    return handler


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Log `event` with structured fields; JsonLinesFormatter renders them."""
    if logger.isEnabledFor(level):
        logger.log(level, event, extra={FIELDS_ATTR: fields})
