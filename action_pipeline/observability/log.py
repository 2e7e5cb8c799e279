"""
Structured logging for the Action Pipeline.

Each pipeline run binds a run id in a context variable; every log record
emitted while the run is active carries it, including records from
concurrent sibling tasks (each asyncio task copies the context).
"""

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_run_id: ContextVar[Optional[str]] = ContextVar("action_pipeline_run_id", default=None)

_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "action_id",
    "action_type",
    "parent_id",
    "opportunity_id",
    "stage",
    "status",
    "detail",
    "error",
    "attempt",
    "duration_ms",
}


def get_run_id() -> Optional[str]:
    return _run_id.get()


def bind_run_id(run_id: str) -> Token:
    return _run_id.set(run_id)


def reset_run_id(token: Token) -> None:
    _run_id.reset(token)


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "run_id", None):
            record.run_id = get_run_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "run_id": getattr(record, "run_id", None),
        }

        fields: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _BASE_RECORD_KEYS or key.startswith("_"):
                continue
            if key in _KNOWN_FIELDS:
                fields[key] = value

        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        error_value = fields.get("error")
        if isinstance(error_value, str):
            fields["error"] = error_value[:500]

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Install a single stderr handler on the root logger. Idempotent."""
    root_logger = logging.getLogger()
    if getattr(root_logger, "_action_pipeline_configured", False):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RunIdFilter())
    if json_output:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(run_id)s] %(message)s")
        )

    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())
    root_logger._action_pipeline_configured = True
