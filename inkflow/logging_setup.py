"""Structured logging configuration.

Provides a JSON formatter plus ``job_id`` and ``request_id`` context variables.
The FastAPI app calls `configure_logging()` at startup; services use
`job_context(job_id)` so every record emitted while handling a shard event or
pipeline stage carries the job id without threading it through each call.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        job_id = job_id_var.get()
        if job_id:
            data["job_id"] = job_id
        rid = request_id_var.get()
        if rid:
            data["request_id"] = rid
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            data[key] = value
        return json.dumps(data, ensure_ascii=False, default=str)


def configure_logging(level: int = logging.INFO, force: bool = False) -> None:
    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    elif any(isinstance(h, logging.StreamHandler) for h in root.handlers):  # already configured
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.setLevel(level)
    root.addHandler(handler)


def set_request_id(rid: str | None) -> None:
    request_id_var.set(rid)


@contextmanager
def job_context(job_id: str | None) -> Iterator[None]:
    """Stamp ``job_id`` on every log record emitted inside the block."""
    token = job_id_var.set(job_id)
    try:
        yield
    finally:
        job_id_var.reset(token)


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "set_request_id",
    "job_context",
    "job_id_var",
    "request_id_var",
]
