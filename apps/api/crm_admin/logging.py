"""JSON logging for the CRM admin API.

Each line is one JSON object. Request and mutation context passed through
``extra=`` is kept under ``fields`` when the key is listed in ``LOG_FIELDS``;
anything else on the record is left out of the output.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from crm_admin.context import get_correlation_id
from crm_admin.core.config import get_settings


HANDLER_NAME = "crm_admin.json"
ERROR_FIELD_LIMIT = 500

LOG_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # crm
        "resource",
        "resource_id",
        "action",
        "actor_id",
        # failures
        "code",
        "error",
    }
)


def _stamp(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp(record)
        return True


def _correlated(factory: Callable[..., logging.LogRecord]) -> Callable[..., logging.LogRecord]:
    def build(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = factory(*args, **kwargs)
        _stamp(record)
        return record

    build.crm_admin_correlated = True  # type: ignore[attr-defined]
    return build


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service or get_settings().app_name

    def context_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        fields = {key: value for key, value in vars(record).items() if key in LOG_FIELDS}
        error = fields.get("error")
        if isinstance(error, str) and len(error) > ERROR_FIELD_LIMIT:
            fields["error"] = error[:ERROR_FIELD_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return fields

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "service": self.service,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": self.context_fields(record),
            },
            default=str,
        )


def _installed_handler(root: logging.Logger) -> logging.Handler | None:
    return next((handler for handler in root.handlers if handler.get_name() == HANDLER_NAME), None)


def configure_logging(level: str | None = None) -> logging.Handler:
    """Install the JSON stdout handler on the root logger.

    Calling this again returns the handler that is already installed.
    """
    root = logging.getLogger()
    existing = _installed_handler(root)
    if existing is not None:
        return existing

    level_name = (level or get_settings().log_level).upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root.handlers = [handler]
    root.setLevel(resolved)

    factory = logging.getLogRecordFactory()
    if not getattr(factory, "crm_admin_correlated", False):
        logging.setLogRecordFactory(_correlated(factory))
    return handler


def shutdown_logging() -> None:
    handler = _installed_handler(logging.getLogger())
    if handler is not None:
        handler.flush()
