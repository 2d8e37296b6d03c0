"""Logging setup shared by the API process and the worker.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides where records go and how they look. Plain text is the default, a
JSON formatter is available for log aggregation (``LOG_JSON=true``).
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from splitscan.core.config import settings

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
}

TEXT_FORMAT = "[%(asctime)s %(levelname).3s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def setup_logging(service_name: str = "splitscan-api", level: str | None = None, json_format: bool | None = None) -> None:
    level = (level or settings.LOG_LEVEL).upper()
    json_format = settings.LOG_JSON if json_format is None else json_format

    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every OpenAI request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
