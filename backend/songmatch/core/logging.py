from __future__ import annotations

import logging
import sys
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "songmatch"

# third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "redis", "aiosqlite")


class MatchLogFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record, tagged with the service and environment."""

    def __init__(self, *args: Any, environment: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.environment = environment

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("level"):
            log_record["level"] = record.levelname
        log_record["service"] = SERVICE_NAME
        if self.environment:
            log_record["environment"] = self.environment
        if record.exc_info and not log_record.get("exc_info"):
            log_record["exc_info"] = self.formatException(record.exc_info)


def setup_logging(level: str = "INFO", *, environment: str | None = None) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(MatchLogFormatter("%(asctime)s %(level)s %(name)s %(message)s", environment=environment))

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
