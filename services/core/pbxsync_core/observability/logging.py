"""Structured logging for PBX sync services.

Every call takes keyword fields, and optionally a ``SyncContext``, so a
tenant's cycle can be followed across the worker's JSON log lines:

    logger = get_logger(__name__)
    logger.info("Batch checkpointed", context=context, cursor=cursor)
"""

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the caller's fields at top level."""

    def __init__(self, service_name: str = "pbxsync"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service_name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_FIELDS and not key.startswith("_"):
                entry[key] = value
        return json.dumps(entry, default=str)


@dataclass
class SyncContext:
    """Which tenant, ledger kind and cycle a log line belongs to."""

    tenant_id: Optional[int] = None
    sync_kind: Optional[str] = None
    cycle_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        fields = {"tenant_id": self.tenant_id, "sync_kind": self.sync_kind, "cycle_id": self.cycle_id}
        return {k: v for k, v in fields.items() if v is not None}


class StructuredLogger:
    """``logging.Logger`` wrapper that turns keyword arguments into fields."""

    def __init__(self, name: str):
        self.name = name
        self._logger = logging.getLogger(name)

    def _log(
        self,
        level: int,
        msg: str,
        context: Optional[SyncContext],
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        if context is not None:
            fields = {**context.to_dict(), **fields}
        self._logger.log(level, msg, exc_info=exc_info, extra=fields)

    def debug(self, msg: str, context: Optional[SyncContext] = None, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, context, **fields)

    def info(self, msg: str, context: Optional[SyncContext] = None, **fields: Any) -> None:
        self._log(logging.INFO, msg, context, **fields)

    def warning(self, msg: str, context: Optional[SyncContext] = None, **fields: Any) -> None:
        self._log(logging.WARNING, msg, context, **fields)

    def error(
        self, msg: str, context: Optional[SyncContext] = None, exc_info: bool = False, **fields: Any
    ) -> None:
        self._log(logging.ERROR, msg, context, exc_info=exc_info, **fields)


@lru_cache(maxsize=None)
def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def configure_logging(level: str = "INFO", json_format: bool = True, service_name: str = "pbxsync") -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JsonFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    # paramiko logs every channel open at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
