"""
Structured Logging — Per-subsystem structured logging with JSON output.

Provides contextual logging with subsystem tags and per-message correlation
IDs (request, account, chat) set by the message pipeline.
"""

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from enum import Enum
from typing import Any, Dict

# Context variables for per-message correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
account_id_var: ContextVar[str] = ContextVar("account_id", default="")
chat_id_var: ContextVar[str] = ContextVar("chat_id", default="")


class Subsystem(str, Enum):
    PIPELINE = "pipeline"
    API = "api"


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "subsystem": getattr(record, "subsystem", "general"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        req_id = request_id_var.get("")
        if req_id:
            log_entry["request_id"] = req_id
        acct_id = account_id_var.get("")
        if acct_id:
            log_entry["account_id"] = acct_id
        chat_id = chat_id_var.get("")
        if chat_id:
            log_entry["chat_id"] = chat_id

        extra = getattr(record, "extra_data", None)
        if extra:
            log_entry["data"] = extra

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


class SubsystemLogger:
    """Logger wrapper that adds subsystem context."""

    def __init__(self, subsystem: Subsystem, logger: logging.Logger):
        self._subsystem = subsystem
        self._logger = logger

    def _log(self, level: int, msg: str, extra_data: Any = None, **kwargs):
        extra = {"subsystem": self._subsystem.value}
        if extra_data:
            extra["extra_data"] = extra_data
        self._logger.log(level, msg, extra=extra, **kwargs)

    def debug(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.DEBUG, msg, data, **kwargs)

    def info(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.INFO, msg, data, **kwargs)

    def warning(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.WARNING, msg, data, **kwargs)

    def error(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.ERROR, msg, data, **kwargs)

    def exception(self, msg: str, data: Any = None, **kwargs):
        self._log(logging.ERROR, msg, data, exc_info=True, **kwargs)


# ── Logger Registry ──
_loggers: Dict[str, SubsystemLogger] = {}
_configured = False


def get_subsystem_logger(subsystem: Subsystem) -> SubsystemLogger:
    """Get a structured logger for a subsystem."""
    key = subsystem.value
    if key not in _loggers:
        logger = logging.getLogger(f"clixen.{key}")
        _loggers[key] = SubsystemLogger(subsystem, logger)
    return _loggers[key]


def configure_logging(json_output: bool = True, level: str = "INFO") -> None:
    """Install a stdout handler on the `clixen` logger tree."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    root = logging.getLogger("clixen")
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    _configured = True


def set_request_context(request_id: str = "", account_id: str = "", chat_id: str = ""):
    """Set context variables for the current message."""
    if request_id:
        request_id_var.set(request_id)
    if account_id:
        account_id_var.set(account_id)
    if chat_id:
        chat_id_var.set(chat_id)


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())[:12]


# ── Convenience loggers ──
pipeline_log = get_subsystem_logger(Subsystem.PIPELINE)
api_log = get_subsystem_logger(Subsystem.API)
