"""
Structured logging with structlog.

Every record, whether it comes from structlog or from a plain
``logging.getLogger(__name__).info(..., extra={...})`` call, is rendered as
one JSON line carrying the service name, version, the request/correlation
ids of the HTTP or WebSocket call that produced it, and the meter session
being billed. Values under secret-looking keys (Stripe keys, the validator
key, bearer tokens) are masked before rendering.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from contextvars import ContextVar
from typing import Optional

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
meter_session_var: ContextVar[str | None] = ContextVar("meter_session", default=None)

APP_VERSION = "0.4.0"
SERVICE_NAME = "creditledger"

_CONTEXT_FIELDS = (
    ("request_id", request_id_var),
    ("correlation_id", correlation_id_var),
    ("meter_session", meter_session_var),
)

_SECRET_KEY = re.compile(r"(secret|private_key|password|authorization|(^|_)token$)", re.IGNORECASE)
REDACTED = "[REDACTED]"

NOISY_LOGGERS = ("httpcore", "httpx", "urllib3", "asyncio", "web3", "stripe")

_startup_time: float = time.time()


def get_uptime_s() -> float:
    return time.time() - _startup_time


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION
    for key, var in _CONTEXT_FIELDS:
        value = var.get(None)
        if value:
            event_dict[key] = value
    return event_dict


def _redact_secrets(logger_name: str, method_name: str, event_dict: dict) -> dict:
    for key in list(event_dict):
        if key != "event" and _SECRET_KEY.search(key) and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].lower()
    return event_dict


def _file_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> Optional[logging.Handler]:
    try:
        os.makedirs(log_dir, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError:
        # Unwritable log dir: stderr only
        return None


def setup_logging(
    log_level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_file: str = "creditledger.jsonl",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Route stdlib and structlog records through one JSON formatter.

    Safe to call more than once; the root logger's handlers are replaced.
    """
    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        _inject_context,
        _redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        # ExtraAdder lifts stdlib ``extra=`` fields into the event dict
        foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *pre_chain],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_dir:
        file_handler = _file_handler(log_dir, log_file, max_bytes, backup_count)
        if file_handler is not None:
            handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
