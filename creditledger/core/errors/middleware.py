"""
FastAPI exception handler for CreditLedgerError.

The response body comes from the registry entry for the error's code, never
from the exception's detail. Retryable errors carry a Retry-After header so
clients back off instead of hammering a ledger that is already busy.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from creditledger.core.errors import CreditLedgerError
from creditledger.core.errors.registry import ErrorEntry, error_registry
from creditledger.core.structured_logging import request_id_var

logger = logging.getLogger(__name__)

RETRY_AFTER_S = 5

_LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

_UNREGISTERED = ErrorEntry(
    code="CL-SYS-001",
    domain="SYS",
    title="Internal error",
    severity="ERROR",
    retryable=False,
    user_action_required=False,
    http_status=500,
    safe_message="An unexpected error occurred.",
)


def _body(code: str, entry: ErrorEntry) -> dict:
    return {
        "error": {
            "code": code,
            "title": entry.title,
            "message": entry.safe_message,
            "retryable": entry.retryable,
            "user_action_required": entry.user_action_required,
            "remediation": entry.remediation,
            "request_id": request_id_var.get(None),
        }
    }


async def creditledger_error_handler(request: Request, exc: CreditLedgerError) -> JSONResponse:
    entry = error_registry.get(exc.code)
    if entry is None:
        logger.error("unregistered_error_code", extra={"error.code": exc.code, "error.message": exc.detail})
        return JSONResponse(status_code=500, content=_body(exc.code, _UNREGISTERED))

    logger.log(
        _LOG_LEVELS.get(entry.severity, logging.ERROR),
        entry.title,
        extra={
            "error.code": exc.code,
            "error.kind": type(exc).__name__,
            "error.message": exc.detail,
            "error.retryable": entry.retryable,
            **{f"error.ctx.{k}": v for k, v in exc.context.items()},
        },
    )

    headers = {"Retry-After": str(RETRY_AFTER_S)} if entry.retryable else None
    return JSONResponse(status_code=entry.http_status, content=_body(entry.code, entry), headers=headers)
