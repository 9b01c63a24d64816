"""
Request/correlation id middleware.

Plain ASGI rather than BaseHTTPMiddleware so WebSocket connections (the meter
event stream) get ids too. Caller-supplied ids are accepted only when they
look like ids; anything else is replaced, so log lines cannot be forged
through a header.
"""
from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from creditledger.core.structured_logging import correlation_id_var, request_id_var

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
QUIET_PATHS = {"/api/health"}


def _incoming_id(value: Optional[str]) -> str:
    if value and _ID_PATTERN.match(value):
        return value
    return uuid.uuid4().hex


class CorrelationMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        req_id = _incoming_id(headers.get("x-request-id"))
        corr_id = _incoming_id(headers.get("x-correlation-id"))
        status_code: Optional[int] = None

        async def send_with_ids(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = MutableHeaders(scope=message)
                response_headers["x-request-id"] = req_id
                response_headers["x-correlation-id"] = corr_id
            await send(message)

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)
        start = time.perf_counter()
        try:
            await self.app(scope, receive, send_with_ids)
        finally:
            path = scope.get("path", "")
            logger.log(
                logging.DEBUG if path in QUIET_PATHS else logging.INFO,
                "request_completed" if scope["type"] == "http" else "websocket_closed",
                extra={
                    "http.method": scope.get("method", "WS"),
                    "http.path": path,
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            request_id_var.reset(rid_token)
            correlation_id_var.reset(cid_token)
