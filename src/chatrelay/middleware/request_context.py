from __future__ import annotations

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from chatrelay.utils.request_log import RequestLog

logger = logging.getLogger("chatrelay.requests")

REQUEST_ID_HEADER = "X-Chatrelay-Request-Id"
LATENCY_HEADER = "X-Chatrelay-Latency-Ms"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attaches a ``RequestLog`` to ``request.state`` and flushes it.

    Streaming handlers set ``defer_flush`` and flush the log themselves
    once the stream ends.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_log = RequestLog(
            request_id=request.headers.get("x-request-id"),
            method=request.method,
            path=request.url.path,
        )
        request_log.event("request.received", f"{request.method} {request.url.path}")
        request.state.request_log = request_log

        try:
            response = await call_next(request)
        except Exception:
            request_log.flush()
            raise

        response.headers[REQUEST_ID_HEADER] = request_log.request_id
        response.headers[LATENCY_HEADER] = f"{request_log.elapsed_ms:.1f}"

        if not request_log.defer_flush:
            request_log.event("response.sent", "Response ready", status=response.status_code)
            request_log.flush()
        return response
