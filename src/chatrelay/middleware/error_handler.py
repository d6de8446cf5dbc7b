import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.models.chat import utc_now_iso

logger = logging.getLogger("chatrelay")


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
            request_log = getattr(request.state, "request_log", None)
            if request_log is not None:
                request_log.error("request.failed", str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "message": str(exc),
                    "code": "INTERNAL_SERVER_ERROR",
                    "timestamp": utc_now_iso(),
                },
            )
