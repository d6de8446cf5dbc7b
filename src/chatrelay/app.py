import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatrelay import __version__
from chatrelay.config import Settings, get_settings
from chatrelay.errors import RelayError
from chatrelay.middleware.error_handler import ErrorHandlerMiddleware
from chatrelay.middleware.request_context import RequestContextMiddleware
from chatrelay.models.chat import utc_now_iso
from chatrelay.routes import chat, health
from chatrelay.storage.conversation_store import InMemoryConversationStore, SqliteConversationStore
from chatrelay.storage.database import init_database

logger = logging.getLogger("chatrelay")

SUPPORTED_METHODS = ["POST", "GET", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not settings.gemini_configured:
        logger.warning("CHATRELAY_GEMINI_API_KEY is not set; chat requests will fail until it is")

    # HTTP client for the Gemini API
    app.state.http_client = httpx.AsyncClient(
        base_url=settings.gemini_base_url,
        timeout=httpx.Timeout(settings.upstream_timeout_s),
    )

    db = None
    if settings.conversation_store == "sqlite":
        db = await init_database(settings.db_path)
        app.state.conversation_store = SqliteConversationStore(db)

    logger.info(
        "chatrelay v%s started | model=%s | key=%s | storage=%s",
        __version__,
        settings.gemini_model,
        settings.masked_api_key(),
        app.state.conversation_store.storage_type,
    )

    yield

    # Shutdown
    await app.state.http_client.aclose()
    if db is not None:
        await db.close()
    logger.info("chatrelay shutdown complete")


def _error_body(error: str, **extra) -> dict:
    return {"error": error, **extra, "timestamp": utc_now_iso()}


def _describe_validation_error(exc: RequestValidationError) -> tuple[str, str]:
    for err in exc.errors():
        loc = tuple(err.get("loc", ()))
        if err.get("type") == "json_invalid":
            return "Invalid JSON body", "Provide a valid JSON request body"
        if loc == ("body",) and err.get("type") == "missing":
            return "Request body must not be empty", "Provide the chat message content"
        if loc[:2] == ("body", "message"):
            return "Invalid message parameter", "message must be a non-empty string"
    first = exc.errors()[0] if exc.errors() else {}
    return "Invalid request", first.get("msg", "Request validation failed")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        logger.error("%s: %s", exc.code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "timestamp": utc_now_iso()},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error, details = _describe_validation_error(exc)
        return JSONResponse(
            status_code=400,
            content=_error_body(error, details=details, code="INVALID_REQUEST"),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content=_error_body(
                    "Not Found",
                    message=f"Route {request.method} {request.url.path} not found",
                ),
            )
        if exc.status_code == 405:
            return JSONResponse(
                status_code=405,
                content=_error_body(
                    f"Unsupported HTTP method: {request.method}",
                    supported_methods=SUPPORTED_METHODS,
                    code="METHOD_NOT_ALLOWED",
                ),
                headers=exc.headers,
            )
        return await http_exception_handler(request, exc)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="chatrelay",
        description="Streaming chat relay for the Google Gemini API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.conversation_store = InMemoryConversationStore()

    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=SUPPORTED_METHODS,
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "accept"],
        expose_headers=["content-length", "content-type"],
        max_age=86400,
    )

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(chat.router)

    return app
