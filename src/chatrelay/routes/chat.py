from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from chatrelay.models.chat import AuthUser, ChatRequest, ChatResponse
from chatrelay.services.auth import anonymous_user
from chatrelay.services.chat_service import ChatService
from chatrelay.services.gemini_client import GeminiClient
from chatrelay.services.stream_relay import StreamRelay
from chatrelay.utils.request_log import RequestLog
from chatrelay.utils.sse import SSE_HEADERS

router = APIRouter(tags=["chat"])


def get_request_log(request: Request) -> RequestLog:
    request_log = getattr(request.state, "request_log", None)
    if request_log is None:
        request_log = RequestLog(method=request.method, path=request.url.path)
        request.state.request_log = request_log
    return request_log


def get_chat_service(request: Request) -> ChatService:
    state = request.app.state
    settings = state.settings
    return ChatService(
        gemini=GeminiClient(state.http_client, settings),
        store=state.conversation_store,
        relay=StreamRelay(
            close_delay=settings.sse_close_delay_s,
            ping_interval=settings.sse_ping_interval_s,
        ),
    )


def _event_stream(body, request_log: RequestLog) -> StreamingResponse:
    request_log.defer_flush = True
    return StreamingResponse(body, media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    user: AuthUser = Depends(anonymous_user),
    chat_svc: ChatService = Depends(get_chat_service),
    request_log: RequestLog = Depends(get_request_log),
):
    request_log.event("request.parsed", "Chat request accepted", chars=len(body.message), stream=body.stream)

    if body.stream:
        return _event_stream(chat_svc.stream_chat(body, user, request_log), request_log)

    return await chat_svc.chat(body, user, request_log)


@router.get("/chat/demo")
async def chat_demo(
    request: Request,
    text: str = Query("Hello! This is a simulated streaming reply.", min_length=1, max_length=2000),
    chat_svc: ChatService = Depends(get_chat_service),
    request_log: RequestLog = Depends(get_request_log),
):
    delay = request.app.state.settings.demo_char_delay_s
    return _event_stream(chat_svc.demo_stream(text, delay, request_log), request_log)
