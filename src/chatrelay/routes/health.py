from fastapi import APIRouter, Request

from chatrelay import __version__
from chatrelay.models.chat import utc_now_iso
from chatrelay.models.health import HealthResponse, ServiceStatusResponse

router = APIRouter(tags=["health"])

FEATURES = [
    "Google Gemini AI Integration",
    "Conversation History",
    "Anonymous User Mode",
    "CORS Support",
    "Streaming Response (SSE)",
]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    settings = request.app.state.settings
    return HealthResponse(
        status="ok",
        version=__version__,
        upstream_configured=settings.gemini_configured,
        model=settings.gemini_model,
    )


@router.get("/", response_model=ServiceStatusResponse)
@router.get("/status", response_model=ServiceStatusResponse)
@router.get("/chat", response_model=ServiceStatusResponse)
@router.get("/chat/status", response_model=ServiceStatusResponse)
async def service_status(request: Request) -> ServiceStatusResponse:
    store = request.app.state.conversation_store
    return ServiceStatusResponse(
        status="running",
        service="LLM Chat Relay",
        version=__version__,
        storage=store.storage_type,
        statistics=await store.stats(),
        features=FEATURES,
        timestamp=utc_now_iso(),
    )
