from typing import Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    upstream_configured: bool = False
    model: str = ""


class StorageStats(BaseModel):
    total_conversations: int = 0
    total_messages: int = 0
    storage_type: str = "in-memory"
    last_updated: str


class ServiceStatusResponse(BaseModel):
    status: Literal["running", "stopped", "error"] = "running"
    service: str
    version: str
    storage: str
    statistics: StorageStats | None = None
    features: list[str] = []
    timestamp: str
