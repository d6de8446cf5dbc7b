from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from chatrelay.app import create_app
from chatrelay.config import Settings


@pytest.fixture
def settings():
    """Test settings pointing at a fake upstream, with no timing delays."""
    return Settings(
        _env_file=None,
        gemini_api_key="test-key-0123456789",
        gemini_base_url="http://test-gemini/v1beta",
        gemini_model="gemini-pro",
        sse_close_delay_s=0.01,
        sse_ping_interval_s=0,
        demo_char_delay_s=0,
    )


class StubUpstream:
    """httpx.MockTransport handler standing in for the Gemini API.

    Set ``json_body`` for single-shot replies, ``chunks`` to deliver a
    streaming body in separate reads, or ``status``/``text`` for failures.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.json_body: dict | None = None
        self.chunks: list[bytes] | None = None
        self.text = ""
        self.chunk_delay = 0.0
        self.chunks_pulled = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status >= 400:
            return httpx.Response(self.status, text=self.text)
        if self.chunks is not None:
            return httpx.Response(self.status, content=self._stream(list(self.chunks)))
        return httpx.Response(self.status, json=self.json_body)

    async def _stream(self, chunks):
        for chunk in chunks:
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            self.chunks_pulled += 1
            yield chunk

    def last_payload(self) -> dict:
        return json.loads(self.requests[-1].content)


def gemini_reply(*texts: str, finish_reason: str | None = "STOP") -> dict:
    candidate = {"content": {"parts": [{"text": t} for t in texts], "role": "model"}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"candidates": [candidate]}


@pytest.fixture
def make_reply():
    return gemini_reply


@pytest.fixture
def upstream():
    return StubUpstream()


@pytest.fixture
async def http_client(settings, upstream):
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(upstream.handler),
        base_url=settings.gemini_base_url,
    )
    yield client
    await client.aclose()


@pytest.fixture
def app(settings, http_client):
    app = create_app(settings)
    app.state.http_client = http_client
    return app


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
