import httpx
import pytest

from chatrelay.errors import (
    ConfigurationError,
    EmptyCandidateError,
    SafetyBlockedError,
    UpstreamConnectionError,
    UpstreamEmptyBodyError,
    UpstreamHttpError,
    UpstreamTimeoutError,
)
from chatrelay.models.chat import ChatMessage
from chatrelay.services.gemini_client import GeminiClient
from chatrelay.services.reassembler import ChunkReassembler


@pytest.fixture
def gemini(http_client, settings):
    return GeminiClient(http_client, settings)


def _failing_client(settings, exc):
    def handler(request):
        raise exc

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=settings.gemini_base_url)


class TestRequestBody:
    def test_history_roles_mapped(self, gemini):
        history = [
            ChatMessage(role="system", content="be nice"),
            ChatMessage(role="user", content="hi"),
            ChatMessage(role="assistant", content="hello"),
        ]
        body = gemini.build_request_body("how are you", history)

        assert body["contents"] == [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [{"text": "hello"}]},
            {"role": "user", "parts": [{"text": "how are you"}]},
        ]
        assert body["generationConfig"] == {
            "temperature": 0.7,
            "maxOutputTokens": 2048,
            "topP": 0.8,
            "topK": 40,
        }
        assert len(body["safetySettings"]) == 4
        assert all(s["threshold"] == "BLOCK_MEDIUM_AND_ABOVE" for s in body["safetySettings"])


class TestGenerate:
    @pytest.mark.asyncio
    async def test_returns_joined_text(self, gemini, upstream, make_reply):
        upstream.json_body = make_reply(" hel", "lo ")
        assert await gemini.generate("hi") == "hello"

        request = upstream.requests[0]
        assert request.url.path == "/v1beta/models/gemini-pro:generateContent"
        assert request.url.params["key"] == "test-key-0123456789"
        assert upstream.last_payload()["contents"][-1] == {"role": "user", "parts": [{"text": "hi"}]}

    @pytest.mark.asyncio
    async def test_safety_block(self, gemini, upstream, make_reply):
        upstream.json_body = make_reply(finish_reason="SAFETY")
        with pytest.raises(SafetyBlockedError):
            await gemini.generate("hi")

    @pytest.mark.asyncio
    async def test_no_candidates(self, gemini, upstream):
        upstream.json_body = {"candidates": []}
        with pytest.raises(EmptyCandidateError):
            await gemini.generate("hi")

    @pytest.mark.asyncio
    async def test_no_text(self, gemini, upstream, make_reply):
        upstream.json_body = make_reply("")
        with pytest.raises(EmptyCandidateError):
            await gemini.generate("hi")

    @pytest.mark.asyncio
    async def test_http_error(self, gemini, upstream):
        upstream.status = 400
        upstream.text = "API key not valid" + "x" * 1000
        with pytest.raises(UpstreamHttpError) as exc_info:
            await gemini.generate("hi")
        assert exc_info.value.upstream_status == 400
        assert exc_info.value.body_excerpt.startswith("API key not valid")
        assert len(exc_info.value.body_excerpt) == 500

    @pytest.mark.asyncio
    async def test_missing_api_key(self, http_client, settings, upstream):
        settings.gemini_api_key = ""
        with pytest.raises(ConfigurationError):
            await GeminiClient(http_client, settings).generate("hi")
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        async with _failing_client(settings, httpx.ReadTimeout("slow")) as client:
            with pytest.raises(UpstreamTimeoutError):
                await GeminiClient(client, settings).generate("hi")

    @pytest.mark.asyncio
    async def test_connect_error(self, settings):
        async with _failing_client(settings, httpx.ConnectError("refused")) as client:
            with pytest.raises(UpstreamConnectionError):
                await GeminiClient(client, settings).generate("hi")


class TestStream:
    @pytest.mark.asyncio
    async def test_yields_fragments(self, gemini, upstream):
        upstream.chunks = [
            b'[{"candidates":[{"content":{"parts":[{"text":"ab"}]}}]}\n,\n{"cand',
            b'idates":[{"content":{"parts":[{"text":"cd"}]},"finishReason":"STOP"}]}]',
        ]
        reassembler = ChunkReassembler()
        out = [text async for text in gemini.stream("hi", reassembler=reassembler)]

        assert out == ["ab", "cd"]
        assert reassembler.finish_reason == "STOP"
        assert upstream.requests[0].url.path == "/v1beta/models/gemini-pro:streamGenerateContent"

    @pytest.mark.asyncio
    async def test_status_error_before_first_fragment(self, gemini, upstream):
        upstream.status = 500
        upstream.text = "internal"
        fragments = gemini.stream("hi")
        with pytest.raises(UpstreamHttpError) as exc_info:
            await fragments.__anext__()
        assert exc_info.value.upstream_status == 500
        assert exc_info.value.body_excerpt == "internal"

    @pytest.mark.asyncio
    async def test_unterminated_tail_dropped(self, gemini, upstream):
        upstream.chunks = [
            b'[{"candidates":[{"content":{"parts":[{"text":"ok"}]}}]},',
            b'{"candidates":[{"content":{"parts":[{"text":"cut',
        ]
        reassembler = ChunkReassembler()
        out = [text async for text in gemini.stream("hi", reassembler=reassembler)]

        assert out == ["ok"]
        assert reassembler.objects_decoded == 1
        assert reassembler.objects_dropped == 1
        assert reassembler.buffer == ""
        assert upstream.chunks_pulled == 2

    @pytest.mark.asyncio
    async def test_empty_body(self, gemini, upstream):
        upstream.chunks = []
        with pytest.raises(UpstreamEmptyBodyError):
            [text async for text in gemini.stream("hi")]

    @pytest.mark.asyncio
    async def test_connect_error(self, settings):
        async with _failing_client(settings, httpx.ConnectError("refused")) as client:
            with pytest.raises(UpstreamConnectionError):
                [text async for text in GeminiClient(client, settings).stream("hi")]
