from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from contextlib import aclosing

from chatrelay.errors import RelayError
from chatrelay.services.event_stream import DEFAULT_CLOSE_DELAY_S, EventStreamEmitter
from chatrelay.utils.request_log import RequestLog

logger = logging.getLogger("chatrelay.relay")

Producer = Callable[[EventStreamEmitter], Awaitable[None]]

# Producers outlive a disconnected client until they notice the closed emitter.
_running_producers: set[asyncio.Task] = set()


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, RelayError):
        return f"{exc.message}: {exc.details}" if exc.details else exc.message
    return f"Failed to generate reply: {exc}"


async def pump_fragments(
    emitter: EventStreamEmitter,
    fragments: AsyncIterable[str],
    request_log: RequestLog | None = None,
) -> str | None:
    """Send each fragment as a ``data`` event, in order.

    Returns the concatenated text, or ``None`` if the client went away
    before the upstream finished. Upstream errors propagate.
    """
    parts = []
    async with aclosing(fragments) as stream:
        async for text in stream:
            if emitter.closed:
                if request_log:
                    request_log.warning("relay.abort", "Client disconnected, stopping relay", fragments=len(parts))
                return None
            parts.append(text)
            emitter.send_fragment(text)
    return "".join(parts)


async def simulate_streaming_text(
    emitter: EventStreamEmitter, text: str, delay_s: float = 0.05
) -> None:
    """Stream ``text`` one character per event. Used by the demo endpoint."""
    for i, char in enumerate(text):
        if emitter.closed:
            logger.info("Stream closed, stopping simulated output")
            return
        emitter.send_fragment(char, id=f"char-{i}")
        await asyncio.sleep(delay_s)

    emitter.send_done({"message": "Text generation complete", "total_chars": len(text)})


class StreamRelay:
    """Runs a producer against an emitter and exposes the wire frames.

    ``events`` is handed to ``StreamingResponse``: the emitter opens when
    the response body starts being read, a ``start`` event goes out, then
    the producer runs as its own task. A producer failure becomes one
    ``error`` event followed by close.
    """

    def __init__(
        self,
        close_delay: float = DEFAULT_CLOSE_DELAY_S,
        ping_interval: float = 0.0,
    ):
        self.close_delay = close_delay
        self.ping_interval = ping_interval

    async def events(
        self,
        produce: Producer,
        request_log: RequestLog | None = None,
        start_message: str = "Generating reply...",
    ) -> AsyncIterator[str]:
        emitter = EventStreamEmitter(close_delay=self.close_delay, request_log=request_log)
        frames = emitter.open()
        emitter.send_start(start_message)

        producer = asyncio.create_task(self._run(produce, emitter, request_log))
        _running_producers.add(producer)
        producer.add_done_callback(_running_producers.discard)
        pinger = None
        if self.ping_interval > 0:
            pinger = asyncio.create_task(self._keepalive(emitter))

        try:
            async for frame in frames:
                yield frame
        finally:
            emitter.cancel()
            if pinger is not None:
                pinger.cancel()
            if request_log is not None:
                request_log.flush()
            await frames.aclose()

    async def _run(
        self,
        produce: Producer,
        emitter: EventStreamEmitter,
        request_log: RequestLog | None,
    ) -> None:
        try:
            await produce(emitter)
        except RelayError as exc:
            if request_log:
                request_log.error("relay.error", exc.message, code=exc.code)
            emitter.send_error(describe_error(exc))
            emitter.close()
        except Exception as exc:
            logger.exception("Streaming relay failed")
            emitter.send_error(describe_error(exc))
            emitter.close()

    async def _keepalive(self, emitter: EventStreamEmitter) -> None:
        while not emitter.closed:
            await asyncio.sleep(self.ping_interval)
            if not emitter.closed:
                emitter.send_ping()
