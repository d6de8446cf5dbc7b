from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from chatrelay.models.chat import utc_now_iso
from chatrelay.utils.request_log import RequestLog
from chatrelay.utils.sse import EventKind, StreamEvent, format_event

logger = logging.getLogger("chatrelay.sse")

DEFAULT_CLOSE_DELAY_S = 0.1

# Marks the end of the frame sequence in the sink.
_END = None


def _event_id() -> str:
    return str(int(time.time() * 1000))


def _kind_name(kind) -> str:
    return getattr(kind, "value", kind)


class EmitterState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    CLOSED = "closed"


class EventStreamEmitter:
    """Frames events for one client connection.

    The sink is an ``asyncio.Queue`` of wire frames drained by the HTTP
    response body. Once closed, every send is a logged no-op; a failed send
    closes the emitter instead of raising, so callers deep in an upstream
    loop only need to check ``closed``.
    """

    def __init__(
        self,
        close_delay: float = DEFAULT_CLOSE_DELAY_S,
        request_log: RequestLog | None = None,
    ):
        self.close_delay = close_delay
        self.request_log = request_log
        self._state = EmitterState.IDLE
        self._sink: asyncio.Queue[str | None] | None = None
        self._close_handle: asyncio.TimerHandle | None = None
        self.frames_sent = 0

    @property
    def state(self) -> EmitterState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is EmitterState.CLOSED

    def attach(self, sink: asyncio.Queue) -> None:
        if self._state is not EmitterState.IDLE:
            raise RuntimeError(f"Cannot attach a sink to an emitter that is {self._state.value}")
        self._sink = sink
        self._state = EmitterState.OPEN
        self._record("sse.open", "Event stream opened")

    def open(self) -> AsyncIterator[str]:
        """Attach a fresh sink and return the frames written to it.

        The returned iterator ends once the emitter closes. Leaving it early
        (client disconnect, cancellation) closes the emitter.
        """
        sink: asyncio.Queue[str | None] = asyncio.Queue()
        self.attach(sink)
        return self._drain(sink)

    async def _drain(self, sink: asyncio.Queue) -> AsyncIterator[str]:
        try:
            while True:
                frame = await sink.get()
                if frame is _END:
                    break
                yield frame
        finally:
            self.cancel()

    def send(self, event: StreamEvent) -> None:
        kind = _kind_name(event.kind)
        if self._state is not EmitterState.OPEN or self._sink is None:
            logger.warning("Dropping %s event: stream is %s", kind, self._state.value)
            return
        if self._close_handle is not None:
            logger.warning("Dropping %s event: done already sent", kind)
            return

        try:
            frame = format_event(event)
            self._sink.put_nowait(frame)
        except Exception:
            logger.exception("Failed to send %s event, closing stream", kind)
            self.close()
            return

        self.frames_sent += 1
        logger.debug("Sent %s event", kind)

    def send_start(self, message: Any = "Connection established, processing request...") -> None:
        self.send(StreamEvent(EventKind.START, data=message, id=_event_id()))

    def send_fragment(self, text: str, id: str | None = None) -> None:
        self.send(
            StreamEvent(
                EventKind.DATA,
                data={"content": text, "timestamp": utc_now_iso()},
                id=id,
            )
        )

    def send_error(self, message: str | BaseException) -> None:
        """Send an ``error`` event. The stream stays open; the caller closes it."""
        text = str(message) if isinstance(message, BaseException) else message
        self.send(
            StreamEvent(
                EventKind.ERROR,
                data={"error": text, "timestamp": utc_now_iso()},
                id=_event_id(),
            )
        )
        self._record("sse.error", text, level=logging.ERROR)

    def send_done(self, final_payload: Any = None) -> None:
        """Send the terminal ``done`` event and close after ``close_delay``.

        The delay lets the transport flush the frame before teardown. Sends
        made during the delay are dropped.
        """
        if self._state is not EmitterState.OPEN:
            logger.warning("Dropping done event: stream is %s", self._state.value)
            return
        self.send(
            StreamEvent(
                EventKind.DONE,
                data=final_payload or {"message": "Response complete"},
                id=_event_id(),
            )
        )
        if self.closed or self._close_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._close_handle = loop.call_later(self.close_delay, self.close)

    def send_ping(self) -> None:
        self.send(StreamEvent(EventKind.PING, data={"timestamp": utc_now_iso()}, id=_event_id()))

    def close(self) -> None:
        if self.closed:
            return
        self._state = EmitterState.CLOSED
        if self._close_handle is not None:
            self._close_handle.cancel()
            self._close_handle = None
        sink, self._sink = self._sink, None
        if sink is not None:
            sink.put_nowait(_END)
        self._record("sse.close", "Event stream closed", frames=self.frames_sent)

    def cancel(self) -> None:
        """Transport-side cancellation (client went away). Same as ``close``."""
        if not self.closed:
            logger.info("Event stream cancelled by client")
        self.close()

    def _record(self, step: str, message: str, level: int = logging.INFO, **data: Any) -> None:
        if self.request_log is not None:
            self.request_log.event(step, message, level=level, **data)
