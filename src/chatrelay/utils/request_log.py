from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("chatrelay.requests")


def new_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:12]}"


@dataclass
class LogEvent:
    number: int
    level: int
    step: str
    message: str
    elapsed_ms: float
    data: dict[str, Any] = field(default_factory=dict)


class RequestLog:
    """Correlation context for one request.

    Events are numbered from 1 within the request and buffered; ``flush``
    writes them as a single block so concurrent requests do not interleave.
    A second ``flush`` is a no-op.
    """

    def __init__(self, request_id: str | None = None, method: str = "", path: str = ""):
        self.request_id = request_id or new_request_id()
        self.method = method
        self.path = path
        self.defer_flush = False
        self._started = time.monotonic()
        self._events: list[LogEvent] = []
        self._flushed = False

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000

    @property
    def events(self) -> list[LogEvent]:
        return list(self._events)

    def event(self, step: str, message: str, level: int = logging.INFO, **data: Any) -> None:
        if self._flushed:
            # Late events (e.g. after a streaming flush) go straight through.
            logger.log(level, "[%s] %s: %s %s", self.request_id, step, message, data or "")
            return
        self._events.append(
            LogEvent(
                number=len(self._events) + 1,
                level=level,
                step=step,
                message=message,
                elapsed_ms=self.elapsed_ms,
                data=data,
            )
        )

    def warning(self, step: str, message: str, **data: Any) -> None:
        self.event(step, message, level=logging.WARNING, **data)

    def error(self, step: str, message: str, **data: Any) -> None:
        self.event(step, message, level=logging.ERROR, **data)

    def flush(self) -> None:
        if self._flushed:
            return
        self._flushed = True
        if not self._events:
            return

        level = max(e.level for e in self._events)
        lines = [
            f"[{self.request_id}] {self.method} {self.path} "
            f"({len(self._events)} events, {self.elapsed_ms:.1f} ms)"
        ]
        for e in self._events:
            line = f"  #{e.number} +{e.elapsed_ms:.1f}ms {logging.getLevelName(e.level)} {e.step}: {e.message}"
            if e.data:
                line += f" {e.data}"
            lines.append(line)
        logger.log(level, "\n".join(lines))
