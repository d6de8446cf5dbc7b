"""Server-Sent Events framing.

``format_event`` writes the frames the relay sends. ``parse_event_stream`` is
the client-side reverse, for consumers of the stream that hold a complete body.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventKind(str, Enum):
    START = "start"
    DATA = "data"
    DONE = "done"
    ERROR = "error"
    PING = "ping"


@dataclass
class StreamEvent:
    kind: EventKind
    data: Any = None
    id: str | None = None
    retry: int | None = None


def format_event(event: StreamEvent) -> str:
    """Serialize an event to its ``text/event-stream`` frame.

    Non-string payloads are JSON-encoded first; each line of the encoded
    payload gets its own ``data:`` line.
    """
    frame = ""
    if event.id:
        frame += f"id: {event.id}\n"
    frame += f"event: {EventKind(event.kind).value}\n"

    if event.data is not None:
        if isinstance(event.data, str):
            payload = event.data
        else:
            payload = json.dumps(event.data, ensure_ascii=False)
        for line in payload.split("\n"):
            frame += f"data: {line}\n"

    if event.retry:
        frame += f"retry: {event.retry}\n"

    return frame + "\n"


def parse_event_stream(text: str) -> list[StreamEvent]:
    """Split a complete ``text/event-stream`` body back into events.

    ``data`` is left as the raw string (multiple lines rejoined with ``\\n``).
    """
    events = []
    for raw in text.split("\n\n"):
        if not raw.strip():
            continue
        kind, event_id, retry, data_lines = None, None, None, []
        for line in raw.split("\n"):
            field, _, value = line.partition(": ")
            if field == "event":
                kind = EventKind(value)
            elif field == "id":
                event_id = value
            elif field == "retry":
                retry = int(value)
            elif field == "data":
                data_lines.append(value)
        if kind is None:
            continue
        data = "\n".join(data_lines) if data_lines else None
        events.append(StreamEvent(kind, data=data, id=event_id, retry=retry))
    return events
