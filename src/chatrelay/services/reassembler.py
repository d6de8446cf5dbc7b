"""Reassembles text fragments from a Gemini ``streamGenerateContent`` body.

The streaming body is a JSON array written incrementally: objects separated
by commas, newlines and whitespace, with the surrounding brackets arriving
in the first and last reads. Network reads split it at arbitrary points, so
objects are located with a small brace-matching state machine whose state
survives between chunks. A complete object is decoded as soon as its closing
brace arrives.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from enum import Enum

from pydantic import ValidationError

from chatrelay.errors import MalformedFragmentError
from chatrelay.models.gemini import GenerateContentResponse

logger = logging.getLogger("chatrelay.reassembler")

_SEPARATORS = frozenset(" \t\r\n,")


class ScanState(Enum):
    SEARCHING = "searching"
    IN_OBJECT = "in_object"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


class ChunkReassembler:
    """Turns raw upstream chunks into text fragments.

    Bound to a single upstream response: create a new instance per call.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pos = 0
        self._start = 0
        self._depth = 0
        self._state = ScanState.SEARCHING
        self.finish_reason: str | None = None
        self.objects_decoded = 0
        self.objects_dropped = 0

    @property
    def buffer(self) -> str:
        """Text received but not yet resolved into a complete object."""
        return self._buffer

    @property
    def state(self) -> ScanState:
        return self._state

    def feed(self, chunk: bytes | str) -> list[str]:
        """Add one upstream chunk; return the fragments it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._buffer += text
        return self._drain()

    def close(self) -> list[str]:
        """Signal end of stream.

        An object still open at this point never completes and is dropped.
        """
        tail = self._decoder.decode(b"", final=True)
        fragments = []
        if tail:
            self._buffer += tail
            fragments = self._drain()

        if self._state is not ScanState.SEARCHING:
            self.objects_dropped += 1
            logger.debug(
                "Stream ended inside an unterminated object, dropping %d chars",
                len(self._buffer),
            )
        self._buffer = ""
        self._pos = self._start = self._depth = 0
        self._state = ScanState.SEARCHING
        return fragments

    def _drain(self) -> list[str]:
        fragments = []
        for span in self._scan():
            fragments.extend(self._extract(span))
        return fragments

    def _scan(self) -> list[str]:
        buf = self._buffer
        pos, start, depth, state = self._pos, self._start, self._depth, self._state
        spans = []

        while pos < len(buf):
            ch = buf[pos]
            if state is ScanState.SEARCHING:
                if ch in _SEPARATORS:
                    pos += 1
                    continue
                if ch != "{":
                    brace = buf.find("{", pos)
                    if brace == -1:
                        # Keep the unrecognised text until a candidate start shows up.
                        break
                    pos = brace
                start, depth, state = pos, 1, ScanState.IN_OBJECT
            elif state is ScanState.IN_OBJECT:
                if ch == '"':
                    state = ScanState.IN_STRING
                elif ch == "{":
                    depth += 1
                elif ch == "}":
                    depth -= 1
                    if depth == 0:
                        spans.append(buf[start : pos + 1])
                        state = ScanState.SEARCHING
            elif state is ScanState.IN_STRING:
                if ch == "\\":
                    state = ScanState.ESCAPED
                elif ch == '"':
                    state = ScanState.IN_OBJECT
            else:
                state = ScanState.IN_STRING
            pos += 1

        # Drop everything already resolved; an open object is kept from its brace.
        cut = pos if state is ScanState.SEARCHING else start
        self._buffer = buf[cut:]
        self._pos = pos - cut
        self._start = start - cut if state is not ScanState.SEARCHING else 0
        self._depth = depth
        self._state = state
        return spans

    def _extract(self, span: str) -> list[str]:
        try:
            response = self._decode(span)
        except MalformedFragmentError as exc:
            self.objects_dropped += 1
            logger.warning("Dropping malformed upstream fragment (%s): %.200s", exc.reason, exc.span)
            return []

        self.objects_decoded += 1
        candidate = response.first_candidate()
        if candidate is None:
            return []
        if candidate.finish_reason:
            self.finish_reason = candidate.finish_reason
        return candidate.texts()

    @staticmethod
    def _decode(span: str) -> GenerateContentResponse:
        try:
            obj = json.loads(span)
        except json.JSONDecodeError as exc:
            raise MalformedFragmentError(span, str(exc)) from exc

        # A bare candidate object is accepted as a one-candidate response.
        if "candidates" not in obj and "content" in obj:
            obj = {"candidates": [obj]}
        try:
            return GenerateContentResponse.model_validate(obj)
        except ValidationError as exc:
            raise MalformedFragmentError(span, f"unexpected shape: {exc.error_count()} errors") from exc


async def reassemble(
    chunks: AsyncIterable[bytes | str],
    reassembler: ChunkReassembler | None = None,
) -> AsyncIterator[str]:
    """Yield text fragments from an async iterable of upstream chunks."""
    reassembler = reassembler or ChunkReassembler()
    async for chunk in chunks:
        for text in reassembler.feed(chunk):
            yield text
    for text in reassembler.close():
        yield text
