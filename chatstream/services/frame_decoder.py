"""Incremental decoder for text/event-stream bodies.

Bytes arrive in arbitrary chunks. Records are only parsed once their
terminating blank line has been buffered, so the decoded sequence does not
depend on how the transport fragmented the body.
"""
from __future__ import annotations

import codecs

from loguru import logger
from pydantic import ValidationError

from chatstream.models.conversation import CITATION_LIST, Citation
from chatstream.models.events import (
    CitationsFrame,
    DoneFrame,
    ErrorFrame,
    EventType,
    Frame,
    MessageFrame,
    SSEEvent,
)

RECORD_SEPARATOR = "\n\n"


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def parse_record(block: str) -> SSEEvent | None:
    """Parse one blank-line delimited record into an event."""
    if not block.strip():
        return None

    event_type: str | None = None
    data_lines: list[str] = []
    for line in block.split("\n"):
        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            # Empty data lines are part of the payload.
            data_lines.append(line[len("data:"):])

    if event_type is None and not data_lines:
        # Comment-only keep-alive.
        return None
    return SSEEvent(event=event_type or EventType.MESSAGE.value, data="\n".join(data_lines))


class FrameDecoder:
    def __init__(self, encoding: str = "utf-8"):
        self._bytes = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._held_cr = False

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        text = self._bytes.decode(chunk) if isinstance(chunk, bytes) else chunk
        return self._push(text)

    def close(self) -> list[SSEEvent]:
        """Flush at end of body. An unterminated trailing record is dropped."""
        events = self._push(self._bytes.decode(b"", final=True), final=True)
        if self._buffer.strip():
            logger.debug(f"Discarding unterminated stream record ({len(self._buffer)} chars)")
        self._buffer = ""
        return events

    def _push(self, text: str, *, final: bool = False) -> list[SSEEvent]:
        if self._held_cr:
            text = "\r" + text
            self._held_cr = False
        if text.endswith("\r") and not final:
            # The matching "\n" of a CRLF may still be in flight.
            text = text[:-1]
            self._held_cr = True

        self._buffer += normalize_newlines(text)
        *records, self._buffer = self._buffer.split(RECORD_SEPARATOR)

        events: list[SSEEvent] = []
        for record in records:
            event = parse_record(record)
            if event is not None:
                events.append(event)
        return events


def parse_citations(payload: str) -> list[Citation]:
    return CITATION_LIST.validate_json(payload)


def decode_frame(event: SSEEvent) -> Frame | None:
    """Map a raw event onto its typed frame, or None when it carries nothing usable."""
    if event.event == EventType.MESSAGE:
        return MessageFrame(event.data)
    if event.event == EventType.CITATIONS:
        try:
            return CitationsFrame(parse_citations(event.data))
        except ValidationError as e:
            logger.warning(f"Failed to parse citations payload, keeping previous list: {e.errors()[:1]}")
            return None
    if event.event == EventType.DONE:
        return DoneFrame()
    if event.event == EventType.ERROR:
        return ErrorFrame(event.data.strip())

    logger.debug(f"Ignoring unknown stream event type: {event.event!r}")
    return None
