from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from chatstream.models.conversation import Citation


class EventType(StrEnum):
    MESSAGE = "message"
    CITATIONS = "citations"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True)
class SSEEvent:
    """One record of a text/event-stream body."""

    event: str = EventType.MESSAGE.value
    data: str = ""

    def format(self) -> str:
        lines = [f"event:{self.event}"]
        lines.extend(f"data:{line}" for line in self.data.split("\n"))
        return "\n".join(lines) + "\n\n"


@dataclass(frozen=True, slots=True)
class MessageFrame:
    text: str


@dataclass(frozen=True, slots=True)
class CitationsFrame:
    citations: list[Citation] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DoneFrame:
    pass


@dataclass(frozen=True, slots=True)
class ErrorFrame:
    message: str = ""


Frame = MessageFrame | CitationsFrame | DoneFrame | ErrorFrame
