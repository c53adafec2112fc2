from __future__ import annotations

from dataclasses import dataclass, field

from chatstream.models.conversation import Citation
from chatstream.models.events import CitationsFrame, Frame, MessageFrame


@dataclass(slots=True)
class AnswerAccumulator:
    """Answer text and citations of one request, built up frame by frame."""

    full_answer: str = ""
    citations: list[Citation] = field(default_factory=list)

    def append(self, text: str) -> None:
        self.full_answer += text

    def replace_citations(self, citations: list[Citation]) -> None:
        self.citations = list(citations)

    def apply(self, frame: Frame) -> bool:
        """Apply a content-bearing frame. Returns False for control frames."""
        if isinstance(frame, MessageFrame):
            self.append(frame.text)
            return True
        if isinstance(frame, CitationsFrame):
            self.replace_citations(frame.citations)
            return True
        return False
