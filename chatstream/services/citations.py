from __future__ import annotations

import math
from dataclasses import dataclass, field

from chatstream.config import settings
from chatstream.models.conversation import Citation, ConversationTurn, Role
from chatstream.services.markdown import normalize_markdown

QUOTE_COLLAPSE_THRESHOLD = settings.citation_quote_collapse_threshold
THINKING_PLACEHOLDER = "Thinking..."


def citation_key(citation: Citation, turn_index: int, position: int) -> str:
    """Stable identity for a citation within the conversation."""
    if citation.chunk_id not in (None, ""):
        return str(citation.chunk_id)
    return f"{turn_index}-cite-{position}"


def should_collapse(citation: Citation, threshold: int = QUOTE_COLLAPSE_THRESHOLD) -> bool:
    return len((citation.quote or "").strip()) > threshold


@dataclass(slots=True)
class CitationExpansion:
    """Which long quotations the reader has expanded."""

    expanded: set[str] = field(default_factory=set)
    expand_all: bool = False

    def is_expanded(self, key: str) -> bool:
        return self.expand_all or key in self.expanded

    def toggle(self, key: str) -> bool:
        if key in self.expanded:
            self.expanded.discard(key)
            return False
        self.expanded.add(key)
        return True


def format_citation(
    citation: Citation,
    position: int,
    *,
    expanded: bool = False,
    threshold: int = QUOTE_COLLAPSE_THRESHOLD,
) -> str:
    ref = citation.ref_index or position + 1
    header = f"[{ref}]"
    if citation.title:
        header += f" {citation.title}"
    if citation.url:
        header += f" <{citation.url}>"
    if citation.score is not None and not math.isnan(citation.score):
        header += f" (relevance: {citation.score * 100:.0f}%)"

    quote = (citation.quote or "").strip()
    if not quote:
        return header
    if should_collapse(citation, threshold) and not expanded:
        quote = quote[:threshold].rstrip() + "..."
    return f'{header}\n    "{quote}"'


def render_turn(
    turn: ConversationTurn,
    *,
    turn_index: int = 0,
    expansion: CitationExpansion | None = None,
) -> str:
    """Render one turn as Markdown text for a terminal or log view."""
    if turn.role is Role.USER or turn.error:
        return turn.content

    expansion = expansion or CitationExpansion()
    if turn.content:
        body = normalize_markdown(turn.content)
    else:
        body = THINKING_PLACEHOLDER if turn.streaming else ""
    if not turn.citations:
        return body

    lines = [body, "", f"References ({len(turn.citations)})"]
    for position, citation in enumerate(turn.citations):
        key = citation_key(citation, turn_index, position)
        lines.append(format_citation(citation, position, expanded=expansion.is_expanded(key)))
    return "\n".join(lines)
