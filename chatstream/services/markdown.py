"""Repair Markdown that was concatenated without line breaks while streaming.

Every pass only inserts newlines, so the result of normalizing a prefix of an
answer never loses characters of the source. Fenced code is left as is.
"""
from __future__ import annotations

import re

CODE_FENCE = "```"

# "...text#### Heading" -> "...text\n\n#### Heading"
_HEADING_AFTER_TEXT = re.compile(r"([^\n#][ \t]*)(#{2,6}[ \t])")

# "#### Heading- item" -> "#### Heading\n\n- item". Ordered markers are skipped
# so split ordered lists keep their numbering.
_LIST_AFTER_HEADING = re.compile(r"^(#{2,6}[ \t]+\S[^\n]*?)(- )", re.MULTILINE)

# "...end.- item" -> "...end.\n- item", same line only so nested list
# indentation on the following line survives.
_LIST_AFTER_SENTENCE = re.compile(r"([。！？.!?;；:：])([ \t]*)((?:[-*+]|\d+\.)[ \t]+)")


def _repair_segment(text: str) -> str:
    text = _HEADING_AFTER_TEXT.sub(r"\1\n\n\2", text)
    text = _LIST_AFTER_HEADING.sub(r"\1\n\n\2", text)
    text = _LIST_AFTER_SENTENCE.sub(r"\1\2\n\3", text)
    return text


def normalize_markdown(text: str) -> str:
    if not text:
        return text

    normalized = str(text).replace("\r\n", "\n").replace("\r", "\n")

    # Even segments are prose, odd segments are code bodies.
    parts = normalized.split(CODE_FENCE)
    for i in range(0, len(parts), 2):
        parts[i] = _repair_segment(parts[i])
    return CODE_FENCE.join(parts)
