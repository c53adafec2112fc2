from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class QueryMode(StrEnum):
    FLEXIBLE = "FLEXIBLE"  # cite articles when there are any, answer freely otherwise
    ARTICLE_ONLY = "ARTICLE_ONLY"


class Citation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    ref_index: int | None = Field(default=None, alias="refIndex")
    title: str = ""
    url: str = ""
    quote: str | None = None
    # Blended retrieval score; BM25 is unbounded so this can exceed 1.
    score: float | None = None
    chunk_id: str | int | None = Field(default=None, alias="chunkId")

    @field_validator("title", "url", mode="before")
    @classmethod
    def _null_as_empty(cls, value):
        return "" if value is None else value


CITATION_LIST = TypeAdapter(list[Citation])


class HistoryMessage(BaseModel):
    role: Role
    content: str


class QueryPayload(BaseModel):
    question: str
    mode: QueryMode = QueryMode.FLEXIBLE
    history: list[HistoryMessage] = Field(default_factory=list)


@dataclass(slots=True)
class ConversationTurn:
    role: Role
    content: str = ""
    citations: list[Citation] = field(default_factory=list)
    streaming: bool = False
    error: bool = False

    @classmethod
    def user(cls, content: str) -> "ConversationTurn":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant_placeholder(cls) -> "ConversationTurn":
        return cls(role=Role.ASSISTANT, streaming=True)

    def history_entry(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}
