# context_chat/models/content.py
"""Context, content items and their per-query scoring."""

from __future__ import annotations

from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from context_chat.models.enums import ContentType

TokenCounter = Callable[[str], int]


class Context(BaseModel):
    """A named collection of content items supplied to a query."""

    id: str
    name: str = Field(default="")
    project_id: str | None = Field(default=None)
    description: str | None = Field(default=None)


class ContentItem(BaseModel):
    """
    A piece of stored content, owned by the persistence collaborator.

    ``token_count`` may be precomputed by the store. When it is not, the first
    call to ``tokens()`` computes it from the body and caches the value on the
    instance.
    """

    id: str
    title: str = Field(default="")
    body: str | None = Field(default=None, description="Text or code body; may be loaded lazily")
    content_type: ContentType = Field(default=ContentType.TEXT)
    language: str | None = Field(default=None, description="Language of a code body")
    token_count: int | None = Field(default=None, ge=0)

    _cached_tokens: int | None = PrivateAttr(default=None)

    @property
    def text(self) -> str:
        return self.body or ""

    @property
    def has_text(self) -> bool:
        return bool(self.text.strip())

    def tokens(self, counter: TokenCounter) -> int:
        if self.token_count is not None:
            return self.token_count
        if self._cached_tokens is None:
            self._cached_tokens = counter(self.text) if self.has_text else 0
        return self._cached_tokens


class ScoredItem(BaseModel):
    """A content item paired with its relevance for one query."""

    model_config = ConfigDict(frozen=True)

    item: ContentItem
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def id(self) -> str:
        return self.item.id


class ContextItemRef(BaseModel):
    """Summary of an included item, as reported in response metadata."""

    id: str
    title: str
    relevance: float

    @classmethod
    def from_scored(cls, scored: ScoredItem) -> "ContextItemRef":
        return cls(id=scored.item.id, title=scored.item.title, relevance=scored.relevance)
