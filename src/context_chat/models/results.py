# context_chat/models/results.py
"""Query results and stream events."""

from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field

from context_chat.base_models import DictCompatModel
from context_chat.models.content import ContextItemRef
from context_chat.models.enums import FinishReason, StreamEventType


class QueryResult(DictCompatModel):
    """The answer to one query, with accounting."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    query: str
    response: str
    context_id: str
    model_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0
    finish_reason: FinishReason = FinishReason.UNKNOWN
    context_items: list[ContextItemRef] = Field(default_factory=list)
    fallback_used: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class StreamEvent(BaseModel):
    """A single framed unit of a streamed response."""

    type: StreamEventType
    content: str | None = None
    message: str | None = None

    @classmethod
    def start(cls) -> "StreamEvent":
        return cls(type=StreamEventType.START)

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(type=StreamEventType.CHUNK, content=content)

    @classmethod
    def end(cls) -> "StreamEvent":
        return cls(type=StreamEventType.END)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(type=StreamEventType.ERROR, content=f"[error] {message}", message=message)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.END, StreamEventType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
