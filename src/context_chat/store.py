# context_chat/store.py
"""
ContextStore - the persistence collaborator consumed by the orchestrator.

The real store (database, object storage) lives outside this package; the
orchestrator only depends on the protocol below. ``InMemoryContextStore`` is a
dict-backed implementation for development and tests.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from context_chat.exceptions import NotFoundError
from context_chat.models import ContentItem, Context, ScoredItem

logger = logging.getLogger(__name__)


@runtime_checkable
class ContextStore(Protocol):
    """Read access to contexts and their content."""

    async def get_context(self, context_id: str) -> Context | None:
        """Return the context, or None if it does not exist."""
        ...

    async def get_context_content_items(self, context_id: str) -> list[ScoredItem]:
        """Return the context's items with relevance, in stable store order."""
        ...

    async def get_content_body(self, content_id: str) -> str:
        """Return the full body for a content item."""
        ...


class InMemoryContextStore:
    """Dict-backed ContextStore."""

    def __init__(self) -> None:
        self._contexts: dict[str, Context] = {}
        self._items: dict[str, list[tuple[str, float]]] = {}
        self._content: dict[str, ContentItem] = {}
        self._bodies: dict[str, str] = {}

    def add_context(self, context: Context) -> Context:
        self._contexts[context.id] = context
        self._items.setdefault(context.id, [])
        return context

    def add_content(self, item: ContentItem, body: str | None = None) -> ContentItem:
        """
        Store a content item.

        Passing ``body`` separately stores it out of line: the item is served
        without a body and the orchestrator must fetch it via get_content_body.
        """
        self._content[item.id] = item
        if body is not None:
            self._bodies[item.id] = body
        elif item.body is not None:
            self._bodies[item.id] = item.body
        return item

    def attach(self, context_id: str, content_id: str, relevance: float = 0.5) -> None:
        if context_id not in self._contexts:
            raise NotFoundError("Context", context_id)
        if content_id not in self._content:
            raise NotFoundError("Content", content_id)
        entries = self._items[context_id]
        entries[:] = [(cid, rel) for cid, rel in entries if cid != content_id]
        entries.append((content_id, relevance))

    def detach(self, context_id: str, content_id: str) -> bool:
        entries = self._items.get(context_id, [])
        before = len(entries)
        entries[:] = [(cid, rel) for cid, rel in entries if cid != content_id]
        return len(entries) < before

    async def get_context(self, context_id: str) -> Context | None:
        return self._contexts.get(context_id)

    async def get_context_content_items(self, context_id: str) -> list[ScoredItem]:
        return [
            ScoredItem(item=self._content[content_id], relevance=relevance)
            for content_id, relevance in self._items.get(context_id, [])
        ]

    async def get_content_body(self, content_id: str) -> str:
        if content_id not in self._content:
            raise NotFoundError("Content", content_id)
        return self._bodies.get(content_id, "")
