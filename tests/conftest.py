# tests/conftest.py
"""
Shared pytest fixtures and fakes for context_chat tests.

Tests never touch the network or download tiktoken encodings: connectors are
in-process fakes and packers count tokens as whitespace-separated words.
"""

import asyncio
import logging

import pytest

from context_chat.context_packer import ContextPacker, ContextPackerConfig
from context_chat.exceptions import ProviderError
from context_chat.models import (
    ContentItem,
    Context,
    FinishReason,
    ModelDescriptor,
    ModelReply,
    PromptOptions,
)
from context_chat.registry import ModelRegistry
from context_chat.store import InMemoryContextStore

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logging.getLogger("context_chat").setLevel(logging.DEBUG)


def word_count(text: str) -> int:
    """Token counter used throughout the tests: one token per word."""
    return len(text.split())


class FakeConnector:
    """In-process ProviderConnector with scripted behaviour."""

    def __init__(
        self,
        model_id: str = "fake-a",
        provider_name: str = "fake",
        max_context_tokens: int = 1000,
        reply: str = "fake reply",
        chunks: list[str] | None = None,
        error: Exception | None = None,
        stream_error_after: int | None = None,
        delay: float = 0.0,
        usage: ModelReply | None = None,
        models: list[str] | None = None,
        discovery_error: ProviderError | None = None,
    ):
        self._descriptor = ModelDescriptor(
            id=model_id,
            provider_name=provider_name,
            max_context_tokens=max_context_tokens,
        )
        self.reply = reply
        self.chunks = chunks if chunks is not None else ["Hel", "lo"]
        self.error = error
        self.stream_error_after = stream_error_after
        self.delay = delay
        self.usage = usage
        self.models = models or [model_id]
        self.discovery_error = discovery_error

        self.prompts: list[str] = []
        self.options: list[PromptOptions] = []
        self.stream_closed = False

    def get_descriptor(self) -> ModelDescriptor:
        return self._descriptor

    async def send_prompt(self, prompt: str, options: PromptOptions) -> ModelReply:
        self.prompts.append(prompt)
        self.options.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.usage is not None:
            return self.usage.model_copy(update={"content": self.reply})
        return ModelReply(content=self.reply, finish_reason=FinishReason.STOP)

    async def stream_prompt(self, prompt: str, options: PromptOptions):
        self.prompts.append(prompt)
        self.options.append(options)
        try:
            for index, chunk in enumerate(self.chunks):
                if self.stream_error_after is not None and index == self.stream_error_after:
                    raise self.error
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.stream_error_after is not None and self.stream_error_after >= len(self.chunks):
                raise self.error
            if self.usage is not None:
                yield self.usage
        finally:
            self.stream_closed = True

    async def list_available_models(self) -> list[str]:
        if self.discovery_error is not None:
            raise self.discovery_error
        return list(self.models)


@pytest.fixture
def packer():
    """Packer with no safety margin and word-count tokens."""
    return ContextPacker(
        config=ContextPackerConfig(safety_margin=0, default_max_response_tokens=10),
        token_counter=word_count,
    )


@pytest.fixture
def store():
    """Store with one context ('ctx-1') holding three items."""
    store = InMemoryContextStore()
    store.add_context(Context(id="ctx-1", name="Project notes"))
    store.add_context(Context(id="ctx-empty", name="Empty"))
    store.add_content(ContentItem(id="design", title="Design", body="the design uses a queue"))
    store.add_content(ContentItem(id="api", title="API", body="routes expose a single endpoint"))
    store.add_content(ContentItem(id="misc", title="Misc", body="unrelated notes"))
    store.attach("ctx-1", "design", relevance=0.9)
    store.attach("ctx-1", "api", relevance=0.7)
    store.attach("ctx-1", "misc", relevance=0.2)
    return store


@pytest.fixture
def primary():
    return FakeConnector(model_id="primary", reply="primary answer")


@pytest.fixture
def secondary():
    return FakeConnector(model_id="secondary", reply="secondary answer")


@pytest.fixture
def registry(primary, secondary):
    return ModelRegistry([primary, secondary], fallback_enabled=True)
