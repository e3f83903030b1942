# context_chat/providers/base.py
"""
ProviderConnector contract.

A connector is anything that satisfies this protocol; there is no shared base
class. Connectors hold configuration and a client only, never per-call state,
so one instance can serve many concurrent queries.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from context_chat.models import ModelDescriptor, ModelReply, PromptOptions

# Items yielded by stream_prompt: text chunks, optionally ending with a
# content-less ModelReply that reports exact usage.
StreamItem = str | ModelReply


@runtime_checkable
class ProviderConnector(Protocol):
    """Uniform blocking and streaming interface over one model provider."""

    async def send_prompt(self, prompt: str, options: PromptOptions) -> ModelReply:
        """Send a prompt and wait for the full reply. Raises ProviderError."""
        ...

    def stream_prompt(self, prompt: str, options: PromptOptions) -> AsyncIterator[StreamItem]:
        """
        Stream a reply as it is generated.

        Chunks are yielded in provider order. A mid-stream failure raises
        ProviderError; chunks already yielded are not retracted. Closing the
        iterator aborts the upstream request.
        """
        ...

    def get_descriptor(self) -> ModelDescriptor:
        """Describe the model this connector serves. Pure."""
        ...

    async def list_available_models(self) -> list[str]:
        """Best-effort model discovery. Raises ProviderError."""
        ...
