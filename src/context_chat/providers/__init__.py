# context_chat/providers/__init__.py
"""Model provider connectors."""

from context_chat.providers.base import ProviderConnector, StreamItem
from context_chat.providers.openai_provider import OpenAIConnector

__all__ = [
    "OpenAIConnector",
    "ProviderConnector",
    "StreamItem",
]
