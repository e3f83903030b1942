# context_chat/models/__init__.py
"""
Data models for the query orchestration core.

All models are pydantic ``BaseModel`` subclasses. Descriptors, scored items and
prompt assemblies are frozen; usage metrics are mutated under a per-entry lock.
"""

from context_chat.models.assembly import PromptAssembly
from context_chat.models.content import (
    ContentItem,
    Context,
    ContextItemRef,
    ScoredItem,
    TokenCounter,
)
from context_chat.models.descriptor import ModelDescriptor, ModelReply
from context_chat.models.enums import (
    Capability,
    ContentType,
    FinishReason,
    MessageRole,
    ProviderName,
    QueryState,
    StreamEventType,
)
from context_chat.models.metrics import MetricsSnapshot, UsageMetrics
from context_chat.models.options import (
    ChatMessage,
    LocalInferenceOptions,
    OpenAIOptions,
    PromptOptions,
    ProviderOptions,
    QueryOptions,
)
from context_chat.models.results import QueryResult, StreamEvent

__all__ = [
    # Enums
    "Capability",
    "ContentType",
    "FinishReason",
    "MessageRole",
    "ProviderName",
    "QueryState",
    "StreamEventType",
    # Content
    "Context",
    "ContentItem",
    "ContextItemRef",
    "ScoredItem",
    "TokenCounter",
    # Models and replies
    "ModelDescriptor",
    "ModelReply",
    # Packing
    "PromptAssembly",
    # Metrics
    "MetricsSnapshot",
    "UsageMetrics",
    # Options
    "ChatMessage",
    "LocalInferenceOptions",
    "OpenAIOptions",
    "PromptOptions",
    "ProviderOptions",
    "QueryOptions",
    # Results
    "QueryResult",
    "StreamEvent",
]
