# context_chat/__init__.py
"""
Context-aware chat orchestration core.

Answers a query against a stored context:
- ContextPacker: greedy, relevance-ordered, token-budgeted prompt assembly
- ModelRegistry: provider connectors, default model, fallback, usage metrics
- QueryOrchestrator: blocking and streamed query answering with fallback
- StreamRelay: start/chunk/end/error event framing for streamed replies
"""

from context_chat.context_packer import ContextPacker, ContextPackerConfig
from context_chat.exceptions import (
    BudgetExhaustedError,
    ContextChatError,
    InternalError,
    NotFoundError,
    ProviderError,
    ProviderErrorKind,
    ValidationError,
)
from context_chat.models import (
    Capability,
    ChatMessage,
    ContentItem,
    ContentType,
    Context,
    LocalInferenceOptions,
    MetricsSnapshot,
    ModelDescriptor,
    ModelReply,
    OpenAIOptions,
    PromptAssembly,
    PromptOptions,
    QueryOptions,
    QueryResult,
    QueryState,
    ScoredItem,
    StreamEvent,
    StreamEventType,
)
from context_chat.orchestrator import QueryOrchestrator, RequestLifecycle
from context_chat.providers import OpenAIConnector, ProviderConnector
from context_chat.registry import ModelRegistry
from context_chat.store import ContextStore, InMemoryContextStore
from context_chat.stream_relay import StreamRelay

__version__ = "0.1.0"

__all__ = [
    # Core
    "ContextPacker",
    "ContextPackerConfig",
    "ModelRegistry",
    "QueryOrchestrator",
    "RequestLifecycle",
    "StreamRelay",
    # Providers
    "OpenAIConnector",
    "ProviderConnector",
    # Persistence
    "ContextStore",
    "InMemoryContextStore",
    # Models
    "Capability",
    "ChatMessage",
    "ContentItem",
    "ContentType",
    "Context",
    "LocalInferenceOptions",
    "MetricsSnapshot",
    "ModelDescriptor",
    "ModelReply",
    "OpenAIOptions",
    "PromptAssembly",
    "PromptOptions",
    "QueryOptions",
    "QueryResult",
    "QueryState",
    "ScoredItem",
    "StreamEvent",
    "StreamEventType",
    # Errors
    "BudgetExhaustedError",
    "ContextChatError",
    "InternalError",
    "NotFoundError",
    "ProviderError",
    "ProviderErrorKind",
    "ValidationError",
]
