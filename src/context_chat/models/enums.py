# context_chat/models/enums.py
"""Enums shared across the orchestration core."""

from enum import Enum


class ContentType(str, Enum):
    """Kinds of content body a ContentItem may carry."""

    TEXT = "text"
    CODE = "code"


class Capability(str, Enum):
    """Capabilities advertised by a ModelDescriptor."""

    CHAT = "chat"
    STREAMING = "streaming"
    JSON_MODE = "json_mode"
    TOOLS = "tools"


class MessageRole(str, Enum):
    """Roles for caller-supplied conversation history."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FinishReason(str, Enum):
    """Why a provider stopped generating."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "FinishReason":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class QueryState(str, Enum):
    """Lifecycle states of a single query."""

    INIT = "init"
    CONTEXT_LOADED = "context_loaded"
    PROMPT_BUILT = "prompt_built"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamEventType(str, Enum):
    """Typed events emitted by the StreamRelay."""

    START = "start"
    CHUNK = "chunk"
    END = "end"
    ERROR = "error"


class ProviderName(str, Enum):
    """Tags for provider-specific option variants."""

    OPENAI = "openai"
    LOCAL = "local"
