# context_chat/models/options.py
"""
Request options.

``QueryOptions`` is what callers pass to the orchestrator; ``PromptOptions`` is
what a connector receives after defaults have been resolved. Provider-specific
knobs live in a tagged union discriminated on ``provider`` so each variant is
validated at the boundary instead of travelling as loose keyword arguments.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from context_chat.models.enums import MessageRole


class _CamelModel(BaseModel):
    """Accepts both snake_case and camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ChatMessage(_CamelModel):
    """One turn of caller-supplied conversation history."""

    role: MessageRole
    content: str


class OpenAIOptions(_CamelModel):
    """Options only the OpenAI chat completions API understands."""

    provider: Literal["openai"] = "openai"
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    presence_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    frequency_penalty: float | None = Field(default=None, ge=-2.0, le=2.0)
    stop: list[str] | None = Field(default=None, max_length=4)
    seed: int | None = None
    response_format: Literal["text", "json_object"] | None = None

    def request_fields(self) -> dict[str, Any]:
        fields = self.model_dump(exclude={"provider", "response_format"}, exclude_none=True)
        if self.response_format:
            fields["response_format"] = {"type": self.response_format}
        return fields


class LocalInferenceOptions(_CamelModel):
    """Options for local OpenAI-compatible inference servers (Ollama, llama.cpp)."""

    provider: Literal["local"] = "local"
    top_k: int | None = Field(default=None, gt=0)
    repeat_penalty: float | None = Field(default=None, gt=0.0)
    num_ctx: int | None = Field(default=None, gt=0)

    def request_fields(self) -> dict[str, Any]:
        extra = self.model_dump(exclude={"provider"}, exclude_none=True)
        return {"extra_body": extra} if extra else {}


ProviderOptions = Annotated[OpenAIOptions | LocalInferenceOptions, Field(discriminator="provider")]


class QueryOptions(_CamelModel):
    """Caller options for one query."""

    model_id: str | None = Field(default=None, min_length=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    system_prompt: str | None = None
    include_metadata: bool = False
    stream: bool = False
    history: list[ChatMessage] = Field(default_factory=list)
    included_content_ids: list[str] | None = Field(
        default=None, description="Restrict candidates to these content ids"
    )
    provider_options: ProviderOptions | None = None


class PromptOptions(BaseModel):
    """Resolved options handed to a ProviderConnector."""

    model_config = ConfigDict(frozen=True)

    temperature: float
    max_tokens: int
    system_prompt: str | None = None
    history: tuple[ChatMessage, ...] = Field(default_factory=tuple)
    provider_options: ProviderOptions | None = None
