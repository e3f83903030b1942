# context_chat/models/descriptor.py
"""Model descriptors and provider replies."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from context_chat.models.enums import Capability, FinishReason


class ModelDescriptor(BaseModel):
    """Identity and limits of one registered model. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    provider_name: str = Field(..., min_length=1)
    max_context_tokens: int = Field(..., gt=0)
    capabilities: frozenset[Capability] = Field(
        default_factory=lambda: frozenset({Capability.CHAT, Capability.STREAMING})
    )

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


class ModelReply(BaseModel):
    """Normalized reply from a provider.

    In a stream, a reply with empty content may arrive as the final item to
    report exact usage.
    """

    content: str = Field(default="")
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    finish_reason: FinishReason = Field(default=FinishReason.UNKNOWN)
    model: str | None = Field(default=None, description="Model name the provider reports")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
