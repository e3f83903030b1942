# context_chat/models/assembly.py
"""PromptAssembly: the packed prompt for one query."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from context_chat.models.content import ContextItemRef, ScoredItem


class PromptAssembly(BaseModel):
    """Result of packing candidate content into a prompt. Immutable."""

    model_config = ConfigDict(frozen=True)

    prompt_text: str = Field(..., description="Final prompt sent to the provider")
    included_items: tuple[ScoredItem, ...] = Field(default_factory=tuple)
    used_tokens: int = Field(default=0, ge=0, description="Tokens consumed by included item bodies")
    overhead_tokens: int = Field(default=0, ge=0, description="Tokens consumed by the preamble and block headers")
    reserved_tokens: int = Field(default=0, ge=0, description="Query + system prompt + safety margin")
    budget: int = Field(default=0, description="Tokens that were available for context")
    skipped_ids: tuple[str, ...] = Field(default_factory=tuple, description="Candidates that did not fit")
    degraded: bool = Field(default=False, description="Budget exhausted; prompt is the raw query")

    @property
    def included_ids(self) -> list[str]:
        return [scored.item.id for scored in self.included_items]

    @property
    def context_tokens(self) -> int:
        """Everything the context portion of the prompt costs."""
        return self.used_tokens + self.overhead_tokens

    @property
    def remaining_tokens(self) -> int:
        return max(0, self.budget - self.context_tokens)

    def item_refs(self) -> list[ContextItemRef]:
        return [ContextItemRef.from_scored(scored) for scored in self.included_items]
