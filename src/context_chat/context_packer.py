# context_chat/context_packer.py
"""
Context Packer for query prompts.

The ContextPacker turns a relevance-scored pool of content items into the
prompt for one query, keeping the context portion inside a hard token budget:

    budget = max_context_tokens - query - system prompt - safety margin - max response

Each included item is charged its body plus its block header, and the first
one also pays for the preamble, so the whole context portion of the prompt
stays inside the budget.

Packing is a single greedy pass in descending relevance. An item that does not
fit is skipped and the pass continues, because a later, smaller item may still
fit. Skipped items are never reconsidered and the packer does not search for a
better-fitting combination.

Output format:
```
Use the following context to answer the question.

=== Design notes ===
...body...

=== api/routes.py ===
...body...

What does the routes module expose?
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field

from context_chat.config import DEFAULT_MAX_RESPONSE_TOKENS, SAFETY_MARGIN_TOKENS
from context_chat.exceptions import BudgetExhaustedError
from context_chat.models import ChatMessage, PromptAssembly, ScoredItem, TokenCounter
from context_chat.tokens import count_tokens

logger = logging.getLogger(__name__)

DEFAULT_PREAMBLE = "Use the following context to answer the question.\n\n"
BLOCK_TEMPLATE = "=== {title} ===\n{body}\n\n"


class ContextPackerConfig(BaseModel):
    """Configuration for context packing."""

    safety_margin: int = Field(default=SAFETY_MARGIN_TOKENS, ge=0, description="Tokens held back for formatting overhead")
    preamble: str = Field(default=DEFAULT_PREAMBLE, description="Instruction placed before the context blocks")
    default_max_response_tokens: int = Field(default=DEFAULT_MAX_RESPONSE_TOKENS, gt=0)


class ContextPacker(BaseModel):
    """Greedy, relevance-ordered, token-budgeted prompt assembler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    config: ContextPackerConfig = Field(default_factory=ContextPackerConfig)
    token_counter: TokenCounter = Field(default=count_tokens, exclude=True)

    def count(self, text: str | None) -> int:
        return self.token_counter(text) if text else 0

    def reserved_tokens(
        self,
        query: str,
        system_prompt: str | None = None,
        history: Sequence[ChatMessage] = (),
    ) -> int:
        """Tokens reserved for the query, system prompt, history and safety margin."""
        history_tokens = sum(self.count(message.content) for message in history)
        return self.count(query) + self.count(system_prompt) + history_tokens + self.config.safety_margin

    def compute_budget(self, max_context_tokens: int, reserved: int, max_response_tokens: int) -> int:
        """Return the context budget, raising BudgetExhaustedError when it is not positive."""
        budget = max_context_tokens - reserved - max_response_tokens
        if budget <= 0:
            raise BudgetExhaustedError(budget)
        return budget

    def pack(
        self,
        query: str,
        candidates: Iterable[ScoredItem],
        max_context_tokens: int,
        max_response_tokens: int | None = None,
        system_prompt: str | None = None,
        history: Sequence[ChatMessage] = (),
    ) -> PromptAssembly:
        """
        Select candidates and build the prompt.

        Args:
            query: Literal query text, appended to the prompt unchanged
            candidates: Scored items, in any order
            max_context_tokens: The target model's context window
            max_response_tokens: Tokens the caller wants left for the reply
            system_prompt: Optional system prompt sent alongside the prompt
            history: Caller-supplied prior turns sent alongside the prompt

        Returns:
            PromptAssembly; degraded to the raw query if no budget remains
        """
        if max_response_tokens is None:
            max_response_tokens = self.config.default_max_response_tokens
        candidates = list(candidates)
        reserved = self.reserved_tokens(query, system_prompt, history)

        try:
            budget = self.compute_budget(max_context_tokens, reserved, max_response_tokens)
        except BudgetExhaustedError as e:
            logger.warning(f"{e.message}; sending query without context")
            return PromptAssembly(
                prompt_text=query,
                reserved_tokens=reserved,
                budget=e.budget,
                skipped_ids=tuple(scored.item.id for scored in candidates),
                degraded=True,
            )

        # sorted() is stable, so equal relevance keeps input order
        ranked = sorted(candidates, key=lambda scored: scored.relevance, reverse=True)

        preamble_tokens = self.count(self.config.preamble)
        blocks: list[str] = []
        included: list[ScoredItem] = []
        skipped: list[str] = []
        used = 0
        overhead = 0

        for scored in ranked:
            item = scored.item
            if not item.has_text:
                logger.debug(f"Skipping empty content item {item.id}")
                continue

            item_tokens = item.tokens(self.token_counter)
            # The preamble is only paid for once the first block goes in
            block_overhead = self.count(self.format_block(item.title, ""))
            if not blocks:
                block_overhead += preamble_tokens
            if used + overhead + item_tokens + block_overhead > budget:
                skipped.append(item.id)
                continue

            blocks.append(self.format_block(item.title, item.text))
            included.append(scored)
            used += item_tokens
            overhead += block_overhead

        if blocks:
            prompt_text = self.config.preamble + "".join(blocks) + query
        else:
            prompt_text = query

        logger.debug(
            f"Packed {len(included)}/{len(ranked)} items: {used} + {overhead} overhead/{budget} tokens used, "
            f"{len(skipped)} skipped"
        )
        return PromptAssembly(
            prompt_text=prompt_text,
            included_items=tuple(included),
            used_tokens=used,
            overhead_tokens=overhead,
            reserved_tokens=reserved,
            budget=budget,
            skipped_ids=tuple(skipped),
        )

    @staticmethod
    def format_block(title: str, body: str) -> str:
        return BLOCK_TEMPLATE.format(title=title, body=body)
