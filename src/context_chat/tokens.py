# context_chat/tokens.py
"""Token counting helpers backed by tiktoken."""

from __future__ import annotations

import math
from functools import lru_cache

import tiktoken

from context_chat.config import TOKEN_ENCODING

# Rough chars-per-token ratio used when a provider does not report usage
CHARS_PER_TOKEN = 4


@lru_cache(maxsize=16)
def _encoding(name: str) -> tiktoken.Encoding:
    return tiktoken.get_encoding(name)


def count_tokens(text: str) -> int:
    """Count tokens in ``text`` with the configured encoding."""
    if not text:
        return 0
    return len(_encoding(TOKEN_ENCODING).encode(text, disallowed_special=()))


def estimate_tokens(text: str) -> int:
    """Cheap approximation: ~4 characters per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
