from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Central model config: can be overridden by environment variables
DEFAULT_MODEL = os.getenv("CONTEXT_CHAT_DEFAULT_MODEL", "gpt-4o")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")

# Per provider call deadline, in seconds
PROVIDER_TIMEOUT = float(os.getenv("CONTEXT_CHAT_PROVIDER_TIMEOUT", "60"))

# Prompt budgeting
SAFETY_MARGIN_TOKENS = int(os.getenv("CONTEXT_CHAT_SAFETY_MARGIN", "100"))
DEFAULT_MAX_RESPONSE_TOKENS = int(os.getenv("CONTEXT_CHAT_MAX_RESPONSE_TOKENS", "2000"))
DEFAULT_TEMPERATURE = float(os.getenv("CONTEXT_CHAT_TEMPERATURE", "0.7"))
TOKEN_ENCODING = os.getenv("CONTEXT_CHAT_TOKEN_ENCODING", "cl100k_base")

FALLBACK_ENABLED = _env_bool("CONTEXT_CHAT_FALLBACK_ENABLED", True)

# Latency samples kept per model
LATENCY_WINDOW = 100

# Used when a provider's model discovery fails
DEFAULT_MODEL_LISTS: dict[str, list[str]] = {
    "openai": ["gpt-4o", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"],
}

MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16385,
}
DEFAULT_CONTEXT_WINDOW = 8192
