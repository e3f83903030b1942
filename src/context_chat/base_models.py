# context_chat/base_models.py
"""Base model with dict-style access for transport-facing results."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class DictCompatModel(BaseModel):
    """Base for result models that transports consume like plain dicts.

    Allows ``result["response"]`` and ``"model_id" in result`` so a handler can
    treat a ``QueryResult`` or ``MetricsSnapshot`` as the JSON object it will
    eventually serialize.
    """

    def __getitem__(self, key: str) -> Any:
        if key not in type(self).model_fields:
            raise KeyError(key)
        return getattr(self, key)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, str):
            return key in type(self).model_fields
        return False

    def __eq__(self, other: object) -> bool:
        if isinstance(other, dict):
            return self.model_dump() == other
        return super().__eq__(other)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self:
            return getattr(self, key)
        return default
