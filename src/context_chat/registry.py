# context_chat/registry.py
"""
ModelRegistry - named provider connectors, default selection, fallback policy
and per-model usage metrics.

The registry is an ordinary object: build one, register connectors, and pass
it to the QueryOrchestrator. Each registered model owns its own UsageMetrics
with its own lock, so concurrent ``record_usage`` calls for different models
never contend.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from context_chat.config import DEFAULT_MODEL_LISTS, FALLBACK_ENABLED
from context_chat.exceptions import NotFoundError, ProviderError
from context_chat.models import MetricsSnapshot, ModelDescriptor, UsageMetrics
from context_chat.providers.base import ProviderConnector

logger = logging.getLogger(__name__)


class _RegistryEntry(BaseModel):
    """A registered connector with its descriptor and metrics."""

    connector: Any
    descriptor: ModelDescriptor
    metrics: UsageMetrics = Field(default_factory=UsageMetrics)


class ModelRegistry:
    """
    Holds ProviderConnectors keyed by their descriptor id.

    Examples:
        ```python
        registry = ModelRegistry()
        registry.register(OpenAIConnector("gpt-4o"))
        registry.register(OpenAIConnector.local("llama3"))
        connector = registry.resolve()          # gpt-4o, the first registered
        backup = registry.fallback_for("gpt-4o")  # llama3
        ```
    """

    def __init__(
        self,
        connectors: list[ProviderConnector] | None = None,
        fallback_enabled: bool = FALLBACK_ENABLED,
        default_model_id: str | None = None,
    ):
        self._entries: dict[str, _RegistryEntry] = {}
        self._default_id: str | None = None
        self.fallback_enabled = fallback_enabled

        for connector in connectors or []:
            self.register(connector)
        if default_model_id is not None:
            self.set_default(default_model_id)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, connector: ProviderConnector) -> ModelDescriptor:
        """
        Register a connector under its descriptor id.

        Re-registering an id replaces the connector and starts its metrics
        from zero. The first connector registered becomes the default.
        """
        descriptor = connector.get_descriptor()
        replaced = descriptor.id in self._entries
        self._entries[descriptor.id] = _RegistryEntry(connector=connector, descriptor=descriptor)

        if replaced:
            logger.info(f"Replaced connector for model {descriptor.id} ({descriptor.provider_name})")
        else:
            logger.info(f"Registered connector for model {descriptor.id} ({descriptor.provider_name})")

        if self._default_id is None:
            self._default_id = descriptor.id
            logger.info(f"Set default model to {descriptor.id}")
        return descriptor

    def set_default(self, model_id: str) -> None:
        if model_id not in self._entries:
            raise NotFoundError("Model", model_id)
        self._default_id = model_id
        logger.info(f"Set default model to {model_id}")

    @property
    def default_model_id(self) -> str | None:
        return self._default_id

    @property
    def model_ids(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, model_id: str | None = None) -> ProviderConnector:
        """Return the named connector, or the default when no id is given."""
        target = model_id or self._default_id
        if target is None:
            raise NotFoundError("Model", "<default>")
        entry = self._entries.get(target)
        if entry is None:
            raise NotFoundError("Model", target)
        return entry.connector

    def descriptor(self, model_id: str) -> ModelDescriptor:
        entry = self._entries.get(model_id)
        if entry is None:
            raise NotFoundError("Model", model_id)
        return entry.descriptor

    def fallback_for(self, primary_model_id: str) -> ProviderConnector | None:
        """
        Pick a connector to retry with after ``primary_model_id`` failed.

        First-available policy: the default model if the primary is not the
        default, otherwise the first other registered model. Capabilities and
        context windows are not matched.
        """
        if not self.fallback_enabled:
            return None

        if self._default_id is not None and primary_model_id != self._default_id:
            return self._entries[self._default_id].connector

        for model_id, entry in list(self._entries.items()):
            if model_id != primary_model_id:
                return entry.connector
        return None

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_usage(self, model_id: str, tokens: int, latency_ms: float, success: bool) -> None:
        """Record one completed attempt. Safe to call from concurrent requests."""
        entry = self._entries.get(model_id)
        if entry is None:
            raise NotFoundError("Model", model_id)
        entry.metrics.record(tokens, latency_ms, success)

    def metrics_snapshot(self) -> dict[str, MetricsSnapshot]:
        return {model_id: entry.metrics.snapshot() for model_id, entry in list(self._entries.items())}

    def reset_metrics(self, model_id: str | None = None) -> None:
        if model_id is None:
            for entry in list(self._entries.values()):
                entry.metrics.reset()
            logger.info("Reset usage metrics for all models")
            return
        entry = self._entries.get(model_id)
        if entry is None:
            raise NotFoundError("Model", model_id)
        entry.metrics.reset()
        logger.info(f"Reset usage metrics for {model_id}")

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def available_models(self) -> dict[str, list[str]]:
        """
        Discover model names for every registered connector.

        A connector whose discovery fails reports the static default list for
        its provider instead of failing the whole call.
        """
        result: dict[str, list[str]] = {}
        for model_id, entry in list(self._entries.items()):
            try:
                result[model_id] = await entry.connector.list_available_models()
            except ProviderError as e:
                logger.warning(f"Model discovery failed for {model_id}, using defaults: {e}")
                result[model_id] = list(
                    DEFAULT_MODEL_LISTS.get(entry.descriptor.provider_name, [entry.descriptor.id])
                )
        return result
