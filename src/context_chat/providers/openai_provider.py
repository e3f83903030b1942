# context_chat/providers/openai_provider.py
"""
OpenAI-compatible ProviderConnector.

Talks to the OpenAI chat completions API through ``openai.AsyncOpenAI``. The
same connector serves local inference servers that expose the OpenAI protocol
(Ollama, llama.cpp, vLLM) when constructed with ``OpenAIConnector.local()``.

Message shaping, stream framing and SDK error translation stay in this module;
callers only see ModelReply, text chunks and ProviderError.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from context_chat.config import (
    DEFAULT_CONTEXT_WINDOW,
    DEFAULT_MODEL,
    MODEL_CONTEXT_WINDOWS,
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    PROVIDER_TIMEOUT,
)
from context_chat.exceptions import ProviderError, ProviderErrorKind, classify_status
from context_chat.models import (
    Capability,
    FinishReason,
    MessageRole,
    ModelDescriptor,
    ModelReply,
    PromptOptions,
    ProviderName,
)
from context_chat.providers.base import StreamItem

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_BASE_URL = "http://localhost:11434/v1"


class OpenAIConnector:
    """ProviderConnector over the OpenAI chat completions API."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        model_id: str | None = None,
        provider_name: str = ProviderName.OPENAI.value,
        client: AsyncOpenAI | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_context_tokens: int | None = None,
        capabilities: Iterable[Capability] | None = None,
        timeout: float = PROVIDER_TIMEOUT,
        include_stream_usage: bool = True,
        model_prefix: str | None = "gpt-",
    ):
        """
        Args:
            model: Provider model name sent with each request.
            model_id: Registry id; defaults to ``model``.
            provider_name: Name reported in the descriptor.
            client: Pre-built AsyncOpenAI client (tests inject a mock here).
            api_key: API key; defaults to OPENAI_API_KEY.
            base_url: API base URL; defaults to OPENAI_BASE_URL.
            max_context_tokens: Context window; looked up from the model name if omitted.
            capabilities: Advertised capabilities; chat and streaming by default.
            timeout: Client-side request timeout in seconds.
            include_stream_usage: Ask the API for a final usage chunk when streaming.
            model_prefix: Only discovered models with this prefix are listed.
        """
        self.model = model
        self.include_stream_usage = include_stream_usage
        self.model_prefix = model_prefix
        self._descriptor = ModelDescriptor(
            id=model_id or model,
            provider_name=provider_name,
            max_context_tokens=max_context_tokens or MODEL_CONTEXT_WINDOWS.get(model, DEFAULT_CONTEXT_WINDOW),
            capabilities=frozenset(capabilities) if capabilities else frozenset({Capability.CHAT, Capability.STREAMING}),
        )
        self._client = client or AsyncOpenAI(
            api_key=api_key or OPENAI_API_KEY,
            base_url=base_url or OPENAI_BASE_URL,
            timeout=timeout,
        )

    @classmethod
    def local(
        cls,
        model: str,
        *,
        base_url: str = DEFAULT_LOCAL_BASE_URL,
        max_context_tokens: int = DEFAULT_CONTEXT_WINDOW,
        **kwargs: Any,
    ) -> "OpenAIConnector":
        """Connector for a local OpenAI-compatible inference server."""
        kwargs.setdefault("api_key", "local")
        kwargs.setdefault("include_stream_usage", False)
        kwargs.setdefault("model_prefix", None)
        return cls(
            model,
            provider_name=ProviderName.LOCAL.value,
            base_url=base_url,
            max_context_tokens=max_context_tokens,
            **kwargs,
        )

    def get_descriptor(self) -> ModelDescriptor:
        return self._descriptor

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send_prompt(self, prompt: str, options: PromptOptions) -> ModelReply:
        kwargs = self._request_kwargs(prompt, options)
        self._log_request(prompt, options)

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise self._translate_error(e) from e

        choice = response.choices[0] if response.choices else None
        usage = response.usage
        reply = ModelReply(
            content=(choice.message.content if choice and choice.message else None) or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            finish_reason=FinishReason.parse(choice.finish_reason if choice else None),
            model=response.model,
        )
        logger.debug(
            f"{self._descriptor.id} reply: {reply.prompt_tokens} prompt + "
            f"{reply.completion_tokens} completion tokens, finish={reply.finish_reason.value}"
        )
        return reply

    async def stream_prompt(self, prompt: str, options: PromptOptions) -> AsyncIterator[StreamItem]:
        kwargs = self._request_kwargs(prompt, options)
        kwargs["stream"] = True
        if self.include_stream_usage:
            kwargs["stream_options"] = {"include_usage": True}
        self._log_request(prompt, options, streaming=True)

        try:
            stream = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise self._translate_error(e) from e

        usage = None
        finish_reason: str | None = None
        model_name: str | None = None
        try:
            async for chunk in stream:
                model_name = getattr(chunk, "model", None) or model_name
                if getattr(chunk, "usage", None):
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                content = choice.delta.content if choice.delta else None
                if content:
                    yield content
        except (openai.APIError, httpx.TransportError) as e:
            raise self._translate_error(e) from e
        finally:
            await stream.close()

        if usage is not None:
            yield ModelReply(
                prompt_tokens=usage.prompt_tokens or 0,
                completion_tokens=usage.completion_tokens or 0,
                finish_reason=FinishReason.parse(finish_reason),
                model=model_name,
            )

    async def list_available_models(self) -> list[str]:
        try:
            page = await self._client.models.list()
        except openai.APIError as e:
            raise self._translate_error(e) from e

        names = [model.id for model in page.data]
        if self.model_prefix:
            names = [name for name in names if name.startswith(self.model_prefix)]
        return sorted(names)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def build_messages(self, prompt: str, options: PromptOptions) -> list[dict[str, str]]:
        """System prompt, then caller history, then the packed prompt."""
        messages: list[dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": MessageRole.SYSTEM.value, "content": options.system_prompt})
        for message in options.history:
            messages.append({"role": message.role.value, "content": message.content})
        messages.append({"role": MessageRole.USER.value, "content": prompt})
        return messages

    def _request_kwargs(self, prompt: str, options: PromptOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(prompt, options),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        if options.provider_options is not None:
            kwargs.update(options.provider_options.request_fields())
        return kwargs

    def _translate_error(self, error: openai.APIError | httpx.TransportError) -> ProviderError:
        # Once a stream is open the SDK no longer wraps transport failures,
        # so httpx errors surface here directly
        status_code: int | None = None
        if isinstance(error, (openai.APITimeoutError, httpx.TimeoutException)):
            kind = ProviderErrorKind.TIMEOUT
        elif isinstance(error, (openai.APIConnectionError, httpx.TransportError)):
            kind = ProviderErrorKind.SERVER_ERROR
        elif isinstance(error, openai.APIStatusError):
            status_code = error.status_code
            kind = classify_status(status_code)
        else:
            kind = ProviderErrorKind.UNKNOWN

        logger.error(f"{self._descriptor.provider_name} request for {self._descriptor.id} failed ({kind.value}): {error}")
        return ProviderError(
            str(error.message) if getattr(error, "message", None) else str(error),
            kind=kind,
            status_code=status_code,
            model_id=self._descriptor.id,
        )

    def _log_request(self, prompt: str, options: PromptOptions, streaming: bool = False) -> None:
        logger.debug(
            f"{self._descriptor.provider_name} {'stream ' if streaming else ''}request: "
            f"model={self.model} prompt_chars={len(prompt)} "
            f"temperature={options.temperature} max_tokens={options.max_tokens}"
        )

    def __repr__(self) -> str:
        return f"OpenAIConnector(model_id={self._descriptor.id!r}, provider={self._descriptor.provider_name!r})"
