# context_chat/orchestrator.py
"""
QueryOrchestrator - answers a query against a context.

For each request:
1. Validate the query, context id and options
2. Load the context's scored content items from the ContextStore
3. Resolve a connector from the ModelRegistry
4. Pack a prompt with the ContextPacker
5. Dispatch it, blocking (``process_query``) or streamed
   (``stream_events`` / ``stream_query``)
6. Record usage in the registry and return a QueryResult

A blocking request that fails at the provider is retried once against the
registry's fallback connector. Both attempts are recorded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pydantic

from context_chat.config import DEFAULT_TEMPERATURE, PROVIDER_TIMEOUT
from context_chat.context_packer import ContextPacker
from context_chat.exceptions import (
    ContextChatError,
    InternalError,
    NotFoundError,
    ProviderError,
    ProviderErrorKind,
    ValidationError,
)
from context_chat.models import (
    FinishReason,
    ModelDescriptor,
    ModelReply,
    PromptAssembly,
    PromptOptions,
    QueryOptions,
    QueryResult,
    QueryState,
    ScoredItem,
    StreamEvent,
    StreamEventType,
)
from context_chat.providers.base import ProviderConnector
from context_chat.registry import ModelRegistry
from context_chat.store import ContextStore
from context_chat.stream_relay import StreamRelay
from context_chat.tokens import estimate_tokens

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[StreamEvent], Awaitable[None] | None]
OptionsInput = QueryOptions | dict[str, Any] | None


class RequestLifecycle:
    """Tracks and validates the state of one request."""

    _TRANSITIONS: dict[QueryState, frozenset[QueryState]] = {
        QueryState.INIT: frozenset({QueryState.CONTEXT_LOADED}),
        QueryState.CONTEXT_LOADED: frozenset({QueryState.PROMPT_BUILT}),
        QueryState.PROMPT_BUILT: frozenset({QueryState.DISPATCHED}),
        QueryState.DISPATCHED: frozenset({QueryState.STREAMING, QueryState.COMPLETED}),
        QueryState.STREAMING: frozenset({QueryState.COMPLETED}),
        QueryState.COMPLETED: frozenset(),
        QueryState.FAILED: frozenset(),
    }

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.state = QueryState.INIT
        self.history: list[QueryState] = [QueryState.INIT]

    def advance(self, state: QueryState) -> None:
        if state not in self._TRANSITIONS[self.state]:
            raise InternalError(f"Illegal transition {self.state.value} -> {state.value}")
        self._set(state)

    def fail(self) -> None:
        # Any non-terminal state may fail
        if self.state in (QueryState.COMPLETED, QueryState.FAILED):
            return
        self._set(QueryState.FAILED)

    @property
    def is_terminal(self) -> bool:
        return self.state in (QueryState.COMPLETED, QueryState.FAILED)

    def _set(self, state: QueryState) -> None:
        logger.debug(f"Query {self.request_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


class _PreparedQuery:
    """Everything needed to dispatch one query."""

    def __init__(
        self,
        query: str,
        context_id: str,
        options: QueryOptions,
        candidates: list[ScoredItem],
        connector: ProviderConnector,
        assembly: PromptAssembly,
        prompt_options: PromptOptions,
    ):
        self.query = query
        self.context_id = context_id
        self.options = options
        self.candidates = candidates
        self.connector = connector
        self.assembly = assembly
        self.prompt_options = prompt_options

    @property
    def descriptor(self) -> ModelDescriptor:
        return self.connector.get_descriptor()


class _StreamOutcome:
    """Filled in by a finished stream."""

    def __init__(self) -> None:
        self.result: QueryResult | None = None
        self.lifecycle: RequestLifecycle | None = None


class QueryOrchestrator:
    """
    Top-level entry point for answering queries.

    Examples:
        ```python
        orchestrator = QueryOrchestrator(registry, store)
        result = await orchestrator.process_query("What changed?", "ctx-1")

        async for event in orchestrator.stream_events("Summarize", "ctx-1"):
            send(event.to_dict())
        ```
    """

    def __init__(
        self,
        registry: ModelRegistry,
        store: ContextStore,
        packer: ContextPacker | None = None,
        timeout: float | None = PROVIDER_TIMEOUT,
        default_temperature: float = DEFAULT_TEMPERATURE,
    ):
        """
        Args:
            registry: Connectors, fallback policy and usage metrics.
            store: Persistence collaborator for contexts and content.
            packer: Prompt packer; a default ContextPacker if omitted.
            timeout: Deadline in seconds for each provider call (None disables it).
            default_temperature: Used when a query does not set one.
        """
        self._registry = registry
        self._store = store
        self._packer = packer or ContextPacker()
        self.timeout = timeout
        self.default_temperature = default_temperature

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def packer(self) -> ContextPacker:
        return self._packer

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    async def process_query(
        self,
        query: str,
        context_id: str,
        options: OptionsInput = None,
    ) -> QueryResult:
        """
        Answer a query with a single blocking provider call.

        Raises:
            ValidationError: empty query, context id or malformed options
            NotFoundError: unknown context or model id
            ProviderError: the provider (and the fallback, if any) failed
        """
        request_id = str(uuid.uuid4())
        lifecycle = RequestLifecycle(request_id)
        try:
            prepared = await self._prepare(query, context_id, options, lifecycle)
            lifecycle.advance(QueryState.DISPATCHED)

            connector = prepared.connector
            assembly = prepared.assembly
            fallback_used = False
            try:
                reply, latency_ms = await self._send(connector, assembly, prepared)
            except ProviderError as primary_error:
                primary = connector.get_descriptor()
                fallback = self._registry.fallback_for(primary.id)
                if fallback is None:
                    raise

                connector = fallback
                fallback_descriptor = fallback.get_descriptor()
                logger.warning(
                    f"Query {request_id}: {primary.id} failed ({primary_error.kind.value}), "
                    f"falling back to {fallback_descriptor.id}"
                )
                if fallback_descriptor.max_context_tokens != primary.max_context_tokens:
                    assembly = self._pack(prepared.query, prepared.candidates, fallback_descriptor, prepared.options)
                reply, latency_ms = await self._send(connector, assembly, prepared)
                fallback_used = True

            prompt_tokens, completion_tokens = self._account(reply, assembly, prepared.query)
            lifecycle.advance(QueryState.COMPLETED)
        finally:
            # Covers cancellation as well as errors
            if not lifecycle.is_terminal:
                lifecycle.fail()

        return QueryResult(
            id=request_id,
            query=prepared.query,
            response=reply.content,
            context_id=prepared.context_id,
            model_id=connector.get_descriptor().id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            finish_reason=reply.finish_reason,
            context_items=assembly.item_refs(),
            fallback_used=fallback_used,
        )

    async def _send(
        self,
        connector: ProviderConnector,
        assembly: PromptAssembly,
        prepared: _PreparedQuery,
    ) -> tuple[ModelReply, float]:
        """One provider attempt, recorded in the registry whatever the outcome."""
        model_id = connector.get_descriptor().id
        start = time.perf_counter()
        try:
            reply = await asyncio.wait_for(
                connector.send_prompt(assembly.prompt_text, prepared.prompt_options),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            self._registry.record_usage(model_id, 0, _elapsed_ms(start), success=False)
            raise ProviderError(
                f"Provider call exceeded {self.timeout}s deadline",
                kind=ProviderErrorKind.TIMEOUT,
                model_id=model_id,
            ) from e
        except ProviderError:
            self._registry.record_usage(model_id, 0, _elapsed_ms(start), success=False)
            raise
        except Exception as e:
            self._registry.record_usage(model_id, 0, _elapsed_ms(start), success=False)
            logger.error(f"Unexpected error from {model_id}: {e}")
            raise InternalError(f"Unexpected error from {model_id}: {e}") from e

        latency_ms = _elapsed_ms(start)
        prompt_tokens, completion_tokens = self._account(reply, assembly, prepared.query)
        self._registry.record_usage(model_id, prompt_tokens + completion_tokens, latency_ms, success=True)
        return reply, latency_ms

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream_events(
        self,
        query: str,
        context_id: str,
        options: OptionsInput = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Answer a query as a stream of typed events.

        Validation, lookup and packing errors raise before any event. A
        provider failure mid-stream yields one ``error`` event and then raises.
        Closing the iterator early aborts the provider call and records nothing.
        """
        return self._run_stream(query, context_id, options, _StreamOutcome())

    async def stream_query(
        self,
        query: str,
        context_id: str,
        on_chunk: ChunkCallback,
        options: OptionsInput = None,
    ) -> QueryResult:
        """
        Stream a query to ``on_chunk``, which may be sync or async.

        Each StreamEvent (start, chunk..., end) is passed to ``on_chunk`` in
        order. On a provider failure a final error event is delivered on a
        best-effort basis and the ProviderError is raised. If ``on_chunk``
        itself raises, the stream is aborted and the exception propagates.
        """
        outcome = _StreamOutcome()
        events = self._run_stream(query, context_id, options, outcome)
        try:
            async for event in events:
                if event.type == StreamEventType.ERROR:
                    await self._notify_error(on_chunk, event)
                else:
                    await _deliver(on_chunk, event)
        finally:
            await events.aclose()

        assert outcome.result is not None
        return outcome.result

    async def _run_stream(
        self,
        query: str,
        context_id: str,
        options: OptionsInput,
        outcome: _StreamOutcome,
    ) -> AsyncIterator[StreamEvent]:
        request_id = str(uuid.uuid4())
        lifecycle = RequestLifecycle(request_id)
        outcome.lifecycle = lifecycle
        try:
            prepared = await self._prepare(query, context_id, options, lifecycle)
            lifecycle.advance(QueryState.DISPATCHED)

            descriptor = prepared.descriptor
            relay = StreamRelay(
                prepared.connector.stream_prompt(prepared.assembly.prompt_text, prepared.prompt_options),
                deadline=self.timeout,
                model_id=descriptor.id,
            )
            events = relay.events()
            parts: list[str] = []
            start = time.perf_counter()
            try:
                async for event in events:
                    if event.type == StreamEventType.CHUNK:
                        if lifecycle.state == QueryState.DISPATCHED:
                            lifecycle.advance(QueryState.STREAMING)
                        parts.append(event.content or "")
                    yield event
            except ProviderError as e:
                self._registry.record_usage(descriptor.id, 0, _elapsed_ms(start), success=False)
                logger.error(
                    f"Query {request_id}: stream from {descriptor.id} failed after {relay.chunk_count} chunks: {e}"
                )
                raise
            except ContextChatError:
                raise
            except Exception as e:
                self._registry.record_usage(descriptor.id, 0, _elapsed_ms(start), success=False)
                raise InternalError(f"Unexpected error from {descriptor.id}: {e}") from e
            finally:
                await events.aclose()

            latency_ms = _elapsed_ms(start)
            content = "".join(parts)
            usage = relay.usage or ModelReply(content=content)
            reply = usage.model_copy(update={"content": content})
            prompt_tokens, completion_tokens = self._account(reply, prepared.assembly, prepared.query)
            self._registry.record_usage(descriptor.id, prompt_tokens + completion_tokens, latency_ms, success=True)
            lifecycle.advance(QueryState.COMPLETED)

            outcome.result = QueryResult(
                id=request_id,
                query=prepared.query,
                response=content,
                context_id=prepared.context_id,
                model_id=descriptor.id,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                latency_ms=latency_ms,
                finish_reason=reply.finish_reason if relay.usage else FinishReason.STOP,
                context_items=prepared.assembly.item_refs(),
            )
        finally:
            # Errors, cancellation and a consumer closing the stream all end here
            if not lifecycle.is_terminal:
                lifecycle.fail()

    async def _notify_error(self, on_chunk: ChunkCallback, event: StreamEvent) -> None:
        try:
            await _deliver(on_chunk, event)
        except Exception as e:
            logger.warning(f"Could not deliver stream error notice: {e}")

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    async def _prepare(
        self,
        query: str,
        context_id: str,
        options: OptionsInput,
        lifecycle: RequestLifecycle,
    ) -> _PreparedQuery:
        opts = self._validate(query, context_id, options)

        candidates = await self._load_candidates(context_id, opts)
        lifecycle.advance(QueryState.CONTEXT_LOADED)

        connector = self._registry.resolve(opts.model_id)
        descriptor = connector.get_descriptor()
        assembly = self._pack(query, candidates, descriptor, opts)
        lifecycle.advance(QueryState.PROMPT_BUILT)

        prompt_options = PromptOptions(
            temperature=opts.temperature if opts.temperature is not None else self.default_temperature,
            max_tokens=opts.max_tokens or self._packer.config.default_max_response_tokens,
            system_prompt=opts.system_prompt,
            history=tuple(opts.history),
            provider_options=opts.provider_options,
        )
        return _PreparedQuery(
            query=query,
            context_id=context_id,
            options=opts,
            candidates=candidates,
            connector=connector,
            assembly=assembly,
            prompt_options=prompt_options,
        )

    def _validate(self, query: Any, context_id: Any, options: OptionsInput) -> QueryOptions:
        errors: dict[str, str] = {}
        if not isinstance(query, str) or not query.strip():
            errors["query"] = "Query is required"
        if not isinstance(context_id, str) or not context_id.strip():
            errors["contextId"] = "Context ID is required"
        if errors:
            raise ValidationError("Invalid query request", errors)
        return coerce_options(options)

    async def _load_candidates(self, context_id: str, options: QueryOptions) -> list[ScoredItem]:
        try:
            context = await self._store.get_context(context_id)
            if context is None:
                raise NotFoundError("Context", context_id)
            scored_items = await self._store.get_context_content_items(context_id)

            if options.included_content_ids is not None:
                wanted = set(options.included_content_ids)
                scored_items = [scored for scored in scored_items if scored.item.id in wanted]

            missing = [scored for scored in scored_items if scored.item.body is None]
            bodies = await asyncio.gather(*(self._store.get_content_body(scored.item.id) for scored in missing))
        except ContextChatError:
            raise
        except Exception as e:
            raise InternalError(f"Failed to load context {context_id}: {e}") from e

        loaded = dict(zip((scored.item.id for scored in missing), bodies))
        candidates: list[ScoredItem] = []
        for scored in scored_items:
            if scored.item.id in loaded:
                item = scored.item.model_copy(update={"body": loaded[scored.item.id] or ""})
                scored = ScoredItem(item=item, relevance=scored.relevance)
            candidates.append(scored)

        logger.debug(f"Loaded {len(candidates)} candidate items for context {context_id}")
        return candidates

    def _pack(
        self,
        query: str,
        candidates: list[ScoredItem],
        descriptor: ModelDescriptor,
        options: QueryOptions,
    ) -> PromptAssembly:
        return self._packer.pack(
            query,
            candidates,
            max_context_tokens=descriptor.max_context_tokens,
            max_response_tokens=options.max_tokens,
            system_prompt=options.system_prompt,
            history=options.history,
        )

    def _account(self, reply: ModelReply, assembly: PromptAssembly, query: str) -> tuple[int, int]:
        """Prompt and completion tokens, preferring provider-reported usage."""
        prompt_tokens = reply.prompt_tokens or (assembly.context_tokens + self._packer.count(query))
        completion_tokens = reply.completion_tokens or estimate_tokens(reply.content)
        return prompt_tokens, completion_tokens


def coerce_options(options: OptionsInput) -> QueryOptions:
    """Validate caller options at the boundary."""
    if options is None:
        return QueryOptions()
    if isinstance(options, QueryOptions):
        return options
    try:
        return QueryOptions.model_validate(options)
    except pydantic.ValidationError as e:
        errors = {".".join(str(part) for part in err["loc"]) or "options": err["msg"] for err in e.errors()}
        raise ValidationError("Invalid query options", errors) from e


async def _deliver(on_chunk: ChunkCallback, event: StreamEvent) -> None:
    result = on_chunk(event)
    if inspect.isawaitable(result):
        await result


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
