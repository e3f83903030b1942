# tests/test_orchestrator.py
"""
Tests for the QueryOrchestrator.

Covers:
- The blocking path: validation, lookup, packing, accounting
- Single-hop fallback and how both attempts are recorded
- Timeouts, unexpected provider errors and cancellation
- The streaming path through stream_events and stream_query
- RequestLifecycle transitions
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from context_chat.exceptions import (
    InternalError,
    NotFoundError,
    ProviderError,
    ProviderErrorKind,
    ValidationError,
)
from context_chat.models import (
    ChatMessage,
    ContentItem,
    FinishReason,
    MessageRole,
    ModelReply,
    QueryOptions,
    QueryState,
    StreamEventType,
)
from context_chat.orchestrator import QueryOrchestrator, RequestLifecycle, coerce_options
from context_chat.registry import ModelRegistry

from .conftest import FakeConnector

QUERY = "What is the design?"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_orchestrator(registry, store, packer, timeout=5.0):
    return QueryOrchestrator(registry, store, packer=packer, timeout=timeout)


def server_error(model_id: str) -> ProviderError:
    return ProviderError("upstream 500", kind=ProviderErrorKind.SERVER_ERROR, status_code=500, model_id=model_id)


# =============================================================================
# Blocking path
# =============================================================================


class TestProcessQuery:
    """Happy path and accounting."""

    @pytest.mark.asyncio
    async def test_answers_with_packed_context(self, registry, store, packer, primary):
        orchestrator = make_orchestrator(registry, store, packer)

        result = await orchestrator.process_query(QUERY, "ctx-1")

        assert result.response == "primary answer"
        assert result.model_id == "primary"
        assert result.context_id == "ctx-1"
        assert result.query == QUERY
        assert not result.fallback_used
        assert [ref.id for ref in result.context_items] == ["design", "api", "misc"]

        prompt = primary.prompts[0]
        assert prompt.endswith(QUERY)
        assert prompt.index("=== Design ===") < prompt.index("=== API ===") < prompt.index("=== Misc ===")

    @pytest.mark.asyncio
    async def test_accounting_without_provider_usage(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)

        result = await orchestrator.process_query(QUERY, "ctx-1")

        # 12 body + 17 preamble and header + 4 query tokens; ceil(len("primary answer") / 4)
        assert result.prompt_tokens == 33
        assert result.completion_tokens == 4
        assert result.total_tokens == 37
        assert result.latency_ms >= 0

        snapshot = registry.metrics_snapshot()["primary"]
        assert snapshot.requests == 1
        assert snapshot.failures == 0
        assert snapshot.total_tokens == 37

    @pytest.mark.asyncio
    async def test_provider_usage_wins(self, registry, store, packer, primary):
        primary.usage = ModelReply(prompt_tokens=40, completion_tokens=8, finish_reason=FinishReason.LENGTH)
        orchestrator = make_orchestrator(registry, store, packer)

        result = await orchestrator.process_query(QUERY, "ctx-1")

        assert result.prompt_tokens == 40
        assert result.completion_tokens == 8
        assert result.finish_reason == FinishReason.LENGTH
        assert registry.metrics_snapshot()["primary"].total_tokens == 48

    @pytest.mark.asyncio
    async def test_options_reach_connector(self, registry, store, packer, primary):
        orchestrator = make_orchestrator(registry, store, packer)
        options = {
            "temperature": 0.2,
            "maxTokens": 50,
            "systemPrompt": "Be terse.",
            "history": [{"role": "user", "content": "earlier"}],
        }

        await orchestrator.process_query(QUERY, "ctx-1", options)

        sent = primary.options[0]
        assert sent.temperature == 0.2
        assert sent.max_tokens == 50
        assert sent.system_prompt == "Be terse."
        assert sent.history == (ChatMessage(role=MessageRole.USER, content="earlier"),)

    @pytest.mark.asyncio
    async def test_defaults_reach_connector(self, registry, store, packer, primary):
        orchestrator = QueryOrchestrator(registry, store, packer=packer, default_temperature=0.3)

        await orchestrator.process_query(QUERY, "ctx-1")

        sent = primary.options[0]
        assert sent.temperature == 0.3
        assert sent.max_tokens == packer.config.default_max_response_tokens

    @pytest.mark.asyncio
    async def test_explicit_model(self, registry, store, packer, secondary):
        orchestrator = make_orchestrator(registry, store, packer)
        result = await orchestrator.process_query(QUERY, "ctx-1", QueryOptions(model_id="secondary"))
        assert result.model_id == "secondary"
        assert secondary.prompts

    @pytest.mark.asyncio
    async def test_included_content_ids_filter(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)
        result = await orchestrator.process_query(QUERY, "ctx-1", {"includedContentIds": ["api"]})
        assert [ref.id for ref in result.context_items] == ["api"]

    @pytest.mark.asyncio
    async def test_empty_context_sends_bare_query(self, registry, store, packer, primary):
        orchestrator = make_orchestrator(registry, store, packer)
        result = await orchestrator.process_query(QUERY, "ctx-empty")
        assert primary.prompts == [QUERY]
        assert result.context_items == []

    @pytest.mark.asyncio
    async def test_tiny_window_degrades_to_query(self, store, packer):
        tiny = FakeConnector(model_id="tiny", max_context_tokens=5)
        orchestrator = make_orchestrator(ModelRegistry([tiny]), store, packer)

        result = await orchestrator.process_query(QUERY, "ctx-1")

        assert tiny.prompts == [QUERY]
        assert result.context_items == []

    @pytest.mark.asyncio
    async def test_lazy_bodies_are_loaded(self, registry, store, packer, primary):
        store.add_content(ContentItem(id="lazy", title="Lazy"), body="loaded on demand")
        store.attach("ctx-1", "lazy", relevance=1.0)
        orchestrator = make_orchestrator(registry, store, packer)

        with patch.object(store, "get_content_body", wraps=store.get_content_body) as get_body:
            result = await orchestrator.process_query(QUERY, "ctx-1")

        get_body.assert_awaited_once_with("lazy")
        assert "=== Lazy ===\nloaded on demand" in primary.prompts[0]
        assert result.context_items[0].id == "lazy"


# =============================================================================
# Input errors
# =============================================================================


class TestInputErrors:
    """Validation and lookup failures never reach a provider."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   ", None])
    async def test_empty_query(self, registry, store, packer, primary, query):
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.process_query(query, "ctx-1")
        assert "query" in exc_info.value.errors
        assert exc_info.value.status == 400
        assert primary.prompts == []

    @pytest.mark.asyncio
    async def test_missing_context_id(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.process_query(QUERY, "")
        assert "contextId" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_invalid_options(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.process_query(QUERY, "ctx-1", {"temperature": 5})
        assert "temperature" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_unknown_context(self, registry, store, packer, primary):
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.process_query(QUERY, "ctx-missing")
        assert exc_info.value.resource == "Context"
        assert primary.prompts == []

    @pytest.mark.asyncio
    async def test_unknown_model(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(NotFoundError):
            await orchestrator.process_query(QUERY, "ctx-1", {"modelId": "ghost"})
        assert all(s.requests == 0 for s in registry.metrics_snapshot().values())

    @pytest.mark.asyncio
    async def test_store_failure_is_internal(self, registry, store, packer):
        store.get_context_content_items = AsyncMock(side_effect=RuntimeError("db down"))
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(InternalError) as exc_info:
            await orchestrator.process_query(QUERY, "ctx-1")
        assert "db down" in exc_info.value.message


# =============================================================================
# Fallback
# =============================================================================


class TestFallback:
    """One retry against the registry's fallback connector."""

    @pytest.mark.asyncio
    async def test_fallback_succeeds(self, registry, store, packer, primary, secondary):
        primary.error = server_error("primary")
        orchestrator = make_orchestrator(registry, store, packer)

        with patch.object(registry, "record_usage", wraps=registry.record_usage) as record:
            result = await orchestrator.process_query(QUERY, "ctx-1")

        assert result.response == "secondary answer"
        assert result.model_id == "secondary"
        assert result.fallback_used

        assert record.call_count == 2
        first, second = record.call_args_list
        assert first.args[0] == "primary"
        assert first.kwargs["success"] is False
        assert second.args[0] == "secondary"
        assert second.kwargs["success"] is True

        snapshots = registry.metrics_snapshot()
        assert snapshots["primary"].failures == 1
        assert snapshots["primary"].total_tokens == 0
        assert snapshots["secondary"].requests == 1

    @pytest.mark.asyncio
    async def test_both_attempts_fail(self, registry, store, packer, primary, secondary):
        primary_error = server_error("primary")
        secondary_error = ProviderError("slow down", kind=ProviderErrorKind.RATE_LIMIT, model_id="secondary")
        primary.error = primary_error
        secondary.error = secondary_error
        orchestrator = make_orchestrator(registry, store, packer)

        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.process_query(QUERY, "ctx-1")

        assert exc_info.value is secondary_error
        assert exc_info.value.__context__ is primary_error
        snapshots = registry.metrics_snapshot()
        assert snapshots["primary"].failures == 1
        assert snapshots["secondary"].failures == 1

    @pytest.mark.asyncio
    async def test_fallback_disabled(self, store, packer, primary, secondary):
        primary.error = server_error("primary")
        registry = ModelRegistry([primary, secondary], fallback_enabled=False)
        orchestrator = make_orchestrator(registry, store, packer)

        with pytest.raises(ProviderError):
            await orchestrator.process_query(QUERY, "ctx-1")

        assert secondary.prompts == []

    @pytest.mark.asyncio
    async def test_single_model_has_no_fallback(self, store, packer, primary):
        primary.error = server_error("primary")
        orchestrator = make_orchestrator(ModelRegistry([primary]), store, packer)
        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.process_query(QUERY, "ctx-1")
        assert exc_info.value.kind == ProviderErrorKind.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_fallback_repacks_for_smaller_window(self, store, packer, primary):
        primary.error = server_error("primary")
        # budget = 32 - 4 (query) - 10 (response) = 18: "design" costs 16 with overhead, nothing else fits
        small = FakeConnector(model_id="small", max_context_tokens=32, reply="small answer")
        orchestrator = make_orchestrator(ModelRegistry([primary, small]), store, packer)

        result = await orchestrator.process_query(QUERY, "ctx-1")

        assert "=== API ===" in primary.prompts[0]
        assert "=== Design ===" in small.prompts[0]
        assert "=== API ===" not in small.prompts[0]
        assert [ref.id for ref in result.context_items] == ["design"]

    @pytest.mark.asyncio
    async def test_validation_errors_do_not_fall_back(self, registry, store, packer, secondary):
        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(ValidationError):
            await orchestrator.process_query("", "ctx-1")
        assert secondary.prompts == []


# =============================================================================
# Timeouts, unexpected errors, cancellation
# =============================================================================


class TestProviderFailures:
    """Failures that are not plain ProviderErrors."""

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_error(self, store, packer, primary):
        primary.delay = 0.5
        orchestrator = make_orchestrator(ModelRegistry([primary]), store, packer, timeout=0.01)

        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.process_query(QUERY, "ctx-1")

        assert exc_info.value.kind == ProviderErrorKind.TIMEOUT
        assert exc_info.value.model_id == "primary"
        snapshot = orchestrator.registry.metrics_snapshot()["primary"]
        assert snapshot.failures == 1
        assert snapshot.total_tokens == 0

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, registry, store, packer, primary):
        primary.delay = 0.5
        orchestrator = make_orchestrator(registry, store, packer, timeout=0.05)
        result = await orchestrator.process_query(QUERY, "ctx-1")
        assert result.model_id == "secondary"
        assert result.fallback_used

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, registry, store, packer, primary, secondary):
        primary.error = ValueError("bad payload")
        orchestrator = make_orchestrator(registry, store, packer)

        with pytest.raises(InternalError):
            await orchestrator.process_query(QUERY, "ctx-1")

        assert registry.metrics_snapshot()["primary"].failures == 1
        assert secondary.prompts == []

    @pytest.mark.asyncio
    async def test_cancellation_records_nothing(self, registry, store, packer, primary):
        primary.delay = 1.0
        orchestrator = make_orchestrator(registry, store, packer)

        task = asyncio.create_task(orchestrator.process_query(QUERY, "ctx-1"))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert all(s.requests == 0 for s in registry.metrics_snapshot().values())


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    """stream_events and stream_query."""

    @pytest.mark.asyncio
    async def test_stream_events(self, registry, store, packer, primary):
        orchestrator = make_orchestrator(registry, store, packer)

        events = [event async for event in orchestrator.stream_events(QUERY, "ctx-1")]

        assert [e.type for e in events] == [
            StreamEventType.START,
            StreamEventType.CHUNK,
            StreamEventType.CHUNK,
            StreamEventType.END,
        ]
        assert "".join(e.content for e in events[1:-1]) == "Hello"
        assert "=== Design ===" in primary.prompts[0]

        snapshot = registry.metrics_snapshot()["primary"]
        assert snapshot.requests == 1
        # 33 prompt tokens + ceil(5 / 4) completion tokens
        assert snapshot.total_tokens == 35

    @pytest.mark.asyncio
    async def test_stream_query_sync_callback(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)
        received = []

        result = await orchestrator.stream_query(QUERY, "ctx-1", received.append)

        assert [e.type for e in received] == [
            StreamEventType.START,
            StreamEventType.CHUNK,
            StreamEventType.CHUNK,
            StreamEventType.END,
        ]
        assert result.response == "Hello"
        assert result.model_id == "primary"
        assert result.completion_tokens == 2
        assert result.finish_reason == FinishReason.STOP
        assert [ref.id for ref in result.context_items] == ["design", "api", "misc"]

    @pytest.mark.asyncio
    async def test_stream_query_async_callback(self, registry, store, packer):
        orchestrator = make_orchestrator(registry, store, packer)
        received = []

        async def on_chunk(event):
            await asyncio.sleep(0)
            received.append(event.type)

        result = await orchestrator.stream_query(QUERY, "ctx-1", on_chunk)

        assert received[0] == StreamEventType.START
        assert received[-1] == StreamEventType.END
        assert result.response == "Hello"

    @pytest.mark.asyncio
    async def test_stream_usage_from_provider(self, registry, store, packer, primary):
        primary.usage = ModelReply(prompt_tokens=30, completion_tokens=2, finish_reason=FinishReason.LENGTH)
        orchestrator = make_orchestrator(registry, store, packer)

        result = await orchestrator.stream_query(QUERY, "ctx-1", lambda event: None)

        assert result.prompt_tokens == 30
        assert result.completion_tokens == 2
        assert result.finish_reason == FinishReason.LENGTH
        assert registry.metrics_snapshot()["primary"].total_tokens == 32

    @pytest.mark.asyncio
    async def test_stream_error_notifies_then_raises(self, registry, store, packer, primary, secondary):
        primary.error = server_error("primary")
        primary.stream_error_after = 1
        orchestrator = make_orchestrator(registry, store, packer)
        received = []

        with pytest.raises(ProviderError):
            await orchestrator.stream_query(QUERY, "ctx-1", received.append)

        assert [e.type for e in received] == [StreamEventType.START, StreamEventType.CHUNK, StreamEventType.ERROR]
        assert received[-1].content.startswith("[error]")
        assert secondary.prompts == []
        assert registry.metrics_snapshot()["primary"].failures == 1

    @pytest.mark.asyncio
    async def test_failing_error_notice_is_swallowed(self, registry, store, packer, primary):
        primary.error = server_error("primary")
        primary.stream_error_after = 0

        def on_chunk(event):
            if event.type == StreamEventType.ERROR:
                raise ConnectionError("client gone")

        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(ProviderError):
            await orchestrator.stream_query(QUERY, "ctx-1", on_chunk)

    @pytest.mark.asyncio
    async def test_callback_error_aborts_stream(self, registry, store, packer, primary):
        primary.chunks = ["a", "b", "c", "d"]
        primary.delay = 0.01

        def on_chunk(event):
            if event.type == StreamEventType.CHUNK:
                raise ConnectionError("client gone")

        orchestrator = make_orchestrator(registry, store, packer)
        with pytest.raises(ConnectionError):
            await orchestrator.stream_query(QUERY, "ctx-1", on_chunk)

        assert primary.stream_closed
        assert registry.metrics_snapshot()["primary"].requests == 0

    @pytest.mark.asyncio
    async def test_consumer_abort_records_nothing(self, registry, store, packer, primary):
        primary.chunks = ["a"] * 20
        primary.delay = 0.01
        orchestrator = make_orchestrator(registry, store, packer)

        events = orchestrator.stream_events(QUERY, "ctx-1")
        assert (await events.__anext__()).type == StreamEventType.START
        assert (await events.__anext__()).type == StreamEventType.CHUNK
        await events.aclose()

        assert primary.stream_closed
        assert registry.metrics_snapshot()["primary"].requests == 0

    @pytest.mark.asyncio
    async def test_stream_validation_raises_before_events(self, registry, store, packer, primary):
        orchestrator = make_orchestrator(registry, store, packer)
        received = []
        with pytest.raises(ValidationError):
            await orchestrator.stream_query("", "ctx-1", received.append)
        assert received == []
        assert primary.prompts == []

    @pytest.mark.asyncio
    async def test_stream_deadline(self, store, packer, primary):
        primary.chunks = ["slow"] * 10
        primary.delay = 0.05
        orchestrator = make_orchestrator(ModelRegistry([primary]), store, packer, timeout=0.01)
        received = []

        with pytest.raises(ProviderError) as exc_info:
            await orchestrator.stream_query(QUERY, "ctx-1", received.append)

        assert exc_info.value.kind == ProviderErrorKind.TIMEOUT
        assert received[-1].type == StreamEventType.ERROR


# =============================================================================
# Lifecycle and option coercion
# =============================================================================


class TestRequestLifecycle:
    """Allowed state transitions."""

    def test_blocking_path(self):
        lifecycle = RequestLifecycle("r1")
        for state in (
            QueryState.CONTEXT_LOADED,
            QueryState.PROMPT_BUILT,
            QueryState.DISPATCHED,
            QueryState.COMPLETED,
        ):
            lifecycle.advance(state)
        assert lifecycle.is_terminal
        assert lifecycle.history[0] == QueryState.INIT
        assert lifecycle.history[-1] == QueryState.COMPLETED

    def test_streaming_path(self):
        lifecycle = RequestLifecycle("r2")
        for state in (
            QueryState.CONTEXT_LOADED,
            QueryState.PROMPT_BUILT,
            QueryState.DISPATCHED,
            QueryState.STREAMING,
            QueryState.COMPLETED,
        ):
            lifecycle.advance(state)
        assert lifecycle.state == QueryState.COMPLETED

    def test_illegal_transition(self):
        lifecycle = RequestLifecycle("r3")
        with pytest.raises(InternalError):
            lifecycle.advance(QueryState.DISPATCHED)

    def test_fail_from_any_open_state(self):
        lifecycle = RequestLifecycle("r4")
        lifecycle.advance(QueryState.CONTEXT_LOADED)
        lifecycle.fail()
        assert lifecycle.state == QueryState.FAILED
        with pytest.raises(InternalError):
            lifecycle.advance(QueryState.PROMPT_BUILT)

    def test_fail_after_completion_is_ignored(self):
        lifecycle = RequestLifecycle("r5")
        for state in (
            QueryState.CONTEXT_LOADED,
            QueryState.PROMPT_BUILT,
            QueryState.DISPATCHED,
            QueryState.COMPLETED,
        ):
            lifecycle.advance(state)
        lifecycle.fail()
        assert lifecycle.state == QueryState.COMPLETED


class TestLifecycleOutcome:
    """Every request the orchestrator starts ends in a terminal state."""

    @pytest.fixture
    def lifecycles(self):
        created = []

        class RecordingLifecycle(RequestLifecycle):
            def __init__(self, request_id: str):
                super().__init__(request_id)
                created.append(self)

        with patch("context_chat.orchestrator.RequestLifecycle", RecordingLifecycle):
            yield created

    @pytest.mark.asyncio
    async def test_completed_query(self, lifecycles, registry, store, packer):
        await make_orchestrator(registry, store, packer).process_query(QUERY, "ctx-1")
        assert lifecycles[0].state == QueryState.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_query_fails(self, lifecycles, registry, store, packer, primary):
        primary.delay = 1.0
        orchestrator = make_orchestrator(registry, store, packer)

        task = asyncio.create_task(orchestrator.process_query(QUERY, "ctx-1"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert lifecycles[0].state == QueryState.FAILED

    @pytest.mark.asyncio
    async def test_abandoned_stream_fails(self, lifecycles, registry, store, packer, primary):
        primary.chunks = ["a"] * 20
        primary.delay = 0.01
        orchestrator = make_orchestrator(registry, store, packer)

        events = orchestrator.stream_events(QUERY, "ctx-1")
        assert (await events.__anext__()).type == StreamEventType.START
        assert (await events.__anext__()).type == StreamEventType.CHUNK
        await events.aclose()

        lifecycle = lifecycles[0]
        assert lifecycle.state == QueryState.FAILED
        assert lifecycle.history[-2:] == [QueryState.STREAMING, QueryState.FAILED]

    @pytest.mark.asyncio
    async def test_failed_stream_fails_once(self, lifecycles, registry, store, packer, primary):
        primary.error = server_error("primary")
        primary.stream_error_after = 1
        orchestrator = make_orchestrator(registry, store, packer)

        with pytest.raises(ProviderError):
            await orchestrator.stream_query(QUERY, "ctx-1", lambda event: None)

        assert lifecycles[0].history.count(QueryState.FAILED) == 1


class TestCoerceOptions:
    """Options accepted as None, dicts (either key style) or QueryOptions."""

    def test_none(self):
        assert coerce_options(None) == QueryOptions()

    def test_camel_and_snake_keys(self):
        assert coerce_options({"maxTokens": 10}).max_tokens == 10
        assert coerce_options({"max_tokens": 10}).max_tokens == 10

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            coerce_options({"bogus": True})
        assert "bogus" in exc_info.value.errors

    def test_provider_options_discriminated(self):
        options = coerce_options({"providerOptions": {"provider": "local", "topK": 20}})
        assert options.provider_options.top_k == 20

    def test_bad_provider_option(self):
        with pytest.raises(ValidationError) as exc_info:
            coerce_options({"providerOptions": {"provider": "openai", "topP": 3}})
        assert any(key.startswith("providerOptions") for key in exc_info.value.errors)
