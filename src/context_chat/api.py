# context_chat/api.py
"""
Transport-agnostic request contract.

These helpers turn a decoded JSON request body into orchestrator calls and the
results back into JSON-ready dicts, so an HTTP (or websocket, or queue) layer
only has to move bytes. Errors are converted to payloads here and nowhere else.

Request:
    {"query": str, "contextId": str,
     "options": {"modelId", "temperature", "maxTokens", "systemPrompt",
                 "includeMetadata", "stream", "history", "includedContentIds",
                 "providerOptions"}}
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from pydantic.alias_generators import to_camel

from context_chat.exceptions import ContextChatError, InternalError, ValidationError
from context_chat.models import QueryOptions, QueryResult, StreamEvent, StreamEventType
from context_chat.orchestrator import QueryOrchestrator, coerce_options
from context_chat.registry import ModelRegistry

logger = logging.getLogger(__name__)


def parse_request(payload: Any) -> tuple[Any, Any, QueryOptions]:
    """Split a request body into (query, context_id, options)."""
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    context_id = payload.get("contextId", payload.get("context_id"))
    options = coerce_options(payload.get("options") or {})
    return payload.get("query"), context_id, options


def build_response(result: QueryResult, include_metadata: bool = False) -> dict[str, Any]:
    response: dict[str, Any] = {
        "id": result.id,
        "query": result.query,
        "response": result.response,
        "contextId": result.context_id,
        "modelId": result.model_id,
    }
    if include_metadata:
        response["metadata"] = {
            "promptTokens": result.prompt_tokens,
            "completionTokens": result.completion_tokens,
            "totalTokens": result.total_tokens,
            "responseTimeMs": round(result.latency_ms, 2),
            "finishReason": result.finish_reason.value,
            "fallbackUsed": result.fallback_used,
            "contextItems": [ref.model_dump() for ref in result.context_items],
        }
    return response


def error_payload(error: ContextChatError) -> dict[str, Any]:
    return {"error": error.to_dict()}


async def handle_query(orchestrator: QueryOrchestrator, payload: Any) -> dict[str, Any]:
    """Answer a non-streaming request. Always returns a dict."""
    try:
        query, context_id, options = parse_request(payload)
        result = await orchestrator.process_query(query, context_id, options)
    except ContextChatError as e:
        logger.info(f"Query rejected ({e.error_type}): {e}")
        return error_payload(e)
    except Exception as e:
        logger.exception("Unhandled error while answering query")
        return error_payload(InternalError(str(e)))
    return build_response(result, options.include_metadata)


async def handle_stream(orchestrator: QueryOrchestrator, payload: Any) -> AsyncIterator[dict[str, Any]]:
    """
    Answer a streaming request as event dicts.

    The sequence always ends with an ``end`` or ``error`` event instead of
    raising, so the transport can close the connection cleanly.
    """
    last_type: StreamEventType | None = None
    try:
        query, context_id, options = parse_request(payload)
        async with aclosing(orchestrator.stream_events(query, context_id, options)) as events:
            async for event in events:
                last_type = event.type
                yield event.to_dict()
    except ContextChatError as e:
        logger.info(f"Stream ended with {e.error_type}: {e}")
        if last_type != StreamEventType.ERROR:
            yield StreamEvent.error(e.message).to_dict()
    except Exception as e:
        logger.exception("Unhandled error while streaming query")
        if last_type != StreamEventType.ERROR:
            yield StreamEvent.error(str(e)).to_dict()


def format_sse(event: dict[str, Any]) -> str:
    """Render an event dict as a server-sent-events frame."""
    return f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"


async def list_models(registry: ModelRegistry) -> dict[str, Any]:
    """Registered providers, discovered models and the default model."""
    providers = sorted({registry.descriptor(model_id).provider_name for model_id in registry.model_ids})
    return {
        "providers": providers,
        "models": await registry.available_models(),
        "defaultModel": registry.default_model_id,
    }


def metrics_payload(registry: ModelRegistry) -> dict[str, dict[str, Any]]:
    return {
        model_id: {to_camel(key): value for key, value in snapshot.model_dump().items()}
        for model_id, snapshot in registry.metrics_snapshot().items()
    }
