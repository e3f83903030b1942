# context_chat/stream_relay.py
"""
StreamRelay - frames a provider stream as typed events.

A producer task pumps the connector's async iterator into a one-slot channel;
the consumer side, ``events()``, re-emits what arrives as

    start, chunk, chunk, ..., end

or, when the upstream fails, ``start, chunk..., error`` followed by the
original exception. Nothing follows an ``end`` or ``error`` event.

Closing the consumer (client disconnect, task cancellation) cancels the
producer, which in turn closes the upstream iterator and aborts the provider
request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import suppress

from context_chat.exceptions import ProviderError, ProviderErrorKind
from context_chat.models import ModelReply, StreamEvent
from context_chat.providers.base import StreamItem

logger = logging.getLogger(__name__)

_END = object()


class StreamRelay:
    """Relay one upstream stream to one consumer, in arrival order."""

    def __init__(
        self,
        upstream: AsyncIterator[StreamItem],
        deadline: float | None = None,
        model_id: str | None = None,
    ):
        """
        Args:
            upstream: The connector's stream_prompt iterator.
            deadline: Seconds allowed for the whole upstream stream.
            model_id: Used to label timeout errors.
        """
        self._upstream = upstream
        self._deadline = deadline
        self._model_id = model_id
        self._channel: asyncio.Queue[object] = asyncio.Queue(maxsize=1)
        self._started = False

        self.chunk_count = 0
        self.emitted_chars = 0
        self.usage: ModelReply | None = None

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("StreamRelay.events() can only be consumed once")
        self._started = True

        yield StreamEvent.start()

        producer = asyncio.create_task(self._pump())
        try:
            while True:
                item = await self._channel.get()
                if item is _END:
                    break
                if isinstance(item, BaseException):
                    yield StreamEvent.error(str(item))
                    raise item
                assert isinstance(item, str)
                self.chunk_count += 1
                self.emitted_chars += len(item)
                yield StreamEvent.chunk(item)
            yield StreamEvent.end()
        finally:
            if not producer.done():
                producer.cancel()
                with suppress(asyncio.CancelledError):
                    await producer

    async def _pump(self) -> None:
        try:
            async with asyncio.timeout(self._deadline):
                async for item in self._upstream:
                    if isinstance(item, ModelReply):
                        self.usage = item
                        continue
                    if item:
                        await self._channel.put(item)
        except TimeoutError:
            await self._channel.put(
                ProviderError(
                    f"Stream exceeded {self._deadline}s deadline",
                    kind=ProviderErrorKind.TIMEOUT,
                    model_id=self._model_id,
                )
            )
            return
        except Exception as e:
            await self._channel.put(e)
            return
        finally:
            await self._close_upstream()

        await self._channel.put(_END)

    async def _close_upstream(self) -> None:
        aclose = getattr(self._upstream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Error closing upstream stream: {e}")
