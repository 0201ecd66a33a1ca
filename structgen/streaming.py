"""
Streaming: a cancellable producer of text chunks.
==================================================
stream_generation() turns a client's chunk iterator into a sequence of
typed events:

    StreamStarted → TextChunk* → StreamCompleted
                               ↘ StreamFailed        (error, timeout, cancel)

Completion and failure are explicit terminal events; a consumer never
has to infer the end of a stream from chunks drying up. The
cancellation token is checked at every suspension point, so a client
disconnect stops the backend stream at the next chunk boundary.

StreamEventBus fans one stream out to several subscribers (e.g. an SSE
response and a progress logger); each subscriber gets its own async
iterator.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, Union

from .api_clients import classify_exception
from .cancellation import CancellationToken, run_cancellable
from .errors import ErrorCode, MalformedOutputError, StructGenError
from .models import GenerationConfig, RunTier
from .structural import decode_json

logger = logging.getLogger("structgen.streaming")


class StreamingClient(Protocol):
    def stream(self, prompt: str, config: GenerationConfig,
               tier: RunTier = RunTier.PRO, stage_tag: str = "") -> AsyncIterator[str]: ...


# ── Event dataclasses ─────────────────────────────────────────────────────────

@dataclass
class StreamStarted:
    stage: str


@dataclass
class TextChunk:
    index: int
    text: str


@dataclass
class StreamCompleted:
    text: str
    chunk_count: int
    data: Any = None


@dataclass
class StreamFailed:
    error_code: ErrorCode
    error: str
    chunk_count: int = 0


StreamEvent = Union[StreamStarted, TextChunk, StreamCompleted, StreamFailed]


# ── Producer ──────────────────────────────────────────────────────────────────

async def stream_generation(client: StreamingClient, prompt: str,
                            config: Optional[GenerationConfig] = None, *,
                            tier: RunTier = RunTier.PRO, stage_tag: str = "",
                            cancel: Optional[CancellationToken] = None,
                            chunk_timeout: Optional[float] = 60.0,
                            decode: bool = False) -> AsyncIterator[StreamEvent]:
    """
    Yield StreamEvents for one streaming generation. Every failure, including
    token cancellation and idle timeouts, ends the stream with a StreamFailed
    event. Only a task cancellation the token did not request propagates.
    """
    config = config or GenerationConfig()
    yield StreamStarted(stage=stage_tag)

    chunks = client.stream(prompt, config, tier, stage_tag)
    parts: list[str] = []
    try:
        while True:
            try:
                chunk = await run_cancellable(chunks.__anext__(), cancel, timeout=chunk_timeout)
            except StopAsyncIteration:
                break
            parts.append(chunk)
            yield TextChunk(index=len(parts) - 1, text=chunk)
    except asyncio.CancelledError:
        # A task cancel the token did not cause belongs to the consumer's task.
        if cancel is None or not cancel.cancelled:
            raise
        logger.info(f"[{stage_tag or '-'}] stream cancelled after {len(parts)} chunks")
        yield StreamFailed(ErrorCode.CANCELLED, cancel.reason or "cancelled", len(parts))
        return
    except asyncio.TimeoutError:
        logger.warning(f"[{stage_tag or '-'}] stream idle for more than {chunk_timeout}s")
        yield StreamFailed(ErrorCode.TIMEOUT, f"no chunk within {chunk_timeout}s", len(parts))
        return
    except StructGenError as e:
        yield StreamFailed(e.code, str(e), len(parts))
        return
    except Exception as e:
        logger.warning(f"[{stage_tag or '-'}] stream failed after {len(parts)} chunks: {e}")
        yield StreamFailed(classify_exception(e), str(e), len(parts))
        return
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()

    text = "".join(parts)
    if not text.strip():
        yield StreamFailed(ErrorCode.EMPTY_RESPONSE, "stream produced no text", len(parts))
        return

    data = None
    if decode:
        try:
            data = decode_json(text)
        except MalformedOutputError as e:
            yield StreamFailed(e.code, str(e), len(parts))
            return
    yield StreamCompleted(text=text, chunk_count=len(parts), data=data)


# ── Event bus ─────────────────────────────────────────────────────────────────

_SENTINEL = object()   # marks end-of-stream


class StreamEventBus:
    """
    Fan-out pub-sub hub. Each call to subscribe() returns an independent
    AsyncIterator that yields every event published after the subscription.
    Call close() to signal end-of-stream to all subscribers.
    """

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> AsyncIterator[StreamEvent]:
        q: asyncio.Queue = asyncio.Queue()
        self._queues.append(q)
        return self._drain(q)

    async def _drain(self, q: asyncio.Queue) -> AsyncIterator[StreamEvent]:
        while True:
            item = await q.get()
            if item is _SENTINEL:
                return
            yield item

    async def publish(self, event: StreamEvent) -> None:
        for q in self._queues:
            await q.put(event)

    async def close(self) -> None:
        self._closed = True
        for q in self._queues:
            await q.put(_SENTINEL)

    async def pump(self, events: AsyncIterator[StreamEvent]) -> Optional[StreamEvent]:
        """Publish every event from `events`, then close. Returns the terminal event."""
        last: Optional[StreamEvent] = None
        try:
            async for event in events:
                await self.publish(event)
                last = event
        finally:
            await self.close()
        return last
