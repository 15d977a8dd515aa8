# relay_sdk/llm/streaming.py
# SPDX-License-Identifier: Apache-2.0

"""
Streaming runtime: cancellable, observable sessions over incremental output.

A :class:`StreamSession` wraps a provider's async chunk iterator and exposes a
finite, non-restartable sequence of :class:`StreamEvent` values::

    start, chunk, chunk, ..., (complete | error)

State machine::

    connecting -> streaming -> completed
         |            |------> error
         |            '------> cancelled
         '-----------------------^ (error / cancelled before the first chunk)

Terminal states are final. Consumption is pull-based: the producer only runs
while the consumer waits for the next event, so nothing is buffered ahead of
the reader. Each pull runs as its own task so that ``token.cancel()`` (from any
coroutine) can interrupt a pull that is blocked on the network; the producer
then unwinds and closes its transport.

One session, one consumer: iterating a session twice raises ValidationError.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from relay_sdk.core.errors import AIError, ValidationError, classify_error
from relay_sdk.llm.llm_base import StreamChunk

LOG = logging.getLogger(__name__)

ProducerFactory = Callable[[], AsyncIterator[StreamChunk]]


class StreamState(str, enum.Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({StreamState.COMPLETED, StreamState.ERROR, StreamState.CANCELLED})

_ALLOWED_TRANSITIONS = {
    StreamState.CONNECTING: frozenset({
        StreamState.STREAMING, StreamState.COMPLETED, StreamState.ERROR, StreamState.CANCELLED,
    }),
    StreamState.STREAMING: frozenset({StreamState.COMPLETED, StreamState.ERROR, StreamState.CANCELLED}),
}


@dataclass(frozen=True)
class StreamEvent:
    """
    One event of a stream session.

    Attributes:
        type:
            ``start``, ``chunk``, ``complete`` or ``error``.
        chunk:
            The streamed increment (``chunk`` events only).
        text:
            Full aggregated text (``complete`` events only).
        finish_reason:
            Final finish reason (``complete`` events only).
        error:
            Classified failure (``error`` events only).
    """
    type: str
    session_id: str
    chunk: Optional[StreamChunk] = None
    text: Optional[str] = None
    finish_reason: Optional[str] = None
    error: Optional[AIError] = None


class CancellationToken:
    """Owned by whoever opened the session. Cancelling is idempotent."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:  # noqa: BLE001
                LOG.warning("cancellation callback failed", exc_info=True)


def new_stream_id() -> str:
    return f"stream_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class StreamSession:
    """Handle over one in-progress incremental generation."""

    def __init__(
        self,
        producer_factory: ProducerFactory,
        *,
        provider_id: str,
        classify: Optional[Callable[[BaseException], AIError]] = None,
        on_event: Optional[Callable[[StreamEvent], Any]] = None,
        on_terminal: Optional[Callable[["StreamSession"], None]] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or new_stream_id()
        self.provider_id = provider_id
        self.created_at = time.time()
        self.token = CancellationToken()
        self._factory = producer_factory
        self._classify = classify or (lambda exc: classify_error(exc, provider_id))
        self._on_event = on_event
        self._on_terminal = on_terminal
        self._state = StreamState.CONNECTING
        self._producer: Optional[AsyncIterator[StreamChunk]] = None
        self._pending: Optional["asyncio.Future[StreamChunk]"] = None
        self._close_task: Optional["asyncio.Task[None]"] = None
        self._consumed = False
        self._error: Optional[AIError] = None
        self._parts: List[str] = []
        self._chunks = 0
        self.token.add_callback(self._on_cancel)

    # -------------------------------------------------------------- status

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def error(self) -> Optional[AIError]:
        return self._error

    @property
    def text(self) -> str:
        """Text received so far."""
        return "".join(self._parts)

    @property
    def chunk_count(self) -> int:
        return self._chunks

    def _transition(self, new: StreamState) -> bool:
        if self._state == new:
            return False
        if new not in _ALLOWED_TRANSITIONS.get(self._state, frozenset()):
            return False
        self._state = new
        LOG.debug("stream %s -> %s", self.id, new.value)
        if new in TERMINAL_STATES and self._on_terminal is not None:
            try:
                self._on_terminal(self)
            except Exception:  # noqa: BLE001
                LOG.warning("stream terminal hook failed", exc_info=True)
        return True

    def _emit(self, event: StreamEvent) -> StreamEvent:
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception:  # noqa: BLE001
                LOG.warning("stream observer failed on %s event", event.type, exc_info=True)
        return event

    # -------------------------------------------------------- cancellation

    def _on_cancel(self) -> None:
        if not self._transition(StreamState.CANCELLED):
            return
        pending = self._pending
        if pending is not None and not pending.done():
            # The producer unwinds from its current await and closes its transport.
            pending.cancel()
            return
        if self._producer is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            self._close_task = loop.create_task(self._close_producer())

    async def cancel(self) -> None:
        """Cancel via the token and wait for the transport to close. No-op once terminal."""
        self.token.cancel()
        task = self._close_task
        if task is not None:
            await task

    async def _close_producer(self) -> None:
        producer, self._producer = self._producer, None
        if producer is None:
            return
        aclose = getattr(producer, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:  # noqa: BLE001
            LOG.debug("closing stream producer failed", exc_info=True)

    # ----------------------------------------------------------- iteration

    def events(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise ValidationError(f"stream session {self.id} can only be consumed once")
        self._consumed = True
        return self._run()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()

    async def _pull(self) -> StreamChunk:
        assert self._producer is not None
        return await self._producer.__anext__()

    async def _run(self) -> AsyncIterator[StreamEvent]:
        if self.token.cancelled:
            return
        finish_reason: Optional[str] = None
        try:
            yield self._emit(StreamEvent(type="start", session_id=self.id))
            if self.token.cancelled:
                return
            try:
                self._producer = self._factory()
            except Exception as exc:  # noqa: BLE001
                self._error = self._classify(exc)
                self._transition(StreamState.ERROR)
                yield self._emit(StreamEvent(type="error", session_id=self.id, error=self._error))
                return

            while True:
                if self.token.cancelled:
                    return
                step = asyncio.ensure_future(self._pull())
                self._pending = step
                try:
                    chunk = await step
                except StopAsyncIteration:
                    break
                except asyncio.CancelledError:
                    if self.token.cancelled:
                        return
                    # The consumer itself was cancelled.
                    self._transition(StreamState.CANCELLED)
                    raise
                except Exception as exc:  # noqa: BLE001
                    err = self._classify(exc)
                    self._error = err
                    self._transition(StreamState.ERROR)
                    yield self._emit(StreamEvent(type="error", session_id=self.id, error=err))
                    return
                finally:
                    self._pending = None

                if self.token.cancelled:
                    return
                self._transition(StreamState.STREAMING)
                self._chunks += 1
                self._parts.append(chunk.text)
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                yield self._emit(StreamEvent(type="chunk", session_id=self.id, chunk=chunk))

            if self.token.cancelled:
                return
            self._transition(StreamState.COMPLETED)
            yield self._emit(
                StreamEvent(
                    type="complete",
                    session_id=self.id,
                    text=self.text,
                    finish_reason=finish_reason or "stop",
                )
            )
        finally:
            await self._close_producer()
            if not self.is_terminal:
                # Consumer stopped iterating early.
                self._transition(StreamState.CANCELLED)

    async def __aenter__(self) -> "StreamSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.is_terminal:
            await self.cancel()
        elif self._producer is not None:
            await self._close_producer()


class StreamingRuntime:
    """
    Registry of active sessions; disposal cancels whatever is still running.

    Sessions are held weakly: one that is opened and then dropped without
    being consumed or cancelled leaves the registry once it is collected.
    A session being iterated stays referenced by its consumer.
    """

    def __init__(self) -> None:
        self._sessions: "weakref.WeakValueDictionary[str, StreamSession]" = weakref.WeakValueDictionary()
        self._stats = {"opened": 0, "completed": 0, "error": 0, "cancelled": 0}

    def open(
        self,
        producer_factory: ProducerFactory,
        *,
        provider_id: str,
        on_event: Optional[Callable[[StreamEvent], Any]] = None,
        classify: Optional[Callable[[BaseException], AIError]] = None,
    ) -> StreamSession:
        """Create a session without starting the producer (non-blocking)."""
        session = StreamSession(
            producer_factory,
            provider_id=provider_id,
            classify=classify,
            on_event=on_event,
            on_terminal=self._discard,
        )
        self._sessions[session.id] = session
        self._stats["opened"] += 1
        return session

    def _discard(self, session: StreamSession) -> None:
        self._sessions.pop(session.id, None)
        self._stats[session.state.value] = self._stats.get(session.state.value, 0) + 1

    def get(self, session_id: str) -> Optional[StreamSession]:
        return self._sessions.get(session_id)

    def active_sessions(self) -> List[StreamSession]:
        return list(self._sessions.values())

    def has_active_streams(self) -> bool:
        return bool(self._sessions)

    def cancel(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.token.cancel()
        return True

    async def cancel_all(self) -> int:
        sessions = list(self._sessions.values())
        await asyncio.gather(*(s.cancel() for s in sessions))
        return len(sessions)

    async def close(self) -> None:
        await self.cancel_all()

    def get_stats(self) -> Dict[str, int]:
        return {"active": len(self._sessions), **self._stats}


# =============================================================================
# Server-Sent Events
# =============================================================================

@dataclass(frozen=True)
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


def parse_sse_events(raw: str) -> List[SSEEvent]:
    """
    Parse Server-Sent-Events text into events.

    Comment lines (``:``) are ignored, repeated ``data:`` lines are joined with
    newlines and a blank line ends an event. A trailing event without the final
    blank line is still returned.
    """
    events: List[SSEEvent] = []
    data: List[str] = []
    fields: Dict[str, Any] = {}

    def dispatch() -> None:
        if data or fields:
            events.append(
                SSEEvent(
                    event=fields.get("event") or "message",
                    data="\n".join(data),
                    id=fields.get("id"),
                    retry=fields.get("retry"),
                )
            )
        data.clear()
        fields.clear()

    for line in raw.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        if line == "":
            dispatch()
            continue
        if line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
        elif name == "event":
            fields["event"] = value
        elif name == "id":
            fields["id"] = value
        elif name == "retry":
            try:
                fields["retry"] = int(value)
            except ValueError:
                LOG.debug("ignoring non-integer SSE retry field %r", value)
    dispatch()
    return events


__all__ = [
    "StreamState",
    "TERMINAL_STATES",
    "StreamEvent",
    "CancellationToken",
    "StreamSession",
    "StreamingRuntime",
    "SSEEvent",
    "new_stream_id",
    "parse_sse_events",
]
