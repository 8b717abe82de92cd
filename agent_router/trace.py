"""Run traces: ordered, append-only events streamed live to consumers.

A ``TraceRun`` records one routing run. Every event gets its span id from the
emitter's process-wide ``SpanCounter``, so ids are strictly increasing across
all runs. If a ``TraceChannel`` is attached, each event is also published to it
as it happens; publishing never waits on the consumer.
"""

import asyncio
import itertools
import json
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from loguru import logger

from agent_router.errors import TraceClosedError
from agent_router.models import EventType, TraceEvent

_END_OF_STREAM = object()


class SpanCounter:
    """Thread-safe, strictly increasing span id source."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


class TraceChannel:
    """Bounded producer/consumer channel for trace events.

    ``publish`` never blocks: when the buffer is full or the channel is closed
    the event is dropped with a warning. Consumers read NDJSON lines with
    ``lines()`` or raw events with ``events()``.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: TraceEvent) -> bool:
        if self._closed:
            self.dropped += 1
            return False
        # One slot is held back for the end-of-stream marker.
        if self._queue.qsize() >= self._maxsize:
            self.dropped += 1
            logger.warning(
                f"Trace channel full, dropping {event.event_type.value} span {event.span_id}"
            )
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_END_OF_STREAM)

    async def events(self) -> AsyncIterator[TraceEvent]:
        while True:
            item = await self._queue.get()
            if item is _END_OF_STREAM:
                return
            yield item

    async def lines(self) -> AsyncIterator[str]:
        """Yield one JSON line per event; events that fail to serialize are skipped."""
        async for event in self.events():
            line = serialize_event(event)
            if line is not None:
                yield line


def serialize_event(event: TraceEvent) -> str | None:
    """Encode an event as one NDJSON line, or ``None`` if it can't be encoded."""
    try:
        return json.dumps(event.to_dict()) + "\n"
    except (TypeError, ValueError) as e:
        logger.warning(f"Dropping trace event {event.span_id} ({event.event_type.value}): {e}")
        return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TraceRun:
    """Events for one run, in emission order.

    Events are children of the run's SESSION_START span, or of the innermost
    span opened with ``start_span`` and not yet ended. Every event's metadata
    carries ``total_cost_usd``, the run's cost so far including that event.
    Once SESSION_END or ERROR has been emitted the run is closed.
    """

    def __init__(
        self,
        counter: SpanCounter,
        session_id: str,
        channel: TraceChannel | None = None,
    ):
        self.trace_id = f"trace_{uuid.uuid4().hex[:12]}"
        self.session_id = session_id
        self._counter = counter
        self._channel = channel
        self._events: list[TraceEvent] = []
        self._lock = threading.Lock()
        self._root_span: int | None = None
        # span_id -> (event_type, monotonic start) for spans not yet ended
        self._open_spans: dict[int, tuple[EventType, float]] = {}
        self._span_stack: list[int] = []
        self._closed = False
        self.total_tokens = 0
        self.total_cost_usd = 0.0
        self.agents_used: list[str] = []
        self.errors = 0

    @property
    def events(self) -> tuple[TraceEvent, ...]:
        return tuple(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self, inputs: dict[str, Any]) -> TraceEvent:
        event = self.log_event(EventType.SESSION_START, inputs, {})
        self._root_span = event.span_id
        return event

    def log_event(
        self,
        event_type: EventType,
        inputs: dict[str, Any],
        outputs: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> TraceEvent:
        return self._emit(event_type, inputs, outputs, metadata)

    def start_span(
        self,
        event_type: EventType,
        inputs: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> TraceEvent:
        """Open a nested span. Events logged until ``end_span`` become its children."""
        return self._emit(event_type, inputs, {}, metadata, open_span=True)

    def end_span(
        self,
        span_id: int,
        outputs: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> TraceEvent:
        """Close a span with a child event holding its outputs and ``duration_ms``."""
        with self._lock:
            opened = self._open_spans.pop(span_id, None)
            if opened is None:
                raise ValueError(f"Span {span_id} is not open in trace {self.trace_id}")
            if self._span_stack[-1] != span_id:
                logger.warning(f"Span {span_id} ended out of order in trace {self.trace_id}")
            self._span_stack.remove(span_id)

        event_type, started = opened
        meta = {"duration_ms": int((time.monotonic() - started) * 1000), **(metadata or {})}
        return self._emit(event_type, {}, outputs, meta, parent_id=span_id)

    def end(self, outputs: dict[str, Any], metadata: dict[str, Any] | None = None) -> TraceEvent:
        return self.log_event(EventType.SESSION_END, {}, outputs, metadata)

    def fail(
        self,
        error_type: str,
        message: str,
        inputs: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TraceEvent | None:
        """Close the run with an ERROR event. No-op if it's already closed."""
        if self._closed:
            return None
        meta = {"error_message": message, **(metadata or {})}
        try:
            return self.log_event(EventType.ERROR, inputs or {}, {"error_type": error_type}, meta)
        except TraceClosedError:
            return None

    def _emit(
        self,
        event_type: EventType,
        inputs: dict[str, Any],
        outputs: dict[str, Any],
        metadata: dict[str, Any] | None,
        *,
        parent_id: int | None = None,
        open_span: bool = False,
    ) -> TraceEvent:
        metadata = dict(metadata or {})
        metadata.setdefault("cost_usd", 0.0)
        if metadata["cost_usd"] < 0:
            raise ValueError("cost_usd must be non-negative")

        unclosed: list[int] = []
        with self._lock:
            if self._closed:
                raise TraceClosedError(f"Trace {self.trace_id} is closed")
            if parent_id is None:
                if self._span_stack and not event_type.is_terminal:
                    parent_id = self._span_stack[-1]
                else:
                    parent_id = self._root_span
            metadata["total_cost_usd"] = self.total_cost_usd + metadata["cost_usd"]
            # Span id and append happen under one lock so list order == id order.
            event = TraceEvent(
                span_id=self._counter.next(),
                parent_id=parent_id,
                event_type=event_type,
                timestamp=_now(),
                inputs=inputs,
                outputs=outputs,
                metadata=metadata,
            )
            self._events.append(event)
            self._update_summary(event)
            if open_span:
                self._open_spans[event.span_id] = (event_type, time.monotonic())
                self._span_stack.append(event.span_id)
            if event_type.is_terminal:
                self._closed = True
                unclosed = list(self._span_stack)
                self._span_stack.clear()
                self._open_spans.clear()

        if unclosed:
            logger.warning(f"Trace {self.trace_id} closed with open spans {unclosed}")
        if self._channel is not None:
            self._channel.publish(event)
            if event_type.is_terminal:
                self._channel.close()
        return event

    def summary(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "session_id": self.session_id,
            "total_events": len(self._events),
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "agents_used": list(self.agents_used),
            "errors": self.errors,
        }

    def _update_summary(self, event: TraceEvent) -> None:
        self.total_tokens += int(event.metadata.get("token_count") or 0)
        self.total_cost_usd += event.metadata["cost_usd"]
        if event.event_type is EventType.ERROR:
            self.errors += 1
        if event.event_type is EventType.AGENT_ROUTING:
            agent_id = event.outputs.get("agent_id")
            if agent_id and agent_id not in self.agents_used:
                self.agents_used.append(agent_id)


class TraceEmitter:
    """Creates runs that share one span counter."""

    def __init__(self, counter: SpanCounter | None = None, buffer_size: int = 256):
        self.counter = counter or SpanCounter()
        self.buffer_size = buffer_size

    def new_channel(self) -> TraceChannel:
        return TraceChannel(maxsize=self.buffer_size)

    def start_run(
        self,
        session_id: str,
        inputs: dict[str, Any],
        channel: TraceChannel | None = None,
    ) -> TraceRun:
        run = TraceRun(self.counter, session_id, channel)
        run.start(inputs)
        return run
