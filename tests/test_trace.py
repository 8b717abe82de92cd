import json
import threading

import pytest

from agent_router.errors import TraceClosedError
from agent_router.models import EventType
from agent_router.trace import SpanCounter, TraceChannel, TraceEmitter, TraceRun, serialize_event


def test_span_counter_strictly_increasing_across_threads():
    counter = SpanCounter()
    seen: list[int] = []
    lock = threading.Lock()

    def take():
        ids = [counter.next() for _ in range(500)]
        with lock:
            seen.extend(ids)

    threads = [threading.Thread(target=take) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(seen) == len(set(seen)) == 4000
    assert sorted(seen) == list(range(1, 4001))


def test_runs_share_the_counter():
    emitter = TraceEmitter()
    a = emitter.start_run("a", {})
    b = emitter.start_run("b", {})
    a.log_event(EventType.AGENT_ROUTING, {}, {"agent_id": "dojo"})
    ids = [e.span_id for e in a.events] + [e.span_id for e in b.events]
    assert len(set(ids)) == 3
    assert a.events[-1].span_id > b.events[0].span_id


def test_run_events_are_ordered_and_parented():
    run = TraceEmitter().start_run("s", {"query": "q"})
    run.log_event(EventType.AGENT_ROUTING, {}, {"agent_id": "librarian"}, {"cost_usd": 0.001})
    run.end({"success": True})

    types = [e.event_type for e in run.events]
    assert types == [EventType.SESSION_START, EventType.AGENT_ROUTING, EventType.SESSION_END]
    root = run.events[0]
    assert root.parent_id is None
    assert all(e.parent_id == root.span_id for e in run.events[1:])
    spans = [e.span_id for e in run.events]
    assert spans == sorted(spans)
    assert all(e.metadata["cost_usd"] >= 0 for e in run.events)


def test_closed_run_rejects_events():
    run = TraceEmitter().start_run("s", {})
    run.end({})
    assert run.closed
    with pytest.raises(TraceClosedError):
        run.log_event(EventType.AGENT_ROUTING, {}, {})


def test_fail_closes_once():
    run = TraceEmitter().start_run("s", {})
    event = run.fail("timeout", "too slow")
    assert event.event_type is EventType.ERROR
    assert event.outputs == {"error_type": "timeout"}
    assert event.metadata["error_message"] == "too slow"
    assert run.fail("timeout", "again") is None
    assert len(run.events) == 2


def test_negative_cost_rejected():
    run = TraceEmitter().start_run("s", {})
    with pytest.raises(ValueError):
        run.log_event(EventType.COST_TRACKED, {}, {}, {"cost_usd": -1})


def test_summary():
    run = TraceEmitter().start_run("s", {})
    run.log_event(EventType.AGENT_ROUTING, {}, {"agent_id": "debugger"},
                  {"cost_usd": 0.5, "token_count": 100})
    run.fail("api_failure", "boom")
    summary = run.summary()
    assert summary["total_events"] == 3
    assert summary["total_tokens"] == 100
    assert summary["total_cost_usd"] == 0.5
    assert summary["agents_used"] == ["debugger"]
    assert summary["errors"] == 1


def test_concurrent_emission_keeps_list_order():
    run = TraceRun(SpanCounter(), "s")
    run.start({})

    def emit():
        for _ in range(200):
            run.log_event(EventType.COST_TRACKED, {}, {})

    threads = [threading.Thread(target=emit) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    spans = [e.span_id for e in run.events]
    assert len(spans) == 801
    assert spans == sorted(spans)


@pytest.mark.asyncio
async def test_channel_delivers_in_order_then_ends():
    channel = TraceChannel()
    run = TraceEmitter().start_run("s", {"query": "q"}, channel)
    run.log_event(EventType.AGENT_ROUTING, {}, {"agent_id": "dojo"})
    run.end({"success": True})

    lines = [line async for line in channel.lines()]
    assert all(line.endswith("\n") for line in lines)
    decoded = [json.loads(line) for line in lines]
    assert [d["event_type"] for d in decoded] == ["SESSION_START", "AGENT_ROUTING", "SESSION_END"]
    assert decoded[0]["span_id"] < decoded[1]["span_id"] < decoded[2]["span_id"]


@pytest.mark.asyncio
async def test_full_channel_drops_instead_of_blocking():
    channel = TraceChannel(maxsize=2)
    run = TraceEmitter().start_run("s", {}, channel)
    run.log_event(EventType.COST_TRACKED, {}, {})
    run.log_event(EventType.COST_TRACKED, {}, {})
    run.end({})

    received = [event async for event in channel.events()]
    assert len(received) == 2
    assert channel.dropped == 2
    # The run itself keeps every event.
    assert len(run.events) == 4


@pytest.mark.asyncio
async def test_unserializable_event_is_skipped():
    channel = TraceChannel()
    run = TraceEmitter().start_run("s", {}, channel)
    run.log_event(EventType.COST_TRACKED, {"blob": object()}, {})
    run.end({})

    lines = [line async for line in channel.lines()]
    assert [json.loads(line)["event_type"] for line in lines] == ["SESSION_START", "SESSION_END"]


def test_serialize_event_returns_none_on_failure():
    run = TraceEmitter().start_run("s", {"bad": {1, 2}})
    assert serialize_event(run.events[0]) is None


def test_total_cost_never_decreases():
    run = TraceEmitter().start_run("s", {})
    run.log_event(EventType.AGENT_ROUTING, {}, {"agent_id": "dojo"}, {"cost_usd": 0.0001})
    run.log_event(EventType.SAFETY_SWITCH, {}, {})
    run.log_event(EventType.COST_TRACKED, {}, {}, {"cost_usd": 0.0002})
    end = run.end({})

    totals = [e.metadata["total_cost_usd"] for e in run.events]
    assert totals == sorted(totals)
    assert end.metadata["total_cost_usd"] == pytest.approx(0.0003)
    assert end.metadata["total_cost_usd"] == pytest.approx(run.summary()["total_cost_usd"])


def test_nested_spans():
    run = TraceEmitter().start_run("s", {})
    root = run.events[0].span_id
    outer = run.start_span(EventType.AGENT_ROUTING, {"query": "q"})
    inner = run.start_span(EventType.AGENT_HANDOFF, {"to_agent": "debugger"})
    leaf = run.log_event(EventType.COST_TRACKED, {}, {})
    inner_end = run.end_span(inner.span_id, {"success": True})
    after_inner = run.log_event(EventType.COST_TRACKED, {}, {})
    outer_end = run.end_span(outer.span_id, {"agent_id": "librarian"}, {"cost_usd": 0.001})
    after_outer = run.log_event(EventType.COST_TRACKED, {}, {})

    assert outer.parent_id == root
    assert inner.parent_id == outer.span_id
    assert leaf.parent_id == inner.span_id
    assert inner_end.parent_id == inner.span_id
    assert inner_end.event_type is EventType.AGENT_HANDOFF
    assert after_inner.parent_id == outer.span_id
    assert outer_end.parent_id == outer.span_id
    assert outer_end.outputs == {"agent_id": "librarian"}
    assert outer_end.metadata["duration_ms"] >= 0
    assert outer_end.metadata["cost_usd"] == 0.001
    assert after_outer.parent_id == root


def test_end_span_requires_open_span():
    run = TraceEmitter().start_run("s", {})
    span = run.start_span(EventType.AGENT_ROUTING, {})
    run.end_span(span.span_id, {})
    with pytest.raises(ValueError):
        run.end_span(span.span_id, {})
    with pytest.raises(ValueError):
        run.end_span(9999, {})


def test_terminal_event_closes_open_spans():
    run = TraceEmitter().start_run("s", {})
    run.start_span(EventType.AGENT_ROUTING, {})
    error = run.fail("cancelled", "gone")
    assert error.parent_id == run.events[0].span_id
    assert run.closed
