"""
Unit tests for infrastructure/event_bus.py and the Dag's event publishing.
"""
import asyncio
import logging

import pytest

from core.dag import Dag, HasCycleError, NodeNotFoundError
from core.graph_invariants import validate_dag
from infrastructure.event_bus import (
    DagEvent,
    EventBus,
    EventType,
    get_event_bus,
    make_event,
    reset_event_bus,
)


@pytest.fixture
def recorded(event_bus):
    """Dag wired to a bus, plus the list every event lands in."""
    events = []
    event_bus.subscribe_all(events.append)
    return Dag(event_bus=event_bus), events


def _types(events):
    return [e.type for e in events]


# =============================================================================
# BUS MECHANICS
# =============================================================================

def test_subscribe_and_publish(event_bus):
    seen = []
    event_bus.subscribe(EventType.NODE_INSERTED, seen.append)

    event = make_event(EventType.NODE_INSERTED, node_id="x")
    event_bus.publish(event)
    event_bus.publish(make_event(EventType.NODE_REMOVED, node_id="x"))

    assert seen == [event]
    assert seen[0].payload == {"node_id": "x"}
    assert seen[0].source == "dag"


def test_duplicate_subscription_is_ignored(event_bus):
    handler = lambda event: None
    event_bus.subscribe(EventType.EDGE_INSERTED, handler)
    event_bus.subscribe(EventType.EDGE_INSERTED, handler)

    assert event_bus.subscriber_count(EventType.EDGE_INSERTED) == 1


def test_subscribe_all_and_unsubscribe_all(event_bus):
    handler = lambda event: None
    event_bus.subscribe_all(handler)

    assert event_bus.subscriber_count() == len(EventType)

    event_bus.unsubscribe_all(handler)
    assert event_bus.subscriber_count() == 0


def test_clear_subscribers(event_bus):
    event_bus.subscribe(EventType.NODE_INSERTED, lambda e: None)
    event_bus.subscribe(EventType.NODE_REMOVED, lambda e: None)

    event_bus.clear_subscribers(EventType.NODE_INSERTED)
    assert event_bus.subscriber_count() == 1

    event_bus.clear_subscribers()
    assert event_bus.subscriber_count() == 0


def test_handler_failure_is_logged_not_raised(event_bus, caplog):
    def broken(event):
        raise ValueError("boom")

    seen = []
    event_bus.subscribe(EventType.NODE_INSERTED, broken)
    event_bus.subscribe(EventType.NODE_INSERTED, seen.append)

    with caplog.at_level(logging.ERROR, logger="dagstore.event_bus"):
        event_bus.publish(make_event(EventType.NODE_INSERTED, node_id=1))

    assert len(seen) == 1
    assert "boom" in caplog.text


def test_async_handler_runs_on_loop(event_bus):
    seen = []

    async def handler(event):
        seen.append(event.type)

    event_bus.subscribe_async(EventType.EDGE_REMOVED, handler)

    async def main():
        event_bus.publish(make_event(EventType.EDGE_REMOVED, from_id=1, to_id=2))
        await asyncio.sleep(0)

    asyncio.run(main())
    assert seen == [EventType.EDGE_REMOVED]


def test_async_tasks_are_retained_until_done(event_bus):
    finished = []

    async def handler(event):
        await asyncio.sleep(0)
        finished.append(event.payload["node_id"])

    event_bus.subscribe_async(EventType.NODE_INSERTED, handler)

    async def main():
        event_bus.publish(make_event(EventType.NODE_INSERTED, node_id=1))
        event_bus.publish(make_event(EventType.NODE_INSERTED, node_id=2))
        pending = event_bus.pending_tasks
        await event_bus.drain()
        return pending

    assert asyncio.run(main()) == 2
    assert finished == [1, 2]
    assert event_bus.pending_tasks == 0


def test_async_handler_that_is_not_a_coroutine_is_logged(event_bus, caplog):
    def not_async(event):
        return "done"

    event_bus.subscribe_async(EventType.NODE_INSERTED, not_async)

    async def main():
        event_bus.publish(make_event(EventType.NODE_INSERTED, node_id=1))
        return event_bus.pending_tasks

    with caplog.at_level(logging.ERROR, logger="dagstore.event_bus"):
        pending = asyncio.run(main())

    assert pending == 0
    assert "Error scheduling async handler" in caplog.text


def test_scheduling_failure_closes_coroutine(event_bus, caplog):
    created = []

    async def handler(event):
        pass

    def tracking(event):
        coro = handler(event)
        created.append(coro)
        return coro

    def refuse(coro, **kwargs):
        raise RuntimeError("loop is closing")

    event_bus.subscribe_async(EventType.NODE_REMOVED, tracking)

    async def main():
        loop = asyncio.get_running_loop()
        loop.create_task = refuse
        try:
            event_bus.publish(make_event(EventType.NODE_REMOVED, node_id=1))
        finally:
            del loop.create_task

    with caplog.at_level(logging.ERROR, logger="dagstore.event_bus"):
        asyncio.run(main())

    assert len(created) == 1
    assert created[0].cr_frame is None
    assert "loop is closing" in caplog.text
    assert event_bus.pending_tasks == 0


def test_async_handler_without_loop_is_skipped(event_bus, caplog):
    async def handler(event):
        raise AssertionError("should not run")

    event_bus.subscribe_async(EventType.EDGE_REMOVED, handler)

    with caplog.at_level(logging.WARNING, logger="dagstore.event_bus"):
        event_bus.publish(make_event(EventType.EDGE_REMOVED, from_id=1, to_id=2))

    assert "no event loop running" in caplog.text


def test_global_bus_is_singleton():
    bus = get_event_bus()
    assert get_event_bus() is bus

    reset_event_bus()
    assert get_event_bus() is not bus


def test_event_is_msgspec_struct():
    import msgspec

    event = make_event(EventType.EDGE_INSERTED, from_id="a", to_id="b")
    decoded = msgspec.json.decode(msgspec.json.encode(event), type=DagEvent)

    assert decoded.type == EventType.EDGE_INSERTED
    assert decoded.payload == {"from_id": "a", "to_id": "b"}


# =============================================================================
# DAG PUBLISHING
# =============================================================================

def test_dag_without_bus_is_silent(fresh_dag, event_bus):
    seen = []
    event_bus.subscribe_all(seen.append)

    fresh_dag.insert_node(1, None)

    assert seen == []


def test_node_events(recorded):
    dag, events = recorded

    dag.insert_node(1, "a")
    dag.insert_node(1, "b")
    dag.remove_node(1)
    dag.remove_node(1)

    assert _types(events) == [
        EventType.NODE_INSERTED,
        EventType.NODE_UPDATED,
        EventType.NODE_REMOVED,
    ]
    assert all(e.payload == {"node_id": 1} for e in events)


def test_edge_events(recorded):
    dag, events = recorded
    dag.insert_node(1, None)
    dag.insert_node(2, None)
    events.clear()

    dag.insert_edge(1, 2, "x")
    dag.insert_edge(1, 2, "y")
    dag.remove_edge(1, 2)
    dag.remove_edge(1, 2)

    assert _types(events) == [
        EventType.EDGE_INSERTED,
        EventType.EDGE_UPDATED,
        EventType.EDGE_REMOVED,
    ]
    assert events[0].payload == {"from_id": 1, "to_id": 2}


def test_rejected_edge_event(recorded):
    dag, events = recorded
    dag.insert_node(1, None)
    dag.insert_node(2, None)
    dag.insert_edge(1, 2, None)
    events.clear()

    with pytest.raises(HasCycleError):
        dag.insert_edge(2, 1, None)

    assert _types(events) == [EventType.EDGE_REJECTED]
    assert events[0].payload == {"from_id": 2, "to_id": 1}


def test_cascade_publishes_each_edge(recorded):
    dag, events = recorded
    for node_id in (1, 2, 3):
        dag.insert_node(node_id, None)
    dag.insert_edge(1, 2, None)
    dag.insert_edge(2, 3, None)
    events.clear()

    dag.remove_node(2)

    assert _types(events) == [
        EventType.EDGE_REMOVED,
        EventType.EDGE_REMOVED,
        EventType.NODE_REMOVED,
    ]
    assert events[0].payload == {"from_id": 2, "to_id": 3}
    assert events[1].payload == {"from_id": 1, "to_id": 2}


def test_cascade_handlers_see_node_fully_removed(recorded, event_bus):
    dag, events = recorded
    for node_id in (1, 2, 3):
        dag.insert_node(node_id, None)
    dag.insert_edge(1, 2, None)
    seen = []

    def relink(event):
        # reacts to the first cascaded edge by linking the departing node again
        if seen:
            return
        seen.append((dag.contains_node(1), dag.contains_edge(1, 2)))
        try:
            dag.insert_edge(1, 3, "late")
        except NodeNotFoundError as e:
            seen.append(e.node_id)

    event_bus.subscribe(EventType.EDGE_REMOVED, relink)
    dag.remove_node(1)

    assert seen == [(False, False), 1]
    assert not dag.contains_node(1)
    assert list(dag.parents(3)) == []
    assert validate_dag(dag).valid


def test_cascade_is_published_as_one_batch(event_bus, monkeypatch):
    dag = Dag(event_bus=event_bus)
    for node_id in (1, 2, 3):
        dag.insert_node(node_id, None)
    dag.insert_edge(1, 2, None)
    dag.insert_edge(3, 1, None)
    batches = []
    monkeypatch.setattr(event_bus, "publish_many", lambda events: batches.append(list(events)))

    dag.remove_node(1)

    assert len(batches) == 1
    assert _types(batches[0]) == [
        EventType.EDGE_REMOVED,
        EventType.EDGE_REMOVED,
        EventType.NODE_REMOVED,
    ]


def test_remove_edge_handler_sees_edge_gone(event_bus):
    dag = Dag(event_bus=event_bus)
    dag.insert_node(1, None)
    dag.insert_node(2, None)
    dag.insert_edge(1, 2, "x")
    seen = []

    def check(event):
        seen.append((dag.contains_edge(1, 2), list(dag.parents(2)), dag.edges_len()))

    event_bus.subscribe(EventType.EDGE_REMOVED, check)
    dag.remove_edge(1, 2)

    assert seen == [(False, [], 0)]
    assert validate_dag(dag).valid


def test_failing_observer_cannot_break_dag(event_bus):
    def broken(event):
        raise RuntimeError("observer down")

    event_bus.subscribe_all(broken)
    dag = Dag(event_bus=event_bus)

    dag.insert_node(1, None)
    dag.insert_node(2, None)
    dag.insert_edge(1, 2, None)

    assert dag.contains_edge(1, 2)
