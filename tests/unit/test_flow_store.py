"""Unit tests for ConversationFlowStore."""

import asyncio
from datetime import datetime, timedelta

import pytest

from session_relay.flow_store import ConversationFlowStore
from session_relay.models import ConversationFlow, FlowKind, FlowStep


NOW = datetime(2024, 6, 1, 12, 0, 0)


def make_flow(kind=FlowKind.SESSION_SETUP, thread_key="-100.5", created_at=NOW, **kwargs) -> ConversationFlow:
    return ConversationFlow(kind=kind, thread_key=thread_key, created_at=created_at, **kwargs)


def test_set_then_get(flow_store):
    flow = make_flow()
    flow_store.set("-100.5", flow)
    assert flow_store.get("-100.5") is flow
    assert "-100.5" in flow_store
    assert len(flow_store) == 1


def test_second_flow_replaces_first_without_merge(flow_store):
    first = make_flow(FlowKind.SESSION_SETUP, machine="mac")
    second = make_flow(FlowKind.TASK_SETUP, task_name="docs")
    flow_store.set("-100.5", first)
    flow_store.set("-100.5", second)

    current = flow_store.get("-100.5")
    assert current is second
    assert current.kind == FlowKind.TASK_SETUP
    assert current.machine is None
    assert flow_store.list_flows() == [second]


def test_owner_ref_is_ignored_for_lookup(flow_store):
    flow_store.set("-100.5", make_flow(owner_ref="111"), owner_ref="111")
    assert flow_store.get("-100.5", owner_ref="222") is not None
    assert flow_store.clear("-100.5", owner_ref="333")
    assert flow_store.get("-100.5") is None


def test_clear_missing_returns_false(flow_store):
    assert flow_store.clear("nope") is False


def test_sweep_removes_flow_older_than_ttl():
    store = ConversationFlowStore(ttl_seconds=600)
    store.set("old", make_flow(thread_key="old", created_at=NOW - timedelta(minutes=11)))
    store.set("fresh", make_flow(thread_key="fresh", created_at=NOW - timedelta(minutes=9)))

    assert store.sweep_expired(NOW) == ["old"]
    assert store.get("old") is None
    assert store.get("fresh") is not None


def test_sweep_ignores_step():
    store = ConversationFlowStore(ttl_seconds=600)
    flow = make_flow(created_at=NOW - timedelta(minutes=30))
    flow.advance(FlowStep.SELECT_SUBFOLDER)
    store.set("-100.5", flow)
    assert store.sweep_expired(NOW) == ["-100.5"]


def test_recent_activity_keeps_flow_alive():
    store = ConversationFlowStore(ttl_seconds=600)
    flow = make_flow(created_at=NOW - timedelta(minutes=30))
    flow.touch(NOW - timedelta(minutes=2))
    store.set("-100.5", flow)
    assert store.sweep_expired(NOW) == []


@pytest.mark.asyncio
async def test_sweep_skips_locked_thread():
    store = ConversationFlowStore(ttl_seconds=600)
    store.set("-100.5", make_flow(created_at=NOW - timedelta(hours=1)))

    async with store.locked("-100.5"):
        assert store.sweep_expired(NOW) == []
    assert store.sweep_expired(NOW) == ["-100.5"]


@pytest.mark.asyncio
async def test_locked_serializes_same_thread():
    store = ConversationFlowStore()
    order = []

    async def worker(name):
        async with store.locked("-100.5"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_locks_are_per_thread():
    store = ConversationFlowStore()
    entered = []

    async def other_thread():
        async with store.locked("two"):
            entered.append("two")

    async with store.locked("one"):
        await asyncio.wait_for(other_thread(), timeout=0.5)
    assert entered == ["two"]


@pytest.mark.asyncio
async def test_thread_lock_is_released_after_use():
    store = ConversationFlowStore()
    store.set("-100.5", make_flow())

    async with store.locked("-100.5"):
        store.clear("-100.5")
    async with store.locked("-100.6"):
        pass

    assert store._locks == {}
    assert store._lock_users == {}


@pytest.mark.asyncio
async def test_thread_lock_kept_while_others_wait():
    store = ConversationFlowStore()
    inside = []

    async def worker(name):
        async with store.locked("-100.5"):
            inside.append(name)
            assert len(inside) == 1
            assert len(store._locks) == 1
            await asyncio.sleep(0.01)
            inside.remove(name)

    await asyncio.gather(*(worker(n) for n in "abc"))
    assert inside == []
    assert store._locks == {}


@pytest.mark.asyncio
async def test_start_and_stop_sweeper():
    store = ConversationFlowStore(ttl_seconds=0, sweep_interval_seconds=0.01)
    store.set("-100.5", make_flow(created_at=datetime.now() - timedelta(seconds=5)))

    await store.start()
    await asyncio.sleep(0.05)
    await store.stop()

    assert store.get("-100.5") is None
    assert store._sweep_task is None


def test_from_config():
    store = ConversationFlowStore.from_config({"flows": {"ttl_seconds": 120, "sweep_interval_seconds": 5}})
    assert store.ttl == timedelta(seconds=120)
    assert store.sweep_interval_seconds == 5
