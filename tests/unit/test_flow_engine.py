"""Unit tests for FlowEngine step transitions."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from session_relay.callbacks import EngineResolver
from session_relay.flow_engine import NO_ACTIVE_DIALOG, NOT_UNDERSTOOD, FlowEngine
from session_relay.models import ConversationFlow, ExecResult, FlowKind, FlowStep
from session_relay.session_manager import build_session_command


THREAD = "-100123.5"


@pytest.fixture
def start_session():
    return AsyncMock(return_value="Session started on mac.")


@pytest.fixture
def create_task():
    return AsyncMock(return_value="Task started.")


@pytest.fixture
def engine(flow_store, transport, start_session, create_task) -> FlowEngine:
    return FlowEngine(
        store=flow_store,
        transport=transport,
        start_session=start_session,
        create_task=create_task,
        engine_resolver=EngineResolver(priorities={"mac": ["codex"]}),
    )


def callbacks_of(reply) -> list[str]:
    return [data for row in reply.buttons for _, data in row]


def listing(*names) -> ExecResult:
    return ExecResult(exit_code=0, stdout="".join(f"{name}/\n" for name in names))


# ============================================================================
# session-setup
# ============================================================================


@pytest.mark.asyncio
async def test_start_session_flow_offers_machines(engine, flow_store):
    reply = await engine.start_session_flow(THREAD, owner_ref="42", chat_id=-100123)

    assert callbacks_of(reply) == ["sf:m:0", "sf:m:1"]
    assert [label for row in reply.buttons for label, _ in row] == ["mac", "gpu"]
    flow = flow_store.get(THREAD)
    assert flow.kind == FlowKind.SESSION_SETUP
    assert flow.step == FlowStep.SELECT_MACHINE
    assert flow.cached_machines == ["mac", "gpu"]


@pytest.mark.asyncio
async def test_start_session_flow_without_targets(flow_store, transport, start_session):
    transport.targets = {}
    engine = FlowEngine(store=flow_store, transport=transport, start_session=start_session)
    reply = await engine.start_session_flow(THREAD)
    assert reply.finished
    assert "No SSH targets" in reply.text
    assert flow_store.get(THREAD) is None


@pytest.mark.asyncio
async def test_machine_choice_lists_repos(engine, flow_store, transport):
    transport.exec.return_value = listing("alpha", "beta")
    await engine.start_session_flow(THREAD)

    reply = await engine.handle_callback(THREAD, "sf:m:0")

    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.SELECT_REPO
    assert flow.machine == "mac"
    assert flow.base_path == "~/code"
    assert flow.cached_dirs == ["alpha", "beta"]
    assert callbacks_of(reply) == ["sf:r:0", "sf:r:1", "sf:r:here"]
    assert transport.exec.await_args.args[0] == "mac"


@pytest.mark.asyncio
async def test_failed_listing_falls_back_to_known_projects(engine, flow_store, transport):
    transport.exec.return_value = ExecResult(exit_code=255, stderr="Permission denied")
    await engine.start_session_flow(THREAD)

    await engine.handle_callback(THREAD, "sf:m:0")

    assert flow_store.get(THREAD).cached_dirs == ["itachi-memory", "dotfiles"]


@pytest.mark.asyncio
async def test_no_dirs_and_no_projects_jumps_to_start_mode(engine, flow_store):
    await engine.start_session_flow(THREAD)

    reply = await engine.handle_callback(THREAD, "sf:m:1")

    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.SELECT_START_MODE
    assert flow.repo_path == "~"
    assert len(reply.buttons) == 3
    assert callbacks_of(reply)[:2] == ["sf:s:i.ds", "sf:s:i.cds"]


@pytest.mark.asyncio
async def test_repo_then_subfolder_then_start(engine, flow_store, transport, start_session):
    transport.exec.side_effect = [listing("alpha", "beta"), listing("src", "docs")]
    await engine.start_session_flow(THREAD)
    await engine.handle_callback(THREAD, "sf:m:0")

    reply = await engine.handle_callback(THREAD, "sf:r:1")
    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.SELECT_SUBFOLDER
    assert flow.repo_path == "~/code/beta"
    assert callbacks_of(reply) == ["sf:d:0", "sf:d:1", "sf:d:here"]

    await engine.handle_callback(THREAD, "sf:d:0")
    assert flow.step == FlowStep.SELECT_START_MODE
    assert flow.repo_path == "~/code/beta/src"

    reply = await engine.handle_callback(THREAD, "sf:s:c.cds")

    assert reply.finished
    assert reply.text == "Session started on mac."
    assert flow_store.get(THREAD) is None
    called_flow, command, prompt = start_session.await_args.args
    assert called_flow is flow
    assert prompt == "Work in ~/code/beta/src"
    assert command == build_session_command("~/code/beta/src", "itachic --cds", prompt)


@pytest.mark.asyncio
async def test_repo_without_subfolders_goes_to_start_mode(engine, flow_store, transport):
    transport.exec.side_effect = [listing("alpha"), listing()]
    await engine.start_session_flow(THREAD)
    await engine.handle_callback(THREAD, "sf:m:0")

    await engine.handle_callback(THREAD, "sf:r:0")

    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.SELECT_START_MODE
    assert flow.repo_path == "~/code/alpha"
    assert flow.project == "alpha"


@pytest.mark.asyncio
async def test_start_here_uses_base_path(engine, flow_store, transport):
    transport.exec.return_value = listing("alpha")
    await engine.start_session_flow(THREAD)
    await engine.handle_callback(THREAD, "sf:m:0")

    await engine.handle_callback(THREAD, "sf:r:here")

    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.SELECT_START_MODE
    assert flow.repo_path == "~/code"


@pytest.mark.asyncio
async def test_legacy_start_value_resolves_engine_per_machine(engine, flow_store, transport, start_session):
    transport.exec.return_value = listing("alpha")
    await engine.start_session_flow(THREAD)
    await engine.handle_callback(THREAD, "sf:m:0")
    await engine.handle_callback(THREAD, "sf:r:here")

    await engine.handle_callback(THREAD, "sf:s:ds")

    _, command, _ = start_session.await_args.args
    assert "&& itachic --ds " in command


# ============================================================================
# Malformed and stale input
# ============================================================================


@pytest.mark.asyncio
async def test_malformed_token_is_not_understood(engine):
    await engine.start_session_flow(THREAD)
    reply = await engine.handle_callback(THREAD, "garbage")
    assert reply.text == NOT_UNDERSTOOD


@pytest.mark.asyncio
async def test_callback_without_flow_reports_no_dialog(engine):
    reply = await engine.handle_callback(THREAD, "sf:m:0")
    assert reply.text == NO_ACTIVE_DIALOG
    assert reply.finished


@pytest.mark.asyncio
async def test_out_of_range_index_leaves_flow_unchanged(engine, flow_store):
    await engine.start_session_flow(THREAD)
    reply = await engine.handle_callback(THREAD, "sf:m:9")
    assert reply.text == NOT_UNDERSTOOD
    assert flow_store.get(THREAD).step == FlowStep.SELECT_MACHINE


@pytest.mark.asyncio
async def test_stale_button_from_earlier_step(engine, flow_store, transport):
    transport.exec.return_value = listing("alpha")
    await engine.start_session_flow(THREAD)
    await engine.handle_callback(THREAD, "sf:m:0")

    reply = await engine.handle_callback(THREAD, "sf:m:1")

    assert reply is None
    flow = flow_store.get(THREAD)
    assert flow.machine == "mac"
    assert flow.step == FlowStep.SELECT_REPO
    assert not flow.in_flight


@pytest.mark.asyncio
async def test_button_from_later_step_is_not_understood(engine, flow_store):
    await engine.start_session_flow(THREAD)

    reply = await engine.handle_callback(THREAD, "sf:r:0")

    assert reply.text == NOT_UNDERSTOOD
    assert flow_store.get(THREAD).step == FlowStep.SELECT_MACHINE


@pytest.mark.asyncio
async def test_double_tap_keeps_next_keyboard(engine, flow_store, transport):
    async def slow_listing(*args, **kwargs):
        await asyncio.sleep(0.01)
        return listing("alpha", "beta")

    transport.exec.side_effect = slow_listing
    await engine.start_session_flow(THREAD)

    first, second = await asyncio.gather(
        engine.handle_callback(THREAD, "sf:m:0"),
        engine.handle_callback(THREAD, "sf:m:0"),
    )

    replies = [r for r in (first, second) if r is not None]
    assert len(replies) == 1
    assert callbacks_of(replies[0])[:2] == ["sf:r:0", "sf:r:1"]
    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.SELECT_REPO
    assert not flow.in_flight
    transport.exec.assert_awaited_once()


@pytest.mark.asyncio
async def test_wrong_kind_button(engine):
    await engine.start_session_flow(THREAD)
    reply = await engine.handle_callback(THREAD, "tf:m:0")
    assert reply.text == NOT_UNDERSTOOD


@pytest.mark.asyncio
async def test_expired_flow_is_cleared_on_callback(engine, flow_store):
    flow_store.set(THREAD, ConversationFlow(
        kind=FlowKind.SESSION_SETUP,
        thread_key=THREAD,
        created_at=datetime.now() - timedelta(hours=1),
        cached_machines=["mac"],
    ))

    reply = await engine.handle_callback(THREAD, "sf:m:0")

    assert reply.text == NO_ACTIVE_DIALOG
    assert flow_store.get(THREAD) is None


@pytest.mark.asyncio
async def test_flow_replaced_during_listing_is_not_written(engine, flow_store, transport):
    await engine.start_session_flow(THREAD)
    replacement = ConversationFlow(kind=FlowKind.TASK_SETUP, thread_key=THREAD, task_name="other")

    async def replace_during_io(*args, **kwargs):
        flow_store.set(THREAD, replacement)
        return listing("alpha")

    transport.exec.side_effect = replace_during_io

    reply = await engine.handle_callback(THREAD, "sf:m:0")

    assert reply.text == NO_ACTIVE_DIALOG
    assert flow_store.get(THREAD) is replacement
    assert replacement.machine is None


@pytest.mark.asyncio
async def test_cancel_clears_flow(engine, flow_store):
    await engine.start_session_flow(THREAD)
    assert await engine.cancel(THREAD)
    assert flow_store.get(THREAD) is None
    assert not await engine.cancel(THREAD)


# ============================================================================
# task-setup
# ============================================================================


@pytest.mark.asyncio
async def test_task_flow_new_repo(engine, flow_store, create_task):
    reply = await engine.start_task_flow(THREAD, "docs site", owner_ref="42")
    assert callbacks_of(reply) == ["tf:m:0", "tf:m:1"]

    reply = await engine.handle_callback(THREAD, "tf:m:0")
    assert callbacks_of(reply) == ["tf:rm:new", "tf:rm:existing"]
    assert flow_store.get(THREAD).step == FlowStep.SELECT_REPO_MODE

    await engine.handle_callback(THREAD, "tf:rm:new")
    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.AWAIT_DESCRIPTION
    assert flow.repo_mode == "new"
    assert engine.awaiting_text(THREAD)

    reply = await engine.handle_text(THREAD, "  build a docs site  ")

    assert reply.finished
    assert reply.text == "Task started."
    create_task.assert_awaited_once_with(flow, "build a docs site")
    assert flow_store.get(THREAD) is None


@pytest.mark.asyncio
async def test_task_flow_existing_repo(engine, flow_store, transport):
    transport.exec.return_value = listing("alpha", "beta")
    await engine.start_task_flow(THREAD, "fix ci")
    await engine.handle_callback(THREAD, "tf:m:0")

    reply = await engine.handle_callback(THREAD, "tf:rm:existing")
    assert callbacks_of(reply) == ["tf:r:0", "tf:r:1"]

    await engine.handle_callback(THREAD, "tf:r:1")

    flow = flow_store.get(THREAD)
    assert flow.step == FlowStep.AWAIT_DESCRIPTION
    assert flow.project == "beta"
    assert flow.repo_path == "~/code/beta"


@pytest.mark.asyncio
async def test_task_flow_existing_without_repos_offers_retry(engine, flow_store):
    await engine.start_task_flow(THREAD, "fix ci")
    await engine.handle_callback(THREAD, "tf:m:1")

    reply = await engine.handle_callback(THREAD, "tf:rm:existing")

    assert callbacks_of(reply) == ["tf:rm:existing", "tf:rm:new"]
    assert flow_store.get(THREAD).step == FlowStep.SELECT_REPO_MODE


@pytest.mark.asyncio
async def test_text_is_ignored_when_no_flow_waits(engine):
    assert await engine.handle_text(THREAD, "hello") is None
    await engine.start_task_flow(THREAD, "docs")
    assert await engine.handle_text(THREAD, "hello") is None
