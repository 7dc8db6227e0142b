"""Shared pytest fixtures for Remote Session Relay tests."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from session_relay.flow_store import ConversationFlowStore
from session_relay.models import ActiveSession, ExecResult, SessionState
from session_relay.relay import TopicRelay
from session_relay.server import create_app
from session_relay.session_manager import SessionManager
from session_relay.transport import SshTarget, SshTransport


@pytest.fixture
def ssh_targets() -> dict:
    """Two configured machines; only "mac" has known projects."""
    return {
        "mac": SshTarget(
            name="mac",
            host="mac.local",
            user="dev",
            start_dir="~/code",
            engine_priority=["claude"],
            projects=["itachi-memory", "dotfiles"],
        ),
        "gpu": SshTarget(name="gpu", host="10.0.0.12", user="ubuntu", engine_priority=["codex"]),
    }


@pytest.fixture
def transport(ssh_targets) -> SshTransport:
    """
    SshTransport with real target bookkeeping but mocked remote I/O.

    ``exec`` returns an empty listing by default; ``spawn_interactive_session``
    returns a mock handle.
    """
    transport = SshTransport(targets=ssh_targets)
    transport.exec = AsyncMock(return_value=ExecResult(exit_code=0, stdout=""))
    transport.spawn_interactive_session = AsyncMock(return_value=make_handle())
    return transport


def make_handle() -> MagicMock:
    """Mock InteractiveHandle that accepts writes and kills."""
    handle = MagicMock()
    handle.write = AsyncMock(return_value=True)
    handle.kill = MagicMock(return_value=True)
    handle.running = True
    return handle


@pytest.fixture
def mock_relay() -> MagicMock:
    """Mock TopicRelay recording everything sent."""
    relay = MagicMock(spec=TopicRelay)
    relay.send_to_topic = AsyncMock(return_value=1)
    relay.receive_chunk = AsyncMock()
    relay.flush = AsyncMock()
    relay.final_flush = AsyncMock()
    relay.create_topic = AsyncMock(return_value="-100123.77")
    return relay


@pytest.fixture
def mock_analyzer() -> MagicMock:
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock()
    return analyzer


@pytest.fixture
def session_manager(transport, mock_relay, mock_analyzer) -> SessionManager:
    """SessionManager wired to mocked transport, relay and analyzer."""
    return SessionManager(transport=transport, relay=mock_relay, analyzer=mock_analyzer)


@pytest.fixture
def flow_store() -> ConversationFlowStore:
    return ConversationFlowStore(ttl_seconds=600)


@pytest.fixture
def sample_session() -> ActiveSession:
    """A running session with a couple of transcript entries."""
    session = ActiveSession(
        session_ref="session-1700000000000-abc123",
        thread_key="-100123.77",
        target="mac",
        project_label="itachi-memory",
        command="cd \"$HOME\"/code/itachi-memory && itachi --ds 'Work in ~/code/itachi-memory'",
        prompt="Work in ~/code/itachi-memory",
        state=SessionState.RUNNING,
        started_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    session.process_handle = make_handle()
    session.append("text", "Looking at the repo")
    session.append("user_input", "run the tests")
    return session


@pytest.fixture
def test_client(session_manager, flow_store) -> TestClient:
    """FastAPI TestClient over the real SessionManager and flow store."""
    app = create_app(session_manager=session_manager, flow_store=flow_store, config={})
    return TestClient(app)
