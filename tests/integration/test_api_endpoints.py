"""Integration tests for the status API."""

import pytest
from fastapi.testclient import TestClient

from session_relay.models import ConversationFlow, FlowKind
from session_relay.server import create_app


@pytest.fixture
def registered_session(session_manager, sample_session):
    session_manager._sessions[sample_session.thread_key] = sample_session
    return sample_session


class TestHealthEndpoint:

    def test_health_empty(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "sessions": 0, "flows": 0}

    def test_health_counts(self, test_client, registered_session, flow_store):
        flow_store.set("-100123.9", ConversationFlow(kind=FlowKind.SESSION_SETUP, thread_key="-100123.9"))
        data = test_client.get("/health").json()
        assert data["sessions"] == 1
        assert data["flows"] == 1

    def test_health_without_components(self):
        client = TestClient(create_app())
        assert client.get("/health").json()["sessions"] == 0


class TestSessionEndpoints:

    def test_list_sessions(self, test_client, registered_session):
        response = test_client.get("/sessions")
        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["session_ref"] == registered_session.session_ref
        assert data[0]["state"] == "running"
        assert data[0]["transcript_length"] == 2

    def test_get_session(self, test_client, registered_session):
        response = test_client.get(f"/sessions/{registered_session.thread_key}")
        assert response.status_code == 200
        assert response.json()["prompt"] == "Work in ~/code/itachi-memory"

    def test_get_unknown_session(self, test_client):
        assert test_client.get("/sessions/-100123.1").status_code == 404

    def test_send_input(self, test_client, registered_session):
        response = test_client.post(
            f"/sessions/{registered_session.thread_key}/input", json={"text": "run the linter"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "delivered"
        registered_session.process_handle.write.assert_awaited_once_with("run the linter\n")
        assert registered_session.transcript[-1].content == "run the linter"

    def test_send_input_not_delivered(self, test_client, registered_session):
        registered_session.process_handle.write.return_value = False
        response = test_client.post(
            f"/sessions/{registered_session.thread_key}/input", json={"text": "hello"}
        )
        assert response.status_code == 409

    def test_send_input_unknown_session(self, test_client):
        response = test_client.post("/sessions/-100123.1/input", json={"text": "hello"})
        assert response.status_code == 404

    def test_send_input_requires_text(self, test_client, registered_session):
        response = test_client.post(f"/sessions/{registered_session.thread_key}/input", json={})
        assert response.status_code == 422

    def test_cancel_session(self, test_client, registered_session):
        response = test_client.delete(f"/sessions/{registered_session.thread_key}")
        assert response.status_code == 200
        assert response.json()["status"] == "killed"
        registered_session.process_handle.kill.assert_called_once()

    def test_cancel_exited_session(self, test_client, registered_session):
        registered_session.process_handle.kill.return_value = False
        response = test_client.delete(f"/sessions/{registered_session.thread_key}")
        assert response.json()["status"] == "not running"

    def test_sessions_without_manager(self):
        client = TestClient(create_app())
        assert client.get("/sessions").status_code == 503


class TestFlowEndpoints:

    def test_list_flows(self, test_client, flow_store):
        flow = ConversationFlow(kind=FlowKind.TASK_SETUP, thread_key="-100123.9", task_name="docs")
        flow.machine = "mac"
        flow_store.set("-100123.9", flow)

        response = test_client.get("/flows")

        assert response.status_code == 200
        data = response.json()
        assert data[0]["kind"] == "task-setup"
        assert data[0]["machine"] == "mac"
        assert data[0]["task_name"] == "docs"

    def test_flows_without_store(self):
        client = TestClient(create_app())
        assert client.get("/flows").status_code == 503
