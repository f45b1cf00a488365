# tests/test_api_server.py

from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from starlette.testclient import TestClient

from kubeconsole.api.server import API_PREFIX, create_app
from kubeconsole.backends.session_store import ChatSession
from kubeconsole.orchestration.chat_service import ChatService, ChatTurn, format_sse, parse_turn
from kubeconsole.orchestration.errors import CheckpointError, SessionConflict, SessionNotFound, ValidationError


def _session(session_id="s1", title="Prod incident", deleted=False):
    now = datetime(2024, 1, 1, 12, 0, 0)
    return ChatSession(
        id=1,
        session_id=session_id,
        user_id="alice",
        title=title,
        is_deleted=deleted,
        created_at=now,
        updated_at=now,
        deleted_at=None,
    )


@pytest.fixture
def service():
    mock = AsyncMock(spec=ChatService)
    mock.open_turn.side_effect = lambda payload: parse_turn(payload)

    async def fake_stream(turn: ChatTurn):
        yield format_sse("routing to ClusterAgent\n\n")
        yield format_sse("You have ")
        yield format_sse("2 clusters.")

    mock.stream_turn = fake_stream
    return mock


@pytest.fixture
def client(service):
    with TestClient(create_app(service=service)) as c:
        yield c


def test_health_returns_ok(client):
    resp = client.get(f"{API_PREFIX}/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_post_message_streams_sse(client, service):
    resp = client.post(f"{API_PREFIX}/msg", json={"message": "list my clusters", "sessionId": "s1", "userId": "alice"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.text == (
        "data: routing to ClusterAgent\ndata: \ndata: \n\n"
        "data: You \n\n"
        "data: 2 clusters.\n\n"
    )
    service.open_turn.assert_awaited_once()


def test_post_message_missing_fields_returns_400(client):
    resp = client.post(f"{API_PREFIX}/msg", json={"sessionId": "s1"})
    assert resp.status_code == 400
    assert "message" in resp.json()["error"]


def test_post_message_malformed_body_returns_400(client):
    resp = client.post(f"{API_PREFIX}/msg", content="{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_post_message_to_foreign_session_returns_404(client, service):
    service.open_turn.side_effect = SessionNotFound("session 's1' not found")
    resp = client.post(f"{API_PREFIX}/msg", json={"message": "hi", "sessionId": "s1", "userId": "mallory"})
    assert resp.status_code == 404


def test_get_history(client, service):
    service.get_history.return_value = {"messages": [], "total": 0}
    resp = client.get(f"{API_PREFIX}/msg", params={"sessionId": "s1", "userId": "alice"})

    assert resp.status_code == 200
    assert resp.json() == {"messages": [], "total": 0}
    service.get_history.assert_awaited_once_with("s1", "alice")


def test_get_history_unavailable_store_returns_503(client, service):
    service.get_history.side_effect = CheckpointError("checkpoint read failed")
    resp = client.get(f"{API_PREFIX}/msg", params={"sessionId": "s1", "userId": "alice"})
    assert resp.status_code == 503


def test_list_sessions(client, service):
    service.list_sessions.return_value = [_session()]
    resp = client.get(f"{API_PREFIX}/sessions", params={"userId": "alice", "includeDeleted": "true"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1
    assert body["sessions"][0]["session_id"] == "s1"
    assert body["sessions"][0]["created_at"] == "2024-01-01T12:00:00"
    service.list_sessions.assert_awaited_once_with("alice", include_deleted=True)


def test_list_sessions_without_user_returns_400(client, service):
    service.list_sessions.side_effect = ValidationError("Missing userId parameter")
    resp = client.get(f"{API_PREFIX}/sessions")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing userId parameter"}


def test_create_session_conflict_returns_409(client, service):
    service.create_session.return_value = _session()
    ok = client.post(f"{API_PREFIX}/session", json={"sessionId": "s1", "userId": "alice", "title": "Prod incident"})
    assert ok.status_code == 200
    assert ok.json()["session"]["title"] == "Prod incident"

    service.create_session.side_effect = SessionConflict("session 's1' already exists")
    dup = client.post(f"{API_PREFIX}/session", json={"sessionId": "s1", "userId": "alice"})
    assert dup.status_code == 409


def test_rename_missing_session_returns_404(client, service):
    service.rename_session.side_effect = SessionNotFound("session 's9' not found or already deleted")
    resp = client.put(f"{API_PREFIX}/session", json={"sessionId": "s9", "title": "x"})
    assert resp.status_code == 404


def test_delete_and_restore(client, service):
    service.delete_session.return_value = True
    resp = client.delete(f"{API_PREFIX}/session", params={"sessionId": "s1", "permanent": "true"})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Session permanently deleted successfully"}
    service.delete_session.assert_awaited_once_with("s1", permanent=True)

    service.delete_session.return_value = False
    assert client.delete(f"{API_PREFIX}/session", params={"sessionId": "s1"}).status_code == 404

    service.restore_session.return_value = False
    assert client.post(f"{API_PREFIX}/session/restore", json={"sessionId": "s1"}).status_code == 404
    service.restore_session.return_value = True
    assert client.post(f"{API_PREFIX}/session/restore", json={"sessionId": "s1"}).json() == {
        "message": "Session restored successfully"
    }
