"""Tests for the reference task backend."""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from taskboard.models import as_utc
from taskboard.push import TASK_CREATED, TASK_UPDATED, LocalPushChannel
from taskboard.server.app import app
from taskboard.server.database import get_session
from taskboard.server.routes import get_push_channel


@pytest.fixture(name="session")
def session_fixture():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="channel")
def channel_fixture():
    return LocalPushChannel()


@pytest.fixture(name="events")
def events_fixture(channel):
    received = []
    channel.subscribe(TASK_CREATED, lambda p: received.append((TASK_CREATED, p)))
    channel.subscribe(TASK_UPDATED, lambda p: received.append((TASK_UPDATED, p)))
    return received


@pytest.fixture(name="client")
def client_fixture(session: Session, channel: LocalPushChannel):
    """Create a test client with overridden database session and push channel."""
    def get_session_override():
        yield session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_push_channel] = lambda: channel
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


def _create(client, **fields):
    response = client.post("/api/tasks", json={"title": "Task", **fields})
    assert response.status_code == 201
    return response.json()


def _utc(value):
    """Parse a wire datetime; values without an offset are UTC."""
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def test_health(client: TestClient):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestCreate:
    def test_create_assigns_id_and_timestamps(self, client):
        data = _create(client, title="  Write report  ", priority="high")
        assert data["id"] is not None
        assert data["title"] == "Write report"
        assert data["status"] == "pending"
        assert data["completed"] is False
        assert _utc(data["creation_date"]) <= datetime.now(timezone.utc)
        assert _utc(data["updated_at"]) == _utc(data["creation_date"])

    def test_blank_title_rejected(self, client):
        response = client.post("/api/tasks", json={"title": "   "})
        assert response.status_code == 422
        assert response.json()["detail"] == "Title must not be empty"

    def test_date_only_due_date_moves_to_end_of_day(self, client):
        data = _create(client, due_date="2025-01-01T00:00:00Z")
        assert _utc(data["due_date"]) == datetime(2025, 1, 1, 23, 59, 59, 999999, tzinfo=timezone.utc)

    def test_timed_due_date_stored_as_utc(self, client):
        data = _create(client, due_date="2025-01-01T10:30:00+02:00")
        assert _utc(data["due_date"]) == datetime(2025, 1, 1, 8, 30, tzinfo=timezone.utc)

    def test_completed_on_create_stamps_completion(self, client):
        data = _create(client, status="completed")
        assert data["completed"] is True
        assert data["completion_date"] is not None

    def test_create_publishes_task_created(self, client, events):
        data = _create(client, title="Pushed")
        assert events == [(TASK_CREATED, {"task": data})]


class TestRead:
    def test_list_in_id_order(self, client):
        first = _create(client, title="One")
        second = _create(client, title="Two")
        response = client.get("/api/tasks")
        assert [t["id"] for t in response.json()] == [first["id"], second["id"]]

    def test_list_filters_by_priority(self, client):
        _create(client, title="Low", priority="low")
        high = _create(client, title="High", priority="high")
        response = client.get("/api/tasks", params={"priority": "high"})
        assert [t["id"] for t in response.json()] == [high["id"]]

    def test_get_missing_returns_404(self, client):
        response = client.get("/api/tasks/999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Task not found"


class TestUpdate:
    def test_partial_update(self, client):
        task = _create(client, title="Draft", priority="low")
        response = client.patch(f"/api/tasks/{task['id']}", json={"title": "Final"})
        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "Final"
        assert data["priority"] == "low"

    def test_update_stamps_aware_times(self, client):
        task = _create(client, due_date="2025-03-01T09:00:00+00:00")
        data = client.patch(f"/api/tasks/{task['id']}", json={"completed": True}).json()
        assert _utc(data["updated_at"]) >= _utc(task["updated_at"])
        assert _utc(data["completion_date"]) == _utc(data["updated_at"])
        assert _utc(data["due_date"]) == datetime(2025, 3, 1, 9, tzinfo=timezone.utc)

    def test_completing_sets_status_and_date(self, client):
        task = _create(client)
        data = client.patch(f"/api/tasks/{task['id']}", json={"completed": True}).json()
        assert data["status"] == "completed"
        assert data["completion_date"] is not None

    def test_reopening_clears_date(self, client):
        task = _create(client, status="completed")
        data = client.patch(f"/api/tasks/{task['id']}", json={"completed": False}).json()
        assert data["completed"] is False
        assert data["status"] == "pending"
        assert data["completion_date"] is None

    def test_status_change_keeps_completed_in_step(self, client):
        task = _create(client)
        data = client.patch(f"/api/tasks/{task['id']}", json={"status": "completed"}).json()
        assert data["completed"] is True
        data = client.patch(f"/api/tasks/{task['id']}", json={"status": "blocked"}).json()
        assert data["completed"] is False
        assert data["completion_date"] is None

    def test_update_missing_returns_404(self, client):
        response = client.patch("/api/tasks/999", json={"title": "x"})
        assert response.status_code == 404

    def test_update_publishes_task_updated(self, client, events):
        task = _create(client)
        data = client.patch(f"/api/tasks/{task['id']}", json={"title": "Renamed"}).json()
        event, payload = events[-1]
        assert event == TASK_UPDATED
        assert payload["action"] == "updated"
        assert payload["task"] == data


class TestDelete:
    def test_delete_then_404(self, client):
        task = _create(client)
        assert client.delete(f"/api/tasks/{task['id']}").status_code == 204
        assert client.get(f"/api/tasks/{task['id']}").status_code == 404
        assert client.delete(f"/api/tasks/{task['id']}").status_code == 404

    def test_delete_publishes_deleted_action(self, client, events):
        task = _create(client)
        client.delete(f"/api/tasks/{task['id']}")
        event, payload = events[-1]
        assert (event, payload["action"], payload["task_id"]) == (
            TASK_UPDATED,
            "deleted",
            task["id"],
        )
