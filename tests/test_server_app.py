"""Tests for the sync server HTTP endpoints."""

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from campsync.config import Config
from campsync.records import TODO
from campsync.server import SQLiteServerStore, create_app
from campsync.timeutil import format_timestamp

from conftest import T0


def todo_wire(record_id="r1", text="Groceries", updated_at=T0, **extra):
    data = {
        "id": record_id,
        "text": text,
        "done": False,
        "projectId": "default",
        "createdAt": format_timestamp(updated_at),
        "updatedAt": format_timestamp(updated_at),
        "isDeleted": False,
    }
    data.update(extra)
    return data


def push_body(*records, user_id="alice"):
    return {
        "action": "push",
        "userId": user_id,
        "deviceId": "device_a",
        "records": list(records),
    }


@pytest.fixture
def server_store(tmp_path):
    store = SQLiteServerStore(tmp_path / "server.db")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def client(config, server_store, clock):
    app = create_app(config, store=server_store, clock=clock)
    return TestClient(app)


class TestSyncEndpoint:
    """Tests for POST /api/sync/{record_type}."""

    def test_push(self, client, server_store):
        response = client.post("/api/sync/todo", json=push_body(todo_wire()))

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "pushed": 1,
            "conflicts": [],
            "message": "Pushed 1 records, 0 conflicts",
        }
        assert server_store.count(TODO, "alice") == 1

    def test_push_conflict(self, client):
        client.post("/api/sync/todo", json=push_body(todo_wire()))

        response = client.post(
            "/api/sync/todo", json=push_body(todo_wire(text="Milk"))
        )

        data = response.json()
        assert response.status_code == 200
        assert data["pushed"] == 0
        assert data["conflicts"] == [
            {
                "id": "r1",
                "serverUpdatedAt": format_timestamp(T0),
                "localUpdatedAt": format_timestamp(T0),
            }
        ]

    def test_pull(self, client, clock):
        client.post(
            "/api/sync/todo",
            json=push_body(
                todo_wire("old"),
                todo_wire("new", updated_at=T0 + timedelta(minutes=1)),
            ),
        )
        clock.advance(minutes=5)

        response = client.post(
            "/api/sync/todo",
            json={
                "action": "pull",
                "userId": "alice",
                "deviceId": "device_b",
                "lastSyncTime": "2026-01-05T09:00:00Z",
            },
        )

        data = response.json()
        assert response.status_code == 200
        assert data["success"] is True
        assert data["count"] == 1
        assert data["records"][0]["id"] == "new"
        assert data["records"][0]["userId"] == "alice"
        assert data["syncTime"] == format_timestamp(T0 + timedelta(minutes=5))

    def test_pull_without_last_sync_time(self, client):
        client.post("/api/sync/todo", json=push_body(todo_wire()))

        response = client.post(
            "/api/sync/todo",
            json={"action": "pull", "userId": "alice", "deviceId": "device_b"},
        )

        assert response.json()["count"] == 1

    def test_delete(self, client, clock):
        client.post("/api/sync/todo", json=push_body(todo_wire()))
        clock.advance(minutes=1)

        response = client.post(
            "/api/sync/todo",
            json={
                "action": "delete",
                "userId": "alice",
                "deviceId": "device_b",
                "recordId": "r1",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted": True}

    def test_each_record_type_has_an_endpoint(self, client):
        journal = {
            "id": "j1",
            "title": "Day one",
            "content": "Rain",
            "updatedAt": format_timestamp(T0),
        }
        project = {"id": "p1", "name": "House", "updatedAt": format_timestamp(T0)}

        assert client.post("/api/sync/journal", json=push_body(journal)).json()["pushed"] == 1
        assert client.post("/api/sync/project", json=push_body(project)).json()["pushed"] == 1

    def test_unknown_record_type(self, client):
        response = client.post("/api/sync/sketch", json=push_body())

        assert response.status_code == 404
        assert "sketch" in response.json()["error"]


class TestValidation:
    """Tests for 400 responses."""

    def test_missing_identity(self, client):
        response = client.post("/api/sync/todo", json={"action": "pull"})

        assert response.status_code == 400
        assert response.json() == {"error": "userId and deviceId are required"}

    def test_missing_device_id(self, client):
        response = client.post(
            "/api/sync/todo", json={"action": "pull", "userId": "alice"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "deviceId is required"

    def test_empty_user_id(self, client):
        response = client.post(
            "/api/sync/todo",
            json={"action": "pull", "userId": "", "deviceId": "device_a"},
        )

        assert response.status_code == 400
        assert "userId" in response.json()["error"]

    def test_unknown_action(self, client):
        response = client.post(
            "/api/sync/todo",
            json={"action": "merge", "userId": "alice", "deviceId": "device_a"},
        )

        assert response.status_code == 400
        assert "action" in response.json()["error"]

    def test_body_not_json(self, client):
        response = client.post(
            "/api/sync/todo",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_body_not_an_object(self, client):
        response = client.post("/api/sync/todo", json=["push"])

        assert response.status_code == 400

    def test_push_without_records(self, client):
        response = client.post(
            "/api/sync/todo",
            json={"action": "push", "userId": "alice", "deviceId": "device_a"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "records array is required for push"

    def test_push_too_many_records(self, client, config):
        config.server.max_batch_size = 2

        response = client.post(
            "/api/sync/todo",
            json=push_body(todo_wire("r1"), todo_wire("r2"), todo_wire("r3")),
        )

        assert response.status_code == 400
        assert "max 2" in response.json()["error"]

    def test_malformed_record(self, client, server_store):
        response = client.post(
            "/api/sync/todo",
            json=push_body(todo_wire("r1"), todo_wire("r2", text=None)),
        )

        assert response.status_code == 400
        assert "text" in response.json()["error"]
        assert server_store.count(TODO) == 0

    def test_bad_last_sync_time(self, client):
        response = client.post(
            "/api/sync/todo",
            json={
                "action": "pull",
                "userId": "alice",
                "deviceId": "device_a",
                "lastSyncTime": "last tuesday",
            },
        )

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid lastSyncTime")

    def test_delete_without_record_id(self, client):
        response = client.post(
            "/api/sync/todo",
            json={"action": "delete", "userId": "alice", "deviceId": "device_a"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "recordId is required for delete"

    def post_raw(self, client, body):
        """Send a body as escaped JSON, as a browser would for lone surrogates."""
        return client.post(
            "/api/sync/todo",
            content=json.dumps(body).encode("ascii"),
            headers={"Content-Type": "application/json"},
        )

    @pytest.mark.parametrize(
        "record",
        [
            todo_wire(updated_at=T0) | {"updatedAt": 10**20},
            todo_wire(updated_at=T0) | {"updatedAt": "0001-01-01T00:00:00+05:00"},
            todo_wire(updated_at=T0) | {"text": "milk \ud800"},
            todo_wire(updated_at=T0) | {"id": "\ud800"},
        ],
    )
    def test_unrepresentable_record(self, client, server_store, record):
        response = self.post_raw(client, push_body(record))

        assert response.status_code == 400
        assert server_store.count(TODO) == 0

    def test_last_sync_time_out_of_range(self, client):
        response = client.post(
            "/api/sync/todo",
            json={
                "action": "pull",
                "userId": "alice",
                "deviceId": "device_a",
                "lastSyncTime": "0001-01-01T00:00:00+05:00",
            },
        )

        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid lastSyncTime")

    def test_unencodable_user_id(self, client):
        response = self.post_raw(
            client, {"action": "pull", "userId": "\ud800", "deviceId": "device_a"}
        )

        assert response.status_code == 400
        assert "userId" in response.json()["error"]


class TestServerFailures:
    """Tests for 503 and 500 responses."""

    def test_no_database(self, config, clock):
        client = TestClient(create_app(config, store=None, clock=clock))

        response = client.post("/api/sync/todo", json=push_body(todo_wire()))

        assert response.status_code == 503
        assert response.json()["error"] == "Database not configured"

    def test_storage_error(self, config, clock):
        store = MagicMock()
        store.get.side_effect = RuntimeError("database is locked")
        client = TestClient(create_app(config, store=store, clock=clock))

        response = client.post("/api/sync/todo", json=push_body(todo_wire()))

        assert response.status_code == 500
        assert response.json() == {"error": "Sync failed", "details": "database is locked"}


class TestHealth:
    """Tests for GET /api/health."""

    def test_health_ok(self, client):
        response = client.get("/api/health")

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "ok"
        assert data["database"] is True
        assert data["record_types"] == ["journal", "project", "todo"]
        assert data["timestamp"] == format_timestamp(T0)

    def test_health_degraded(self, config, clock):
        client = TestClient(create_app(config, store=None, clock=clock))

        data = client.get("/api/health").json()

        assert data["status"] == "degraded"
        assert data["database"] is False


class TestCORS:
    def test_preflight(self, client):
        response = client.options(
            "/api/sync/todo",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
