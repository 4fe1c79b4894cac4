"""
Tests for the supervisor HTTP API.

The supervisor behind the routes is a mock; these tests cover routing under
the base path, camelCase payloads and the error envelope.
"""

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from config.settings import APP_VERSION
from main import create_app
from supervisor.self_upgrade import SelfUpgradeConflict, SelfUpgradeInvalidRequest
from supervisor.state_store import (
    ImageTarget,
    SelfUpgradeState,
    StateStoreError,
    SupervisorState,
)


@pytest.fixture
def supervisor():
    mock = MagicMock()
    mock.get_state = AsyncMock(return_value=SelfUpgradeState(
        op_id="sup_1",
        state=SupervisorState.FAILED,
        previous=ImageTarget(tag="ghcr.io/acme/dockpilot:1.0.0", digest="sha256:prev"),
        started_at="2026-01-01T00:00:00.000Z",
    ))
    mock.start = AsyncMock(return_value="sup_2")
    mock.rollback = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def client(supervisor_settings, supervisor):
    return TestClient(create_app(supervisor_settings, supervisor=supervisor))


@pytest.mark.unit
class TestInfoRoutes:
    def test_health(self, client):
        response = client.get("/supervisor/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_version(self, client):
        assert client.get("/supervisor/version").json() == {"version": APP_VERSION}

    def test_custom_base_path(self, supervisor_settings, supervisor):
        settings = replace(supervisor_settings, base_path="/ops/sup")
        client = TestClient(create_app(settings, supervisor=supervisor))
        assert client.get("/ops/sup/health").status_code == 200
        assert client.get("/supervisor/health").status_code == 404

    def test_state_uses_camel_case(self, client):
        body = client.get("/supervisor/self-upgrade").json()
        assert body["opId"] == "sup_1"
        assert body["state"] == "failed"
        assert body["previous"] == {"tag": "ghcr.io/acme/dockpilot:1.0.0", "digest": "sha256:prev"}
        assert body["startedAt"] == "2026-01-01T00:00:00.000Z"
        assert "op_id" not in body


@pytest.mark.unit
class TestStart:
    def test_start(self, client, supervisor):
        response = client.post("/supervisor/self-upgrade", json={
            "target": {"tag": "2.0.0"}, "mode": "dry-run", "rollbackOnFailure": True,
        })
        assert response.status_code == 200
        assert response.json() == {"opId": "sup_2"}
        request = supervisor.start.await_args.args[0]
        assert request.target.tag == "2.0.0"
        assert request.mode == "dry-run"
        assert request.rollback_on_failure is True

    def test_invalid_argument(self, client, supervisor):
        supervisor.start.side_effect = SelfUpgradeInvalidRequest("target.tag must not be empty")
        response = client.post("/supervisor/self-upgrade", json={"target": {"tag": ""}})
        assert response.status_code == 400
        assert response.json() == {"error": {
            "code": "invalid_argument", "message": "target.tag must not be empty", "details": {},
        }}

    def test_conflict(self, client, supervisor):
        supervisor.start.side_effect = SelfUpgradeConflict("Self-upgrade sup_1 is already running")
        response = client.post("/supervisor/self-upgrade", json={"target": {"tag": "2.0.0"}})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_malformed_body(self, client, supervisor):
        response = client.post("/supervisor/self-upgrade", json={"mode": "apply"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_argument"
        assert error["details"]["errors"]
        supervisor.start.assert_not_awaited()


@pytest.mark.unit
class TestRollback:
    def test_rollback(self, client, supervisor):
        response = client.post("/supervisor/self-upgrade/rollback", json={"opId": "sup_1"})
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        supervisor.rollback.assert_awaited_once_with("sup_1")

    def test_rollback_errors_carry_op_id(self, client, supervisor):
        supervisor.rollback.side_effect = SelfUpgradeConflict("nothing to roll back to")
        response = client.post("/supervisor/self-upgrade/rollback", json={"opId": "sup_1"})
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"opId": "sup_1"}

        supervisor.rollback.side_effect = SelfUpgradeInvalidRequest("Unknown operation 'sup_9'")
        response = client.post("/supervisor/self-upgrade/rollback", json={"opId": "sup_9"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_argument"

    def test_state_store_failure(self, client, supervisor):
        supervisor.rollback.side_effect = StateStoreError("Cannot write self-upgrade state")
        response = client.post("/supervisor/self-upgrade/rollback", json={"opId": "sup_1"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal"
