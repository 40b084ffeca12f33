"""HTTP API tests against an in-memory database."""

import pytest
from fastapi.testclient import TestClient

from production_workflow import deps
from production_workflow.api import app
from production_workflow.db.base import get_db

from conftest import STANDARD_STAGES, STANDARD_TRANSITIONS


@pytest.fixture
def client(session_factory, notifier):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def manager_headers(manager):
    return {"X-Worker-Id": manager.id}


@pytest.fixture
def worker_headers(make_worker):
    return {"X-Worker-Id": make_worker("Wren Worker", skills=["sanding"]).id}


@pytest.fixture
def workflow_id(client, manager_headers):
    response = client.post(
        "/workflows",
        json={
            "name": "API Build",
            "stages": STANDARD_STAGES,
            "stage_transitions": STANDARD_TRANSITIONS,
        },
        headers=manager_headers,
    )
    assert response.status_code == 201
    return response.json()["workflow"]["id"]


@pytest.fixture
def batch_id(client, manager_headers, workflow_id):
    response = client.post(
        "/batches",
        json={
            "name": "Oak chairs",
            "order_item_ids": ["oi-1", "oi-2"],
            "workflow_template_id": workflow_id,
            "start_at_stage": "sanding",
        },
        headers=manager_headers,
    )
    assert response.status_code == 201
    return response.json()["batch"]["id"]


class TestSystemEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCallerResolution:
    """Requests are attributed through X-Worker-Id."""

    def test_missing_header(self, client):
        assert client.get("/workflows").status_code == 401

    def test_unknown_worker(self, client):
        response = client.get("/workflows", headers={"X-Worker-Id": "nobody"})
        assert response.status_code == 401

    def test_worker_cannot_create_workflow(self, client, worker_headers):
        response = client.post(
            "/workflows",
            json={"name": "Nope", "stages": STANDARD_STAGES},
            headers=worker_headers,
        )

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["kind"] == "permission"
        assert error["code"] == "ROLE_NOT_PRIVILEGED"

    def test_worker_can_read(self, client, worker_headers, workflow_id):
        response = client.get(f"/workflows/{workflow_id}", headers=worker_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "API Build"


class TestWorkflowEndpoints:
    def test_invalid_graph_rejected(self, client, manager_headers):
        response = client.post(
            "/workflows",
            json={"name": "Empty", "stages": []},
            headers=manager_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "NO_STAGES"

    def test_missing_workflow(self, client, manager_headers):
        response = client.get("/workflows/missing", headers=manager_headers)

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"


class TestBatchEndpoints:
    def test_create_with_workflow_enters_stage(self, client, manager_headers, batch_id):
        batch = client.get(f"/batches/{batch_id}", headers=manager_headers).json()

        assert batch["current_stage"] == "sanding"
        assert batch["status"] == "active"
        assert batch["workflow_template"]["name"] == "API Build"

    def test_invalid_stage(self, client, manager_headers, batch_id):
        response = client.post(
            f"/batches/{batch_id}/transition",
            json={"stage": "painting"},
            headers=manager_headers,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_STAGE"
        assert "finishing" in error["details"]["valid_stages"]

    def test_transition(self, client, manager_headers, batch_id):
        response = client.post(
            f"/batches/{batch_id}/transition",
            json={"stage": "finishing", "notes": "Sanded"},
            headers=manager_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["previous_stage"] == "sanding"
        assert body["new_stage"] == "finishing"
        assert body["batch"]["current_stage"] == "finishing"
        assert "automations" not in body

    def test_transition_runs_stage_complete_rules(
        self, client, manager_headers, batch_id, workflow_id, notifier
    ):
        rule = client.post(
            "/automation/rules",
            json={
                "name": "Sanding done",
                "workflow_template_id": workflow_id,
                "trigger_config": {"type": "stage_complete", "stage": "sanding"},
                "actions": [{"type": "notify", "channel": "#finishing"}],
            },
            headers=manager_headers,
        )
        assert rule.status_code == 201

        response = client.post(
            f"/batches/{batch_id}/transition",
            json={"stage": "finishing", "run_automations": True},
            headers=manager_headers,
        )

        assert response.status_code == 200
        automations = response.json()["automations"]
        assert len(automations) == 1
        assert automations[0]["success"] is True
        assert notifier.sent[0][0] == "#finishing"

    def test_generate_tasks_and_duplicate(self, client, manager_headers, batch_id):
        first = client.post(
            f"/batches/{batch_id}/generate-tasks", json={}, headers=manager_headers
        )
        assert first.status_code == 201
        assert first.json()["tasks_created"] == 2

        second = client.post(
            f"/batches/{batch_id}/generate-tasks", json={}, headers=manager_headers
        )
        assert second.status_code == 409
        assert second.json()["error"]["kind"] == "conflict"

        tasks = client.get(f"/batches/{batch_id}/tasks", headers=manager_headers).json()
        assert {t["order_item_id"] for t in tasks} == {"oi-1", "oi-2"}

    def test_history(self, client, manager_headers, batch_id):
        client.post(
            f"/batches/{batch_id}/transition",
            json={"stage": "finishing"},
            headers=manager_headers,
        )

        history = client.get(f"/batches/{batch_id}/history", headers=manager_headers).json()

        assert [(t["from_stage"], t["to_stage"]) for t in history["transitions"]] == [
            (None, "sanding"),
            ("sanding", "finishing"),
        ]
        assert any(e["action"] == "workflow_assigned" for e in history["execution_log"])

    def test_missing_batch(self, client, manager_headers):
        response = client.get("/batches/missing", headers=manager_headers)
        assert response.status_code == 404


class TestTaskEndpoints:
    def test_worker_starts_and_completes_own_task(
        self, client, manager_headers, worker_headers, batch_id
    ):
        generated = client.post(
            f"/batches/{batch_id}/generate-tasks", json={}, headers=manager_headers
        ).json()
        task_id = generated["task_ids"][0]

        assigned = client.post(
            f"/tasks/{task_id}/assign",
            json={"worker_id": worker_headers["X-Worker-Id"]},
            headers=manager_headers,
        )
        assert assigned.status_code == 200

        started = client.post(f"/tasks/{task_id}/start", headers=worker_headers)
        assert started.status_code == 200
        completed = client.post(f"/tasks/{task_id}/complete", headers=worker_headers)
        assert completed.status_code == 200

        task = client.get(f"/tasks/{task_id}", headers=worker_headers).json()
        assert task["status"] == "completed"


class TestAutomationEndpoints:
    def test_invalid_rule_rejected(self, client, manager_headers):
        response = client.post(
            "/automation/rules",
            json={
                "name": "Bad",
                "trigger_config": {"type": "sunrise"},
                "actions": [{"type": "notify"}],
            },
            headers=manager_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_TRIGGER_TYPE"

    def test_dry_run_execute(self, client, manager_headers, batch_id, notifier):
        rule_id = client.post(
            "/automation/rules",
            json={
                "name": "Big batch",
                "trigger_config": {"type": "manual"},
                "conditions": [
                    {"type": "batch_size", "operator": "greater_than_or_equal", "value": 2}
                ],
                "actions": [{"type": "notify"}],
            },
            headers=manager_headers,
        ).json()["rule"]["id"]

        response = client.post(
            "/automation/execute",
            json={"automation_rule_id": rule_id, "batch_id": batch_id, "dry_run": True},
            headers=manager_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Dry run completed"
        assert body["execution"]["actions_executed"][0]["executed"] is False
        assert notifier.sent == []
        executions = client.get("/automation/executions", headers=manager_headers).json()
        assert executions == []

    def test_execute_unknown_rule(self, client, manager_headers):
        response = client.post(
            "/automation/execute",
            json={"automation_rule_id": "missing"},
            headers=manager_headers,
        )
        assert response.status_code == 404
