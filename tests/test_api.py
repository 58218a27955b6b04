from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from fastapi.testclient import TestClient

from taskfleet import __version__
from taskfleet.api import create_app
from taskfleet.config import ServerSettings, Settings
from taskfleet.runtime import Runtime, build_runtime
from taskfleet.subagents.models import AgentProfileUpsert

pytestmark = [
    allure.epic("HTTP API"),
    allure.feature("Routes"),
]


class _RecordingSurface:
    def __init__(self) -> None:
        self.messages: list[str] = []
        self.summaries: list[str] = []

    def open_channel(self, task_id: str, title: str) -> str:
        return task_id

    def send(self, channel_ref: str, text: str) -> None:
        self.messages.append(text)

    def close_channel(self, channel_ref: str, summary: str) -> None:
        self.summaries.append(summary)


def _settings(tmp_path: Path, *, api_token: str | None = None) -> Settings:
    return Settings(
        db_path=tmp_path / "api.db",
        server=ServerSettings(api_token=api_token, run_background_jobs=False),
    )


@pytest.fixture()
def surface() -> _RecordingSurface:
    return _RecordingSurface()


@pytest.fixture()
def runtime(tmp_path: Path, clock, surface: _RecordingSurface) -> Iterator[Runtime]:
    built = build_runtime(_settings(tmp_path), clock=clock, surface=surface)
    yield built
    built.close()


@pytest.fixture()
def client(runtime: Runtime) -> Iterator[TestClient]:
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


def _register(client: TestClient, machine_id: str = "m1", **extra) -> dict:
    response = client.post("/api/machines/register", json={"machine_id": machine_id, **extra})
    assert response.status_code == 200
    return response.json()


def _create_task(client: TestClient, **extra) -> dict:
    payload = {"project": "alpha", "description": "Fix the login form", **extra}
    response = client.post("/api/tasks", json=payload)
    assert response.status_code == 201
    return response.json()


def test_health_reports_version(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}


def test_token_is_required_when_configured(tmp_path: Path) -> None:
    app = create_app(_settings(tmp_path, api_token="secret"))
    with TestClient(app) as client:
        missing = client.get("/health")
        wrong = client.get("/health", headers={"Authorization": "Bearer nope"})
        right = client.get("/health", headers={"Authorization": "Bearer secret"})

    assert missing.status_code == 401
    assert missing.headers["www-authenticate"] == "Bearer"
    assert wrong.status_code == 401
    assert right.status_code == 200


def test_machine_registration_and_heartbeat(client: TestClient) -> None:
    registered = _register(client, projects=["alpha"], max_concurrent=2, os="linux")

    accepted = client.post(
        "/api/machines/heartbeat",
        json={"machine_id": "m1", "active_count": 2},
    )
    unknown = client.post("/api/machines/heartbeat", json={"machine_id": "ghost"})
    machines = client.get("/api/machines").json()

    assert registered["status"] == "online"
    assert registered["projects"] == ["alpha"]
    assert accepted.status_code == 202
    assert accepted.json() == {"accepted": True}
    assert unknown.json() == {"accepted": False}
    assert [machine["status"] for machine in machines] == ["busy"]
    assert machines[0]["reported_active_tasks"] == 2


def test_task_lifecycle_over_http(client: TestClient) -> None:
    _register(client)
    created = _create_task(client, priority=2, budget=1.5)

    claimed = client.post("/api/tasks/claim", json={"machine_id": "m1"}).json()["task"]
    started = client.post(f"/api/tasks/{created['task_id']}/start", json={"machine_id": "m1"})
    first = client.post(
        f"/api/tasks/{created['task_id']}/result",
        json={
            "outcome": "completed",
            "summary": "Fixed",
            "changed_artifacts": ["src/login.py"],
            "external_ref_url": "https://example.com/pr/3",
        },
    ).json()
    second = client.post(
        f"/api/tasks/{created['task_id']}/result",
        json={"outcome": "failed", "error_message": "retry"},
    ).json()

    assert created["status"] == "queued"
    assert claimed["task_id"] == created["task_id"]
    assert claimed["status"] == "claimed"
    assert started.json()["status"] == "running"
    assert first["first_report"] is True
    assert first["task"]["result"]["changed_artifacts"] == ["src/login.py"]
    assert second["first_report"] is False
    assert second["task"]["status"] == "completed"
    assert client.get(f"/api/tasks/{created['task_id']}").json()["status"] == "completed"


def test_claim_with_empty_queue_returns_null(client: TestClient) -> None:
    _register(client)

    response = client.post("/api/tasks/claim", json={"machine_id": "m1"})

    assert response.status_code == 200
    assert response.json() == {"task": None}


def test_domain_errors_map_to_status_codes(client: TestClient) -> None:
    _register(client, max_concurrent=2)
    _register(client, "m2")
    task = _create_task(client)
    client.post("/api/tasks/claim", json={"machine_id": "m1", "task_id": task["task_id"]})

    conflict = client.post(
        "/api/tasks/claim",
        json={"machine_id": "m2", "task_id": task["task_id"]},
    )
    missing = client.get("/api/tasks/does-not-exist")
    unregistered = client.post("/api/tasks/claim", json={"machine_id": "ghost"})
    over_budget = client.post(
        "/api/tasks",
        json={"project": "alpha", "description": "pricey", "budget": 99},
    )
    blank_project = client.post("/api/tasks", json={"project": "  ", "description": "x"})
    queued = _create_task(client)
    early_result = client.post(
        f"/api/tasks/{queued['task_id']}/result",
        json={"outcome": "completed"},
    )

    assert conflict.status_code == 409
    assert conflict.json()["error"] == "ClaimConflict"
    assert missing.status_code == 404
    assert unregistered.status_code == 404
    assert over_budget.status_code == 422
    assert over_budget.json()["error"] == "BudgetExceeded"
    assert blank_project.status_code == 422
    assert early_result.status_code == 409


def test_request_validation_errors(client: TestClient) -> None:
    assert client.post("/api/tasks", json={"project": "alpha"}).status_code == 422
    assert client.post(
        "/api/machines/heartbeat",
        json={"machine_id": "m1", "active_count": -1},
    ).status_code == 422


def test_cancel_task(client: TestClient) -> None:
    task = _create_task(client)

    response = client.post(f"/api/tasks/{task['task_id']}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


def test_stream_events_are_relayed(client: TestClient, surface: _RecordingSurface, clock) -> None:
    task = _create_task(client)
    url = f"/api/tasks/{task['task_id']}/stream"

    text = client.post(url, json={"event_type": "text", "text": "working on it"})
    clock.advance(2)
    tool = client.post(
        url,
        json={"event_type": "tool_use", "tool_use": {"name": "Edit", "input": {"path": "a.py"}}},
    )
    result = client.post(
        url,
        json={"event_type": "result", "result": {"summary": "done", "cost_units": 0.5}},
    )
    late = client.post(url, json={"event_type": "text", "text": "too late"})
    missing = client.post("/api/tasks/nope/stream", json={"event_type": "text", "text": "x"})

    assert text.status_code == 202
    assert tool.json() == {"accepted": True}
    assert result.json() == {"accepted": True}
    assert late.json() == {"accepted": False}
    assert missing.status_code == 404
    assert surface.messages == ["working on it\n[tool] Edit: a.py\n"]
    assert surface.summaries == ["Completed (cost 0.50)\ndone"]


def test_result_report_closes_stream_channel(
    client: TestClient,
    runtime: Runtime,
    surface: _RecordingSurface,
) -> None:
    _register(client)
    task = _create_task(client)
    task_id = task["task_id"]
    client.post("/api/tasks/claim", json={"machine_id": "m1"})
    client.post(f"/api/tasks/{task_id}/stream", json={"event_type": "text", "text": "working"})

    reported = client.post(
        f"/api/tasks/{task_id}/result",
        json={"outcome": "completed", "summary": "Fixed"},
    )
    late = client.post(f"/api/tasks/{task_id}/stream", json={"event_type": "text", "text": "x"})

    assert reported.status_code == 200
    assert surface.messages == ["working"]
    assert surface.summaries == ["Completed\nFixed"]
    assert runtime.relay.channel_info(task_id).closed is True
    assert late.json() == {"accepted": False}


def test_pending_input_round_trip(client: TestClient) -> None:
    task = _create_task(client)
    url = f"/api/tasks/{task['task_id']}/input"

    first = client.post(url, json={"text": "use the staging db"})
    second = client.post(url, json={"text": "and skip migrations"})
    polled = [client.get(url).json()["input"] for _ in range(3)]

    assert first.status_code == 201
    assert first.json() == {"pending": 1}
    assert second.json() == {"pending": 2}
    assert polled[0]["text"] == "use the staging db"
    assert polled[1]["text"] == "and skip migrations"
    assert polled[2] is None


def test_input_for_finished_task_is_rejected(client: TestClient) -> None:
    task = _create_task(client)
    client.post(f"/api/tasks/{task['task_id']}/cancel")

    response = client.post(f"/api/tasks/{task['task_id']}/input", json={"text": "hello?"})
    missing = client.post("/api/tasks/missing/input", json={"text": "hi"})

    assert response.status_code == 409
    assert missing.status_code == 404


def test_subagent_spawn_concurrency_and_cancel(client: TestClient, runtime: Runtime) -> None:
    runtime.runs.upsert_profile(
        AgentProfileUpsert(profile_id="reviewer", display_name="R", model="m", max_concurrent=2),
    )

    parent = client.post("/api/subagents", json={"profile_id": "reviewer", "task": "parent"})
    child = client.post(
        "/api/subagents",
        json={
            "profile_id": "reviewer",
            "task": "child",
            "parent_run_id": parent.json()["run_id"],
        },
    )
    rejected = client.post("/api/subagents", json={"profile_id": "reviewer", "task": "third"})
    unknown_profile = client.post("/api/subagents", json={"profile_id": "ghost", "task": "x"})
    parent_id = parent.json()["run_id"]
    descendants = client.get(f"/api/subagents/{parent_id}/descendants").json()["runs"]
    cancelled = client.post(f"/api/subagents/{parent_id}/cancel", params={"cascade": True})

    assert parent.status_code == 201
    assert parent.json()["status"] == "pending"
    assert rejected.status_code == 429
    assert rejected.json()["error"] == "SubagentConcurrencyExceeded"
    assert unknown_profile.status_code == 404
    assert [run["run_id"] for run in descendants] == [child.json()["run_id"]]
    assert {run["status"] for run in cancelled.json()["runs"]} == {"cancelled"}
    assert len(cancelled.json()["runs"]) == 2
    assert client.get(f"/api/subagents/{parent_id}").json()["status"] == "cancelled"
    assert client.get("/api/subagents/missing").status_code == 404
