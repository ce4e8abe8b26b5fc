"""Tests for the HTTP API."""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient

from build_orchestrator.config import Config
from build_orchestrator.core import events as events_mod
from build_orchestrator.core import projects as projects_mod
from build_orchestrator.core import tasks as tasks_mod
from build_orchestrator.core.orchestrator import Orchestrator, OrchestratorStatus
from build_orchestrator.db.models import OrchestratorEvent
from build_orchestrator.web.app import create_app


@pytest.fixture
def config(db_path, tmp_path):
    return Config(db_path=db_path, state_dir=tmp_path / "state")


@pytest.fixture
def seeded(db, tmp_path):
    projects_mod.create_project(db, "demo", "Demo Project", str(tmp_path))
    tasks_mod.create_task(db, "Setup database", "demo", description="Create tables")
    tasks_mod.create_task(db, "Build API", "demo", depends_on=["setup-database"])
    tasks_mod.create_task(db, "Write tests", "demo", priority=0)
    tasks_mod.block_task(db, "write-tests", "Coding Failure")
    return db


@pytest.fixture
def orchestrator():
    orch = MagicMock(spec=Orchestrator)
    orch.get_status.return_value = OrchestratorStatus(
        project_id="demo",
        running=True,
        current_task_id="setup-database",
        current_phase="coding",
        queue_depth=0,
        total_done=4,
        total_failed=1,
        active_tasks=[{"task_id": "setup-database", "agent": "Frodo", "phase": "coding"}],
    )
    orch.get_live_output.return_value = "Reading files...\n"
    return orch


@pytest.fixture
def client(config, seeded, orchestrator):
    return TestClient(create_app(config, orchestrator))


class TestProjectsAPI:
    def test_list_projects(self, client):
        resp = client.get("/api/projects")
        assert resp.status_code == 200
        data = resp.json()
        assert [p["id"] for p in data] == ["demo"]
        assert data[0]["git_working_mode"] == "worktree"


class TestTasksAPI:
    def test_tasks_with_readiness(self, client):
        resp = client.get("/api/projects/demo/tasks")
        assert resp.status_code == 200
        tasks = {t["id"]: t for t in resp.json()}
        assert tasks["setup-database"]["ready"] is True
        assert tasks["build-api"]["ready"] is False
        assert tasks["build-api"]["blockers"] == ["setup-database"]
        assert tasks["write-tests"]["status"] == "blocked"
        assert tasks["write-tests"]["block_reason"] == "Coding Failure"

    def test_filter_by_status(self, client):
        resp = client.get("/api/projects/demo/tasks?status=blocked")
        assert [t["id"] for t in resp.json()] == ["write-tests"]

    def test_unknown_project_is_empty(self, client):
        assert client.get("/api/projects/nope/tasks").json() == []


class TestOrchestratorAPI:
    def test_status(self, client, orchestrator):
        resp = client.get("/api/projects/demo/orchestrator/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["running"] is True
        assert data["current_phase"] == "coding"
        assert data["total_done"] == 4
        assert data["active_tasks"][0]["agent"] == "Frodo"
        orchestrator.get_status.assert_called_once_with("demo")

    def test_nudge_starts_and_wakes(self, client, orchestrator):
        resp = client.post("/api/projects/demo/orchestrator/nudge")
        assert resp.status_code == 202
        assert resp.json() == {"nudged": "demo"}
        orchestrator.ensure_running.assert_called_once_with("demo")
        orchestrator.nudge.assert_called_once_with("demo")

    def test_nudge_unknown_project(self, client, orchestrator):
        resp = client.post("/api/projects/nope/orchestrator/nudge")
        assert resp.status_code == 404
        orchestrator.ensure_running.assert_not_called()

    def test_nudge_requires_post(self, client):
        assert client.get("/api/projects/demo/orchestrator/nudge").status_code == 405

    def test_live_output(self, client, orchestrator):
        resp = client.get("/api/projects/demo/tasks/setup-database/live-output")
        assert resp.json() == {"task_id": "setup-database", "output": "Reading files...\n"}
        orchestrator.get_live_output.assert_called_once_with("demo", "setup-database")

    def test_status_from_real_orchestrator(self, config, seeded):
        client = TestClient(create_app(config, Orchestrator(config)))
        data = client.get("/api/projects/demo/orchestrator/status").json()
        assert data["running"] is False
        assert data["active_tasks"] == []
        assert client.get("/api/projects/demo/tasks/x/live-output").json()["output"] == ""


class TestEventsAPI:
    @pytest.fixture
    def with_events(self, seeded):
        base = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
        for i, (name, task_id) in enumerate(
            [("task.dispatched", "a"), ("transition.coding", "a"), ("task.dispatched", "b"), ("transition.complete", "a")]
        ):
            events_mod.append(
                seeded,
                OrchestratorEvent(project_id="demo", event=name, task_id=task_id, timestamp=base.replace(minute=i)),
            )
        return seeded

    def test_recent(self, client, with_events):
        resp = client.get("/api/projects/demo/events?count=2")
        assert resp.status_code == 200
        assert [e["event"] for e in resp.json()] == ["task.dispatched", "transition.complete"]

    def test_since(self, client, with_events):
        resp = client.get("/api/projects/demo/events", params={"since": "2025-06-01T12:02:00Z"})
        assert [(e["event"], e["task_id"]) for e in resp.json()] == [
            ("task.dispatched", "b"),
            ("transition.complete", "a"),
        ]

    def test_for_task(self, client, with_events):
        resp = client.get("/api/projects/demo/events?task_id=a")
        assert [e["event"] for e in resp.json()] == ["task.dispatched", "transition.coding", "transition.complete"]

    def test_bad_params(self, client):
        assert client.get("/api/projects/demo/events?count=lots").status_code == 400
        assert client.get("/api/projects/demo/events?since=yesterday").status_code == 400


class TestNudgeThreading:
    def test_start_runs_off_the_event_loop(self, client, orchestrator):
        threads = {}
        orchestrator.ensure_running.side_effect = lambda pid: threads.setdefault("start", threading.current_thread())
        orchestrator.nudge.side_effect = lambda pid: threads.setdefault("nudge", threading.current_thread())

        assert client.post("/api/projects/demo/orchestrator/nudge").status_code == 202
        assert threads["start"] is not threads["nudge"]
