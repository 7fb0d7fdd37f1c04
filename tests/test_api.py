from __future__ import annotations

from pathlib import Path
from typing import Generator, Tuple

import pytest
from fastapi.testclient import TestClient

from ci_runner.main import create_app
from ci_runner.services.storage import RunRepository


@pytest.fixture
def client(repo: RunRepository, tmp_path: Path) -> Generator[Tuple[TestClient, RunRepository], None, None]:
    """Provide a TestClient whose queue worker is not running."""
    repo.update_config({"archive_root": str(tmp_path / "archive")})
    app = create_app(repo, start_worker=False, base_dir=tmp_path)
    with TestClient(app) as test_client:
        yield test_client, repo


def test_create_and_get_run(client: Tuple[TestClient, RunRepository]) -> None:
    api, repo = client

    resp = api.post(
        "/api/runs",
        json={"working_directory": "agent-1", "test_assembly": "A.dll;B.dll", "suffix": "-a;-b", "test_framework": "NUnit3Core"},
    )
    assert resp.status_code == 201
    run_id = resp.json()["id"]

    resp = api.get(f"/api/runs/{run_id}")
    assert resp.status_code == 200
    run = resp.json()
    assert run["status"] == "pending"
    assert run["test_assembly"] == ["A.dll", "B.dll"]
    assert run["suffix"] == ["-a", "-b"]
    assert run["test_framework"] == "nunit3core"

    queue_state = api.get("/api/queue").json()
    assert queue_state["length"] == 1
    assert queue_state["running"] is False


def test_create_run_defaults_and_validation(client: Tuple[TestClient, RunRepository]) -> None:
    api, _repo = client

    resp = api.post("/api/runs", json={"working_directory": "agent-1", "test_assembly": ["A.dll"]})
    assert resp.status_code == 201
    run = api.get(f"/api/runs/{resp.json()['id']}").json()
    assert run["suffix"] == [""]
    assert run["test_framework"] is None

    assert api.post("/api/runs", json={"working_directory": "", "test_assembly": "A.dll"}).status_code == 422
    assert (
        api.post(
            "/api/runs",
            json={"working_directory": "x", "test_assembly": "A.dll", "test_framework": "xunit"},
        ).status_code
        == 422
    )


def test_unknown_run_is_404(client: Tuple[TestClient, RunRepository]) -> None:
    api, _repo = client
    assert api.get("/api/runs/404").status_code == 404


def test_list_runs_filters_by_directory(client: Tuple[TestClient, RunRepository]) -> None:
    api, _repo = client
    for directory in ("D1", "D2", "D1"):
        api.post("/api/runs", json={"working_directory": directory, "test_assembly": "A.dll"})

    assert [run["id"] for run in api.get("/api/runs").json()] == [3, 2, 1]
    assert [run["id"] for run in api.get("/api/runs", params={"working_directory": "D1"}).json()] == [3, 1]


def test_status_endpoints(client: Tuple[TestClient, RunRepository]) -> None:
    api, repo = client
    api.post("/api/runs", json={"working_directory": "D1", "test_assembly": "A.dll"})

    assert api.get("/api/status", params={"working_directory": "D1"}).json() == {
        "status": "pending",
        "color": "yellow",
        "hex": "#ffff00",
    }
    assert api.get("/api/status", params={"working_directory": "D9"}).json()["color"] == "red"
    assert api.get("/api/status/aggregate", params={"directories": "D1;D9"}).json()["color"] == "yellow"
    assert api.get("/api/status/aggregate").json() == {"status": None, "color": "white", "hex": "#ffffff"}


def test_pause_and_resume(client: Tuple[TestClient, RunRepository]) -> None:
    api, _repo = client

    assert api.post("/api/queue/pause").json()["paused"] is True
    assert api.get("/api/queue").json()["paused"] is True
    assert api.post("/api/queue/resume").json()["paused"] is False


def test_config_roundtrip(client: Tuple[TestClient, RunRepository]) -> None:
    api, repo = client

    config = api.get("/api/config").json()
    assert config["default_test_framework"] == "nunit3"

    resp = api.patch(
        "/api/config",
        json={"default_test_framework": "legacy", "poll_interval_seconds": 0.25, "test_name_rewrite_rule": "X.{0}"},
    )
    assert resp.status_code == 200
    assert resp.json()["default_test_framework"] == "legacy"
    assert repo.get_config()["poll_interval_seconds"] == 0.25

    bad = api.patch("/api/config", json={"test_name_rewrite_rule": "missing placeholder"})
    assert bad.status_code == 400
    assert "placeholder" in bad.json()["detail"]
    assert api.patch("/api/config", json={"poll_interval_seconds": 0}).status_code == 422


def test_artifact_download_and_traversal(client: Tuple[TestClient, RunRepository], tmp_path: Path) -> None:
    api, _repo = client
    target = tmp_path / "archive" / "D1" / "1"
    target.mkdir(parents=True)
    (target / "TestResult.xml").write_text("<test-run/>", encoding="utf-8")
    (tmp_path / "secret.txt").write_text("nope", encoding="utf-8")

    resp = api.get("/artifacts/D1/1/TestResult.xml")
    assert resp.status_code == 200
    assert resp.text == "<test-run/>"

    assert api.get("/artifacts/D1/1/missing.xml").status_code == 404
    assert api.get("/artifacts/..%2Fsecret.txt").status_code == 404


def test_delete_run(client: Tuple[TestClient, RunRepository], tmp_path: Path) -> None:
    api, repo = client
    run_id = api.post("/api/runs", json={"working_directory": "D1", "test_assembly": "A.dll"}).json()["id"]
    archived = tmp_path / "archive" / "D1" / str(run_id)
    archived.mkdir(parents=True)

    assert api.delete(f"/api/runs/{run_id}").status_code == 204
    assert repo.get_run(run_id) is None
    assert not archived.exists()
