from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from dbfleet.api.app import create_app
from dbfleet.api.deps import get_project_manager
from dbfleet.core.errors import RuntimeUnavailable
from tests.support.fleet_fakes import FakeRuntime, build_manager

pytestmark = pytest.mark.integration


@pytest.fixture
def fleet(tmp_path: Path) -> Iterator[tuple[TestClient, FakeRuntime]]:
    manager, runtime = build_manager(tmp_path)
    app = create_app()
    app.dependency_overrides[get_project_manager] = lambda: manager
    with TestClient(app) as client:
        yield client, runtime


def test_project_crud(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, _ = fleet

    create = client.post(
        "/api/v1/projects",
        json={"name": "Acme Corp", "client_name": "Acme", "config": {"memory_limit": "512m"}},
    )
    assert create.status_code == 201
    body = create.json()
    project_id = body["project"]["id"]
    assert body["project"]["slug"] == "acme-corp"
    assert body["project"]["status"] == "running"
    assert body["project"]["config"]["memory_limit"] == "512m"
    assert body["urls"] == {
        "api": "http://localhost:8090",
        "admin": "http://localhost:8090/_/",
    }

    listing = client.get("/api/v1/projects")
    assert listing.status_code == 200
    assert listing.json()["count"] == 1

    by_slug = client.get("/api/v1/projects/acme-corp")
    assert by_slug.status_code == 200
    assert by_slug.json()["project"]["id"] == project_id

    patched = client.patch(f"/api/v1/projects/{project_id}", json={"description": "main"})
    assert patched.status_code == 200
    assert patched.json()["project"]["description"] == "main"

    deleted = client.delete(f"/api/v1/projects/{project_id}")
    assert deleted.status_code == 204
    assert client.get(f"/api/v1/projects/{project_id}").status_code == 404


def test_create_errors_map_to_status_codes(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, runtime = fleet

    assert client.post("/api/v1/projects", json={"name": "Acme"}).status_code == 201

    conflict = client.post("/api/v1/projects", json={"name": "Other", "slug": "acme"})
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "ConflictError"

    invalid = client.post("/api/v1/projects", json={"name": "!!!"})
    assert invalid.status_code == 422

    bad_slug = client.post("/api/v1/projects", json={"name": "x", "slug": "Not Valid"})
    assert bad_slug.status_code == 422

    runtime.fail["pull"] = RuntimeUnavailable("docker down")
    unavailable = client.post("/api/v1/projects", json={"name": "Later"})
    assert unavailable.status_code == 503


def test_lifecycle_logs_and_filters(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, runtime = fleet
    client.post("/api/v1/projects", json={"name": "Acme"})
    client.post("/api/v1/projects", json={"name": "Beta"})

    stopped = client.post("/api/v1/projects/beta/stop")
    assert stopped.status_code == 200
    assert stopped.json()["project"]["status"] == "stopped"
    assert runtime.running["pocketbase-beta"] is False

    only_stopped = client.get("/api/v1/projects", params={"status": "stopped"})
    assert [p["slug"] for p in only_stopped.json()["items"]] == ["beta"]

    paged = client.get("/api/v1/projects", params={"limit": 1, "offset": 1})
    assert [p["slug"] for p in paged.json()["items"]] == ["acme"]

    started = client.post("/api/v1/projects/beta/start")
    assert started.json()["project"]["status"] == "running"

    restarted = client.post("/api/v1/projects/acme/restart")
    assert restarted.status_code == 200

    logs = client.get("/api/v1/projects/acme/logs", params={"tail": 5})
    assert logs.json() == {"logs": "pocketbase-acme tail=5\n"}

    stats = client.get("/api/v1/projects/stats")
    assert stats.status_code == 200
    assert stats.json()["running_projects"] == 2


def test_backup_endpoints(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, _ = fleet
    client.post("/api/v1/projects", json={"name": "Acme"})

    created = client.post("/api/v1/projects/acme/backups")
    assert created.status_code == 201
    filename = created.json()["filename"]
    assert created.json()["size"] > 0

    listing = client.get("/api/v1/projects/acme/backups")
    assert [b["filename"] for b in listing.json()["items"]] == [filename]

    restored = client.post("/api/v1/projects/acme/backups/restore", json={"filename": filename})
    assert restored.status_code == 200
    assert restored.json()["project"]["status"] == "running"

    traversal = client.post(
        "/api/v1/projects/acme/backups/restore", json={"filename": "../x.tar.gz"}
    )
    assert traversal.status_code == 422

    missing = client.post(
        "/api/v1/projects/acme/backups/restore", json={"filename": "acme-gone.tar.gz"}
    )
    assert missing.status_code == 404

    assert client.delete(f"/api/v1/projects/acme/backups/{filename}").status_code == 204
    assert client.get("/api/v1/projects/acme/backups").json()["items"] == []


def test_health_reports_runtime_state(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, runtime = fleet

    healthy = client.get("/api/v1/health")
    assert healthy.status_code == 200
    assert healthy.json()["status"] == "healthy"
    assert healthy.json()["runtime"] is True

    runtime.pinged = False
    assert client.get("/api/v1/health").json()["status"] == "unhealthy"


def test_unknown_project_returns_404(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, _ = fleet

    assert client.get("/api/v1/projects/nope").status_code == 404
    assert client.post("/api/v1/projects/nope/start").status_code == 404


def test_feature_toggles_round_trip_through_config(fleet: tuple[TestClient, FakeRuntime]) -> None:
    client, _ = fleet

    create = client.post(
        "/api/v1/projects",
        json={"name": "Acme", "config": {"enabled_features": {"realtime": False}}},
    )
    assert create.status_code == 201
    features = create.json()["project"]["config"]["enabled_features"]
    assert features == {"auth": True, "storage": True, "realtime": False}
    project_id = create.json()["project"]["id"]

    patched = client.patch(
        f"/api/v1/projects/{project_id}",
        json={"config": {"enabled_features": {"auth": False, "storage": True, "realtime": True}}},
    )
    assert patched.status_code == 200
    assert patched.json()["project"]["config"]["enabled_features"]["auth"] is False

    rejected = client.post(
        "/api/v1/projects",
        json={"name": "Beta", "config": {"enabled_features": {"realtime": "sometimes"}}},
    )
    assert rejected.status_code == 422
