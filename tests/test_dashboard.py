from fastapi.testclient import TestClient

from storycycle.dashboard.server import create_app
from storycycle.domain.cycle_state import CycleStateStore
from storycycle.domain.steps import StepStatus
from storycycle.persistence import StateSnapshotWriter


def _seed_state(root):
    store = CycleStateStore()
    StateSnapshotWriter(root).attach(store)
    store.start_cycle("1-1-setup", 2)
    store.begin_step(0, "Create Story File")
    store.finish_step(0, StepStatus.SKIPPED)
    store.start_epic(1, ["1-1-setup"])
    return store


def test_dashboard_api_endpoints(tmp_path):
    _seed_state(tmp_path)
    client = TestClient(create_app(tmp_path))

    cycle = client.get("/api/cycle").json()
    epic = client.get("/api/epic").json()
    history = client.get("/api/history", params={"limit": 10}).json()

    assert cycle["story_id"] == "1-1-setup"
    assert cycle["step_statuses"] == ["skipped", "pending"]
    assert epic["phase"] == "running"
    assert epic["story_queue"] == ["1-1-setup"]
    assert [entry["status"] for entry in history] == ["skipped"]
    assert client.get("/healthz").json() == {"status": "ok"}


def test_dashboard_index_page(tmp_path):
    client = TestClient(create_app(tmp_path))

    response = client.get("/")

    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert "/api/cycle" in response.text


def test_missing_state_directory_is_404(tmp_path):
    client = TestClient(create_app(tmp_path / "missing"))

    assert client.get("/api/cycle").status_code == 404
    assert client.get("/api/history").status_code == 404


def test_missing_snapshot_is_404(tmp_path):
    client = TestClient(create_app(tmp_path))

    response = client.get("/api/epic")

    assert response.status_code == 404
    assert "epic.json" in response.json()["detail"]


def test_history_limit_must_not_be_negative(tmp_path):
    client = TestClient(create_app(tmp_path))

    assert client.get("/api/history", params={"limit": -1}).status_code == 422
