from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from relm.chart import load_chart
from relm.cluster import InMemoryCluster
from relm.config import Settings
from relm.credentials import CLUSTER_WRITE, REGISTRY_PULL, REGISTRY_PUSH, CredentialProvider
from relm.dsl import pipeline, service
from relm.pipeline import Orchestrator
from relm.release import ReleaseManager
from relm.server import create_app
from relm.store import ReleaseStore

from support import FakeBuilder, FakeRegistry, copy_bank_chart


@pytest.fixture
def repo(tmp_path):
    copy_bank_chart(tmp_path)
    for name in ("client", "account", "gateway"):
        ctx = tmp_path / "services" / name
        ctx.mkdir(parents=True)
        (ctx / "Dockerfile").write_text("FROM alpine\n")
    return tmp_path


@pytest.fixture
def setup(repo):
    store = ReleaseStore("sqlite://")
    cluster = InMemoryCluster()
    settings = Settings(registry="registry.test")
    pl = pipeline(
        "bank",
        *[service(n, repository=f"bank/{n}") for n in ("client", "account", "gateway")],
        chart="charts/bank",
        paths=["services/**"],
    )

    def factory(p):
        registry = FakeRegistry()
        return Orchestrator(
            p,
            manager=ReleaseManager(store, cluster),
            builder=FakeBuilder(registry),
            registry=registry,
            credentials=CredentialProvider.static(
                {REGISTRY_PUSH: "push-t", REGISTRY_PULL: "pull-t", CLUSTER_WRITE: "kube-t"}
            ),
            settings=settings,
            repo_root=repo,
        )

    app = create_app(settings, store=store, pipelines={"bank": pl}, orchestrator_factory=factory)
    return TestClient(app), store, cluster, repo


def test_release_endpoints(setup) -> None:
    client, store, cluster, repo = setup
    manager = ReleaseManager(store, cluster)
    chart = load_chart(repo / "charts" / "bank")
    manager.upgrade("bank", chart, manager.resolve_values(chart))
    manager.upgrade("bank", chart, manager.resolve_values(chart, set_pairs=["client.replicas=3"]))
    manager.rollback("bank", 1)

    r = client.get("/releases/bank")
    assert r.status_code == 200
    body = r.json()
    assert body["revision"] == 3
    assert body["cause"] == "rolled-back-to:1"
    assert body["chart_version"] == "0.3.0"
    assert body["app_version"] == "2.4.1"
    assert "Deployment/bank-gateway" in body["resources"]

    r = client.get("/releases/bank/history")
    assert r.status_code == 200
    assert [(x["revision"], x["status"]) for x in r.json()["revisions"]] == [
        (3, "deployed"),
        (2, "rolled-back"),
        (1, "deployed"),
    ]

    r = client.get("/releases/bank/revisions/2")
    assert r.status_code == 200
    assert r.json()["cause"] == "upgrade"


def test_unknown_release_is_404(setup) -> None:
    client = setup[0]
    assert client.get("/releases/ghost").status_code == 404
    assert client.get("/releases/ghost/history").status_code == 404
    assert client.get("/releases/ghost/revisions/1").status_code == 404


def test_create_run_and_poll(setup) -> None:
    client, store = setup[0], setup[1]
    r = client.post("/pipelines/bank/runs", json={"trigger": "manual", "actor": "ci"})
    assert r.status_code == 202
    run_id = r.json()["run_id"]
    assert r.json()["status"] == "queued"

    # the test client runs background tasks before returning
    r = client.get(f"/runs/{run_id}")
    assert r.status_code == 200
    run = r.json()
    assert run["status"] == "succeeded"
    assert run["release"] == {"name": "bank", "revision": 1, "status": "deployed"}
    assert {j["id"]: j["status"] for j in run["jobs"]} == {
        "build-client": "succeeded",
        "build-account": "succeeded",
        "build-gateway": "succeeded",
        "deploy": "succeeded",
    }
    assert store.get("bank").revision == 1


def test_event_run_without_matching_change_is_skipped(setup) -> None:
    client = setup[0]
    r = client.post("/pipelines/bank/runs", json={"trigger": "event", "changed_files": ["docs/index.md"]})
    run = client.get(f"/runs/{r.json()['run_id']}").json()
    assert run["status"] == "skipped"
    assert run["jobs"] == []


def test_unknown_pipeline_and_run(setup) -> None:
    client = setup[0]
    assert client.post("/pipelines/nope/runs", json={}).status_code == 404
    assert client.get("/runs/missing").status_code == 404
    assert client.post("/pipelines/bank/runs", json={"trigger": "cron"}).status_code == 422
