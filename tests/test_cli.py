from __future__ import annotations

import pytest
from click.testing import CliRunner

from relm.cli import cli
from relm.cluster import InMemoryCluster
from relm.credentials import CLUSTER_WRITE, REGISTRY_PULL, REGISTRY_PUSH, CredentialProvider
from relm.store import ReleaseStore

from support import FakeBuilder, FakeRegistry, FlakyCluster, copy_bank_chart, deployment, write_chart


@pytest.fixture
def obj():
    return {"store": ReleaseStore("sqlite://"), "cluster": InMemoryCluster()}


def invoke(obj, *args):
    return CliRunner().invoke(cli, [str(a) for a in args], obj=obj)


def test_render_prints_ordered_manifest(obj, bank_chart_dir) -> None:
    result = invoke(obj, "render", bank_chart_dir, "--release", "shop")
    assert result.exit_code == 0, result.output
    out = result.output
    assert "name: shop-account" in out
    assert out.index("name: shop-client") < out.index("name: shop-gateway")
    assert "${" not in out


def test_render_unresolved_reference_exits_1(obj, tmp_path) -> None:
    chart = write_chart(tmp_path / "demo", {"web.yaml": deployment("web", image="${values.web.image}")})
    result = invoke(obj, "render", chart)
    assert result.exit_code == 1
    assert "unresolved reference 'values.web.image'" in result.output


def test_render_cycle_exits_3(obj, tmp_path) -> None:
    chart = write_chart(
        tmp_path / "loop",
        {
            "a.yaml": deployment("a", depends_on="b"),
            "b.yaml": deployment("b", depends_on="a"),
        },
    )
    result = invoke(obj, "render", chart)
    assert result.exit_code == 3
    assert "dependency cycle" in result.output


def test_apply_rollback_history_status(obj, bank_chart_dir) -> None:
    first = invoke(obj, "apply", bank_chart_dir, "bank")
    assert first.exit_code == 0, first.output
    assert "REVISION 1: DEPLOYED" in first.output

    second = invoke(obj, "apply", bank_chart_dir, "bank", "--set", "client.image.tag=2.5.0")
    assert second.exit_code == 0, second.output
    assert "REVISION 2: DEPLOYED" in second.output
    assert obj["cluster"].patches() == ["Deployment/bank-client"]

    back = invoke(obj, "rollback", "bank", 1)
    assert back.exit_code == 0, back.output
    assert "REVISION 3: DEPLOYED" in back.output

    history = invoke(obj, "history", "bank")
    assert history.exit_code == 0
    lines = [line.split() for line in history.output.splitlines()[1:] if line.strip()]
    assert [(cols[0], cols[1]) for cols in lines] == [("3", "deployed"), ("2", "rolled-back"), ("1", "deployed")]
    assert "rolled-back-to:1" in history.output

    status = invoke(obj, "status", "bank")
    assert status.exit_code == 0
    assert "CAUSE: rolled-back-to:1" in status.output
    assert "CHART: bank-0.3.0" in status.output


def test_diff_shows_pending_patch(obj, bank_chart_dir) -> None:
    invoke(obj, "apply", bank_chart_dir, "bank")
    result = invoke(obj, "diff", bank_chart_dir, "bank", "--set", "gateway.replicas=3")
    assert result.exit_code == 0, result.output
    assert "PATCHED    Deployment/bank-gateway  (spec.replicas)" in result.output
    assert "UNCHANGED  Deployment/bank-client" in result.output
    assert obj["cluster"].patches() == []


def test_partial_apply_exits_2(bank_chart_dir) -> None:
    obj = {"store": ReleaseStore("sqlite://"), "cluster": FlakyCluster(fail={"Service/bank-account"})}
    result = invoke(obj, "apply", bank_chart_dir, "bank")
    assert result.exit_code == 2
    assert "REVISION 1: FAILED" in result.output
    assert "Applied: Deployment/bank-account" in result.output
    assert "Failed: Service/bank-account" in result.output


def test_unknown_release(obj) -> None:
    assert invoke(obj, "history", "ghost").exit_code == 1
    status = invoke(obj, "status", "ghost")
    assert status.exit_code == 1
    assert "has no deployed revision" in status.output
    assert invoke(obj, "rollback", "ghost", 1).exit_code == 1


def test_bad_set_pair_exits_1(obj, bank_chart_dir) -> None:
    result = invoke(obj, "render", bank_chart_dir, "--set", "no-equals-sign")
    assert result.exit_code == 1


def test_unparseable_set_value_exits_1(obj, bank_chart_dir) -> None:
    result = invoke(obj, "render", bank_chart_dir, "--set", "client.replicas=[1")
    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "not valid YAML" in result.output


PIPELINE_FILE = """\
from relm.dsl import pipeline, service

PIPELINE = pipeline(
    "bank",
    service("client", repository="bank/client"),
    service("account", repository="bank/account"),
    service("gateway", repository="bank/gateway"),
    chart="charts/bank",
)
"""


@pytest.fixture
def pipeline_repo(tmp_path):
    copy_bank_chart(tmp_path)
    for name in ("client", "account", "gateway"):
        ctx = tmp_path / "services" / name
        ctx.mkdir(parents=True)
        (ctx / "Dockerfile").write_text("FROM alpine\n")
    (tmp_path / "relm_pipeline.py").write_text(PIPELINE_FILE)
    return tmp_path


def run_obj(obj, *, fail=()):
    registry = FakeRegistry()
    obj.update(
        registry=registry,
        builder=FakeBuilder(registry, fail=fail),
        credentials=CredentialProvider.static(
            {REGISTRY_PUSH: "push-t", REGISTRY_PULL: "pull-t", CLUSTER_WRITE: "kube-t"}
        ),
    )
    return obj


def test_run_pipeline(obj, pipeline_repo) -> None:
    result = invoke(run_obj(obj), "run", "--file", pipeline_repo / "relm_pipeline.py", "--registry", "registry.test")
    assert result.exit_code == 0, result.output
    assert "SUCCEEDED" in result.output
    assert obj["store"].get("bank").revision == 1


def test_run_pipeline_with_failed_build(obj, pipeline_repo) -> None:
    result = invoke(
        run_obj(obj, fail={"gateway"}),
        "run",
        "--file",
        pipeline_repo / "relm_pipeline.py",
        "--registry",
        "registry.test",
    )
    assert result.exit_code == 1
    assert "deploy:bank: SKIPPED" in result.output
    assert obj["store"].history("bank") == []


def test_run_missing_pipeline_file(obj, tmp_path) -> None:
    result = invoke(obj, "run", "--file", tmp_path / "relm_pipeline.py", "--registry", "registry.test")
    assert result.exit_code == 1
    assert "file not found" in result.output
