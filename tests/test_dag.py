from __future__ import annotations

import pytest

from relm.dag import build_dag, order, teardown_order
from relm.errors import DependencyCycleError, UnresolvedReferenceError
from relm.model import RenderedResource


def res(kind: str, name: str, index: int, *refs: str) -> RenderedResource:
    return RenderedResource(
        kind=kind,
        name=name,
        namespace="default",
        body={"kind": kind, "metadata": {"name": name}},
        references=tuple(refs),
        source="templates/test.yaml",
        index=index,
    )


def test_references_come_before_referrers() -> None:
    resources = [
        res("Deployment", "gateway", 0, "Service/client", "Service/account"),
        res("Service", "client", 1),
        res("Service", "account", 2),
    ]
    assert [r.key for r in order(resources)] == ["Service/client", "Service/account", "Deployment/gateway"]


def test_ties_follow_declaration_order() -> None:
    resources = [res("ConfigMap", n, i) for i, n in enumerate(["c", "a", "b"])]
    assert [r.name for r in order(resources)] == ["c", "a", "b"]


def test_chain_and_diamond() -> None:
    resources = [
        res("Deployment", "app", 0, "Service/db", "Secret/creds"),
        res("Service", "db", 1, "StatefulSet/db"),
        res("Secret", "creds", 2),
        res("StatefulSet", "db", 3, "Secret/creds"),
    ]
    keys = [r.key for r in order(resources)]
    assert keys == ["Secret/creds", "StatefulSet/db", "Service/db", "Deployment/app"]


def test_two_node_cycle() -> None:
    resources = [
        res("Deployment", "a", 0, "Deployment/b"),
        res("Deployment", "b", 1, "Deployment/a"),
        res("Service", "c", 2),
    ]
    with pytest.raises(DependencyCycleError) as exc:
        order(resources)
    err = exc.value
    assert set(err.cycle) == {"Deployment/a", "Deployment/b"}
    assert err.cycle[0] == err.cycle[-1]
    assert err.exit_code == 3
    assert "Deployment/a" in str(err) and "Deployment/b" in str(err)


def test_cycle_reports_blocked_resources() -> None:
    resources = [
        res("Deployment", "a", 0, "Deployment/b"),
        res("Deployment", "b", 1, "Deployment/a"),
        res("Service", "a", 2, "Deployment/a"),
    ]
    with pytest.raises(DependencyCycleError) as exc:
        order(resources)
    assert "Service/a" not in exc.value.cycle
    assert "Service/a" in exc.value.stuck


def test_unknown_reference() -> None:
    with pytest.raises(UnresolvedReferenceError) as exc:
        build_dag([res("Deployment", "a", 0, "Service/missing")])
    assert exc.value.reference == "Service/missing"


def test_duplicate_keys_rejected() -> None:
    with pytest.raises(ValueError):
        build_dag([res("Service", "a", 0), res("Service", "a", 1)])


def test_teardown_removes_referrers_first() -> None:
    resources = [
        res("Deployment", "gateway", 0, "Service/client"),
        res("Service", "client", 1),
    ]
    assert [r.key for r in teardown_order(resources)] == ["Deployment/gateway", "Service/client"]
