from __future__ import annotations

import json
import os
import stat
import subprocess

import pytest
import yaml

from relm import cluster as cluster_mod
from relm.cluster import InMemoryCluster, KubectlCluster, is_resource_ready
from relm.errors import ClusterError


def deployment_obj(replicas=2, generation=1, status=None):
    return {
        "kind": "Deployment",
        "metadata": {"name": "web", "generation": generation},
        "spec": {"replicas": replicas},
        "status": status or {},
    }


def test_deployment_readiness() -> None:
    ready = {"observedGeneration": 2, "updatedReplicas": 2, "availableReplicas": 2}
    assert is_resource_ready(deployment_obj(generation=2, status=ready))
    # controller has not seen the latest spec yet
    assert not is_resource_ready(deployment_obj(generation=3, status=ready))
    assert not is_resource_ready(deployment_obj(status={"observedGeneration": 1, "updatedReplicas": 2}))


def test_other_kinds_readiness() -> None:
    lb = {"kind": "Service", "spec": {"type": "LoadBalancer"}, "status": {}}
    assert not is_resource_ready(lb)
    lb["status"] = {"loadBalancer": {"ingress": [{"ip": "203.0.113.1"}]}}
    assert is_resource_ready(lb)
    assert not is_resource_ready({"kind": "Job", "status": {}})
    assert is_resource_ready({"kind": "ConfigMap", "data": {}})


def test_in_memory_assigns_runtime_fields() -> None:
    c = InMemoryCluster()
    body = {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "api"}, "spec": {"ports": [{"port": 80}]}}
    c.create(body, "shop")
    live = c.get("Service", "api", "shop")
    assert live["metadata"]["namespace"] == "shop"
    assert live["metadata"]["uid"]
    assert live["spec"]["clusterIP"].startswith("10.96.0.")
    assert "clusterIP" not in body["spec"]
    assert c.get("Service", "api", "default") is None
    with pytest.raises(ClusterError):
        c.create(body, "shop")


def test_in_memory_patch_bumps_generation_on_spec_change() -> None:
    c = InMemoryCluster()
    c.create(deployment_obj(replicas=1), "default")
    c.patch("Deployment", "web", "default", {"metadata": {"labels": {"a": "b"}}})
    assert c.get("Deployment", "web", "default")["metadata"]["generation"] == 1
    c.patch("Deployment", "web", "default", {"spec": {"replicas": 3}})
    live = c.get("Deployment", "web", "default")
    assert live["metadata"]["generation"] == 2
    assert live["status"]["readyReplicas"] == 3
    assert c.is_ready("Deployment", "web", "default")
    with pytest.raises(ClusterError):
        c.patch("Deployment", "ghost", "default", {"spec": {}})


def test_in_memory_without_auto_ready() -> None:
    c = InMemoryCluster(auto_ready=False)
    c.create(deployment_obj(), "default")
    assert not c.is_ready("Deployment", "web", "default")


class FakeKubectl:
    def __init__(self, responses=None, missing=False):
        self.calls = []
        self.responses = responses or {}
        self.missing = missing
        # (path, mode, parsed contents) of the kubeconfig layered on each call
        self.kubeconfigs = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs.get("input")))
        env = kwargs.get("env")
        if env and "KUBECONFIG" in env:
            path = env["KUBECONFIG"].split(os.pathsep)[-1]
            with open(path, encoding="utf-8") as fh:
                self.kubeconfigs.append((path, stat.S_IMODE(os.stat(path).st_mode), yaml.safe_load(fh)))
        if "version" in cmd:
            if self.missing:
                raise FileNotFoundError(cmd[0])
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
        verb = next(a for a in cmd[1:] if a in ("get", "create", "patch"))
        rc, out, err = self.responses.get(verb, (0, "", ""))
        return subprocess.CompletedProcess(cmd, rc, stdout=out, stderr=err)


def test_kubectl_get_missing_returns_none(monkeypatch) -> None:
    fake = FakeKubectl()
    monkeypatch.setattr(cluster_mod.subprocess, "run", fake)
    assert KubectlCluster(context="prod").get("Deployment", "web", "bank") is None
    cmd, _ = fake.calls[-1]
    assert cmd[:3] == ["kubectl", "--context", "prod"]
    assert "--ignore-not-found" in cmd


def test_kubectl_create_sends_body_on_stdin(monkeypatch) -> None:
    body = {"kind": "ConfigMap", "metadata": {"name": "cfg"}}
    fake = FakeKubectl({"create": (0, json.dumps(body), "")})
    monkeypatch.setattr(cluster_mod.subprocess, "run", fake)
    assert KubectlCluster(token="kube-t").create(body, "bank") == body
    _cmd, stdin = fake.calls[-1]
    assert json.loads(stdin) == body


def test_kubectl_token_stays_off_the_command_line(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("KUBECONFIG", str(tmp_path / "config"))
    fake = FakeKubectl()
    monkeypatch.setattr(cluster_mod.subprocess, "run", fake)
    KubectlCluster(context="prod", token="kube-t").get("Deployment", "web", "bank")

    cmd, _ = fake.calls[-1]
    assert all("kube-t" not in arg for c, _ in fake.calls for arg in c)
    assert cmd[1:5] == ["--context", "prod", "--user", cluster_mod.DEPLOY_USER]

    path, mode, config = fake.kubeconfigs[-1]
    assert mode == 0o600
    assert config["users"] == [{"name": cluster_mod.DEPLOY_USER, "user": {"token": "kube-t"}}]
    assert not os.path.exists(path)


def test_kubectl_without_token_inherits_environment(monkeypatch) -> None:
    fake = FakeKubectl()
    monkeypatch.setattr(cluster_mod.subprocess, "run", fake)
    KubectlCluster(context="prod").get("Deployment", "web", "bank")
    assert fake.kubeconfigs == []
    assert "--user" not in fake.calls[-1][0]


def test_kubectl_failure_is_cluster_error(monkeypatch) -> None:
    fake = FakeKubectl({"patch": (1, "", "Error from server (Forbidden): nope")})
    monkeypatch.setattr(cluster_mod.subprocess, "run", fake)
    with pytest.raises(ClusterError) as exc:
        KubectlCluster().patch("Deployment", "web", "bank", {"spec": {"replicas": 2}})
    assert exc.value.operation == "patch"
    assert exc.value.resource == "Deployment/web"
    assert "Forbidden" in exc.value.message


def test_kubectl_not_installed(monkeypatch) -> None:
    monkeypatch.setattr(cluster_mod.subprocess, "run", FakeKubectl(missing=True))
    with pytest.raises(ClusterError) as exc:
        KubectlCluster().get("Deployment", "web", "bank")
    assert "Install kubectl" in str(exc.value)
