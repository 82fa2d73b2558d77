"""Test helpers: stand-ins for the outside world and chart builders."""

from __future__ import annotations

import itertools
import shutil
import textwrap
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import yaml

from relm.cluster import InMemoryCluster
from relm.credentials import REGISTRY_PUSH
from relm.errors import BuildFailure, ClusterError
from relm.model import Artifact


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRegistry:
    """Tags pushed by FakeBuilder show up here unless `forget_pushes` is set."""

    host = "registry.test"

    def __init__(self, tags: Iterable[Tuple[str, str]] = (), *, forget_pushes: bool = False):
        self.tags: Set[Tuple[str, str]] = set(tags)
        self.forget_pushes = forget_pushes
        self.queries: List[Tuple[str, str, Optional[str]]] = []
        self._lock = threading.Lock()

    def has_tag(self, repository: str, tag: str, token: Optional[str] = None) -> bool:
        with self._lock:
            self.queries.append((repository, tag, token))
            return (repository, tag) in self.tags

    def push(self, repository: str, tag: str) -> None:
        if self.forget_pushes:
            return
        with self._lock:
            self.tags.add((repository, tag))


class FakeBuilder:
    def __init__(self, registry: FakeRegistry, *, fail: Iterable[str] = ()):
        self.registry = registry
        self.fail = set(fail)
        self.built: List[str] = []
        self.tokens: List[str] = []
        self._lock = threading.Lock()

    def build(self, service, *, registry, tag, credentials) -> Artifact:
        token = credentials.token(REGISTRY_PUSH)
        with self._lock:
            self.built.append(service.name)
            self.tokens.append(token)
        if service.name in self.fail:
            raise BuildFailure(service=service.name, cmd="docker build", returncode=1, output="boom")
        self.registry.push(service.repository, tag)
        return Artifact(service=service.name, registry=registry, repository=service.repository, tag=tag)


class FlakyCluster(InMemoryCluster):
    """Fails every create/patch of the named resource keys."""

    def __init__(self, fail: Iterable[str] = (), **kwargs):
        super().__init__(**kwargs)
        self.fail = set(fail)

    def create(self, body, namespace):
        key = f"{body['kind']}/{body['metadata']['name']}"
        if key in self.fail:
            raise ClusterError(operation="create", resource=key, message="admission webhook denied the request")
        return super().create(body, namespace)

    def patch(self, kind, name, namespace, patch):
        key = f"{kind}/{name}"
        if key in self.fail:
            raise ClusterError(operation="patch", resource=key, message="conflict")
        return super().patch(kind, name, namespace, patch)


class DefaultingCluster(InMemoryCluster):
    """Fills defaults inside list elements the way a real API server does."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._node_ports = itertools.count(30000)

    def _converge(self, obj):
        super()._converge(obj)
        spec = obj.get("spec") or {}
        if obj.get("kind") == "Service":
            for port in spec.get("ports") or []:
                port.setdefault("protocol", "TCP")
                if "nodePort" not in port:
                    port["nodePort"] = next(self._node_ports)
        pod = (spec.get("template") or {}).get("spec") or {}
        for container in pod.get("containers") or []:
            container.setdefault("imagePullPolicy", "IfNotPresent")
            container.setdefault("terminationMessagePath", "/dev/termination-log")


REPO_ROOT = Path(__file__).resolve().parent.parent
BANK_CHART = REPO_ROOT / "charts" / "bank"


def write_chart(
    root: Path,
    templates: Dict[str, str],
    *,
    values: Optional[dict] = None,
    name: str = "demo",
    version: str = "0.1.0",
    app_version: str = "1.0.0",
) -> Path:
    """Write a chart directory and return its path."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "Chart.yaml").write_text(
        yaml.safe_dump({"name": name, "version": version, "appVersion": app_version}),
        encoding="utf-8",
    )
    (root / "values.yaml").write_text(yaml.safe_dump(values or {}), encoding="utf-8")
    tdir = root / "templates"
    tdir.mkdir(exist_ok=True)
    for fname, text in templates.items():
        (tdir / fname).write_text(textwrap.dedent(text), encoding="utf-8")
    return root


def deployment(name: str, image: str = "nginx:1.25", depends_on: Optional[str] = None) -> str:
    annotations = ""
    if depends_on:
        annotations = f"\n  annotations:\n    relm.dev/depends-on: {depends_on}"
    return (
        "apiVersion: apps/v1\n"
        "kind: Deployment\n"
        f"metadata:\n  name: {name}{annotations}\n"
        "spec:\n"
        "  replicas: 1\n"
        f"  selector:\n    matchLabels:\n      app: {name}\n"
        "  template:\n"
        f"    metadata:\n      labels:\n        app: {name}\n"
        "    spec:\n"
        "      containers:\n"
        f"        - name: {name}\n"
        f"          image: \"{image}\"\n"
    )


def copy_bank_chart(dest: Path) -> Path:
    target = dest / "charts" / "bank"
    shutil.copytree(BANK_CHART, target)
    return target
