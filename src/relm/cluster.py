# cluster.py
from __future__ import annotations

import copy
import itertools
import json
import os
import subprocess
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from .diff import apply_merge_patch
from .errors import ClusterError

TOOL_HINTS = {
    "kubectl": "Install kubectl and make sure the target context exists (kubectl config get-contexts).",
    "docker": "Install Docker and ensure the daemon is running.",
}

# kubeconfig user the deploy token is registered under
DEPLOY_USER = "relm-deploy"


# ---------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------

class ClusterClient:
    """
    The target orchestration API as the apply engine sees it:
    get / create / patch per (kind, name, namespace), plus a readiness probe.

    Scheduling, networking and node lifecycle stay on the other side.
    """

    def get(self, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def create(self, body: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        raise NotImplementedError

    def patch(self, kind: str, name: str, namespace: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def is_ready(self, kind: str, name: str, namespace: str) -> bool:
        obj = self.get(kind, name, namespace)
        return obj is not None and is_resource_ready(obj)


def is_resource_ready(obj: Dict[str, Any]) -> bool:
    """
    Readiness as reported by the object's own status.

    - Deployment / StatefulSet: controller caught up and every replica updated
      and available
    - Service of type LoadBalancer: an external address has been assigned
    - Job: at least one successful completion
    - anything else: ready as soon as it exists
    """
    kind = obj.get("kind")
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    meta = obj.get("metadata") or {}

    if kind in ("Deployment", "StatefulSet"):
        want = spec.get("replicas", 1)
        generation = meta.get("generation")
        observed = status.get("observedGeneration")
        if generation is not None and (observed is None or observed < generation):
            return False
        ready_field = "availableReplicas" if kind == "Deployment" else "readyReplicas"
        return (
            status.get("updatedReplicas", 0) >= want
            and status.get(ready_field, 0) >= want
        )

    if kind == "Service" and spec.get("type") == "LoadBalancer":
        ingress = (status.get("loadBalancer") or {}).get("ingress") or []
        return len(ingress) > 0

    if kind == "Job":
        return status.get("succeeded", 0) >= 1

    return True


# ---------------------------------------------------------------------
# In-process cluster
# ---------------------------------------------------------------------

class InMemoryCluster(ClusterClient):
    """
    Thread-safe in-process cluster. Behaves like a control plane that:
      - assigns runtime-owned fields (uid, resourceVersion, generation,
        clusterIP, status) on create
      - bumps generation on spec changes
      - converges workloads immediately (unless auto_ready=False)

    Every create / patch is recorded in `calls` for inspection.
    """

    def __init__(self, *, auto_ready: bool = True):
        self.auto_ready = auto_ready
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self._lock = threading.Lock()
        self._rv = itertools.count(1)
        self._ip = itertools.count(10)

    def _converge(self, obj: Dict[str, Any]) -> None:
        kind = obj.get("kind")
        meta = obj.setdefault("metadata", {})
        if kind in ("Deployment", "StatefulSet") and self.auto_ready:
            replicas = (obj.get("spec") or {}).get("replicas", 1)
            obj["status"] = {
                "observedGeneration": meta.get("generation", 1),
                "replicas": replicas,
                "updatedReplicas": replicas,
                "readyReplicas": replicas,
                "availableReplicas": replicas,
            }
        elif kind == "Service":
            spec = obj.setdefault("spec", {})
            spec.setdefault("clusterIP", f"10.96.0.{next(self._ip)}")
            if spec.get("type") == "LoadBalancer" and self.auto_ready:
                obj["status"] = {"loadBalancer": {"ingress": [{"ip": "203.0.113.10"}]}}
        elif kind == "Job" and self.auto_ready:
            obj["status"] = {"succeeded": 1}

    def get(self, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self.objects.get((kind, name, namespace))
            return copy.deepcopy(obj) if obj is not None else None

    def create(self, body: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        kind = body["kind"]
        name = body["metadata"]["name"]
        with self._lock:
            key = (kind, name, namespace)
            if key in self.objects:
                raise ClusterError(operation="create", resource=f"{kind}/{name}", message="already exists")
            obj = copy.deepcopy(body)
            meta = obj.setdefault("metadata", {})
            meta.setdefault("namespace", namespace)
            meta["uid"] = str(uuid.uuid4())
            meta["resourceVersion"] = str(next(self._rv))
            meta["generation"] = 1
            self._converge(obj)
            self.objects[key] = obj
            self.calls.append(("create", f"{kind}/{name}", None))
            return copy.deepcopy(obj)

    def patch(self, kind: str, name: str, namespace: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            key = (kind, name, namespace)
            if key not in self.objects:
                raise ClusterError(operation="patch", resource=f"{kind}/{name}", message="not found")
            before = self.objects[key]
            obj = apply_merge_patch(before, patch)
            meta = obj.setdefault("metadata", {})
            meta["resourceVersion"] = str(next(self._rv))
            if obj.get("spec") != before.get("spec"):
                meta["generation"] = int(meta.get("generation", 1)) + 1
            self._converge(obj)
            self.objects[key] = obj
            self.calls.append(("patch", f"{kind}/{name}", copy.deepcopy(patch)))
            return copy.deepcopy(obj)

    def patches(self) -> List[str]:
        return [res for op, res, _p in self.calls if op == "patch"]

    def creates(self) -> List[str]:
        return [res for op, res, _p in self.calls if op == "create"]


# ---------------------------------------------------------------------
# kubectl-backed cluster
# ---------------------------------------------------------------------

class KubectlCluster(ClusterClient):
    """
    Talks to a real control plane through kubectl.

    context: kubeconfig context name (the target-cluster identifier)
    token:   bearer token for cluster writes (from the deploy job's scoped
             credentials); handed to kubectl through a private kubeconfig
             file, never on the command line
    timeout: seconds per kubectl call
    """

    def __init__(
        self,
        *,
        context: Optional[str] = None,
        token: Optional[str] = None,
        kubectl: str = "kubectl",
        timeout: float = 60.0,
    ):
        self.context = context
        self._token = token
        self.kubectl = kubectl
        self.timeout = timeout
        self._checked = False

    def _check_available(self) -> None:
        if self._checked:
            return
        try:
            subprocess.run(
                [self.kubectl, "version", "--client"],
                capture_output=True,
                check=True,
                timeout=self.timeout,
            )
        except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
            raise ClusterError(
                operation="connect",
                resource="kubectl",
                message=TOOL_HINTS["kubectl"],
            )
        self._checked = True

    @contextmanager
    def _token_kubeconfig(self) -> Iterator[Optional[Dict[str, str]]]:
        """
        Environment for one kubectl call.

        The token is written to a 0600 kubeconfig that only defines
        DEPLOY_USER, layered after the user's own config so clusters and
        contexts still come from there. The file is removed when the call
        returns. Without a token the parent environment is inherited.
        """
        if not self._token:
            yield None
            return
        fd, path = tempfile.mkstemp(prefix="relm-kube-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                yaml.safe_dump(
                    {
                        "apiVersion": "v1",
                        "kind": "Config",
                        "users": [{"name": DEPLOY_USER, "user": {"token": self._token}}],
                    },
                    fh,
                )
            base = os.environ.get("KUBECONFIG") or str(Path.home() / ".kube" / "config")
            env = dict(os.environ)
            env["KUBECONFIG"] = os.pathsep.join([base, path])
            yield env
        finally:
            os.unlink(path)

    def _run(self, args: List[str], *, operation: str, resource: str, stdin: Optional[str] = None) -> str:
        self._check_available()
        cmd = [self.kubectl]
        if self.context:
            cmd.extend(["--context", self.context])
        if self._token:
            cmd.extend(["--user", DEPLOY_USER])
        cmd.extend(args)

        try:
            with self._token_kubeconfig() as env:
                proc = subprocess.run(
                    cmd,
                    input=stdin,
                    text=True,
                    capture_output=True,
                    timeout=self.timeout,
                    env=env,
                )
        except subprocess.TimeoutExpired:
            raise ClusterError(
                operation=operation,
                resource=resource,
                message=f"kubectl did not answer within {self.timeout:g}s",
            )
        if proc.returncode != 0:
            raise ClusterError(
                operation=operation,
                resource=resource,
                message=(proc.stderr or proc.stdout).strip()[-2000:] or f"exit {proc.returncode}",
            )
        return proc.stdout

    def get(self, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        out = self._run(
            ["get", kind, name, "-n", namespace, "-o", "json", "--ignore-not-found"],
            operation="get",
            resource=f"{kind}/{name}",
        )
        return json.loads(out) if out.strip() else None

    def create(self, body: Dict[str, Any], namespace: str) -> Dict[str, Any]:
        resource = f"{body['kind']}/{body['metadata']['name']}"
        out = self._run(
            ["create", "-n", namespace, "-f", "-", "-o", "json"],
            operation="create",
            resource=resource,
            stdin=json.dumps(body),
        )
        return json.loads(out)

    def patch(self, kind: str, name: str, namespace: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        out = self._run(
            ["patch", kind, name, "-n", namespace, "--type", "merge", "-p", json.dumps(patch), "-o", "json"],
            operation="patch",
            resource=f"{kind}/{name}",
        )
        return json.loads(out)
