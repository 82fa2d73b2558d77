# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------
# Charts and rendered resources
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Template:
    """A named manifest template (one file under templates/)."""
    name: str
    text: str


@dataclass(frozen=True)
class Chart:
    """
    A named, versioned bundle of templates plus default values.

    `version` identifies the bundle's packaging revision, `app_version` the
    revision of the application it deploys. They move independently.
    """
    name: str
    version: str
    app_version: str
    templates: Tuple[Template, ...] = ()
    defaults: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    path: Optional[str] = None

    @property
    def ref(self) -> str:
        return f"{self.name}-{self.version}"


@dataclass(frozen=True)
class RenderedResource:
    """A concrete resource document produced from a template."""
    kind: str
    name: str
    namespace: str
    body: Dict[str, Any]
    references: Tuple[str, ...] = ()
    source: str = ""
    index: int = 0

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
            "body": self.body,
            "references": list(self.references),
            "source": self.source,
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RenderedResource:
        return cls(
            kind=data["kind"],
            name=data["name"],
            namespace=data.get("namespace", "default"),
            body=data["body"],
            references=tuple(data.get("references", [])),
            source=data.get("source", ""),
            index=int(data.get("index", 0)),
        )


# ---------------------------------------------------------------------
# Releases
# ---------------------------------------------------------------------

class ReleaseStatus(str, Enum):
    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


ROLLBACK_CAUSE_PREFIX = "rolled-back-to:"


@dataclass(frozen=True)
class Release:
    """
    One revision of a named release.

    Records are append-only. The only transition a stored record ever makes
    is pending -> deployed | failed when its apply finishes.
    """
    name: str
    revision: int
    namespace: str
    chart_name: str
    chart_version: str
    app_version: str
    values: Dict[str, Any]
    resources: Tuple[RenderedResource, ...]
    status: ReleaseStatus = ReleaseStatus.PENDING
    cause: str = "install"
    applied: Tuple[str, ...] = ()
    failed_resource: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def rolled_back_to(self) -> Optional[int]:
        if self.cause.startswith(ROLLBACK_CAUSE_PREFIX):
            return int(self.cause[len(ROLLBACK_CAUSE_PREFIX):])
        return None

    @property
    def resource_keys(self) -> List[str]:
        return [r.key for r in self.resources]

    @property
    def not_applied(self) -> List[str]:
        done = set(self.applied)
        return [k for k in self.resource_keys if k not in done]


@dataclass(frozen=True)
class RecordRef:
    """Handle to a stored release revision."""
    name: str
    revision: int


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

class JobKind(str, Enum):
    BUILD = "build"
    DEPLOY = "deploy"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class TriggerKind(str, Enum):
    MANUAL = "manual"
    EVENT = "event"


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind = TriggerKind.MANUAL
    ref: Optional[str] = None
    sha: Optional[str] = None
    changed_files: Tuple[str, ...] = ()
    actor: Optional[str] = None


@dataclass(frozen=True)
class Service:
    """A deployable unit: one build job per service per pipeline run."""
    name: str
    context: str
    repository: str
    dockerfile: str = "Dockerfile"
    values_key: Optional[str] = None
    inputs: Tuple[str, ...] = ()
    build_args: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.values_key or self.name


@dataclass(frozen=True)
class Pipeline:
    name: str
    chart: str
    release: str
    services: Tuple[Service, ...]
    namespace: str = "default"
    environment: Optional[str] = None
    values_files: Tuple[str, ...] = ()
    set_values: Tuple[str, ...] = ()
    paths: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class Artifact:
    service: str
    registry: str
    repository: str
    tag: str
    cached: bool = False

    @property
    def reference(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}:{self.tag}"
        return f"{self.repository}:{self.tag}"

    @property
    def image_repository(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}"
        return self.repository


@dataclass
class Job:
    """A pipeline execution unit. Mutable: the orchestrator advances its status."""
    id: str
    kind: JobKind
    name: str
    inputs: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    scopes: Tuple[str, ...] = ()
    status: JobStatus = JobStatus.QUEUED
    artifact: Optional[Artifact] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "artifact": self.artifact.reference if self.artifact else None,
            "cached": bool(self.artifact and self.artifact.cached),
            "error": self.error,
        }
