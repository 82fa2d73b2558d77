# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class RelmError(Exception):
    """
    Base for every error relm reports to a caller.

    Subclasses are dataclasses carrying enough context for:
      - clean CLI output (the offending resource, path, scope or service)
      - a stable process exit code
    """
    kind = "error"
    exit_code = 1


# ----------------------------------------------------------------------
# Render / validation time (nothing committed, safe to retry blindly)
# ----------------------------------------------------------------------

@dataclass
class UnresolvedReferenceError(RelmError):
    reference: str
    source: str
    resource: Optional[str] = None

    kind = "unresolved_reference"

    def __str__(self) -> str:
        where = f"resource {self.resource}" if self.resource else f"template {self.source}"
        return f"{where}: unresolved reference '{self.reference}'"


@dataclass
class InvalidResourceError(RelmError):
    resource: str
    field: str
    reason: str = "required field missing"

    kind = "invalid_resource"

    def __str__(self) -> str:
        return f"resource {self.resource}: {self.reason}: {self.field}"


@dataclass
class InvalidChartError(RelmError):
    path: str
    reason: str

    kind = "invalid_chart"

    def __str__(self) -> str:
        return f"chart {self.path}: {self.reason}"


@dataclass
class DependencyCycleError(RelmError):
    cycle: List[str]
    stuck: List[str] = field(default_factory=list)

    kind = "dependency_cycle"
    exit_code = 3

    def __str__(self) -> str:
        msg = "dependency cycle: " + " -> ".join(self.cycle)
        extra = sorted(set(self.stuck) - set(self.cycle))
        if extra:
            msg += f" (also blocked: {', '.join(extra)})"
        return msg


# ----------------------------------------------------------------------
# Apply time (partial state committed and reported)
# ----------------------------------------------------------------------

@dataclass
class ClusterError(RelmError):
    """Raised by cluster clients; the apply engine wraps it into ApplyError."""
    operation: str
    resource: str
    message: str

    kind = "cluster"

    def __str__(self) -> str:
        return f"{self.operation} {self.resource} failed: {self.message}"


@dataclass
class ApplyError(RelmError):
    resource: str
    message: str

    kind = "apply"
    exit_code = 2

    def __str__(self) -> str:
        return f"resource {self.resource}: {self.message}"


@dataclass
class ReadinessTimeoutError(ApplyError):
    timeout: float = 0.0

    kind = "readiness_timeout"

    def __str__(self) -> str:
        return f"resource {self.resource}: not ready after {self.timeout:g}s ({self.message})"


# ----------------------------------------------------------------------
# Job / pipeline level
# ----------------------------------------------------------------------

@dataclass
class CredentialError(RelmError):
    scope: str
    reason: str

    kind = "credential"

    def __str__(self) -> str:
        return f"credential for scope '{self.scope}': {self.reason}"


@dataclass
class ArtifactUnavailableError(RelmError):
    reference: str
    reason: str = "tag not found in registry"

    kind = "artifact_unavailable"

    def __str__(self) -> str:
        return f"artifact {self.reference}: {self.reason}"


@dataclass
class BuildFailure(RelmError):
    service: str
    cmd: str
    returncode: int
    output: str = ""

    kind = "build"

    def __str__(self) -> str:
        return f"[{self.service}] build failed (exit={self.returncode}): {self.cmd}"


@dataclass
class ReleaseNotFoundError(RelmError):
    release: str
    revision: Optional[int] = None

    kind = "not_found"

    def __str__(self) -> str:
        if self.revision is None:
            return f"release '{self.release}' has no deployed revision"
        return f"release '{self.release}' has no revision {self.revision}"


@dataclass
class PipelineLoadError(RelmError):
    path: str
    reason: str

    kind = "pipeline_load"

    def __str__(self) -> str:
        return f"pipeline {self.path}: {self.reason}"
