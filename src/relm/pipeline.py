# pipeline.py
from __future__ import annotations

import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .apply import ApplyEngine
from .builder import ArtifactBuilder, DockerBuilder, RegistryClient
from .cache import compute_build_key, image_tag
from .chart import load_chart
from .cluster import ClusterClient, KubectlCluster
from .config import Settings
from .credentials import (
    BUILD_SCOPES,
    CLUSTER_WRITE,
    DEPLOY_SCOPES,
    REGISTRY_PULL,
    REGISTRY_PUSH,
    CredentialProvider,
)
from .errors import ArtifactUnavailableError, RelmError
from .locks import make_locks
from .model import (
    Artifact,
    Job,
    JobKind,
    JobStatus,
    Pipeline,
    Release,
    ReleaseStatus,
    Service,
    Trigger,
    TriggerKind,
)
from .release import ReleaseManager
from .store import ReleaseStore
from .ui.console import Console, get_console

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"

Observer = Callable[[Job], None]


@dataclass(frozen=True)
class JobEvent:
    job: str
    status: JobStatus
    at: float


@dataclass
class PipelineResult:
    run_id: str
    pipeline: str
    trigger: Trigger
    jobs: List[Job] = field(default_factory=list)
    release: Optional[Release] = None
    status: str = SUCCEEDED
    error: Optional[str] = None
    events: List[JobEvent] = field(default_factory=list)
    exit_code: int = 0

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "trigger": self.trigger.kind.value,
            "status": self.status,
            "error": self.error,
            "jobs": [j.to_dict() for j in self.jobs],
            "release": (
                {
                    "name": self.release.name,
                    "revision": self.release.revision,
                    "status": self.release.status.value,
                }
                if self.release is not None
                else None
            ),
        }


# ---------------------------------------------------------------------
# Trigger selection
# ---------------------------------------------------------------------

def _matches_any(path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def trigger_qualifies(pipeline: Pipeline, trigger: Trigger) -> bool:
    """
    Manual triggers always run. Event triggers run when the pipeline has no
    path filter or a changed file matches one.
    """
    if trigger.kind == TriggerKind.MANUAL:
        return True
    if not pipeline.paths:
        return True
    return any(_matches_any(f, pipeline.paths) for f in trigger.changed_files)


def image_values(services: Sequence[Service], artifacts: Dict[str, Artifact]) -> Dict[str, Any]:
    """Values layer pointing each service's image at what was just built."""
    out: Dict[str, Any] = {}
    for svc in services:
        art = artifacts[svc.name]
        node = out
        for part in svc.key.split("."):
            node = node.setdefault(part, {})
        node["image"] = {"repository": art.image_repository, "tag": art.tag}
    return out


def plan_jobs(pipeline: Pipeline) -> List[Job]:
    """One build job per service, one deploy job depending on all of them."""
    builds = [
        Job(
            id=f"build-{svc.name}",
            kind=JobKind.BUILD,
            name=svc.name,
            inputs={"context": svc.context, "repository": svc.repository},
            scopes=BUILD_SCOPES,
        )
        for svc in pipeline.services
    ]
    deploy = Job(
        id="deploy",
        kind=JobKind.DEPLOY,
        name=pipeline.release,
        inputs={"chart": pipeline.chart, "namespace": pipeline.namespace},
        depends_on=[b.id for b in builds],
        scopes=DEPLOY_SCOPES,
    )
    return [*builds, deploy]


# ---------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------

class Orchestrator:
    """
    Runs a pipeline: parallel build jobs, then one deploy job.

    Build jobs are isolated: a failing build does not cancel its siblings.
    The deploy job stays queued until every build job is terminal and is
    skipped without starting if any of them did not succeed.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        manager: ReleaseManager,
        builder: ArtifactBuilder,
        registry: RegistryClient,
        credentials: CredentialProvider,
        settings: Optional[Settings] = None,
        repo_root: str | Path = ".",
        cluster_factory: Optional[Callable[[str], ClusterClient]] = None,
        max_workers: Optional[int] = None,
        observer: Optional[Observer] = None,
        console: Optional[Console] = None,
    ):
        self.pipeline = pipeline
        self.manager = manager
        self.builder = builder
        self.registry = registry
        self.credentials = credentials
        self.settings = settings or Settings()
        self.repo_root = Path(repo_root).resolve()
        self.cluster_factory = cluster_factory
        if max_workers is None:
            max_workers = max(1, min(len(pipeline.services), (os.cpu_count() or 2)))
        self.max_workers = max_workers
        self.observer = observer
        self._console = console
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        pipeline: Pipeline,
        settings: Settings,
        *,
        store: ReleaseStore,
        repo_root: str | Path = ".",
        cluster: Optional[ClusterClient] = None,
        builder: Optional[ArtifactBuilder] = None,
        registry: Optional[RegistryClient] = None,
        credentials: Optional[CredentialProvider] = None,
        engine_options: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Orchestrator:
        """
        Wire an orchestrator from settings. Anything passed explicitly wins;
        without a cluster, the deploy job talks to kubectl with its own
        cluster:write token.
        """
        cluster_factory = None
        if cluster is None:
            cluster = KubectlCluster(context=settings.cluster, kubectl=settings.kubectl)
            cluster_factory = lambda token: KubectlCluster(  # noqa: E731
                context=settings.cluster, token=token, kubectl=settings.kubectl
            )
        engine = ApplyEngine(cluster, readiness_timeout=settings.readiness_timeout, **(engine_options or {}))
        manager = ReleaseManager(store, cluster, locks=make_locks(settings.redis_url), engine=engine)
        if registry is None:
            if not settings.registry:
                raise ValueError("no image registry configured (set RELM_REGISTRY or pass --registry)")
            registry = RegistryClient(settings.registry)
        return cls(
            pipeline,
            manager=manager,
            builder=builder or DockerBuilder(repo_root),
            registry=registry,
            credentials=credentials or CredentialProvider.from_env(),
            settings=settings,
            repo_root=repo_root,
            cluster_factory=cluster_factory,
            **kwargs,
        )

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def _transition(
        self,
        job: Job,
        status: JobStatus,
        events: List[JobEvent],
        *,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            job.status = status
            if error is not None:
                job.error = error
            events.append(JobEvent(job=job.id, status=status, at=time.monotonic()))
        self.console.print_job(job)
        if self.observer is not None:
            self.observer(job)

    # ------------------------------------------------------------------
    # build
    # ------------------------------------------------------------------

    def _build(self, job: Job, service: Service, events: List[JobEvent]) -> None:
        self._transition(job, JobStatus.RUNNING, events)
        try:
            with self.credentials.scoped(job.id, BUILD_SCOPES) as creds:
                key, _manifest = compute_build_key(service, repo_root=self.repo_root)
                tag = image_tag(key)
                registry = self.settings.registry or self.registry.host
                if self.registry.has_tag(service.repository, tag, token=creds.token(REGISTRY_PUSH)):
                    self.console.print_debug(f"{service.name}: {tag} already in registry")
                    artifact = Artifact(
                        service=service.name,
                        registry=registry,
                        repository=service.repository,
                        tag=tag,
                        cached=True,
                    )
                else:
                    artifact = self.builder.build(service, registry=registry, tag=tag, credentials=creds)
        except RelmError as e:
            self._transition(job, JobStatus.FAILED, events, error=str(e))
            return
        job.artifact = artifact
        self._transition(job, JobStatus.SUCCEEDED, events)

    def _run_builds(self, builds: List[Job], events: List[JobEvent]) -> None:
        by_id = {f"build-{s.name}": s for s in self.pipeline.services}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            in_flight = {pool.submit(self._build, job, by_id[job.id], events): job for job in builds}
            for fut in as_completed(list(in_flight.keys())):
                job = in_flight[fut]
                try:
                    fut.result()
                except Exception as e:
                    # anything not already turned into a job failure
                    self._transition(job, JobStatus.FAILED, events, error=f"{type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # deploy
    # ------------------------------------------------------------------

    def _deploy(
        self,
        job: Job,
        builds: List[Job],
        events: List[JobEvent],
        cancel: Optional[threading.Event],
    ) -> Optional[Release]:
        self._transition(job, JobStatus.RUNNING, events)
        artifacts = {b.name: b.artifact for b in builds}

        with self.credentials.scoped(job.id, DEPLOY_SCOPES) as creds:
            pull_token = creds.token(REGISTRY_PULL)
            for art in artifacts.values():
                if not self.registry.has_tag(art.repository, art.tag, token=pull_token):
                    raise ArtifactUnavailableError(reference=art.reference)

            manager = self.manager
            if self.cluster_factory is not None:
                manager = manager.with_cluster(self.cluster_factory(creds.token(CLUSTER_WRITE)))

            chart = load_chart(self.repo_root / self.pipeline.chart)
            values = manager.resolve_values(
                chart,
                environment=self.pipeline.environment or self.settings.environment,
                settings_values=self.settings.values(),
                files=[str(self.repo_root / f) for f in self.pipeline.values_files],
                set_pairs=self.pipeline.set_values,
                extra=[image_values(self.pipeline.services, artifacts)],
            )
            return manager.upgrade(
                self.pipeline.release,
                chart,
                values,
                namespace=self.pipeline.namespace,
                cancel=cancel,
            )

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(
        self,
        trigger: Trigger,
        *,
        run_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PipelineResult:
        result = PipelineResult(
            run_id=run_id or uuid.uuid4().hex[:12],
            pipeline=self.pipeline.name,
            trigger=trigger,
        )
        events = result.events

        if not trigger_qualifies(self.pipeline, trigger):
            self.console.print_info(f"{self.pipeline.name}: no changed file matches {list(self.pipeline.paths or [])}")
            result.status = SKIPPED
            return result

        jobs = plan_jobs(self.pipeline)
        result.jobs = jobs
        builds, deploy = jobs[:-1], jobs[-1]
        self.console.print_pipeline_started(self.pipeline.name, trigger, len(jobs))
        for job in jobs:
            self._transition(job, JobStatus.QUEUED, events)

        self._run_builds(builds, events)

        failed = [b.name for b in builds if b.status != JobStatus.SUCCEEDED]
        if failed:
            self._transition(deploy, JobStatus.SKIPPED, events, error=f"build failed: {', '.join(failed)}")
            result.status = FAILED
            result.error = deploy.error
            result.exit_code = 1
            return result
        if cancel is not None and cancel.is_set():
            self._transition(deploy, JobStatus.SKIPPED, events, error="cancelled")
            result.status = FAILED
            result.error = "cancelled"
            result.exit_code = 130
            return result

        try:
            release = self._deploy(deploy, builds, events, cancel)
        except RelmError as e:
            self._transition(deploy, JobStatus.FAILED, events, error=str(e))
            result.status = FAILED
            result.error = str(e)
            result.exit_code = e.exit_code
            return result
        except Exception as e:
            # bad values files, --set pairs, or a crash: never leave the job running
            self._transition(deploy, JobStatus.FAILED, events, error=f"{type(e).__name__}: {e}")
            result.status = FAILED
            result.error = deploy.error
            result.exit_code = 1
            return result

        result.release = release
        if release.status == ReleaseStatus.DEPLOYED:
            self._transition(deploy, JobStatus.SUCCEEDED, events)
            result.status = SUCCEEDED
        else:
            self._transition(deploy, JobStatus.FAILED, events, error=release.error or "release failed")
            result.status = FAILED
            result.error = deploy.error
            result.exit_code = 2
        return result
