from __future__ import annotations

import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import Settings, load_settings
from .dsl import DEFAULT_PIPELINE_FILE, load_pipelines
from .errors import ReleaseNotFoundError
from .model import Pipeline, Release, Trigger, TriggerKind
from .pipeline import Orchestrator, PipelineResult
from .release import history_view
from .store import ReleaseStore

OrchestratorFactory = Callable[[Pipeline], Orchestrator]

# -------------------- Schemas --------------------

class ReleaseResponse(BaseModel):
    name: str
    revision: int
    namespace: str
    chart: str
    chart_version: str
    app_version: str
    status: str
    cause: str
    resources: list[str]
    applied: list[str]
    failed_resource: str | None
    error: str | None
    created_at: datetime | None
    updated_at: datetime | None

class HistoryResponse(BaseModel):
    name: str
    revisions: list[ReleaseResponse]

class CreateRunRequest(BaseModel):
    trigger: Literal["manual", "event"] = "manual"
    ref: str | None = None
    sha: str | None = None
    changed_files: list[str] = Field(default_factory=list)
    actor: str | None = None

class CreateRunResponse(BaseModel):
    run_id: str
    pipeline: str
    status: str

class JobResponse(BaseModel):
    id: str
    kind: str
    name: str
    depends_on: list[str]
    status: str
    artifact: str | None
    cached: bool
    error: str | None

class RunRelease(BaseModel):
    name: str
    revision: int
    status: str

class RunResponse(BaseModel):
    run_id: str
    pipeline: str
    trigger: str
    status: str
    error: str | None = None
    jobs: list[JobResponse] = Field(default_factory=list)
    release: RunRelease | None = None


def release_response(r: Release) -> ReleaseResponse:
    return ReleaseResponse(
        name=r.name,
        revision=r.revision,
        namespace=r.namespace,
        chart=r.chart_name,
        chart_version=r.chart_version,
        app_version=r.app_version,
        status=r.status.value,
        cause=r.cause,
        resources=r.resource_keys,
        applied=list(r.applied),
        failed_resource=r.failed_resource,
        error=r.error,
        created_at=r.created_at,
        updated_at=r.updated_at,
    )

# -------------------- Run registry --------------------

class RunRegistry:
    """Runs started through the API, kept in memory for status polling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Any]] = {}

    def add(self, run_id: str, pipeline: str, trigger: Trigger) -> None:
        with self._lock:
            self._runs[run_id] = {
                "run_id": run_id,
                "pipeline": pipeline,
                "trigger": trigger.kind.value,
                "status": "queued",
            }

    def update(self, run_id: str, **fields: Any) -> None:
        with self._lock:
            self._runs[run_id].update(fields)

    def finish(self, result: PipelineResult) -> None:
        with self._lock:
            self._runs[result.run_id] = result.to_dict()

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            run = self._runs.get(run_id)
            return dict(run) if run is not None else None

# -------------------- App --------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[ReleaseStore] = None,
    pipelines: Optional[Dict[str, Pipeline]] = None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
    pipeline_file: str = DEFAULT_PIPELINE_FILE,
) -> FastAPI:
    settings = settings or load_settings()
    store = store or ReleaseStore(settings.store_url)
    if pipelines is None:
        pipelines = load_pipelines(pipeline_file) if Path(pipeline_file).exists() else {}
    if orchestrator_factory is None:
        repo_root = Path(pipeline_file).resolve().parent

        def orchestrator_factory(pl: Pipeline) -> Orchestrator:
            return Orchestrator.from_settings(pl, settings, store=store, repo_root=repo_root)

    runs = RunRegistry()
    app = FastAPI(title="relm release manager")
    app.state.settings = settings
    app.state.store = store
    app.state.runs = runs

    def execute(run_id: str, pl: Pipeline, trigger: Trigger) -> None:
        runs.update(run_id, status="running")
        try:
            result = orchestrator_factory(pl).run(trigger, run_id=run_id)
        except Exception as e:
            runs.update(run_id, status="failed", error=f"{type(e).__name__}: {e}")
            raise
        runs.finish(result)

    # -------------------- Endpoints --------------------

    @app.get("/releases/{name}", response_model=ReleaseResponse)
    def get_release(name: str):
        try:
            return release_response(store.get(name))
        except ReleaseNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/releases/{name}/history", response_model=HistoryResponse)
    def get_history(name: str):
        releases = store.history(name)
        if not releases:
            raise HTTPException(status_code=404, detail=f"release '{name}' has no revisions")
        return HistoryResponse(name=name, revisions=[release_response(r) for r in history_view(releases)])

    @app.get("/releases/{name}/revisions/{revision}", response_model=ReleaseResponse)
    def get_revision(name: str, revision: int):
        try:
            return release_response(store.get(name, revision))
        except ReleaseNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/pipelines/{name}/runs", response_model=CreateRunResponse, status_code=202)
    def create_run(name: str, req: CreateRunRequest, background: BackgroundTasks):
        pl = pipelines.get(name)
        if pl is None:
            raise HTTPException(status_code=404, detail=f"no pipeline named '{name}'")
        trigger = Trigger(
            kind=TriggerKind(req.trigger),
            ref=req.ref,
            sha=req.sha,
            changed_files=tuple(req.changed_files),
            actor=req.actor,
        )
        run_id = uuid.uuid4().hex[:12]
        runs.add(run_id, name, trigger)
        background.add_task(execute, run_id, pl, trigger)
        return CreateRunResponse(run_id=run_id, pipeline=name, status="queued")

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        run = runs.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="run not found")
        return run

    return app
