# src/relm/dsl.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from .errors import PipelineLoadError
from .model import Pipeline, Service

DEFAULT_PIPELINE_FILE = "relm_pipeline.py"


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def service(
    name: str,
    *,
    context: Optional[str] = None,
    repository: Optional[str] = None,
    dockerfile: str = "Dockerfile",
    values_key: Optional[str] = None,
    inputs: Optional[Iterable[str]] = None,
    build_args: Optional[Dict[str, str]] = None,
) -> Service:
    """
    Declare a buildable service.

    context defaults to services/<name>, repository to <name>.
    """
    return Service(
        name=name,
        context=context or f"services/{name}",
        repository=repository or name,
        dockerfile=dockerfile,
        values_key=values_key,
        inputs=tuple(inputs or ()),
        # force values to str for stable hashing
        build_args={k: str(v) for k, v in (build_args or {}).items()},
    )


def pipeline(
    name: str,
    *services: Service,
    chart: str,
    release: Optional[str] = None,
    namespace: str = "default",
    environment: Optional[str] = None,
    values_files: Optional[Iterable[str]] = None,
    set_values: Optional[Iterable[str]] = None,
    paths: Optional[Iterable[str]] = None,
) -> Pipeline:
    if not services:
        raise ValueError(f"pipeline({name!r}) must have at least one service")
    seen = set()
    for s in services:
        if s.name in seen:
            raise ValueError(f"pipeline({name!r}) declares service {s.name!r} twice")
        seen.add(s.name)
    return Pipeline(
        name=name,
        chart=chart,
        release=release or name,
        services=tuple(services),
        namespace=namespace,
        environment=environment,
        values_files=tuple(values_files or ()),
        set_values=tuple(set_values or ()),
        paths=tuple(paths) if paths is not None else None,
    )


# ---------------------------------------------------------------------
# Loading (local python file)
# ---------------------------------------------------------------------

def load_pipelines(path: Union[str, Path]) -> Dict[str, Pipeline]:
    """
    Load pipelines from a python file.

    The file must define one of:
      - pipelines() -> List[Pipeline]
      - PIPELINES = [Pipeline, ...]
      - PIPELINE = Pipeline
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise PipelineLoadError(path=str(p), reason="file not found")
    if p.suffix != ".py":
        raise PipelineLoadError(path=str(p), reason=f"must be a .py file, got {p.name}")

    try:
        globals_dict = runpy.run_path(str(p), run_name=f"relm_pipeline_{p.stem}")
    except Exception as e:
        raise PipelineLoadError(path=str(p), reason=f"{type(e).__name__}: {e}") from e

    found: object = None
    if callable(globals_dict.get("pipelines")):
        found = globals_dict["pipelines"]()
    elif "PIPELINES" in globals_dict:
        found = globals_dict["PIPELINES"]
    elif "PIPELINE" in globals_dict:
        found = [globals_dict["PIPELINE"]]

    if not isinstance(found, (list, tuple)) or not found or not all(isinstance(x, Pipeline) for x in found):
        raise PipelineLoadError(
            path=str(p),
            reason="define pipelines() -> List[Pipeline], PIPELINES = [...] or PIPELINE = pipeline(...)",
        )

    out: Dict[str, Pipeline] = {}
    for pl in found:
        if pl.name in out:
            raise PipelineLoadError(path=str(p), reason=f"pipeline {pl.name!r} defined twice")
        out[pl.name] = pl
    return out


def load_pipeline(path: Union[str, Path], name: Optional[str] = None) -> Pipeline:
    """The named pipeline, or the only one the file defines."""
    pipelines = load_pipelines(path)
    if name is None:
        if len(pipelines) > 1:
            raise PipelineLoadError(
                path=str(path),
                reason=f"defines several pipelines ({', '.join(sorted(pipelines))}); pick one with --pipeline",
            )
        return next(iter(pipelines.values()))
    try:
        return pipelines[name]
    except KeyError:
        raise PipelineLoadError(path=str(path), reason=f"no pipeline named {name!r}") from None
