from .dsl import pipeline, service, load_pipeline, load_pipelines
from .pipeline import Orchestrator
from .release import ReleaseManager
from .model import Chart, Pipeline, Release, ReleaseStatus, Service, Trigger

__all__ = [
    "pipeline",
    "service",
    "load_pipeline",
    "load_pipelines",
    "Orchestrator",
    "ReleaseManager",
    "Chart",
    "Pipeline",
    "Release",
    "ReleaseStatus",
    "Service",
    "Trigger",
]
