# cli.py
from __future__ import annotations

import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from relm.apply import ApplyEngine
from relm.builder import DockerBuilder, RegistryClient
from relm.chart import load_chart
from relm.cluster import KubectlCluster
from relm.config import Settings, load_settings
from relm.credentials import CredentialProvider
from relm.dsl import DEFAULT_PIPELINE_FILE, load_pipeline
from relm.errors import RelmError
from relm.locks import make_locks
from relm.model import ReleaseStatus, Trigger, TriggerKind
from relm.pipeline import Orchestrator
from relm.release import ReleaseManager, history_view, render_ordered, resolve_chart_values
from relm.render import to_manifest
from relm.store import ReleaseStore
from relm.ui.console import Console, get_console, set_console


@contextmanager
def reporting_errors() -> Iterator[None]:
    """Map errors to console output and exit codes."""
    console = get_console()
    try:
        yield
    except RelmError as e:
        console.print_error(e.kind.replace("_", " "), str(e))
        if console.debug:
            console.print_exception(e)
        sys.exit(e.exit_code)
    except (ValueError, FileNotFoundError) as e:
        console.print_error("invalid input", str(e))
        if console.debug:
            console.print_exception(e)
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        console.print_error(
            "git failed",
            f"{' '.join(e.cmd)} exited with {e.returncode}",
            details=[e.stderr.strip()] if e.stderr else None,
        )
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)


# ---------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------

def _settings(ctx: click.Context, **overrides) -> Settings:
    return ctx.obj["settings"].with_overrides(**overrides)


def _store(ctx: click.Context, settings: Settings) -> ReleaseStore:
    # tests hand in a store through ctx.obj
    if "store" not in ctx.obj:
        ctx.obj["store"] = ReleaseStore(settings.store_url)
    return ctx.obj["store"]


def _cluster(ctx: click.Context, settings: Settings):
    if ctx.obj.get("cluster") is not None:
        return ctx.obj["cluster"]
    return KubectlCluster(context=settings.cluster, kubectl=settings.kubectl)


def _manager(ctx: click.Context, settings: Settings, *, wait: bool = True) -> ReleaseManager:
    cluster = _cluster(ctx, settings)
    engine = ApplyEngine(
        cluster,
        readiness_timeout=settings.readiness_timeout,
        wait=wait,
        **ctx.obj.get("engine_options", {}),
    )
    return ReleaseManager(
        _store(ctx, settings),
        cluster,
        locks=make_locks(settings.redis_url),
        engine=engine,
    )


def _values(chart, settings: Settings, values_files, set_pairs):
    return resolve_chart_values(
        chart,
        environment=settings.environment,
        settings_values=settings.values(),
        files=values_files,
        set_pairs=set_pairs,
    )


values_options = [
    click.option("-f", "--values", "values_files", multiple=True, type=click.Path(), help="Values file (repeatable, later wins)"),
    click.option("--set", "set_pairs", multiple=True, help="Override one value: path.to.key=value (repeatable)"),
    click.option("--env", "environment", default=None, help="Environment name (selects values-<env>.yaml)"),
    click.option("-n", "--namespace", default=None, help="Target namespace"),
]


def with_values_options(fn):
    for opt in reversed(values_options):
        fn = opt(fn)
    return fn


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@click.group()
@click.option("--debug", is_flag=True, default=False, help="Enable debug mode (show stack traces and detailed output)")
@click.option("--quiet", is_flag=True, default=False, help="Only print results and errors")
@click.option("--store-url", default=None, help="Release store database URL (env: RELM_STORE_URL)")
@click.option("--context", "cluster", default=None, help="Cluster context (env: RELM_CLUSTER)")
@click.pass_context
def cli(ctx, debug, quiet, store_url, cluster):
    """relm: templated multi-service releases with build/deploy pipelines."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = load_settings().with_overrides(store_url=store_url, cluster=cluster)


@cli.command()
@click.argument("chart_path", type=click.Path())
@click.option("--release", "release_name", default=None, help="Release name (defaults to the chart name)")
@with_values_options
@click.pass_context
def render(ctx, chart_path, release_name, values_files, set_pairs, environment, namespace):
    """Render a chart to a multi-document manifest in apply order."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx, environment=environment, namespace=namespace)
        chart = load_chart(chart_path)
        values = _values(chart, settings, values_files, set_pairs)
        resources = render_ordered(chart, values, release_name=release_name or chart.name, namespace=settings.namespace)
        console.print_info(to_manifest(resources))


@cli.command()
@click.argument("chart_path", type=click.Path())
@click.argument("release_name")
@with_values_options
@click.option("--readiness-timeout", type=float, default=None, help="Seconds to wait for each resource to become ready")
@click.option("--wait/--no-wait", default=True, show_default=True, help="Wait for readiness after each resource")
@click.pass_context
def apply(ctx, chart_path, release_name, values_files, set_pairs, environment, namespace, readiness_timeout, wait):
    """Install or upgrade RELEASE_NAME from a chart."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx, environment=environment, namespace=namespace, readiness_timeout=readiness_timeout)
        chart = load_chart(chart_path)
        manager = _manager(ctx, settings, wait=wait)
        values = _values(chart, settings, values_files, set_pairs)
        release = manager.upgrade(release_name, chart, values, namespace=settings.namespace)
        console.print_release_result(release)
        if release.status != ReleaseStatus.DEPLOYED:
            sys.exit(2)


@cli.command()
@click.argument("chart_path", type=click.Path())
@click.argument("release_name")
@with_values_options
@click.pass_context
def diff(ctx, chart_path, release_name, values_files, set_pairs, environment, namespace):
    """Show what apply would create or patch. Changes nothing."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx, environment=environment, namespace=namespace)
        chart = load_chart(chart_path)
        manager = _manager(ctx, settings)
        values = _values(chart, settings, values_files, set_pairs)
        console.print_plan(manager.plan(release_name, chart, values, namespace=settings.namespace))


@cli.command()
@click.argument("release_name")
@click.argument("revision", type=int)
@click.option("--readiness-timeout", type=float, default=None, help="Seconds to wait for each resource to become ready")
@click.option("--wait/--no-wait", default=True, show_default=True)
@click.pass_context
def rollback(ctx, release_name, revision, readiness_timeout, wait):
    """Re-apply REVISION of RELEASE_NAME as a new revision."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx, readiness_timeout=readiness_timeout)
        release = _manager(ctx, settings, wait=wait).rollback(release_name, revision)
        console.print_release_result(release)
        if release.status != ReleaseStatus.DEPLOYED:
            sys.exit(2)


@cli.command()
@click.argument("release_name")
@click.pass_context
def history(ctx, release_name):
    """List every revision of RELEASE_NAME, most recent first."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx)
        releases = _store(ctx, settings).history(release_name)
        if not releases:
            console.print_info(f"release '{release_name}' has no revisions")
            sys.exit(1)
        console.print_history(history_view(releases))


@cli.command()
@click.argument("release_name")
@click.option("--revision", type=int, default=None, help="Show one revision instead of the current one")
@click.pass_context
def status(ctx, release_name, revision):
    """Show the current (or a given) revision of RELEASE_NAME."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx)
        release = _store(ctx, settings).get(release_name, revision)
        console.print_info(f"NAME: {release.name}")
        console.print_info(f"NAMESPACE: {release.namespace}")
        console.print_info(f"CHART: {release.chart_name}-{release.chart_version}")
        console.print_info(f"APP VERSION: {release.app_version}")
        console.print_info(f"CAUSE: {release.cause}")
        console.print_release_result(release)


@cli.command()
@click.option("--file", "pipeline_file", default=DEFAULT_PIPELINE_FILE, show_default=True, help="Pipeline definition file")
@click.option("--pipeline", "pipeline_name", default=None, help="Pipeline to run (when the file defines several)")
@click.option("--event/--manual", default=False, help="Trigger from git changes (event) or unconditionally (manual)")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against for --event")
@click.option("--registry", default=None, help="Image registry host (env: RELM_REGISTRY)")
@click.option("--workers", default=None, type=int, help="Number of parallel build workers")
@click.pass_context
def run(ctx, pipeline_file, pipeline_name, event, compare_ref, registry, workers):
    """Run a build/deploy pipeline."""
    console = get_console()
    with reporting_errors():
        settings = _settings(ctx, registry=registry)
        pl = load_pipeline(pipeline_file, pipeline_name)
        repo_root = Path(pipeline_file).resolve().parent

        if event:
            from relm.git_facts.git import event_trigger
            trigger = event_trigger(compare_ref, cwd=str(repo_root))
        else:
            trigger = Trigger(kind=TriggerKind.MANUAL)

        orchestrator = Orchestrator.from_settings(
            pl,
            settings,
            store=_store(ctx, settings),
            repo_root=repo_root,
            cluster=ctx.obj.get("cluster"),
            builder=ctx.obj.get("builder"),
            registry=ctx.obj.get("registry"),
            credentials=ctx.obj.get("credentials"),
            engine_options=ctx.obj.get("engine_options"),
            max_workers=workers,
        )
        result = orchestrator.run(trigger)
        if result.jobs:
            console.print_results(result.jobs)
        if result.release is not None:
            console.print_release_result(result.release)
        console.print_info(f"\nRun {result.run_id}: {result.status.upper()}")
        sys.exit(result.exit_code)


if __name__ == "__main__":
    cli()
