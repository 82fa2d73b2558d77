# release.py
from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .apply import ApplyEngine, PlannedChange
from .chart import environment_values_file
from .cluster import ClusterClient
from .dag import order
from .locks import ReleaseLocks
from .model import ROLLBACK_CAUSE_PREFIX, Chart, RenderedResource, Release, ReleaseStatus
from .render import render
from .store import ReleaseStore
from .ui.console import Console, get_console
from .values import ValueTree, build_overrides, resolve


def resolve_chart_values(
    chart: Chart,
    *,
    environment: Optional[str] = None,
    settings_values: Optional[Mapping[str, Any]] = None,
    files: Sequence[str] = (),
    set_pairs: Sequence[str] = (),
    extra: Iterable[Mapping[str, Any]] = (),
) -> ValueTree:
    """
    Chart defaults overlaid with, lowest first: values-<env>.yaml, the
    environment settings, -f files, extra layers, --set pairs.
    """
    overrides = build_overrides(
        environment_file=environment_values_file(chart, environment),
        environment=settings_values,
        files=files,
        set_pairs=set_pairs,
        extra=extra,
    )
    return resolve(chart.defaults, overrides)


def render_ordered(
    chart: Chart,
    values: ValueTree,
    *,
    release_name: str,
    namespace: str = "default",
) -> List[RenderedResource]:
    """Rendered resources in apply order."""
    return order(render(chart, values, release_name=release_name, namespace=namespace))


def history_view(releases: Iterable[Release]) -> List[Release]:
    """
    Most-recent-first history with presentation status.

    A deployed revision that was current when a later rollback revision
    replaced it is shown as `rolled-back`. Stored records are not touched.
    """
    releases = list(releases)
    superseded: set = set()
    current: Optional[Release] = None
    for r in sorted(releases, key=lambda r: r.revision):
        if r.status != ReleaseStatus.DEPLOYED:
            continue
        if r.rolled_back_to is not None and current is not None:
            superseded.add(current.revision)
        current = r

    out = [
        replace(r, status=ReleaseStatus.ROLLED_BACK) if r.revision in superseded else r
        for r in releases
    ]
    return sorted(out, key=lambda r: r.revision, reverse=True)


class ReleaseManager:
    """
    Install, upgrade and roll back named releases.

    Rendering and ordering happen before anything is written, so render-time
    errors leave no trace. Everything from revision allocation to the final
    status is done under the release's lock: two deploys of one release
    queue behind each other, different releases run side by side.
    """

    def __init__(
        self,
        store: ReleaseStore,
        cluster: ClusterClient,
        *,
        locks: Optional[ReleaseLocks] = None,
        engine: Optional[ApplyEngine] = None,
        console: Optional[Console] = None,
    ):
        self.store = store
        self.cluster = cluster
        self.locks = locks or ReleaseLocks()
        self.engine = engine or ApplyEngine(cluster)
        self._console = console

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def with_cluster(self, cluster: ClusterClient) -> ReleaseManager:
        """A manager sharing this one's store and locks but writing through `cluster`."""
        return ReleaseManager(
            self.store,
            cluster,
            locks=self.locks,
            engine=self.engine.for_cluster(cluster),
            console=self._console,
        )

    # ------------------------------------------------------------------
    # values / render
    # ------------------------------------------------------------------

    def resolve_values(self, chart: Chart, **kwargs: Any) -> ValueTree:
        return resolve_chart_values(chart, **kwargs)

    def render(
        self,
        chart: Chart,
        values: ValueTree,
        *,
        release_name: str,
        namespace: str = "default",
    ) -> List[RenderedResource]:
        return render_ordered(chart, values, release_name=release_name, namespace=namespace)

    def plan(
        self,
        name: str,
        chart: Chart,
        values: ValueTree,
        *,
        namespace: str = "default",
    ) -> List[PlannedChange]:
        resources = self.render(chart, values, release_name=name, namespace=namespace)
        previous = self.store.current(name)
        return self.engine.plan(resources, last_applied=_documents(previous))

    # ------------------------------------------------------------------
    # revisions
    # ------------------------------------------------------------------

    def _execute(
        self,
        *,
        name: str,
        namespace: str,
        chart_name: str,
        chart_version: str,
        app_version: str,
        values: Dict[str, Any],
        resources: List[RenderedResource],
        cause: str,
        cancel: Optional[threading.Event],
    ) -> Release:
        # caller holds the release lock
        previous = self.store.current(name)
        revision = self.store.next_revision(name)
        if cause == "upgrade" and revision == 1:
            cause = "install"

        ref = self.store.append(
            Release(
                name=name,
                revision=revision,
                namespace=namespace,
                chart_name=chart_name,
                chart_version=chart_version,
                app_version=app_version,
                values=values,
                resources=tuple(resources),
                status=ReleaseStatus.PENDING,
                cause=cause,
            )
        )
        self.console.print_release_started(
            release=name,
            revision=revision,
            chart=f"{chart_name}-{chart_version}",
            namespace=namespace,
            resource_count=len(resources),
            cause=cause,
        )

        try:
            result = self.engine.apply(
                resources,
                last_applied=_documents(previous),
                cancel=cancel,
                on_progress=lambda _res, outcome: self.console.print_resource(outcome),
            )
        except BaseException as e:
            # never leave a revision pending
            self.store.finalize(ref, ReleaseStatus.FAILED, error=f"{type(e).__name__}: {e}")
            raise

        return self.store.finalize(
            ref,
            result.status,
            applied=result.applied,
            failed_resource=result.failed,
            error=str(result.error) if result.error else None,
        )

    def upgrade(
        self,
        name: str,
        chart: Chart,
        values: ValueTree,
        *,
        namespace: str = "default",
        cancel: Optional[threading.Event] = None,
    ) -> Release:
        """
        Render, order and apply a chart as the next revision of `name`.

        Render/validation/cycle errors raise before any revision exists.
        Apply failures do not raise: the returned revision is `failed` and
        records which resources were applied.
        """
        resources = self.render(chart, values, release_name=name, namespace=namespace)
        with self.locks.hold(name):
            return self._execute(
                name=name,
                namespace=namespace,
                chart_name=chart.name,
                chart_version=chart.version,
                app_version=chart.app_version,
                values=values.to_dict(),
                resources=resources,
                cause="upgrade",
                cancel=cancel,
            )

    def rollback(
        self,
        name: str,
        target_revision: int,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Release:
        """
        Re-apply the resource set of `target_revision` as a new revision.

        The target and every other stored revision stay as they are.
        """
        with self.locks.hold(name):
            target = self.store.get(name, target_revision)
            if target.status == ReleaseStatus.PENDING:
                raise ValueError(f"release '{name}' revision {target_revision} is still pending")
            return self._execute(
                name=name,
                namespace=target.namespace,
                chart_name=target.chart_name,
                chart_version=target.chart_version,
                app_version=target.app_version,
                values=target.values,
                resources=order(target.resources),
                cause=f"{ROLLBACK_CAUSE_PREFIX}{target.revision}",
                cancel=cancel,
            )

    def get(self, name: str, revision: Optional[int] = None) -> Release:
        return self.store.get(name, revision)

    def history(self, name: str) -> List[Release]:
        return self.store.history(name)


def _documents(release: Optional[Release]) -> Dict[str, Dict[str, Any]]:
    if release is None:
        return {}
    return {r.key: r.body for r in release.resources}
