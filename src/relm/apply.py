# apply.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .cluster import ClusterClient
from .diff import changed_paths, compute_patch
from .errors import ApplyError, ClusterError, ReadinessTimeoutError
from .model import RenderedResource, ReleaseStatus

CREATED = "created"
PATCHED = "patched"
UNCHANGED = "unchanged"
FAILED = "failed"
NOT_ATTEMPTED = "not-attempted"


@dataclass(frozen=True)
class ResourceOutcome:
    key: str
    action: str
    changed: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ApplyResult:
    """
    Per-resource outcome of one ordered apply.

    `applied` lists resources that reached their desired state (created,
    patched or already matching) in apply order. On failure, `failed` names
    the one resource that did not, and `not_attempted` the untouched rest.
    """
    outcomes: List[ResourceOutcome] = field(default_factory=list)
    error: Optional[ApplyError] = None
    cancelled: bool = False

    @property
    def applied(self) -> List[str]:
        return [o.key for o in self.outcomes if o.action in (CREATED, PATCHED, UNCHANGED)]

    @property
    def failed(self) -> Optional[str]:
        for o in self.outcomes:
            if o.action == FAILED:
                return o.key
        return None

    @property
    def not_attempted(self) -> List[str]:
        return [o.key for o in self.outcomes if o.action == NOT_ATTEMPTED]

    @property
    def patch_count(self) -> int:
        return sum(1 for o in self.outcomes if o.action == PATCHED)

    @property
    def status(self) -> ReleaseStatus:
        if self.error is not None or self.cancelled:
            return ReleaseStatus.FAILED
        return ReleaseStatus.DEPLOYED


@dataclass(frozen=True)
class PlannedChange:
    key: str
    action: str  # created | patched | unchanged (what apply would do)
    patch: Optional[Dict[str, Any]] = None

    @property
    def changed(self) -> List[str]:
        return changed_paths(self.patch)


ProgressFn = Callable[[RenderedResource, ResourceOutcome], None]


class ApplyEngine:
    """
    Reconciles an ordered resource list against a cluster, one resource at a
    time. Resource i+1 starts only after resource i is applied and ready.

    Nothing is retried and nothing is rolled back here: a failure stops the
    run and the result says exactly how far it got.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        *,
        readiness_timeout: float = 300.0,
        poll_interval: float = 2.0,
        wait: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cluster = cluster
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self.wait = wait
        self._clock = clock
        self._sleep = sleep

    def for_cluster(self, cluster: ClusterClient) -> ApplyEngine:
        """Same timing settings, different cluster client."""
        return ApplyEngine(
            cluster,
            readiness_timeout=self.readiness_timeout,
            poll_interval=self.poll_interval,
            wait=self.wait,
            clock=self._clock,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # plan
    # ------------------------------------------------------------------

    def plan(
        self,
        resources: Sequence[RenderedResource],
        last_applied: Optional[Mapping[str, Dict[str, Any]]] = None,
    ) -> List[PlannedChange]:
        """What apply would do for each resource. Reads only."""
        last_applied = last_applied or {}
        out: List[PlannedChange] = []
        for res in resources:
            try:
                current = self.cluster.get(res.kind, res.name, res.namespace)
            except ClusterError as e:
                raise ApplyError(resource=res.key, message=str(e)) from e
            if current is None:
                out.append(PlannedChange(key=res.key, action=CREATED, patch=res.body))
                continue
            patch = compute_patch(current, res.body, last_applied.get(res.key))
            out.append(PlannedChange(key=res.key, action=PATCHED if patch else UNCHANGED, patch=patch))
        return out

    # ------------------------------------------------------------------
    # apply
    # ------------------------------------------------------------------

    def _wait_ready(self, res: RenderedResource) -> None:
        if not self.wait:
            return
        deadline = self._clock() + self.readiness_timeout
        while True:
            try:
                if self.cluster.is_ready(res.kind, res.name, res.namespace):
                    return
            except ClusterError as e:
                raise ApplyError(resource=res.key, message=str(e)) from e
            if self._clock() >= deadline:
                raise ReadinessTimeoutError(
                    resource=res.key,
                    message="resource did not report ready",
                    timeout=self.readiness_timeout,
                )
            self._sleep(self.poll_interval)

    def apply_one(
        self,
        res: RenderedResource,
        last_applied: Optional[Dict[str, Any]] = None,
    ) -> ResourceOutcome:
        try:
            current = self.cluster.get(res.kind, res.name, res.namespace)
            if current is None:
                self.cluster.create(res.body, res.namespace)
                outcome = ResourceOutcome(key=res.key, action=CREATED)
            else:
                patch = compute_patch(current, res.body, last_applied)
                if patch:
                    self.cluster.patch(res.kind, res.name, res.namespace, patch)
                    outcome = ResourceOutcome(key=res.key, action=PATCHED, changed=changed_paths(patch))
                else:
                    outcome = ResourceOutcome(key=res.key, action=UNCHANGED)
        except ClusterError as e:
            raise ApplyError(resource=res.key, message=str(e)) from e

        self._wait_ready(res)
        return outcome

    def apply(
        self,
        resources: Sequence[RenderedResource],
        *,
        last_applied: Optional[Mapping[str, Dict[str, Any]]] = None,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> ApplyResult:
        """
        Apply resources strictly in the given order.

        Args:
            resources: already ordered by the dependency resolver
            last_applied: previous revision's documents by resource key, used
                to remove fields the new revision no longer sets
            cancel: checked between resources, never during one
            on_progress: called after each resource with its outcome
        """
        last_applied = last_applied or {}
        result = ApplyResult()
        resources = list(resources)

        for i, res in enumerate(resources):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                result.error = ApplyError(resource=res.key, message="cancelled before apply")
                outcome = ResourceOutcome(key=res.key, action=FAILED, error=str(result.error))
                result.outcomes.append(outcome)
                if on_progress:
                    on_progress(res, outcome)
                result.outcomes.extend(
                    ResourceOutcome(key=r.key, action=NOT_ATTEMPTED) for r in resources[i + 1:]
                )
                break

            try:
                outcome = self.apply_one(res, last_applied.get(res.key))
            except ApplyError as e:
                outcome = ResourceOutcome(key=res.key, action=FAILED, error=str(e))
                result.outcomes.append(outcome)
                result.error = e
                if on_progress:
                    on_progress(res, outcome)
                result.outcomes.extend(
                    ResourceOutcome(key=r.key, action=NOT_ATTEMPTED) for r in resources[i + 1:]
                )
                break

            result.outcomes.append(outcome)
            if on_progress:
                on_progress(res, outcome)

        return result
