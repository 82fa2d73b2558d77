"""Console output formatting utilities for relm."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..apply import PlannedChange, ResourceOutcome
    from ..model import Job, Release, Trigger


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress lines (results and errors still print)
        """
        self.debug = debug
        self.quiet = quiet

    def _progress(self, line: str) -> None:
        if not self.quiet:
            print(line)

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def print_release_started(
        self,
        release: str,
        revision: int,
        chart: str,
        namespace: str,
        resource_count: int,
        cause: str,
    ) -> None:
        """
        Print release start information.

        Args:
            release: Release name
            revision: Revision number being created
            chart: Chart name and version
            namespace: Target namespace
            resource_count: Number of rendered resources
            cause: Why the revision exists ("install", "upgrade" or
                "rolled-back-to:N")
        """
        self._progress(f"\nRELEASE {release} -> revision {revision} ({cause})")
        self._progress(f"Chart: {chart}")
        self._progress(f"Namespace: {namespace}")
        self._progress(f"Resources: {resource_count}")

    def print_resource(self, outcome: ResourceOutcome) -> None:
        """
        Print the outcome of one resource apply.

        Args:
            outcome: Action taken, changed field paths and any error
        """
        line = f"  {outcome.action.upper():<10} {outcome.key}"
        if outcome.changed:
            line += f"  ({', '.join(outcome.changed)})"
        self._progress(line)
        if outcome.error:
            print(f"    Error: {outcome.error}", file=sys.stderr)

    def print_release_result(self, release: Release) -> None:
        """
        Print the terminal state of a revision.

        A partial apply names what was applied, the resource that failed and
        what was never attempted.

        Args:
            release: The finalized revision
        """
        print(f"\nREVISION {release.revision}: {release.status.value.upper()}")
        if release.applied:
            print(f"Applied: {', '.join(release.applied)}")
        if release.failed_resource:
            print(f"Failed: {release.failed_resource}")
        if release.error:
            print(f"Error: {release.error}")
        pending = release.not_applied
        if release.error and pending:
            print(f"Not applied: {', '.join(pending)}")

    def print_plan(self, changes: Iterable[PlannedChange]) -> None:
        """Print what an apply would do."""
        for c in changes:
            line = f"  {c.action.upper():<10} {c.key}"
            if c.action == "patched" and c.changed:
                line += f"  ({', '.join(c.changed)})"
            print(line)

    def print_history(self, releases: Iterable[Release]) -> None:
        """Print a release's revisions, most recent first."""
        print(f"{'REVISION':<9} {'STATUS':<12} {'CHART':<24} {'APP VERSION':<12} {'CAUSE':<18} UPDATED")
        for r in releases:
            updated = r.updated_at.strftime("%Y-%m-%d %H:%M:%S") if r.updated_at else "-"
            chart = f"{r.chart_name}-{r.chart_version}"
            print(f"{r.revision:<9} {r.status.value:<12} {chart:<24} {r.app_version:<12} {r.cause:<18} {updated}")

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def print_pipeline_started(self, pipeline: str, trigger: Trigger, job_count: int) -> None:
        """
        Print run start information.

        Args:
            pipeline: Pipeline name
            trigger: What started the run
            job_count: Number of planned jobs, deploy included
        """
        self._progress("\nRUN STARTED")
        self._progress(f"Pipeline: {pipeline}")
        trig = trigger.kind.value
        if trigger.sha:
            trig += f" @ {trigger.sha[:12]}"
        self._progress(f"Trigger: {trig}")
        self._progress(f"Jobs: {job_count}")

    def print_job(self, job: Job) -> None:
        """
        Print a job status transition.

        Errors of terminal jobs go to stderr.

        Args:
            job: Job in its new state
        """
        line = f"[{job.kind.value}:{job.name}] {job.status.value}"
        if job.artifact is not None and job.status.terminal:
            line += f" {job.artifact.reference}"
            if job.artifact.cached:
                line += " (cached)"
        self._progress(line)
        if job.error and job.status.terminal:
            print(f"[{job.kind.value}:{job.name}] Error: {job.error}", file=sys.stderr)

    def print_results(self, jobs: Iterable[Job]) -> None:
        """
        Print final results summary.

        Args:
            jobs: Jobs of the run, in plan order
        """
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job in jobs:
            print(f"  {job.kind.value}:{job.name}: {job.status.value.upper()}")

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
