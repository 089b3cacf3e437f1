"""
Looper Job Scheduler

Bounded parallel execution. Each worker:
  1. Takes one Pending job and marks it Running.
  2. Hands the unit to the Controller (own worktree, own fix loop).
  3. Marks the job terminal from the UnitReport.

At most `concurrency` jobs run at once. A crashing worker fails only
its own job. A global stop event cancels the run: jobs that never
started are Skipped, running loops stop at their next probe.
"""

from __future__ import annotations

import concurrent.futures
import subprocess
import threading
import time
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table

from looper.config_loader import LooperConfig
from looper.controller import Controller, UnitOutcome, UnitReport
from looper.event_bus import EventBus
from looper.history import HistoryStore
from looper.state import Job, JobStatus, UnitOfWork, render_diagnostics
from looper.workspace import WorkspaceError

console = Console()


class RunReport(BaseModel):
    units: list[UnitReport] = Field(default_factory=list)
    cancelled: bool = False
    peak_concurrency: int = 0
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return all(u.succeeded for u in self.units)

    def counts(self) -> dict[str, int]:
        counts = {o.value: 0 for o in UnitOutcome}
        for u in self.units:
            counts[u.outcome.value] += 1
        return counts


class Scheduler:
    """
    Dispatches units across a bounded thread pool and aggregates results.
    """

    def __init__(
        self,
        config: LooperConfig,
        controller: Any | None = None,
        history: HistoryStore | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.controller = controller or Controller(config, history=history, bus=self.bus)
        self.stop = threading.Event()
        self.jobs: list[Job] = []
        self._lock = threading.Lock()
        self._running = 0
        self._peak = 0

    def run(
        self,
        units: list[UnitOfWork],
        concurrency: int | None = None,
        max_iterations: int | None = None,
        skip_preexisting: bool = False,
    ) -> RunReport:
        workers = concurrency or self.config.limits.concurrency
        if workers < 1:
            raise ValueError("concurrency must be at least 1")

        start = time.monotonic()
        self.jobs = [Job(unit=u) for u in units]
        self._running = self._peak = 0
        self.stop.clear()
        reports: dict[int, UnitReport] = {}
        cancelled = False

        logger.info(f"[SCHED] {len(units)} unit(s), {workers} worker(s)")
        if units:
            self._prune_workspaces()
        if units and self.config.workspace.setup_command:
            self._run_setup()

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="looper")
        future_to_index = {
            executor.submit(self._work, job, max_iterations, skip_preexisting): i
            for i, job in enumerate(self.jobs)
        }
        try:
            for future in concurrent.futures.as_completed(future_to_index):
                i = future_to_index[future]
                reports[i] = future.result()
                _log_completion(reports[i])
        except KeyboardInterrupt:
            logger.warning("[SCHED] Interrupted, cancelling remaining jobs...")
            self.stop.set()
            cancelled = True
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        for future, i in future_to_index.items():
            if i not in reports and future.done() and not future.cancelled():
                reports[i] = future.result()

        # jobs whose futures were cancelled never started
        for i, job in enumerate(self.jobs):
            if job.status == JobStatus.PENDING:
                self._transition(job, JobStatus.SKIPPED)
            if i not in reports:
                reports[i] = UnitReport(
                    unit=job.unit.identifier,
                    fix_type=job.unit.fix_type,
                    outcome=UnitOutcome.SKIPPED,
                    diagnostics=list(job.unit.baseline),
                    reason="cancelled before start",
                )

        report = RunReport(
            units=[reports[i] for i in range(len(self.jobs))],
            cancelled=cancelled or self.stop.is_set(),
            peak_concurrency=self._peak,
            duration_s=round(time.monotonic() - start, 2),
        )
        self.bus.emit("run.finished", "scheduler", {"counts": report.counts(), "success": report.success})
        return report

    def cancel(self) -> None:
        """Global stop: running loops abandon at their next probe, pending jobs are skipped."""
        self.stop.set()

    # ------------------------------------------------------------------ #

    def _work(
        self,
        job: Job,
        max_iterations: int | None,
        skip_preexisting: bool,
    ) -> UnitReport:
        unit = job.unit
        if self.stop.is_set():
            self._transition(job, JobStatus.SKIPPED)
            return UnitReport(
                unit=unit.identifier,
                fix_type=unit.fix_type,
                outcome=UnitOutcome.SKIPPED,
                diagnostics=list(unit.baseline),
                reason="cancelled before start",
            )

        self._transition(job, JobStatus.RUNNING)
        with self._lock:
            self._running += 1
            self._peak = max(self._peak, self._running)
        try:
            report = self.controller.run_unit(
                unit,
                cancel=self.stop,
                max_iterations=max_iterations,
                skip_preexisting=skip_preexisting,
                on_workspace=lambda path: setattr(job, "workspace_path", str(path)),
            )
        except Exception as e:
            logger.error(f"[SCHED] Worker crashed on {unit.identifier}: {e}")
            report = UnitReport(
                unit=unit.identifier,
                fix_type=unit.fix_type,
                outcome=UnitOutcome.ERROR,
                diagnostics=list(unit.baseline),
                reason=f"worker crashed: {type(e).__name__}: {e}",
            )
        finally:
            with self._lock:
                self._running -= 1

        self._transition(job, report.outcome.job_status)
        return report

    def _transition(self, job: Job, status: JobStatus) -> None:
        job.transition(status)
        self.bus.emit("job.status", "scheduler", {"status": status.value}, unit=job.unit.identifier)

    def _prune_workspaces(self) -> None:
        """Forget worktrees left behind by a crashed run."""
        manager = getattr(self.controller, "workspaces", None)
        if manager is None:
            return
        try:
            manager.prune()
        except WorkspaceError as e:
            logger.warning(f"[SCHED] Could not prune stale worktrees: {e}")

    def _run_setup(self) -> None:
        """Serialized install step; runs once before any worker starts."""
        cfg = self.config
        command = cfg.workspace.setup_command
        console.print(f"[dim]Setup: {command}[/]")
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=cfg.repo_path,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=cfg.limits.setup_timeout_seconds,
            )
            if result.returncode != 0:
                logger.warning(f"[SCHED] Setup exited {result.returncode}: {result.stderr.strip()[-500:]}")
        except subprocess.TimeoutExpired:
            logger.warning(f"[SCHED] Setup timed out after {cfg.limits.setup_timeout_seconds}s")

        manager = getattr(self.controller, "workspaces", None)
        if manager is not None and cfg.workspace.restore_after_setup:
            try:
                manager.restore_files(cfg.workspace.restore_after_setup)
            except WorkspaceError as e:
                logger.warning(f"[SCHED] Could not restore files after setup: {e}")


# --- Helpers ---

_COLORS = {
    UnitOutcome.SUCCEEDED: "green",
    UnitOutcome.SKIPPED: "dim",
    UnitOutcome.EXHAUSTED: "yellow",
    UnitOutcome.ABANDONED: "magenta",
    UnitOutcome.CANCELLED: "yellow",
}


def _log_completion(report: UnitReport) -> None:
    color = _COLORS.get(report.outcome, "red")
    console.print(f"  [{color}]{report.unit}: {report.outcome.value}[/]")


def print_run_summary(report: RunReport) -> None:
    """Consolidated report of the run."""
    table = Table(title="Looper Run Results", border_style="bright_green")
    table.add_column("Unit")
    table.add_column("Type")
    table.add_column("Outcome")
    table.add_column("Iter", justify="right")
    table.add_column("Left", justify="right")
    table.add_column("Branch / Reason")
    table.add_column("Cost", justify="right")

    for r in report.units:
        color = _COLORS.get(r.outcome, "red")
        detail = r.branch or r.reason or "—"
        cost = f"${r.usage.get('estimated_cost', 0):.4f}"
        table.add_row(
            r.unit[:60], r.fix_type, f"[{color}]{r.outcome.value}[/]",
            str(r.iterations), str(len(r.diagnostics)), detail[:60], cost,
        )
    console.print(table)

    for r in report.units:
        if r.outcome in (UnitOutcome.EXHAUSTED, UnitOutcome.ABANDONED, UnitOutcome.ENVIRONMENT_FAILED) and r.diagnostics:
            console.print(f"\n[bold]{r.unit}[/] [dim]({r.outcome.value})[/]")
            console.print(render_diagnostics(r.diagnostics, limit=10), markup=False, highlight=False)

    total_cost = sum(r.usage.get("estimated_cost", 0) for r in report.units)
    succeeded = sum(1 for r in report.units if r.succeeded)
    console.print(
        f"\n[bold]{succeeded}/{len(report.units)} succeeded | "
        f"Total cost: ${total_cost:.4f} | {report.duration_s:.1f}s[/]"
    )
