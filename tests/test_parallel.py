import threading
import time

import pytest

from fakes import CountdownOracle, CountingValidator, FakeWorkspaceManager
from looper.config_loader import LooperConfig
from looper.controller import Controller, UnitOutcome, UnitReport
from looper.event_bus import EventBus
from looper.parallel import Scheduler
from looper.state import JobStatus, UnitOfWork


def _units(*names):
    return [UnitOfWork(identifier=n, validation_command="true") for n in names]


class SlowController:
    """Tracks how many units are in flight at once."""

    def __init__(self, delay=0.05, crash_on=()):
        self.delay = delay
        self.crash_on = set(crash_on)
        self.active = 0
        self.peak = 0
        self.seen = []
        self._lock = threading.Lock()

    def run_unit(self, unit, cancel=None, max_iterations=None, skip_preexisting=False, on_workspace=None):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.seen.append(unit.identifier)
        try:
            time.sleep(self.delay)
            if unit.identifier in self.crash_on:
                raise RuntimeError("worker blew up")
            return UnitReport(unit=unit.identifier, outcome=UnitOutcome.SUCCEEDED, iterations=1)
        finally:
            with self._lock:
                self.active -= 1


def test_concurrency_is_bounded():
    controller = SlowController()
    scheduler = Scheduler(LooperConfig(), controller=controller)

    report = scheduler.run(_units(*[f"src/f{i}.ts" for i in range(8)]), concurrency=3)

    assert controller.peak <= 3
    assert 1 <= report.peak_concurrency <= 3
    assert report.success
    assert all(job.status == JobStatus.SUCCEEDED for job in scheduler.jobs)
    assert [r.unit for r in report.units] == [f"src/f{i}.ts" for i in range(8)]


def test_crashing_worker_fails_only_its_own_job():
    controller = SlowController(crash_on={"src/bad.ts"})
    scheduler = Scheduler(LooperConfig(), controller=controller)

    report = scheduler.run(_units("src/ok1.ts", "src/bad.ts", "src/ok2.ts"), concurrency=2)

    by_unit = {r.unit: r for r in report.units}
    assert by_unit["src/bad.ts"].outcome == UnitOutcome.ERROR
    assert "worker blew up" in by_unit["src/bad.ts"].reason
    assert by_unit["src/ok1.ts"].succeeded and by_unit["src/ok2.ts"].succeeded
    statuses = {job.unit.identifier: job.status for job in scheduler.jobs}
    assert statuses["src/bad.ts"] == JobStatus.FAILED
    assert not report.success
    assert report.counts()["error"] == 1


def test_cancel_skips_jobs_that_never_started():
    class CancellingController(SlowController):
        def run_unit(self, unit, cancel=None, **kwargs):
            scheduler.cancel()
            return super().run_unit(unit, cancel=cancel, **kwargs)

    controller = CancellingController(delay=0)
    scheduler = Scheduler(LooperConfig(), controller=controller)
    report = scheduler.run(_units("a.ts", "b.ts", "c.ts"), concurrency=1)

    assert controller.seen == ["a.ts"]
    assert report.cancelled
    assert [job.status for job in scheduler.jobs] == [
        JobStatus.SUCCEEDED, JobStatus.SKIPPED, JobStatus.SKIPPED,
    ]
    assert [r.outcome for r in report.units[1:]] == [UnitOutcome.SKIPPED, UnitOutcome.SKIPPED]


def test_rejects_zero_concurrency():
    scheduler = Scheduler(LooperConfig(), controller=SlowController())
    with pytest.raises(ValueError, match="at least 1"):
        scheduler.run(_units("a.ts"), concurrency=0)


def test_job_status_events_are_emitted():
    bus = EventBus()
    seen = []
    bus.subscribe(lambda e: seen.append((e.event_type, e.unit, e.payload.get("status"))))
    scheduler = Scheduler(LooperConfig(), controller=SlowController(delay=0), bus=bus)

    scheduler.run(_units("a.ts"), concurrency=1)

    assert ("job.status", "a.ts", "running") in seen
    assert ("job.status", "a.ts", "succeeded") in seen
    assert seen[-1][0] == "run.finished"


def _outcomes(tmp_path, concurrency):
    source = tmp_path / "repo"
    if not source.exists():
        source.mkdir()
        (source / "a.ts").write_text("errors=2")
        (source / "b.ts").write_text("errors=3")
    scratch = tmp_path / f"scratch-{concurrency}"
    scratch.mkdir()

    config = LooperConfig()
    config.workspace.commit_on_success = False
    controller = Controller(
        config,
        workspaces=FakeWorkspaceManager(source, scratch),
        oracle_factory=CountdownOracle,
        validator_factory=lambda unit: CountingValidator(),
    )
    report = Scheduler(config, controller=controller).run(_units("a.ts", "b.ts"), concurrency=concurrency)
    return [(r.unit, r.outcome, r.iterations, len(r.diagnostics), r.writes) for r in report.units]


def test_outcomes_do_not_depend_on_concurrency(tmp_path):
    sequential = _outcomes(tmp_path, 1)
    parallel = _outcomes(tmp_path, 2)

    assert sequential == parallel
    assert sequential == [
        ("a.ts", UnitOutcome.SUCCEEDED, 2, 0, ["a.ts", "a.ts"]),
        ("b.ts", UnitOutcome.SUCCEEDED, 3, 0, ["b.ts", "b.ts", "b.ts"]),
    ]


def test_jobs_record_their_workspace_and_stale_worktrees_are_pruned(tmp_path):
    source = tmp_path / "repo"
    source.mkdir()
    (source / "a.ts").write_text("errors=1")
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    manager = FakeWorkspaceManager(source, scratch)
    config = LooperConfig()
    config.workspace.commit_on_success = False
    controller = Controller(
        config,
        workspaces=manager,
        oracle_factory=CountdownOracle,
        validator_factory=lambda unit: CountingValidator(),
    )
    scheduler = Scheduler(config, controller=controller)

    report = scheduler.run(_units("a.ts"), concurrency=1)

    assert report.success
    assert manager.prunes == 1
    [job] = scheduler.jobs
    assert job.workspace_path == str(manager.acquired[0].path)
