"""
Looper Controller — The Per-Unit Pipeline

It is NOT smart. It is deterministic.

Responsibilities, per unit of work:
  - Acquire an isolated worktree
  - Drop the unit's suppression entry
  - Filter out pre-existing diagnostics
  - Run the fix loop
  - Commit (and optionally push) a successful fix
  - Always release the workspace

It never writes code. It only coordinates. Every failure is
classified into a UnitReport; nothing escapes to the scheduler.
"""

from __future__ import annotations

import json
import re
import threading
import time
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, Field

from looper.attribution import FailureAttribution
from looper.budget import TranscriptBudget, build_estimator
from looper.config_loader import LooperConfig
from looper.diagnostics import Validator, get_parser
from looper.event_bus import EventBus
from looper.fix_loop import FixLoop, LoopResult, LoopState
from looper.history import HistoryStore
from looper.router import MissingCredentialsError, Oracle, Router
from looper.state import Diagnostic, JobStatus, UnitOfWork
from looper.workspace import Workspace, WorkspaceError, WorkspaceManager
from looper.workspace.tools import Formatter, ToolExecutor


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class UnitOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    ABANDONED = "abandoned"
    ENVIRONMENT_FAILED = "environment_failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def job_status(self) -> JobStatus:
        if self == UnitOutcome.SUCCEEDED:
            return JobStatus.SUCCEEDED
        if self == UnitOutcome.SKIPPED:
            return JobStatus.SKIPPED
        return JobStatus.FAILED


class UnitReport(BaseModel):
    unit: str
    fix_type: str = "lint"
    outcome: UnitOutcome
    iterations: int = 0
    diagnostics: list[Diagnostic] = Field(default_factory=list)
    preexisting: int = 0
    writes: list[str] = Field(default_factory=list)
    reason: str = ""
    commit: str | None = None
    branch: str | None = None
    usage: dict[str, Any] = Field(default_factory=dict)
    duration_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == UnitOutcome.SUCCEEDED


_LOOP_OUTCOMES = {
    LoopState.SUCCEEDED: UnitOutcome.SUCCEEDED,
    LoopState.EXHAUSTED: UnitOutcome.EXHAUSTED,
    LoopState.ABANDONED: UnitOutcome.ABANDONED,
}


# ---------------------------------------------------------------------------
# Commit helpers
# ---------------------------------------------------------------------------

_SCOPE_ROOTS = ("apps", "libs", "packages")


def commit_scope(identifier: str) -> str:
    """apps/checkout/src/x.ts → checkout; anything else → core."""
    parts = PurePosixPath(identifier).parts
    if len(parts) >= 2 and parts[0] in _SCOPE_ROOTS:
        return parts[1]
    return "core"


def component_name(identifier: str) -> str:
    name = PurePosixPath(identifier).name
    # foo.test.ts → foo
    return re.sub(r"(\.(test|spec|vitest))?\.[^.]+$", "", name) or name


def commit_message(unit: UnitOfWork) -> str:
    return (
        f"fix({commit_scope(unit.identifier)}): resolve {unit.fix_type} errors "
        f"in {component_name(unit.identifier)}"
    )


def result_branch(unit: UnitOfWork) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", component_name(unit.identifier)).strip("-") or "unit"
    return f"looper/{commit_scope(unit.identifier)}/{unit.fix_type}-{slug}"


def remove_suppression(workspace_path: Path, suppressions_file: str, identifier: str) -> bool:
    """Delete the unit's entry from a JSON suppressions file. True if removed."""
    path = workspace_path / suppressions_file
    if not path.exists():
        return False
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        logger.error(f"[WORKSPACE] Failed to process suppressions file {path}: {e}")
        return False
    if not isinstance(data, dict) or identifier not in data:
        return False
    del data[identifier]
    path.write_text(json.dumps(data, indent=2) + "\n")
    logger.info(f"[WORKSPACE] Removed suppression entry for {identifier}")
    return True


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class Controller:
    """
    The Looper brainstem: one unit in, one UnitReport out.

    Collaborators are injectable so the scheduler and the tests can swap
    the oracle and the validator without touching the pipeline.
    """

    def __init__(
        self,
        config: LooperConfig,
        history: HistoryStore | None = None,
        bus: EventBus | None = None,
        workspaces: WorkspaceManager | None = None,
        oracle_factory: Callable[[], Oracle] | None = None,
        validator_factory: Callable[[UnitOfWork], Any] | None = None,
    ):
        self.config = config
        self.history = history
        self.bus = bus or EventBus()
        self.workspaces = workspaces or WorkspaceManager(
            config.repo_path,
            worktree_dir=config.workspace.worktree_dir,
            shared_cache_dirs=config.workspace.shared_cache_dirs,
            cache_search_depth=config.workspace.cache_search_depth,
        )
        self.oracle_factory = oracle_factory or (lambda: Router(config.oracle))
        self.validator_factory = validator_factory or self._default_validator
        self.formatter = Formatter(config.tools.formatter_command, timeout=config.limits.command_timeout_seconds)

    def run_unit(
        self,
        unit: UnitOfWork,
        cancel: threading.Event | None = None,
        max_iterations: int | None = None,
        skip_preexisting: bool = False,
        on_workspace: Callable[[Path], None] | None = None,
    ) -> UnitReport:
        """Run the whole pipeline for one unit. Never raises."""
        cancel = cancel or threading.Event()
        start = time.monotonic()
        ws: Workspace | None = None
        oracle: Oracle | None = None
        try:
            ws = self.workspaces.acquire(unit.branch, unit.identifier)
            self._log_event("workspace.acquired", unit, {"path": str(ws.path)})
            if on_workspace is not None:
                on_workspace(ws.path)

            if self.config.workspace.suppressions_file:
                remove_suppression(ws.path, self.config.workspace.suppressions_file, unit.identifier)

            validator = self.validator_factory(unit)
            baseline = list(unit.baseline)
            if skip_preexisting and not baseline:
                baseline = self._probe_baseline(unit, ws, validator)

            preexisting: list[Diagnostic] = []
            if skip_preexisting and baseline:
                attribution = FailureAttribution(self.config.repo.main_branch)
                baseline, preexisting = attribution.partition(unit, baseline, ws)
                if not baseline:
                    return self._report(
                        unit, UnitOutcome.SKIPPED, start,
                        diagnostics=preexisting,
                        preexisting=len(preexisting),
                        reason="all diagnostics pre-existing",
                    )

            oracle = self.oracle_factory()
            loop = self._build_loop(unit, ws, oracle, validator, cancel, max_iterations, baseline, preexisting)
            result = loop.run()
            return self._conclude(unit, ws, result, cancel, start, oracle, len(preexisting))

        except (WorkspaceError, MissingCredentialsError) as e:
            logger.error(f"[CONTROLLER] {unit.identifier}: environment failure: {e}")
            return self._report(
                unit, UnitOutcome.ENVIRONMENT_FAILED, start, reason=str(e), oracle=oracle,
            )
        except Exception as e:
            logger.exception(f"[CONTROLLER] {unit.identifier}: unexpected error")
            return self._report(
                unit, UnitOutcome.ERROR, start, reason=f"{type(e).__name__}: {e}", oracle=oracle,
            )
        finally:
            if ws is not None:
                try:
                    self.workspaces.release(ws)
                except WorkspaceError as e:
                    logger.warning(f"[WORKSPACE] Release failed for {unit.identifier}: {e}")

    # ------------------------------------------------------------------ #

    def _build_loop(
        self,
        unit: UnitOfWork,
        ws: Workspace,
        oracle: Oracle,
        validator: Any,
        cancel: threading.Event,
        max_iterations: int | None,
        baseline: list[Diagnostic],
        preexisting: list[Diagnostic],
    ) -> FixLoop:
        cfg = self.config
        executor = ToolExecutor(
            ws.path,
            formatter=self.formatter,
            protected_files=cfg.tools.protected_files,
            blocked_patterns=cfg.tools.blocked_patterns,
            command_timeout=cfg.limits.command_timeout_seconds,
            max_output_chars=cfg.tools.max_output_chars,
            max_list_entries=cfg.tools.max_list_entries,
            max_search_results=cfg.tools.max_search_results,
        )
        budget = TranscriptBudget(
            build_estimator(cfg.budget.estimator, cfg.oracle.model),
            max_tokens=cfg.budget.max_transcript_tokens,
            keep_recent=cfg.budget.keep_recent_turns,
        )
        return FixLoop(
            unit,
            ws.path,
            oracle=oracle,
            validator=validator,
            executor=executor,
            budget=budget,
            history=self.history,
            max_iterations=max_iterations or cfg.limits.max_iterations,
            max_tool_calls_per_iteration=cfg.limits.max_tool_calls_per_iteration,
            cancel=cancel,
            bus=self.bus,
            initial_diagnostics=baseline,
            ignored=set(preexisting),
        )

    def _probe_baseline(self, unit: UnitOfWork, ws: Workspace, validator: Any) -> list[Diagnostic]:
        """Diagnostics of the untouched workspace, for units that arrive without a baseline."""
        result = validator.validate(ws.path, unit)
        if result.timed_out:
            logger.warning(f"[CONTROLLER] {unit.identifier}: baseline probe timed out, attribution skipped")
            return []
        logger.debug(f"[CONTROLLER] {unit.identifier}: baseline probe found {len(result.diagnostics)} diagnostics")
        return list(result.diagnostics)

    def _conclude(
        self,
        unit: UnitOfWork,
        ws: Workspace,
        result: LoopResult,
        cancel: threading.Event,
        start: float,
        oracle: Oracle,
        preexisting: int,
    ) -> UnitReport:
        outcome = _LOOP_OUTCOMES[result.state]
        if result.state == LoopState.ABANDONED and result.reason == "cancelled":
            outcome = UnitOutcome.CANCELLED

        commit = branch = None
        # an aborted run's partial edits are never committed
        if outcome == UnitOutcome.SUCCEEDED and not cancel.is_set() and self.config.workspace.commit_on_success:
            commit = ws.commit(commit_message(unit))
            if commit:
                branch = result_branch(unit)
                ws.save_branch(branch)
                if self.config.workspace.push_on_success:
                    ws.push(branch, self.config.repo.remote)

        return self._report(
            unit, outcome, start,
            iterations=result.iterations,
            diagnostics=result.diagnostics,
            writes=result.writes,
            reason=result.reason,
            commit=commit,
            branch=branch,
            preexisting=preexisting,
            oracle=oracle,
        )

    def _report(
        self,
        unit: UnitOfWork,
        outcome: UnitOutcome,
        start: float,
        oracle: Oracle | None = None,
        diagnostics: list[Diagnostic] | None = None,
        **fields: Any,
    ) -> UnitReport:
        usage = getattr(oracle, "usage", None)
        report = UnitReport(
            unit=unit.identifier,
            fix_type=unit.fix_type,
            outcome=outcome,
            diagnostics=list(unit.baseline) if diagnostics is None else diagnostics,
            usage=usage.summary() if usage is not None else {},
            duration_s=round(time.monotonic() - start, 2),
            **fields,
        )
        self._log_event("unit.finished", unit, {
            "outcome": outcome.value,
            "iterations": report.iterations,
            "diagnostics": len(report.diagnostics),
            "reason": report.reason,
        })
        return report

    def _default_validator(self, unit: UnitOfWork) -> Validator:
        vcfg = self.config.validation_for(unit.fix_type)
        return Validator(
            get_parser(vcfg.parser),
            timeout=self.config.limits.validation_timeout_seconds,
            scope_to_unit=vcfg.scope_to_unit,
        )

    def _log_event(self, event_type: str, unit: UnitOfWork, data: dict | None = None) -> None:
        self.bus.emit(event_type, "controller", data or {}, unit=unit.identifier)
