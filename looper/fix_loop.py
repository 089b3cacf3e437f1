"""
Looper Fix Loop — Bounded Repair State Machine

    Start → Probing → AwaitingOracle → ApplyingTool → Validating
          → {Probing | Succeeded | Exhausted | Abandoned}

One loop owns one transcript and one workspace path. Iterations are
strictly sequential and at most one oracle call is ever outstanding.
Every run, whatever its terminal state, yields exactly one Attempt.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from loguru import logger

from looper.agents import AgentContext, BaseAgent
from looper.agents.fixer import fixer_for
from looper.budget import TranscriptBudget
from looper.diagnostics import ValidationResult
from looper.event_bus import EventBus
from looper.history import HistoryStore
from looper.router import (
    FinalAnswer,
    MissingCredentialsError,
    Oracle,
    OracleError,
    ToolRequest,
    Unfixable,
)
from looper.state import (
    Attempt,
    AttemptOutcome,
    Diagnostic,
    ToolCallRecord,
    Transcript,
    UnitOfWork,
    render_diagnostics,
)
from looper.workspace import WorkspaceError
from looper.workspace.tools import (
    CannotFix,
    ToolExecutor,
    ToolResult,
    ToolViolationError,
    WriteFile,
    parse_tool_call,
    tool_schema,
)

NUDGE = (
    "No tool was called. Use read_file to inspect code and write_file with the "
    "COMPLETE fixed file content, or call cannot_fix if a safe fix is impossible."
)


class LoopState(str, Enum):
    START = "start"
    PROBING = "probing"
    AWAITING_ORACLE = "awaiting_oracle"
    APPLYING_TOOL = "applying_tool"
    VALIDATING = "validating"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (LoopState.SUCCEEDED, LoopState.EXHAUSTED, LoopState.ABANDONED)


_OUTCOMES = {
    LoopState.SUCCEEDED: AttemptOutcome.SUCCESS,
    LoopState.EXHAUSTED: AttemptOutcome.FAILURE,
    LoopState.ABANDONED: AttemptOutcome.ABANDONED,
}


class ValidationRunner(Protocol):
    def validate(self, root: Path, unit: UnitOfWork) -> ValidationResult: ...


@dataclass
class LoopResult:
    state: LoopState
    iterations: int
    diagnostics: list[Diagnostic]
    attempt: Attempt
    writes: list[str] = field(default_factory=list)
    reason: str = ""
    compactions: int = 0
    transcript: Transcript | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == LoopState.SUCCEEDED


class FixLoop:
    """
    Drives one unit from its failing diagnostics to a terminal state.
    """

    def __init__(
        self,
        unit: UnitOfWork,
        workspace_path: Path,
        oracle: Oracle,
        validator: ValidationRunner,
        executor: ToolExecutor,
        budget: TranscriptBudget,
        history: HistoryStore | None = None,
        agent: BaseAgent | None = None,
        max_iterations: int = 50,
        max_tool_calls_per_iteration: int = 8,
        cancel: threading.Event | None = None,
        bus: EventBus | None = None,
        initial_diagnostics: list[Diagnostic] | None = None,
        ignored: set[Diagnostic] | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.unit = unit
        self.workspace_path = Path(workspace_path)
        self.oracle = oracle
        self.validator = validator
        self.executor = executor
        self.budget = budget
        self.history = history
        self.agent = agent or fixer_for(unit.fix_type)
        self.max_iterations = max_iterations
        self.max_tool_calls = max(1, max_tool_calls_per_iteration)
        self.cancel = cancel or threading.Event()
        self.bus = bus
        self.ignored = ignored or set()

        self.state = LoopState.START
        self.iterations = 0
        self.transcript = Transcript()
        self.writes: list[str] = []
        self._initial = list(initial_diagnostics if initial_diagnostics is not None else unit.baseline)
        self._before: list[Diagnostic] | None = None
        self._last: list[Diagnostic] = list(self._initial)
        self._notes: list[str] = []
        self._reason = ""
        self._tool_calls = 0
        self._pending: ToolRequest | None = None
        self._validating_write = False

    # ------------------------------------------------------------------ #
    # Driver
    # ------------------------------------------------------------------ #

    def run(self) -> LoopResult:
        try:
            self._start()
            while not self.state.terminal:
                match self.state:
                    case LoopState.PROBING:
                        self._probe()
                    case LoopState.AWAITING_ORACLE:
                        self._await_oracle()
                    case LoopState.APPLYING_TOOL:
                        self._apply_tool()
                    case LoopState.VALIDATING:
                        self._validate()
                    case _:
                        raise RuntimeError(f"Unhandled loop state: {self.state}")
        except (WorkspaceError, MissingCredentialsError):
            raise
        except Exception as e:
            # record the Attempt; the controller classifies the error
            self._reason = f"{type(e).__name__}: {e}"
            logger.error(f"[LOOP] {self.unit.identifier}: aborted in {self.state.value}: {self._reason}")
            self._goto(LoopState.ABANDONED, reason=self._reason)
            self._finish()
            raise
        return self._finish()

    def _goto(self, state: LoopState, **payload) -> None:
        self.state = state
        if self.bus is not None:
            self.bus.emit(
                "loop.state",
                "fix_loop",
                {"state": state.value, "iteration": self.iterations, **payload},
                unit=self.unit.identifier,
            )

    # ------------------------------------------------------------------ #
    # States
    # ------------------------------------------------------------------ #

    def _start(self) -> None:
        warnings = ""
        if self.history is not None:
            warnings = self.history.format_for_prompt(self.unit.branch, self.unit.identifier)
            if warnings:
                logger.info(f"[LOOP] {self.unit.identifier}: injecting prior failed attempts")

        context = AgentContext(
            unit=self.unit.identifier,
            fix_type=self.unit.fix_type,
            working_dir=str(self.workspace_path),
            branch=self.unit.branch,
            diagnostics=self._initial,
            file_content=self._read_unit(),
            history_warnings=warnings,
        )
        self.transcript = self.agent.seed(context)
        logger.info(f"[LOOP] {self.unit.identifier}: start ({len(self._initial)} diagnostics)")
        self._goto(LoopState.PROBING)

    def _probe(self) -> None:
        if self.cancel.is_set():
            self._reason = "cancelled"
            logger.warning(f"[LOOP] {self.unit.identifier}: cancelled")
            self._goto(LoopState.ABANDONED, reason="cancelled")
            return

        result = self.validator.validate(self.workspace_path, self.unit)
        if result.timed_out:
            diagnostics = self._last
            feedback = (
                "VALIDATION TIMEOUT: the validation command did not finish. "
                "The previous diagnostics still stand:\n" + render_diagnostics(diagnostics)
            )
        else:
            diagnostics = [d for d in result.diagnostics if d not in self.ignored]
            feedback = None

        if self._before is None:
            self._before = list(diagnostics)

        if not result.timed_out and not diagnostics:
            self._last = []
            logger.info(f"[LOOP] {self.unit.identifier}: clean after {self.iterations} iteration(s)")
            self._goto(LoopState.SUCCEEDED)
            return

        self.iterations += 1
        self._last = list(diagnostics)
        self._tool_calls = 0

        if feedback is None and not (self.iterations == 1 and diagnostics == self._initial):
            feedback = (
                f"VALIDATION FAILED ({len(diagnostics)} error(s) remaining):\n"
                + render_diagnostics(diagnostics)
            )
        if feedback:
            self.transcript.append("user", feedback)

        logger.debug(
            f"[LOOP] {self.unit.identifier}: iteration {self.iterations}/{self.max_iterations}, "
            f"{len(diagnostics)} diagnostics"
        )
        if self.iterations >= self.max_iterations:
            self._reason = f"iteration limit ({self.max_iterations}) reached"
            logger.warning(f"[LOOP] {self.unit.identifier}: exhausted")
            self._goto(LoopState.EXHAUSTED, diagnostics=len(diagnostics))
            return
        self._goto(LoopState.AWAITING_ORACLE, diagnostics=len(diagnostics))

    def _await_oracle(self) -> None:
        try:
            self.budget.enforce(self.transcript)
        except ValueError as e:
            self._reason = f"transcript budget: {e}"
            self._goto(LoopState.ABANDONED, reason=self._reason)
            return

        try:
            decision = self.oracle.decide(self.transcript, tool_schema())
        except OracleError as e:
            # timeouts and transient provider errors burn an iteration, never the job
            logger.warning(f"[LOOP] {self.unit.identifier}: oracle failed: {e}")
            self.transcript.append("user", f"ORACLE ERROR: {e}. Continue fixing the remaining errors.")
            self._goto(LoopState.PROBING)
            return

        match decision:
            case Unfixable(reason=reason):
                self._reason = reason or "oracle declared the problem unfixable"
                self._notes.append(f"Gave up: {self._reason}")
                self.transcript.append("assistant", f"CANNOT_FIX: {self._reason}")
                logger.warning(f"[LOOP] {self.unit.identifier}: abandoned: {self._reason}")
                self._goto(LoopState.ABANDONED, reason=self._reason)
            case ToolRequest():
                self._pending = decision
                if decision.text:
                    self._notes.append(decision.text.strip())
                self.transcript.append(
                    "assistant",
                    decision.text,
                    tool_call=ToolCallRecord(
                        call_id=decision.call_id, name=decision.name, arguments=decision.arguments
                    ),
                )
                self._goto(LoopState.APPLYING_TOOL, tool=decision.name)
            case FinalAnswer(text=text):
                if text:
                    self._notes.append(text.strip())
                self.transcript.append("assistant", text)
                self.transcript.append("user", NUDGE)
                self._validating_write = False
                self._goto(LoopState.VALIDATING)
            case _:
                raise RuntimeError(f"Unexpected oracle decision: {decision!r}")

    def _apply_tool(self) -> None:
        request = self._pending
        self._pending = None
        assert request is not None

        try:
            call = parse_tool_call(request.name, request.arguments)
        except ToolViolationError as e:
            result = ToolResult(ok=False, output=f"Error: {e}")
            call = None
        else:
            result = self.executor.execute(call)

        self.transcript.append("tool", result.output, tool_call_id=request.call_id)
        self._tool_calls += 1

        if isinstance(call, CannotFix):
            self._reason = call.reason or "oracle declared the problem unfixable"
            self._notes.append(f"Gave up: {self._reason}")
            logger.warning(f"[LOOP] {self.unit.identifier}: abandoned: {self._reason}")
            self._goto(LoopState.ABANDONED, reason=self._reason)
            return

        if isinstance(call, WriteFile) and result.written:
            self.writes.append(result.written)
            self._notes.append(f"Rewrote {result.written}")
            logger.info(f"[LOOP] {self.unit.identifier}: wrote {result.written}")
            self._validating_write = True
            self._goto(LoopState.VALIDATING, wrote=result.written)
            return

        if self._tool_calls >= self.max_tool_calls:
            logger.debug(f"[LOOP] {self.unit.identifier}: tool-call cap reached, re-probing")
            self._validating_write = False
            self._goto(LoopState.VALIDATING)
            return
        self._goto(LoopState.AWAITING_ORACLE)

    def _validate(self) -> None:
        self._goto(LoopState.PROBING, after_write=self._validating_write)
        self._validating_write = False

    # ------------------------------------------------------------------ #
    # Result
    # ------------------------------------------------------------------ #

    def _finish(self) -> LoopResult:
        before = self._before if self._before is not None else self._initial
        attempt = Attempt(
            unit=self.unit.identifier,
            branch=self.unit.branch,
            fix_type=self.unit.fix_type,
            strategy=self._strategy(),
            diagnostics_before=tuple(before),
            diagnostics_after=tuple(self._last),
            files_touched=tuple(sorted(set(self.writes))),
            outcome=_OUTCOMES[self.state],
        )
        if self.history is not None:
            self.history.record(attempt)

        logger.info(
            f"[LOOP] {self.unit.identifier}: {self.state.value} "
            f"(iterations={self.iterations}, writes={len(self.writes)})"
        )
        return LoopResult(
            state=self.state,
            iterations=self.iterations,
            diagnostics=list(self._last),
            attempt=attempt,
            writes=list(self.writes),
            reason=self._reason,
            compactions=self.transcript.compactions,
            transcript=self.transcript,
        )

    def _strategy(self) -> str:
        notes = [n for n in self._notes if n]
        if self._reason and self.state != LoopState.SUCCEEDED:
            notes.append(f"Result: {self._reason}")
        return "\n".join(notes)[-2000:]

    def _read_unit(self) -> str | None:
        path = self.workspace_path / self.unit.identifier
        if not path.is_file():
            return None
        try:
            return path.read_text(errors="replace")
        except OSError as e:
            logger.debug(f"[LOOP] Could not read {path}: {e}")
            return None
