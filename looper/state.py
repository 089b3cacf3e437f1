"""
Looper data model.

Immutable records (Diagnostic, UnitOfWork, Attempt) are frozen pydantic
models. The Transcript is the only mutable structure and belongs to a
single FixLoop. Jobs enforce their own state machine.
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


FixType = Literal["lint", "type", "test", "e2e"]


class Diagnostic(BaseModel):
    """One structured finding from a validation tool."""
    model_config = ConfigDict(frozen=True)

    file: str
    line: int = 0
    column: int | None = None
    message: str
    rule: str | None = None
    severity: Literal["error", "warning"] = "error"

    def render(self) -> str:
        loc = f"{self.file}:{self.line}"
        if self.column is not None:
            loc += f":{self.column}"
        rule = f" [{self.rule}]" if self.rule else ""
        return f"{loc}: {self.message}{rule}"


def render_diagnostics(diagnostics: list[Diagnostic] | tuple[Diagnostic, ...], limit: int = 50) -> str:
    lines = [d.render() for d in diagnostics[:limit]]
    if len(diagnostics) > limit:
        lines.append(f"... ({len(diagnostics) - limit} more)")
    return "\n".join(lines)


class UnitOfWork(BaseModel):
    """A single repair target: one file (or branch/change-set) plus its baseline."""
    model_config = ConfigDict(frozen=True)

    identifier: str
    validation_command: str
    fix_type: FixType = "lint"
    branch: str = "main"
    baseline: tuple[Diagnostic, ...] = ()


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ABANDONED = "abandoned"


class Attempt(BaseModel):
    """One recorded outcome of a finished FixLoop run."""
    model_config = ConfigDict(frozen=True)

    unit: str
    branch: str
    fix_type: FixType = "lint"
    strategy: str = ""
    diagnostics_before: tuple[Diagnostic, ...] = ()
    diagnostics_after: tuple[Diagnostic, ...] = ()
    files_touched: tuple[str, ...] = ()
    outcome: AttemptOutcome
    timestamp: float = Field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class ToolCallRecord(BaseModel):
    call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Turn(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_call: ToolCallRecord | None = None
    tool_call_id: str | None = None

    def to_message(self) -> dict[str, Any]:
        """Render as an OpenAI-style chat message."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call is not None:
            msg["tool_calls"] = [{
                "id": self.tool_call.call_id,
                "type": "function",
                "function": {
                    "name": self.tool_call.name,
                    "arguments": json.dumps(self.tool_call.arguments),
                },
            }]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg


class Transcript(BaseModel):
    """Ordered conversation for exactly one FixLoop run."""
    turns: list[Turn] = Field(default_factory=list)
    compactions: int = 0

    def append(self, role: str, content: str = "", **kwargs: Any) -> Turn:
        turn = Turn(role=role, content=content, **kwargs)
        self.turns.append(turn)
        return turn

    def to_messages(self) -> list[dict[str, Any]]:
        return [t.to_message() for t in self.turns]

    def __len__(self) -> int:
        return len(self.turns)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class JobStateError(Exception):
    """Raised on an illegal Job status transition."""
    pass


_ALLOWED = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED},
}


class Job(BaseModel):
    unit: UnitOfWork
    workspace_path: str | None = None
    status: JobStatus = JobStatus.PENDING

    def transition(self, status: JobStatus) -> None:
        if status not in _ALLOWED.get(self.status, set()):
            raise JobStateError(f"{self.unit.identifier}: {self.status.value} -> {status.value}")
        self.status = status
