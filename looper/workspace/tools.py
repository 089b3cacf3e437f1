"""
Looper Tool Set

The oracle may only act through this closed set of tools. Each tool is a
pydantic model tagged by `name`; incoming calls are validated into the
union and dispatched with an exhaustive match. Every path is resolved
inside the workspace root — the oracle can never touch the main checkout.
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class ToolViolationError(Exception):
    pass


# ---------------------------------------------------------------------------
# Tool variants
# ---------------------------------------------------------------------------

class ReadFile(BaseModel):
    """Read a file (optionally a 1-based inclusive line range). Use this to inspect code, types, tests or config."""
    name: Literal["read_file"] = "read_file"
    path: str = Field(description="Path relative to the repository root")
    start_line: int | None = Field(default=None, description="First line to return (1-based)")
    end_line: int | None = Field(default=None, description="Last line to return (inclusive)")


class WriteFile(BaseModel):
    """Write the COMPLETE content of a file. Overwrites it. The file is auto-formatted and re-validated afterwards."""
    name: Literal["write_file"] = "write_file"
    path: str = Field(description="Path relative to the repository root")
    content: str = Field(description="The full new file content")


class RunCommand(BaseModel):
    """Run a non-interactive shell command in the repository root (e.g. grep, git log, ls)."""
    name: Literal["run_command"] = "run_command"
    command: str = Field(description="The command to execute")


class SearchFiles(BaseModel):
    """Search file contents with a regular expression. Returns path:line: text matches."""
    name: Literal["search_files"] = "search_files"
    pattern: str = Field(description="Python regular expression")
    path: str = Field(default=".", description="Directory to search, relative to the repository root")


class ListFiles(BaseModel):
    """List the entries of a directory."""
    name: Literal["list_files"] = "list_files"
    path: str = Field(default=".", description="Directory to list, relative to the repository root")


class CannotFix(BaseModel):
    """Declare that the diagnostics cannot be fixed safely. Ends the session without further attempts."""
    name: Literal["cannot_fix"] = "cannot_fix"
    reason: str = Field(description="Why the problem cannot be fixed")


ToolCall = Annotated[
    Union[ReadFile, WriteFile, RunCommand, SearchFiles, ListFiles, CannotFix],
    Field(discriminator="name"),
]

TOOL_MODELS: tuple[type[BaseModel], ...] = (ReadFile, WriteFile, RunCommand, SearchFiles, ListFiles, CannotFix)

_adapter: TypeAdapter = TypeAdapter(ToolCall)


def parse_tool_call(name: str, arguments: dict[str, Any]) -> ToolCall:
    """Validate a raw oracle tool call into the closed union.

    Raises:
        ToolViolationError: If the name is unknown or the arguments are invalid.
    """
    try:
        return _adapter.validate_python({**arguments, "name": name})
    except ValidationError as e:
        raise ToolViolationError(f"Invalid call to {name}: {e.errors(include_url=False)}") from e


def tool_schema() -> list[dict[str, Any]]:
    """OpenAI-style function definitions for every tool."""
    defs = []
    for model in TOOL_MODELS:
        schema = model.model_json_schema()
        props = {k: _strip_titles(v) for k, v in schema.get("properties", {}).items() if k != "name"}
        required = [r for r in schema.get("required", []) if r != "name"]
        defs.append({
            "type": "function",
            "function": {
                "name": model.model_fields["name"].default,
                "description": (model.__doc__ or "").strip(),
                "parameters": {"type": "object", "properties": props, "required": required},
            },
        })
    return defs


def _strip_titles(prop: dict[str, Any]) -> dict[str, Any]:
    prop = {k: v for k, v in prop.items() if k != "title"}
    # Optional[int] renders as anyOf; collapse for providers that reject it
    if "anyOf" in prop:
        types = [t for t in prop.pop("anyOf") if t.get("type") != "null"]
        if types:
            prop.update(types[0])
    return prop


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

@dataclass
class ToolResult:
    ok: bool
    output: str
    written: str | None = None
    timed_out: bool = False


class Formatter:
    """External formatting collaborator run after every write (e.g. prettier)."""

    def __init__(self, command: str = "", timeout: float = 60):
        self.command = command
        self.timeout = timeout

    def format(self, root: Path, rel_path: str) -> None:
        if not self.command:
            return
        cmd = self.command.replace("{file}", rel_path)
        try:
            result = subprocess.run(
                cmd, shell=True, cwd=root, capture_output=True, text=True, errors="replace", timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"[TOOLS] Formatter timed out on {rel_path}")
            return
        if result.returncode != 0:
            logger.warning(f"[TOOLS] Formatter failed on {rel_path}: {result.stderr.strip()[:200]}")


SKIP_DIRS = {".git", "node_modules", "dist", "build", ".next", "coverage", "__pycache__", ".venv"}


class ToolExecutor:
    """
    Executes validated tool calls against one workspace.
    """

    def __init__(
        self,
        working_dir: Path,
        formatter: Formatter | None = None,
        protected_files: list[str] | None = None,
        blocked_patterns: list[str] | None = None,
        command_timeout: float = 60,
        max_output_chars: int = 8000,
        max_list_entries: int = 50,
        max_search_results: int = 100,
    ):
        self.working_dir = working_dir.resolve()
        self.formatter = formatter or Formatter()
        self.protected_files = set(protected_files or [])
        self.blocked_patterns = list(blocked_patterns or [])
        self.command_timeout = command_timeout
        self.max_output_chars = max_output_chars
        self.max_list_entries = max_list_entries
        self.max_search_results = max_search_results

    def execute(self, call: ToolCall) -> ToolResult:
        try:
            match call:
                case ReadFile():
                    return self._read(call)
                case WriteFile():
                    return self._write(call)
                case RunCommand():
                    return self._run(call)
                case SearchFiles():
                    return self._search(call)
                case ListFiles():
                    return self._list(call)
                case CannotFix():
                    return ToolResult(ok=True, output=call.reason)
                case _:
                    raise ToolViolationError(f"Unsupported tool call: {call!r}")
        except ToolViolationError as e:
            logger.warning(f"[TOOLS] Violation: {e}")
            return ToolResult(ok=False, output=f"Error: {e}")
        except OSError as e:
            return ToolResult(ok=False, output=f"Error: {e}")

    # ------------------------------------------------------------------ #

    def resolve(self, path: str) -> Path:
        """Resolve a tool path inside the workspace."""
        p = Path(path)
        full = (p if p.is_absolute() else self.working_dir / p).resolve()
        if full != self.working_dir and self.working_dir not in full.parents:
            raise ToolViolationError(f"Path escapes the workspace: {path}")
        return full

    def _rel(self, full: Path) -> str:
        return full.relative_to(self.working_dir).as_posix() if full != self.working_dir else "."

    def _read(self, call: ReadFile) -> ToolResult:
        full = self.resolve(call.path)
        text = full.read_text(errors="replace")
        if call.start_line or call.end_line:
            lines = text.splitlines()
            start = max(1, call.start_line or 1)
            end = min(len(lines), call.end_line or len(lines))
            text = "\n".join(f"{i}: {lines[i - 1]}" for i in range(start, end + 1))
        return ToolResult(ok=True, output=text)

    def _write(self, call: WriteFile) -> ToolResult:
        full = self.resolve(call.path)
        if full.name in self.protected_files:
            return ToolResult(
                ok=False,
                output=f"Error: Writing to {full.name} is not allowed. Focus on fixing the source file only.",
            )
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(call.content)
        rel = self._rel(full)
        self.formatter.format(self.working_dir, rel)
        logger.debug(f"[TOOLS] Wrote {rel} ({len(call.content)} chars)")
        return ToolResult(ok=True, output=f"SUCCESS: wrote {rel}", written=rel)

    def _run(self, call: RunCommand) -> ToolResult:
        for pattern in self.blocked_patterns:
            if pattern in call.command:
                raise ToolViolationError(f"Blocked command pattern '{pattern}'")
        logger.debug(f"[TOOLS] Running: {call.command}")
        try:
            proc = subprocess.run(
                call.command,
                shell=True,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.command_timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(
                ok=False,
                output=f"TIMEOUT: Command timed out ({self.command_timeout:.0f}s).",
                timed_out=True,
            )
        output = proc.stdout + (f"\nSTDERR:\n{proc.stderr}" if proc.stderr else "")
        if proc.returncode != 0:
            return ToolResult(
                ok=False,
                output=f"FAILURE: Command failed (exit {proc.returncode}).\nOutput: {output[: self.max_output_chars // 2]}",
            )
        return ToolResult(ok=True, output=self._truncate(output))

    def _search(self, call: SearchFiles) -> ToolResult:
        try:
            regex = re.compile(call.pattern)
        except re.error as e:
            return ToolResult(ok=False, output=f"Error: invalid pattern: {e}")

        base = self.resolve(call.path)
        matches: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for fname in sorted(filenames):
                fpath = Path(dirpath) / fname
                try:
                    with open(fpath, "r", errors="strict") as f:
                        for lineno, line in enumerate(f, 1):
                            if regex.search(line):
                                matches.append(f"{self._rel(fpath)}:{lineno}: {line.rstrip()[:200]}")
                                if len(matches) >= self.max_search_results:
                                    matches.append("...(results truncated)")
                                    return ToolResult(ok=True, output="\n".join(matches))
                except (UnicodeDecodeError, OSError):
                    continue
        return ToolResult(ok=True, output="\n".join(matches) or "No matches.")

    def _list(self, call: ListFiles) -> ToolResult:
        full = self.resolve(call.path)
        entries = sorted(
            p.name + ("/" if p.is_dir() else "") for p in full.iterdir()
        )
        shown = entries[: self.max_list_entries]
        text = "\n".join(shown)
        if len(entries) > len(shown):
            text += f"\n... ({len(entries) - len(shown)} more)"
        return ToolResult(ok=True, output=text)

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_output_chars:
            return text
        return text[: self.max_output_chars] + "\n...(output truncated)"
