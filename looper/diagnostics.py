"""
Looper Diagnostics — Validation Runner + Pluggable Parsers

Each validation tool gets a parser that turns its raw output into the
structured Diagnostic shape. Nothing downstream of this module ever
looks at raw tool text.
"""

from __future__ import annotations

import json
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from looper.state import Diagnostic, FixType, UnitOfWork


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

class DiagnosticParser(ABC):
    name: str = "unknown"

    @abstractmethod
    def parse(self, stdout: str, stderr: str, exit_code: int) -> list[Diagnostic]:
        ...


def _extract_json(text: str, opener: str, closer: str) -> str | None:
    """Slice out the JSON payload when package managers print noise around it."""
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end == -1 or end < start:
        return None
    return text[start:end + 1]


class EslintJsonParser(DiagnosticParser):
    """`eslint -f json` — only severity 2 (error) messages count."""
    name = "eslint-json"

    def parse(self, stdout: str, stderr: str, exit_code: int) -> list[Diagnostic]:
        payload = _extract_json(stdout, "[", "]")
        if payload is None:
            return []
        try:
            files = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("[VALIDATE] Could not parse ESLint JSON output")
            return []

        diagnostics = []
        for entry in files:
            if not isinstance(entry, dict):
                continue
            for msg in entry.get("messages") or []:
                if not isinstance(msg, dict) or msg.get("severity", 2) < 2:
                    continue
                diagnostics.append(Diagnostic(
                    file=entry.get("filePath", ""),
                    line=msg.get("line") or 0,
                    column=msg.get("column"),
                    message=msg.get("message", ""),
                    rule=msg.get("ruleId"),
                ))
        return diagnostics


class TscParser(DiagnosticParser):
    """`tsc --pretty false` — file(line,col): error TS1234: message"""
    name = "tsc"
    _pattern = re.compile(r"^(?P<file>[^\s(][^(]*)\((?P<line>\d+),(?P<col>\d+)\):\s+error\s+(?P<rule>TS\d+):\s+(?P<msg>.*)$")

    def parse(self, stdout: str, stderr: str, exit_code: int) -> list[Diagnostic]:
        diagnostics = []
        for line in (stdout + "\n" + stderr).splitlines():
            m = self._pattern.match(line.strip())
            if m:
                diagnostics.append(Diagnostic(
                    file=m.group("file").strip(),
                    line=int(m.group("line")),
                    column=int(m.group("col")),
                    message=m.group("msg").strip(),
                    rule=m.group("rule"),
                ))
        return diagnostics


class UnixParser(DiagnosticParser):
    """file:line[:col]: message [rule] — ruff, flake8, mypy, gcc and friends."""
    name = "unix"
    _pattern = re.compile(r"^(?P<file>[^\s:][^:]*):(?P<line>\d+):(?:(?P<col>\d+):)?\s*(?P<msg>.+)$")
    _rule = re.compile(r"\s*\[(?P<rule>[\w\-./]+)\]\s*$")
    _leading_rule = re.compile(r"^(?P<rule>[A-Z]+\d+)\s+(?P<msg>.+)$")

    def parse(self, stdout: str, stderr: str, exit_code: int) -> list[Diagnostic]:
        diagnostics = []
        for line in (stdout + "\n" + stderr).splitlines():
            m = self._pattern.match(line.strip())
            if not m:
                continue
            msg = m.group("msg").strip()
            rule = None
            if (rm := self._rule.search(msg)):
                rule = rm.group("rule")
                msg = msg[: rm.start()].strip()
            elif (lm := self._leading_rule.match(msg)):
                rule, msg = lm.group("rule"), lm.group("msg")
            if msg.lower().startswith("note:"):
                continue
            diagnostics.append(Diagnostic(
                file=m.group("file").strip(),
                line=int(m.group("line")),
                column=int(m.group("col")) if m.group("col") else None,
                message=msg,
                rule=rule,
            ))
        return diagnostics


class JestJsonParser(DiagnosticParser):
    """`jest --json` / `vitest --reporter=json` — one diagnostic per failed assertion."""
    name = "jest-json"
    _location = re.compile(r"\((?P<file>[^():]+):(?P<line>\d+):\d+\)")

    def parse(self, stdout: str, stderr: str, exit_code: int) -> list[Diagnostic]:
        payload = _extract_json(stdout, "{", "}")
        if payload is None:
            return []
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("[VALIDATE] Could not parse Jest JSON output")
            return []

        diagnostics = []
        for suite in data.get("testResults", []):
            if suite.get("status") != "failed":
                continue
            file = suite.get("name", "")
            assertions = [
                a for a in suite.get("assertionResults", [])
                if a.get("status") == "failed"
            ]
            if not assertions:
                # suite failed to run at all (syntax error, missing module)
                diagnostics.append(Diagnostic(
                    file=file,
                    message=(suite.get("message") or "Test suite failed to run")[:2000],
                    rule="suite",
                ))
                continue
            for a in assertions:
                text = "\n".join(a.get("failureMessages", []))
                loc = self._location.search(text)
                diagnostics.append(Diagnostic(
                    file=file,
                    line=int(loc.group("line")) if loc and file.endswith(loc.group("file")) else 0,
                    message=f"{a.get('fullName') or a.get('title', '')}: {text[:1500]}",
                    rule="test",
                ))
        return diagnostics


class ExitCodeParser(DiagnosticParser):
    """Fallback: a non-zero exit is one diagnostic carrying the output tail."""
    name = "exit-code"

    def parse(self, stdout: str, stderr: str, exit_code: int) -> list[Diagnostic]:
        if exit_code == 0:
            return []
        tail = (stderr or stdout).strip()[-2000:]
        return [Diagnostic(file="", message=f"exit code {exit_code}\n{tail}", rule="exit-code")]


PARSERS: dict[str, type[DiagnosticParser]] = {
    p.name: p for p in (EslintJsonParser, TscParser, UnixParser, JestJsonParser, ExitCodeParser)
}


def get_parser(name: str) -> DiagnosticParser:
    try:
        return PARSERS[name]()
    except KeyError:
        raise ValueError(f"Unknown diagnostic parser: {name}. Known: {sorted(PARSERS)}") from None


# ---------------------------------------------------------------------------
# Validation runner
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    diagnostics: list[Diagnostic] = field(default_factory=list)
    exit_code: int = 0
    timed_out: bool = False
    output_tail: str = ""

    @property
    def clean(self) -> bool:
        return not self.timed_out and not self.diagnostics


def normalize_path(path: str, root: Path) -> str:
    """Make a tool-reported path relative to the workspace root."""
    if not path:
        return path
    p = Path(path)
    if p.is_absolute():
        try:
            return p.resolve().relative_to(root.resolve()).as_posix()
        except ValueError:
            return p.as_posix()
    return p.as_posix().removeprefix("./")


def _matches_unit(diag_file: str, unit_file: str) -> bool:
    if not diag_file:
        return True
    return diag_file == unit_file or diag_file.endswith("/" + unit_file) or unit_file.endswith("/" + diag_file)


class Validator:
    """
    Runs a unit's validation command inside a workspace and returns
    structured diagnostics. Deterministic on unchanged input.
    """

    def __init__(self, parser: DiagnosticParser, timeout: float = 600, scope_to_unit: bool = True):
        self.parser = parser
        self.timeout = timeout
        self.scope_to_unit = scope_to_unit

    def validate(self, root: Path, unit: UnitOfWork) -> ValidationResult:
        command = unit.validation_command.replace("{file}", unit.identifier)
        logger.debug(f"[VALIDATE] {unit.identifier}: {command}")
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=root,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[VALIDATE] Timed out after {self.timeout}s: {command}")
            out = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
            return ValidationResult(exit_code=-1, timed_out=True, output_tail=out[-2000:])

        parsed = self.parser.parse(proc.stdout, proc.stderr, proc.returncode)
        # a failing command that yields nothing parseable is still a failure
        if proc.returncode != 0 and not parsed:
            parsed = ExitCodeParser().parse(proc.stdout, proc.stderr, proc.returncode)

        diagnostics = [
            d.model_copy(update={"file": normalize_path(d.file, root) or unit.identifier})
            for d in parsed
        ]
        if self.scope_to_unit:
            diagnostics = [d for d in diagnostics if _matches_unit(d.file, unit.identifier)]

        return ValidationResult(
            diagnostics=diagnostics,
            exit_code=proc.returncode,
            output_tail=(proc.stdout + proc.stderr)[-2000:],
        )


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

def discover(
    root: Path,
    command: str,
    parser: DiagnosticParser,
    fix_type: FixType = "lint",
    branch: str = "main",
    unit_command: str | None = None,
    skip_path_patterns: list[str] | None = None,
    timeout: float = 1200,
) -> list[UnitOfWork]:
    """
    Run a whole-repo validation and group diagnostics by file into units.

    `unit_command` is the per-unit command (may contain {file}); defaults
    to `command` itself.
    """
    skips = [re.compile(p) for p in (skip_path_patterns or [])]
    logger.info(f"[VALIDATE] Discovering {fix_type} failures: {command}")
    proc = subprocess.run(
        command,
        shell=True,
        cwd=root,
        capture_output=True,
        text=True,
        errors="replace",
        timeout=timeout,
    )
    by_file: dict[str, list[Diagnostic]] = {}
    for d in parser.parse(proc.stdout, proc.stderr, proc.returncode):
        rel = normalize_path(d.file, root)
        if not rel or any(s.search(rel) for s in skips):
            continue
        by_file.setdefault(rel, []).append(d.model_copy(update={"file": rel}))

    return [
        UnitOfWork(
            identifier=path,
            validation_command=unit_command or command,
            fix_type=fix_type,
            branch=branch,
            baseline=tuple(diags),
        )
        for path, diags in sorted(by_file.items())
    ]
