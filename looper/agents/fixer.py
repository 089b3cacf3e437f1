"""
Looper Fixers — One Repair Persona per Fix Type

Lint, type, test and e2e fixers share the same tool contract and
differ in rules and strategy. The prompts never ask for JSON: the
oracle acts only through tool calls.
"""

from __future__ import annotations

import re

from looper.agents import AgentContext, BaseAgent
from looper.state import Turn, render_diagnostics

MAX_FILE_CHARS = 30_000

_TOOLS_BLOCK = """
TOOLS AVAILABLE:
- read_file: Read any file (optionally a line range)
- write_file: Write COMPLETE file content (triggers automatic re-validation)
- search_files: Regex search across the repository
- list_files: List directory contents
- run_command: Run non-interactive shell commands (grep, git log, ls)
- cannot_fix: Give up with a reason when a safe fix is impossible

If you are certain the problem cannot be fixed without breaking behavior,
call cannot_fix (or reply with a line starting CANNOT_FIX: and the reason).
"""


class FixerAgent(BaseAgent):
    diagnostics_label: str = "ERRORS"

    def build_messages(self, context: AgentContext) -> list[Turn]:
        parts = [
            f"Please fix the following {self.fix_type} errors in {context.unit}.",
            f"\n{self.diagnostics_label}:\n{render_diagnostics(context.diagnostics)}",
        ]
        if context.file_content is not None:
            content = context.file_content
            if len(content) > MAX_FILE_CHARS:
                content = content[:MAX_FILE_CHARS] + "\n...(truncated, use read_file for the rest)"
            parts.append(f"\nCURRENT FILE CONTENT:\n{content}")
            imports = _imports(context.file_content)
            if imports:
                parts.append(f"\nFILE IMPORTS:\n{imports}")
        if context.extra.get("ci_context"):
            parts.append(f"\nCI ERROR CONTEXT:\n{context.extra['ci_context']}")
        return [self._system_msg(context), self._user_msg("\n".join(parts))]


class LintFixer(FixerAgent):
    fix_type = "lint"
    diagnostics_label = "LINT ERRORS"
    system_prompt = """You are a Senior Software Engineer specializing in fixing lint errors.

ENVIRONMENT:
- Target File: {unit}
- Repo Root: {working_dir}

GOAL: Fix ALL reported lint errors in the target file.

RULES:
1. Fix the ERRORS, do not suppress them. Only use disable comments as an absolute last resort.
2. Always provide the COMPLETE file content when using write_file, never partial.
3. Do NOT change the file's logic or behavior, only fix lint violations.
4. If an error is about an import, read_file the imported module to check what it exports.
5. NEVER modify package.json, lock files or other config files.
6. Prefer declarative lookup maps over nested ternaries and long if/else chains.
""" + _TOOLS_BLOCK


class TypeFixer(FixerAgent):
    fix_type = "type"
    diagnostics_label = "TYPE ERRORS"
    system_prompt = """You are a Senior Software Engineer specializing in fixing type errors.

ENVIRONMENT:
- Target File: {unit}
- Repo Root: {working_dir}

GOAL: Fix ALL reported type errors in the target file WITHOUT changing behavior.

RULES:
1. Fix the types properly. Do not use `as any`, `@ts-ignore` or `@ts-expect-error` unless unavoidable.
2. Always provide the COMPLETE file content when using write_file, never partial.
3. Do NOT change the file's runtime behavior.
4. When a value must match a union type or enum, READ the type definition first and pick a valid value.
5. NEVER remove translation keys or content strings to silence an error.
6. NEVER modify package.json, lock files or other config files.

COMMON PATTERNS:
- TS2678 "not comparable": a switch case uses a value outside the union type.
- TS2322 "not assignable": read both types before changing either side.
- TS2339 "does not exist on type": read the type definition.
- TS2304 "cannot find name": missing import or declaration.
- TS7006 "implicitly has 'any' type": add an explicit annotation.
""" + _TOOLS_BLOCK


class FailingTestFixer(FixerAgent):
    fix_type = "test"
    diagnostics_label = "TEST FAILURES"
    system_prompt = """You are a Senior Software Engineer specializing in debugging test failures.

ENVIRONMENT:
- Test File: {unit}
- Repo Root: {working_dir}

GOAL: Make the failing tests pass by fixing the SOURCE code (not the tests).

RULES:
1. The tests are CORRECT. NEVER modify test files (*.test.*, *.spec.*).
2. The test file imports the code under test; follow the imports to find what to fix.
3. Use `git diff` / `git log` via run_command: the regression is usually a recent change.
4. When a diff removed behavior the test expects, RESTORE that behavior.
5. Always provide the COMPLETE file content when using write_file, never partial.
6. NEVER modify package.json, lock files or other config files.

STRATEGY:
1. READ the failures: which cases fail, expected vs actual values.
2. READ the source under test.
3. IDENTIFY the root cause, then write the complete fixed file.
4. Tests re-run automatically after every write_file.
""" + _TOOLS_BLOCK


class E2EFixer(FailingTestFixer):
    fix_type = "e2e"
    diagnostics_label = "E2E FAILURES"
    system_prompt = FailingTestFixer.system_prompt.replace(
        "debugging test failures", "debugging end-to-end test failures"
    ) + """
E2E NOTES:
- Selectors and visible copy are part of the contract; restore them rather than editing the test.
- Timing failures usually mean a missing await or a changed loading state.
"""


FIXERS: dict[str, type[FixerAgent]] = {
    cls.fix_type: cls for cls in (LintFixer, TypeFixer, FailingTestFixer, E2EFixer)
}


def fixer_for(fix_type: str) -> FixerAgent:
    try:
        return FIXERS[fix_type]()
    except KeyError:
        raise ValueError(f"Unknown fix type: {fix_type}. Known: {sorted(FIXERS)}") from None


_IMPORT_RE = re.compile(r"""^\s*(?:import\s.*?from\s+['"][^'"]+['"]|import\s+['"][^'"]+['"]|.*require\(\s*['"][^'"]+['"]\s*\)|from\s+\S+\s+import\s+.+|import\s+\w[\w.]*)""", re.M)


def _imports(content: str, limit: int = 20) -> str:
    lines = [m.group(0).strip() for m in _IMPORT_RE.finditer(content)]
    return "\n".join(lines[:limit])
