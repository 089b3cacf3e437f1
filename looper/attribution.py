"""
Looper Failure Attribution

Decides whether a diagnostic was caused by the unit under repair or was
already present on the baseline. Attribution is file-level: a diagnostic
is pre-existing only when neither its file nor a same-directory sibling
source file changed relative to the baseline ref.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Protocol

from loguru import logger

from looper.state import Diagnostic, UnitOfWork
from looper.workspace import WorkspaceError

SOURCE_SUFFIXES = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".vue", ".svelte",
    ".py", ".go", ".rs", ".java", ".kt", ".rb", ".css", ".scss",
}


class ChangeSource(Protocol):
    def changed_files(self, base_ref: str | None = None) -> set[str]: ...


class FailureAttribution:
    def __init__(self, baseline_ref: str | None = None):
        self.baseline_ref = baseline_ref
        self._changed: dict[int, set[str] | None] = {}

    def changed_set(self, workspace: ChangeSource) -> set[str] | None:
        """Changed paths for a workspace, or None if they can't be computed."""
        key = id(workspace)
        if key not in self._changed:
            try:
                self._changed[key] = set(workspace.changed_files(self.baseline_ref))
            except WorkspaceError as e:
                logger.warning(f"[ATTRIB] Could not diff against {self.baseline_ref}: {e}")
                self._changed[key] = None
        return self._changed[key]

    def is_preexisting(self, unit: UnitOfWork, diagnostic: Diagnostic, workspace: ChangeSource) -> bool:
        changed = self.changed_set(workspace)
        if changed is None:
            # unknown baseline: try to fix rather than ignore a real regression
            return False
        target = diagnostic.file or unit.identifier
        if target in changed:
            return False
        return not any(_is_sibling(target, path) for path in changed)

    def partition(
        self,
        unit: UnitOfWork,
        diagnostics: list[Diagnostic] | tuple[Diagnostic, ...],
        workspace: ChangeSource,
    ) -> tuple[list[Diagnostic], list[Diagnostic]]:
        """Split diagnostics into (attributable, preexisting)."""
        attributable: list[Diagnostic] = []
        preexisting: list[Diagnostic] = []
        for diag in diagnostics:
            if self.is_preexisting(unit, diag, workspace):
                preexisting.append(diag)
            else:
                attributable.append(diag)
        if preexisting:
            logger.info(
                f"[ATTRIB] {unit.identifier}: {len(preexisting)} pre-existing, "
                f"{len(attributable)} attributable"
            )
        return attributable, preexisting


def _is_sibling(target: str, changed: str) -> bool:
    t, c = PurePosixPath(target), PurePosixPath(changed)
    return t.parent == c.parent and c.suffix in SOURCE_SUFFIXES
