"""
Looper Workspace Isolation

Each job gets its own detached 'git worktree' so concurrent repair
loops never see each other's edits. Dependency caches (node_modules and
friends) are symlinked from the main checkout instead of copied, so N
workspaces cost N checkouts, not N installs.

There is no fallback to the shared checkout: if a worktree cannot be
created the job fails with WorkspaceError.
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import threading
from pathlib import Path

from loguru import logger


class WorkspaceError(Exception):
    """Environment failure: the isolated workspace could not be set up."""
    pass


class Workspace:
    """
    An isolated worktree bound to a single job.
    """

    def __init__(self, repo_path: Path, name: str, worktree_path: Path, base_ref: str):
        self.repo_path = repo_path
        self.name = name
        self.worktree_path = worktree_path
        self.base_ref = base_ref
        self.base_sha: str | None = None
        self.linked_caches: list[Path] = []
        self._released = False

    @property
    def path(self) -> Path:
        return self.worktree_path

    def changed_files(self, base_ref: str | None = None) -> set[str]:
        """
        Paths changed relative to `base_ref` (default: the acquire point),
        committed or not. Raises WorkspaceError if the ref is unreachable.
        """
        ref = base_ref or self.base_sha or self.base_ref
        committed = self._worktree_git("diff", "--name-only", f"{ref}...HEAD", capture=True)
        working = self._worktree_git("diff", "--name-only", "HEAD", capture=True)
        untracked = self._worktree_git(
            "ls-files", "--others", "--exclude-standard", capture=True
        )
        paths = set()
        for block in (committed, working, untracked):
            paths.update(line.strip() for line in block.splitlines() if line.strip())
        return {p for p in paths if not self._is_linked_cache(p)}

    def touched_files(self) -> list[str]:
        """Files changed since acquire (uncommitted edits included)."""
        try:
            return sorted(self.changed_files(self.base_sha or self.base_ref))
        except WorkspaceError as e:
            logger.warning(f"[WORKSPACE] Could not list touched files: {e}")
            return []

    def commit(self, message: str, paths: list[str] | None = None) -> str | None:
        """Stage and commit changes inside the worktree."""
        if paths:
            self._worktree_git("add", "--", *paths)
        else:
            self._worktree_git("add", "-A")
            for cache in self.linked_caches:
                rel = cache.relative_to(self.worktree_path).as_posix()
                self._worktree_git("reset", "-q", "--", rel, check=False)

        status = self._worktree_git("diff", "--cached", "--name-only", capture=True)
        if not status.strip():
            logger.info("[WORKSPACE] Nothing to commit.")
            return None

        self._worktree_git("commit", "--no-verify", "-m", message)
        return self._worktree_git("rev-parse", "HEAD", capture=True).strip()

    def save_branch(self, branch: str) -> None:
        """Point a local branch at the worktree's HEAD so the commit outlives the worktree."""
        self._worktree_git("branch", "-f", branch, "HEAD")
        logger.info(f"[WORKSPACE] Saved {self.name} as branch {branch}")

    def push(self, branch: str, remote: str = "origin") -> None:
        self._worktree_git("push", "--no-verify", remote, f"HEAD:refs/heads/{branch}")
        logger.info(f"[WORKSPACE] Pushed {self.name} → {remote}/{branch}")

    def _is_linked_cache(self, rel: str) -> bool:
        for cache in self.linked_caches:
            prefix = cache.relative_to(self.worktree_path).as_posix()
            if rel == prefix or rel.startswith(prefix + "/"):
                return True
        return False

    def _worktree_git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        return _run_git(list(args), cwd=self.worktree_path, check=check, capture=capture)


class WorkspaceManager:
    """
    Creates and destroys isolated worktrees for the scheduler.

    Git guards its metadata with lockfiles, so worktree add/remove are
    serialized here; everything a worker does afterwards is parallel.
    """

    def __init__(
        self,
        repo_path: Path,
        worktree_dir: str = "../.looper-worktrees",
        shared_cache_dirs: list[str] | None = None,
        cache_search_depth: int = 4,
    ):
        self.repo_path = repo_path.resolve()
        base = Path(worktree_dir).expanduser()
        self.worktree_base = (base if base.is_absolute() else self.repo_path / base).resolve()
        self.shared_cache_dirs = list(shared_cache_dirs or [])
        self.cache_search_depth = cache_search_depth
        self._lock = threading.Lock()
        self._counter = 0
        self._caches: list[Path] | None = None

    def acquire(self, base_ref: str, name: str) -> Workspace:
        """
        Create an isolated worktree at `base_ref`.

        Raises:
            WorkspaceError: If the worktree could not be created. Partial
                state is cleaned up before raising.
        """
        with self._lock:
            self._counter += 1
            slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-")[:60] or "unit"
            path = self.worktree_base / f"w{self._counter}-{slug}"
            ws = Workspace(self.repo_path, name, path, base_ref)

            try:
                if path.exists():
                    logger.warning(f"[WORKSPACE] Found stale worktree at {path}. Resetting...")
                    self._remove(ws)
                path.parent.mkdir(parents=True, exist_ok=True)
                ws.base_sha = _run_git(
                    ["rev-parse", "--verify", f"{base_ref}^{{commit}}"],
                    cwd=self.repo_path, capture=True,
                ).strip()
                _run_git(
                    ["worktree", "add", "--detach", str(path), ws.base_sha],
                    cwd=self.repo_path,
                )
            except (WorkspaceError, OSError) as e:
                self._remove(ws)
                raise WorkspaceError(f"Failed to create isolated worktree for {name}: {e}") from e

        try:
            self._link_caches(ws)
        except OSError as e:
            self.release(ws)
            raise WorkspaceError(f"Failed to link dependency caches for {name}: {e}") from e

        logger.info(f"[WORKSPACE] Sandbox created: {path} @ {base_ref}")
        return ws

    def release(self, ws: Workspace) -> None:
        """Remove the worktree. Safe to call twice or after a failed acquire."""
        if ws._released:
            return
        with self._lock:
            self._remove(ws)
        ws._released = True
        logger.info(f"[WORKSPACE] Cleanup complete: {ws.name}")

    def restore_files(self, paths: list[str]) -> list[str]:
        """Revert main-checkout edits to `paths` (e.g. a package.json rewritten by an install)."""
        restored = []
        with self._lock:
            for rel in paths:
                diff = _run_git(["diff", "--name-only", "--", rel], cwd=self.repo_path, check=False, capture=True)
                if rel in diff.split():
                    _run_git(["checkout", "HEAD", "--", rel], cwd=self.repo_path)
                    logger.warning(f"[WORKSPACE] Setup modified {rel}; restored from git.")
                    restored.append(rel)
        return restored

    def prune(self) -> None:
        """Drop metadata for worktrees whose directories vanished (crashed runs)."""
        with self._lock:
            _run_git(["worktree", "prune"], cwd=self.repo_path, check=False)

    # ------------------------------------------------------------------ #

    def _remove(self, ws: Workspace) -> None:
        # unlink caches first so rmtree never follows them into the main checkout
        for link in ws.linked_caches:
            if link.is_symlink():
                link.unlink()
        ws.linked_caches = []

        _run_git(
            ["worktree", "remove", "--force", str(ws.worktree_path)],
            cwd=self.repo_path, check=False,
        )
        if ws.worktree_path.exists():
            shutil.rmtree(ws.worktree_path, ignore_errors=True)
        _run_git(["worktree", "prune"], cwd=self.repo_path, check=False)

    def _discover_caches(self) -> list[Path]:
        if self._caches is not None:
            return self._caches
        found: list[Path] = []
        names = set(self.shared_cache_dirs)
        if names:
            for dirpath, dirnames, _ in os.walk(self.repo_path):
                rel_depth = len(Path(dirpath).relative_to(self.repo_path).parts)
                for d in list(dirnames):
                    if d in names:
                        found.append(Path(dirpath) / d)
                dirnames[:] = [
                    d for d in dirnames
                    if d not in names and d != ".git" and rel_depth + 1 < self.cache_search_depth
                ]
        self._caches = found
        return found

    def _link_caches(self, ws: Workspace) -> None:
        for cache in self._discover_caches():
            rel = cache.relative_to(self.repo_path)
            link = ws.worktree_path / rel
            if link.exists() or link.is_symlink():
                continue
            link.parent.mkdir(parents=True, exist_ok=True)
            link.symlink_to(cache, target_is_directory=True)
            ws.linked_caches.append(link)
        if ws.linked_caches:
            logger.debug(f"[WORKSPACE] Linked {len(ws.linked_caches)} shared caches into {ws.name}")


def _run_git(args: list[str], cwd: Path, check: bool = True, capture: bool = False) -> str:
    cmd = ["git", *args]
    try:
        result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, errors="replace", timeout=120)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{e}") from e
    if check and result.returncode != 0:
        raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
    return result.stdout if capture else ""
