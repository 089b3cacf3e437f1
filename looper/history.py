"""
Looper History Store — Cross-Run Memory

Tracks what was tried on each branch/unit, what diagnostics were seen,
and the outcome. Failed attempts are injected into the next run's prompt
so the oracle doesn't repeat a strategy that already failed.

Layout on disk (one JSON document):

    { "<branch>": { "<unit>": [ Attempt, ... ] } }

Retention is enforced on every write: entries older than the window
are dropped, then each key is capped to its newest N attempts.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from loguru import logger
from pydantic import ValidationError

from looper.state import Attempt

MAX_STRATEGY_CHARS = 2000
MAX_ERROR_CHARS = 3000


class HistoryError(Exception):
    pass


class HistoryStore:
    """
    Durable, expiring store of Attempts keyed by (branch, unit).

    Every write is a whole-document read-modify-write. A process-local
    RLock orders threads; an flock on a sidecar file orders processes.
    """

    def __init__(
        self,
        path: Path,
        max_attempts_per_key: int = 20,
        max_age_seconds: float = 7 * 24 * 3600,
        clock=time.time,
    ):
        self.path = Path(path)
        self.max_attempts_per_key = max_attempts_per_key
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._lock_path = self.path.with_name(self.path.name + ".lock")

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def record(self, attempt: Attempt) -> None:
        """Append an attempt, then prune the whole document."""
        entry = self._serialize(attempt)
        with self._exclusive():
            doc = self._load()
            doc.setdefault(attempt.branch, {}).setdefault(attempt.unit, []).append(entry)
            self._save(self._prune(doc))
        logger.debug(
            f"[HISTORY] Recorded {attempt.outcome.value} for {attempt.branch}:{attempt.unit}"
        )

    def query(self, branch: str, unit: str) -> list[Attempt]:
        """Failed attempts for (branch, unit), most recent first. Read-only."""
        with self._lock:
            doc = self._load()
        now = self._clock()
        attempts = []
        for raw in doc.get(branch, {}).get(unit, []):
            attempt = self._deserialize(raw)
            if attempt is None or attempt.success:
                continue
            if now - attempt.timestamp >= self.max_age_seconds:
                continue
            attempts.append(attempt)
        attempts.sort(key=lambda a: a.timestamp, reverse=True)
        return attempts[: self.max_attempts_per_key]

    def format_for_prompt(self, branch: str, unit: str) -> str:
        """Render failed attempts as a warning block for the system prompt."""
        failed = self.query(branch, unit)
        if not failed:
            return ""

        now = self._clock()
        lines = [
            f"\nPREVIOUS FIX ATTEMPTS ({len(failed)} failed attempt(s) on this branch for this target):",
            "DO NOT repeat these approaches; they already failed. Try something fundamentally different.\n",
        ]
        for i, a in enumerate(failed, 1):
            age = round((now - a.timestamp) / 60)
            lines.append(f"--- Attempt {i} ({age} min ago, type: {a.fix_type}, outcome: {a.outcome.value}) ---")
            if a.strategy:
                lines.append(f"What was tried: {a.strategy}")
            if a.diagnostics_after:
                errors = "\n".join(d.render() for d in a.diagnostics_after)
                lines.append(f"Why it failed: {errors[:1500]}")
            if a.files_touched:
                lines.append(f"Files modified: {', '.join(a.files_touched)}")
            lines.append("")

        lines.extend([
            "IMPORTANT: Based on the above history, you MUST use a different strategy. "
            "If the same approach keeps failing, consider:",
            "- The error might be in a DIFFERENT file than previously modified",
            "- The fix might require changes to multiple files at once",
            "- A previous assumption about the root cause may be wrong",
            "- Read more context (type definitions, related files, test expectations) before writing",
            "",
        ])
        return "\n".join(lines)

    def summarize(self, branch: str) -> dict[str, Any]:
        with self._lock:
            doc = self._load()
        total = 0
        failed = 0
        units: dict[str, dict[str, int]] = {}
        for unit, entries in doc.get(branch, {}).items():
            failures = sum(1 for e in entries if not e.get("success"))
            total += len(entries)
            failed += failures
            units[unit] = {"attempts": len(entries), "failures": failures}
        return {"totalAttempts": total, "failedAttempts": failed, "units": units}

    def clear(self, branch: str) -> None:
        with self._exclusive():
            doc = self._load()
            if doc.pop(branch, None) is not None:
                self._save(doc)
        logger.info(f"[HISTORY] Cleared history for {branch}")

    def branches(self) -> list[str]:
        with self._lock:
            return sorted(self._load())

    # ------------------------------------------------------------------ #
    # Retention
    # ------------------------------------------------------------------ #

    def _prune(self, doc: dict[str, Any]) -> dict[str, Any]:
        now = self._clock()
        pruned: dict[str, Any] = {}
        for branch, units in doc.items():
            kept_units = {}
            for unit, entries in units.items():
                fresh = [
                    e for e in entries
                    if now - float(e.get("timestamp", 0)) < self.max_age_seconds
                ]
                fresh = fresh[-self.max_attempts_per_key:]
                if fresh:
                    kept_units[unit] = fresh
            if kept_units:
                pruned[branch] = kept_units
        return pruned

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._lock_path, "a") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"[HISTORY] Failed to load {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"[HISTORY] Ignoring malformed history document at {self.path}")
            return {}
        return data

    def _save(self, doc: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".looper-history.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(doc, f, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise HistoryError(f"Failed to save history to {self.path}: {e}") from e

    @staticmethod
    def _serialize(attempt: Attempt) -> dict[str, Any]:
        data = attempt.model_dump(mode="json")
        data["strategy"] = data["strategy"][:MAX_STRATEGY_CHARS]
        # keep the stored diagnostic payload bounded
        budget = MAX_ERROR_CHARS
        kept = []
        for diag in data["diagnostics_after"]:
            size = len(diag.get("message", ""))
            if size > budget:
                break
            budget -= size
            kept.append(diag)
        data["diagnostics_after"] = kept
        data["diagnostics_before"] = data["diagnostics_before"][:20]
        data["success"] = attempt.success
        return data

    @staticmethod
    def _deserialize(raw: dict[str, Any]) -> Attempt | None:
        try:
            return Attempt.model_validate({k: v for k, v in raw.items() if k != "success"})
        except ValidationError as e:
            logger.warning(f"[HISTORY] Skipping unreadable entry: {e.error_count()} errors")
            return None
