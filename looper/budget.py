"""
Looper Budget Tracker — Transcript Size Control

Estimates how large a repair conversation has grown and compacts it
before the next oracle call would exceed the cap. Compaction keeps the
system context, the first user turn (the task payload) and the most
recent turns, replacing the middle with a synthesized summary.
"""

from __future__ import annotations

import json
from typing import Protocol, Sequence

import litellm
from loguru import logger

from looper.state import Transcript, Turn


# ---------------------------------------------------------------------------
# Estimators
# ---------------------------------------------------------------------------

class BudgetEstimator(Protocol):
    def estimate(self, turns: Sequence[Turn]) -> int: ...


class CharEstimator:
    """Fast token estimate (~4 chars/token), tool arguments included."""

    def __init__(self, chars_per_token: int = 4):
        self.chars_per_token = chars_per_token

    def estimate(self, turns: Sequence[Turn]) -> int:
        chars = 0
        for turn in turns:
            chars += len(turn.content)
            if turn.tool_call is not None:
                chars += len(turn.tool_call.name)
                chars += len(json.dumps(turn.tool_call.arguments))
        return chars // self.chars_per_token + len(turns)


class LiteLLMTokenEstimator:
    """Model-specific count via litellm.token_counter."""

    def __init__(self, model: str):
        self.model = model

    def estimate(self, turns: Sequence[Turn]) -> int:
        messages = [t.to_message() for t in turns]
        return litellm.token_counter(model=self.model, messages=messages)


def build_estimator(kind: str, model: str) -> BudgetEstimator:
    if kind == "litellm":
        return LiteLLMTokenEstimator(model)
    if kind == "chars":
        return CharEstimator()
    raise ValueError(f"Unknown budget estimator: {kind}. Known: ['chars', 'litellm']")


# ---------------------------------------------------------------------------
# Transcript budget
# ---------------------------------------------------------------------------

COMPACTION_HEADER = "[CONTEXT COMPACTION: summarising earlier rounds]"
TRUNCATION_MARKER = "\n...(truncated)"
_MIN_CONTENT_CHARS = 200


class TranscriptBudget:
    """
    Enforces `estimate(transcript) < max_tokens` ahead of every oracle call.
    """

    def __init__(self, estimator: BudgetEstimator, max_tokens: int, keep_recent: int = 8):
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.estimator = estimator
        self.max_tokens = max_tokens
        self.keep_recent = max(1, keep_recent)

    def estimate(self, transcript: Transcript) -> int:
        return self.estimator.estimate(transcript.turns)

    def over_limit(self, transcript: Transcript) -> bool:
        return self.estimate(transcript) >= self.max_tokens

    def enforce(self, transcript: Transcript) -> bool:
        """Compact in place if over the limit. Returns True if it compacted."""
        if not self.over_limit(transcript):
            return False
        before = self.estimate(transcript)

        turns = transcript.turns
        head = _head(turns)
        compacted = turns
        keep = self.keep_recent
        while keep >= 1:
            compacted = _compact(turns, head, keep)
            if self.estimator.estimate(compacted) < self.max_tokens:
                break
            keep -= 1

        if self.estimator.estimate(compacted) >= self.max_tokens:
            compacted = self._truncate(compacted)

        transcript.turns = compacted
        transcript.compactions += 1
        after = self.estimate(transcript)
        logger.info(
            f"[BUDGET] Compacted transcript {len(turns)} → {len(compacted)} turns "
            f"(~{before} → ~{after} tokens, limit {self.max_tokens})"
        )
        return True

    def _truncate(self, turns: list[Turn]) -> list[Turn]:
        """Last resort: shrink the longest contents until under the limit."""
        turns = [t.model_copy() for t in turns]
        floor = _MIN_CONTENT_CHARS + len(TRUNCATION_MARKER)
        while self.estimator.estimate(turns) >= self.max_tokens:
            longest = max(range(len(turns)), key=lambda i: len(turns[i].content))
            content = turns[longest].content
            if len(content) <= floor:
                # nothing left to shrink but the oldest non-system turns
                droppable = [i for i, t in enumerate(turns) if t.role != "system"]
                if len(droppable) <= 1:
                    raise ValueError(
                        f"Transcript cannot fit within {self.max_tokens} tokens"
                    )
                victim = droppable[0]
                del turns[victim]
                while victim < len(turns) and turns[victim].role == "tool":
                    del turns[victim]
                continue
            # every pass must strictly shorten the turn, marker included
            keep = max(_MIN_CONTENT_CHARS, (len(content) - len(TRUNCATION_MARKER)) // 2)
            turns[longest] = turns[longest].model_copy(
                update={"content": content[:keep] + TRUNCATION_MARKER}
            )
        return turns


def _head(turns: list[Turn]) -> int:
    """Index one past the leading system turns and the first user turn."""
    i = 0
    while i < len(turns) and turns[i].role == "system":
        i += 1
    if i < len(turns) and turns[i].role == "user":
        i += 1
    return i


def _compact(turns: list[Turn], head: int, keep: int) -> list[Turn]:
    if len(turns) - head <= keep:
        return list(turns)

    start = len(turns) - keep
    # a tool result must stay with the assistant turn that requested it
    while start > head and turns[start].role == "tool":
        start -= 1
    middle = turns[head:start]
    if not middle:
        return list(turns)

    summary = Turn(role="user", content=summarize_turns(middle))
    return [*turns[:head], summary, *turns[start:]]


def summarize_turns(turns: Sequence[Turn]) -> str:
    """Synthesized summary of elided turns: counts plus the latest failure."""
    tool_calls = [t.tool_call for t in turns if t.tool_call is not None]
    writes = [c for c in tool_calls if c.name == "write_file"]
    results = [t.content for t in turns if t.role == "tool"]
    successes = sum(1 for r in results if r.startswith("SUCCESS"))
    failures = [r for r in results if r.startswith(("FAILURE", "Error", "TIMEOUT"))]
    validations = [t.content for t in turns if t.role == "user" and t.content.startswith("VALIDATION")]

    parts = [
        COMPACTION_HEADER,
        f"Elided turns: {len(turns)}",
        f"Tool calls: {len(tool_calls)} ({len(writes)} writes)",
        f"Successful results: {successes}, failed results: {len(failures)}",
    ]
    if writes:
        paths = sorted({str(c.arguments.get('path', '?')) for c in writes})
        parts.append(f"Files written: {', '.join(paths[:10])}")
    latest = (validations or failures)[-1:] if (validations or failures) else []
    if latest:
        parts.append(f"Latest failure:\n{latest[0][:1500]}")
    parts.append("[END COMPACTION: recent context follows]")
    return "\n".join(parts)
