"""
Looper Router — Vendor-Agnostic Oracle

Routes fix-loop turns through LiteLLM so the loop never knows which
vendor is answering. Handles usage tracking, retries of transient
errors, and maps the raw response onto one OracleDecision.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

import litellm
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from looper.config_loader import OracleConfig
from looper.state import Transcript

CANNOT_FIX_PREFIX = "CANNOT_FIX:"


class MissingCredentialsError(Exception):
    pass


class OracleError(Exception):
    pass


class OracleTimeout(OracleError):
    pass


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class UsageTracker:
    """Tracks token + dollar spend for one unit's repair session."""
    usage: UsageRecord = field(default_factory=UsageRecord)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response.

        Token counts come from the response's `usage` block; the dollar
        estimate comes from LiteLLM's cost table and is skipped for models
        the table does not know.
        """
        usage = getattr(response, "usage", None)
        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception as e:
            # LiteLLM raises a bare Exception for models missing from its cost map
            logger.debug(f"[ORACLE] No cost data for response: {e}")
            cost = 0.0

        with self._lock:
            if usage:
                self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
                self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
                self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0
            self.usage.estimated_cost += cost or 0.0
            self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
        }


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

class ToolRequest(BaseModel):
    """The oracle asked for exactly one tool call."""
    call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    text: str = ""


class FinalAnswer(BaseModel):
    """The oracle answered in plain text without requesting a tool."""
    text: str = ""


class Unfixable(BaseModel):
    """The oracle declared the diagnostics cannot be fixed."""
    reason: str = ""


OracleDecision = Union[ToolRequest, FinalAnswer, Unfixable]


class Oracle(Protocol):
    def decide(self, transcript: Transcript, tools: list[dict[str, Any]]) -> OracleDecision: ...


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(
    config: OracleConfig,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]],
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "model": config.model,
        "messages": messages,
        "max_tokens": config.max_tokens,
        "timeout": config.timeout_seconds,
    }
    if not _is_gpt5_model(config.model) and not _is_o_series_model(config.model):
        kwargs["temperature"] = config.temperature
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    return kwargs


_TRANSIENT = (
    litellm.exceptions.Timeout,
    litellm.exceptions.APIConnectionError,
    litellm.exceptions.RateLimitError,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.InternalServerError,
)


def parse_response(response: Any) -> OracleDecision:
    """Map a chat completion onto a single decision (first tool call only)."""
    message = response.choices[0].message
    content = (getattr(message, "content", None) or "").strip()
    tool_calls = getattr(message, "tool_calls", None) or []

    if tool_calls:
        first = tool_calls[0]
        if len(tool_calls) > 1:
            logger.debug(f"[ORACLE] Ignoring {len(tool_calls) - 1} extra tool call(s)")
        raw_args = first.function.arguments or "{}"
        try:
            arguments = json.loads(raw_args)
        except json.JSONDecodeError:
            arguments = {"_unparsed": raw_args}
        if not isinstance(arguments, dict):
            arguments = {"_unparsed": raw_args}

        if first.function.name == "cannot_fix":
            return Unfixable(reason=str(arguments.get("reason", content)))
        return ToolRequest(
            call_id=first.id or f"call_{int(time.time() * 1000)}",
            name=first.function.name,
            arguments=arguments,
            text=content,
        )

    if content.startswith(CANNOT_FIX_PREFIX):
        return Unfixable(reason=content[len(CANNOT_FIX_PREFIX):].strip())
    return FinalAnswer(text=content)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class Router:
    """
    LiteLLM-backed oracle.

    The fix loop calls `router.decide(transcript, tools)`; one call is
    outstanding at a time per loop.
    """

    def __init__(self, config: OracleConfig, usage: UsageTracker | None = None):
        self.config = config
        self.usage = usage or UsageTracker()
        litellm.suppress_debug_info = True

    def decide(self, transcript: Transcript, tools: list[dict[str, Any]]) -> OracleDecision:
        """Ask the model for its next move.

        Raises:
            OracleTimeout: The call timed out after all retries.
            OracleError: Any other provider failure after all retries.
            MissingCredentialsError: The provider rejected our credentials.
        """
        messages = transcript.to_messages()
        start = time.monotonic()
        logger.debug(f"[ORACLE] → {self.config.model} ({len(messages)} messages)")

        try:
            response = self._complete(_build_kwargs(self.config, messages, tools))
        except litellm.exceptions.AuthenticationError as e:
            raise MissingCredentialsError(f"{self.config.model}: {e}") from e
        except litellm.exceptions.Timeout as e:
            raise OracleTimeout(f"{self.config.model} timed out after {self.config.timeout_seconds}s") from e
        except (litellm.exceptions.APIError, litellm.exceptions.BadRequestError, *_TRANSIENT) as e:
            raise OracleError(f"{self.config.model}: {e}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.usage.record(response)
        logger.debug(
            f"[ORACLE] complete — {self.usage.usage.total_tokens} tokens, "
            f"${self.usage.usage.estimated_cost:.4f}, {elapsed_ms}ms"
        )
        return parse_response(response)

    def _complete(self, kwargs: dict[str, Any]) -> Any:
        caller = retry(
            retry=retry_if_exception_type(_TRANSIENT),
            stop=stop_after_attempt(max(1, self.config.retries)),
            wait=wait_exponential(min=1, max=10),
            reraise=True,
        )(litellm.completion)
        return caller(**kwargs)
