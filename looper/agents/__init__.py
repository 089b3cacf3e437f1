"""
Looper Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - The first turns of a repair transcript

Agents are stateless between runs. State lives in the workspace
and the history store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from looper.state import Diagnostic, FixType, Transcript, Turn


class AgentContext(BaseModel):
    """Shared context passed to every agent invocation."""
    unit: str
    fix_type: FixType
    working_dir: str
    branch: str = "main"
    diagnostics: list[Diagnostic] = []
    file_content: str | None = None
    history_warnings: str = ""
    extra: dict[str, Any] = {}


class BaseAgent(ABC):
    """
    Base class for all Looper agents.

    Subclasses define:
      - fix_type: the kind of failure they repair
      - system_prompt: personality + constraints (may use {unit}/{working_dir})
      - build_messages() — constructs the seed turns
    """

    fix_type: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def seed(self, context: AgentContext) -> Transcript:
        """Fresh transcript holding only this agent's seed turns."""
        return Transcript(turns=self.build_messages(context))

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[Turn]:
        """Build the seed turns for the repair conversation."""
        ...

    def _system_msg(self, context: AgentContext) -> Turn:
        prompt = self.system_prompt.format(unit=context.unit, working_dir=context.working_dir)
        if context.history_warnings:
            prompt += "\n" + context.history_warnings
        return Turn(role="system", content=prompt)

    def _user_msg(self, content: str) -> Turn:
        return Turn(role="user", content=content)
