"""Execution engine: one bounded model call per subtask, no side effects."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from auto_kanban.orchestrator.backend import (
    LlmBackend,
    LlmRequest,
    LlmUsage,
    SystemSegment,
    ToolBudget,
)
from auto_kanban.orchestrator.prompts import USER_PROMPT, SystemPrompt


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Generated text with the usage it cost."""

    content: str
    usage: LlmUsage

    def to_payload(self) -> dict[str, Any]:
        return {"content": self.content, "usage": self.usage.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ExecutionResult:
        return cls(
            content=str(payload.get("content") or ""),
            usage=LlmUsage.from_payload(payload.get("usage") or {}),
        )


class ExecutionEngine:
    """Pure (prompt, tools) -> (text, usage) wrapper around a backend.

    Backend exceptions propagate unchanged; retry and persistence decisions
    belong to the orchestrators.
    """

    def __init__(
        self,
        *,
        backend: LlmBackend,
        model: str,
        tool_budget: ToolBudget | None = None,
        max_tokens: int = 8_192,
    ) -> None:
        self.backend = backend
        self.model = model
        self.tool_budget = tool_budget or ToolBudget()
        self.max_tokens = max_tokens

    def execute(self, prompt: SystemPrompt, *, user_prompt: str = USER_PROMPT) -> ExecutionResult:
        request = LlmRequest(
            model=self.model,
            system_segments=(
                SystemSegment(text=prompt.static_part, cacheable=True),
                SystemSegment(text=prompt.dynamic_part, cacheable=False),
            ),
            user_prompt=user_prompt,
            tool_budget=self.tool_budget,
            max_tokens=self.max_tokens,
        )
        response = self.backend.complete(request)
        return ExecutionResult(content=response.text, usage=response.usage)
