"""Backend interface for language-model calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class BackendCallError(RuntimeError):
    """Model call failed; carries the provider status when one was returned."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class SystemSegment:
    """One system prompt block; ``cacheable`` requests provider-side caching."""

    text: str
    cacheable: bool = False


@dataclass(frozen=True, slots=True)
class ToolBudget:
    """Per-tool-kind use limits that bound agentic loops."""

    web_search: int = 3
    web_fetch: int = 3

    def as_dict(self) -> dict[str, int]:
        return {"web_search": self.web_search, "web_fetch": self.web_fetch}


@dataclass(frozen=True, slots=True)
class LlmRequest:
    """Inputs required to execute one model call."""

    model: str
    system_segments: tuple[SystemSegment, ...]
    user_prompt: str
    tool_budget: ToolBudget = field(default_factory=ToolBudget)
    max_tokens: int = 8_192


@dataclass(frozen=True, slots=True)
class LlmUsage:
    """Token usage split the way the provider bills it."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_payload(self) -> dict[str, int]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationInputTokens": self.cache_creation_input_tokens,
            "cacheReadInputTokens": self.cache_read_input_tokens,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LlmUsage:
        return cls(
            input_tokens=int(payload.get("inputTokens", 0)),
            output_tokens=int(payload.get("outputTokens", 0)),
            cache_creation_input_tokens=int(payload.get("cacheCreationInputTokens", 0)),
            cache_read_input_tokens=int(payload.get("cacheReadInputTokens", 0)),
        )


@dataclass(frozen=True, slots=True)
class LlmResponse:
    """Generated text plus usage."""

    text: str
    usage: LlmUsage


class LlmBackend(Protocol):
    """Protocol implemented by model backends."""

    def complete(self, request: LlmRequest) -> LlmResponse:
        """Run one model call and return its text and usage."""
