"""Language-model backend implementations."""

from auto_kanban.orchestrator.backend.anthropic_backend import AnthropicBackend
from auto_kanban.orchestrator.backend.base import (
    BackendCallError,
    LlmBackend,
    LlmRequest,
    LlmResponse,
    LlmUsage,
    SystemSegment,
    ToolBudget,
)
from auto_kanban.orchestrator.backend.echo_backend import EchoBackend

__all__ = [
    "AnthropicBackend",
    "BackendCallError",
    "EchoBackend",
    "LlmBackend",
    "LlmRequest",
    "LlmResponse",
    "LlmUsage",
    "SystemSegment",
    "ToolBudget",
]
