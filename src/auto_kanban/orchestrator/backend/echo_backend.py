"""Deterministic local backend for development runs and tests."""

from __future__ import annotations

from auto_kanban.orchestrator.backend.base import LlmRequest, LlmResponse, LlmUsage

# Rough chars-per-token ratio used to fabricate plausible usage numbers.
_CHARS_PER_TOKEN = 4


class EchoBackend:
    """Answers with the subtask section of the prompt; no network access."""

    def __init__(self, *, prefix: str = "Echo response") -> None:
        self.prefix = prefix
        self.requests: list[LlmRequest] = []

    def complete(self, request: LlmRequest) -> LlmResponse:
        self.requests.append(request)
        dynamic = request.system_segments[-1].text if request.system_segments else ""
        marker = "## Your Subtask"
        subtask_section = dynamic[dynamic.find(marker) :] if marker in dynamic else dynamic
        text = f"# {self.prefix}\n\n{subtask_section.strip()}"

        cached = sum(
            len(segment.text) // _CHARS_PER_TOKEN
            for segment in request.system_segments
            if segment.cacheable
        )
        prompt_chars = sum(len(segment.text) for segment in request.system_segments) + len(
            request.user_prompt,
        )
        return LlmResponse(
            text=text,
            usage=LlmUsage(
                input_tokens=max(1, prompt_chars // _CHARS_PER_TOKEN),
                output_tokens=max(1, len(text) // _CHARS_PER_TOKEN),
                cache_read_input_tokens=cached,
            ),
        )
