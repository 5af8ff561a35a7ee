"""System prompt assembly for AI subtask execution.

The prompt has two segments. The static segment depends only on the workspace
(persona, brand summary, tool and output instructions) and is sent first with a
cache hint so parallel and chained runs in one workspace share the provider-side
prompt cache. The dynamic segment carries everything specific to one call.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from auto_kanban.orchestrator.models import (
    PreviousTaskResult,
    SubtaskOutcome,
    SubtaskSucceeded,
    WorkspaceSoul,
)

DEFAULT_PREVIOUS_RESULT_MAX_CHARS = 2_000
TRUNCATION_MARKER = "\n[...truncated]"

NO_PARENT_CONTEXT = "No parent context available."
USER_PROMPT = (
    "Complete the subtask described above. Use web_search and web_fetch if you need "
    "current information. Provide your response as markdown."
)

_BASE_INSTRUCTIONS = """You are completing a subtask as part of a larger project. \
Use the tools available to research if needed.

## Tools Available
- **web_search**: Search the web for current information
- **web_fetch**: Fetch and read content from specific URLs

## Output Format
Provide your complete response as well-formatted markdown. Be thorough but concise. \
Focus on actionable, specific content relevant to the parent issue context."""


@dataclass(frozen=True, slots=True)
class ParentContext:
    identifier: str
    title: str
    description: str | None


@dataclass(frozen=True, slots=True)
class SystemPrompt:
    """Cacheable static segment plus per-call dynamic segment."""

    static_part: str
    dynamic_part: str


def build_static_prompt(
    soul: WorkspaceSoul | None = None,
    brand_summary: str | None = None,
) -> str:
    """Render the workspace-level segment shared by every call in a workspace."""

    parts: list[str] = []
    if soul is not None:
        parts.append(
            f"You are {soul.name}. {soul.personality}\n\n"
            f"Tone: {soul.tone}\n"
            f"Response Length: {soul.response_length}",
        )
    if brand_summary and brand_summary.strip():
        parts.append(f"## Brand\n{brand_summary.strip()}")
    parts.append(_BASE_INSTRUCTIONS)
    return "\n\n".join(parts)


def build_system_prompt(  # noqa: PLR0913
    parent: ParentContext | None,
    subtask_title: str,
    subtask_description: str | None,
    ai_instructions: str | None,
    soul: WorkspaceSoul | None = None,
    brand_summary: str | None = None,
    previous_results: Sequence[PreviousTaskResult] = (),
) -> SystemPrompt:
    """Build the two-part system prompt for one subtask execution."""

    dynamic_parts: list[str] = []
    if parent is not None:
        parent_block = (
            f"**{parent.identifier}: {parent.title}**\n"
            f"{parent.description or 'No description provided.'}"
        )
    else:
        parent_block = NO_PARENT_CONTEXT
    dynamic_parts.append(f"## Parent Issue Context\n{parent_block}")

    if previous_results:
        entries = [
            f"### {result.identifier}: {result.title}\n{result.summary}"
            for result in previous_results
        ]
        dynamic_parts.append(
            "## Completed Prior Subtasks\n"
            "These subtasks of the same parent issue were completed before yours. "
            "Build on their results instead of repeating them.\n\n" + "\n\n".join(entries),
        )

    subtask_lines = [f"**Title:** {subtask_title}"]
    if subtask_description:
        subtask_lines.append(f"**Description:** {subtask_description}")
    if ai_instructions:
        subtask_lines.append(f"**Special Instructions:** {ai_instructions}")
    dynamic_parts.append("## Your Subtask\n" + "\n".join(subtask_lines))

    return SystemPrompt(
        static_part=build_static_prompt(soul=soul, brand_summary=brand_summary),
        dynamic_part="\n\n".join(dynamic_parts),
    )


def truncate_summary(text: str, max_chars: int = DEFAULT_PREVIOUS_RESULT_MAX_CHARS) -> str:
    """Cut a completed output down to the digest budget, marker included."""

    normalized = text.strip()
    if len(normalized) <= max_chars:
        return normalized
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return normalized[:keep].rstrip() + TRUNCATION_MARKER


def previous_results_from_outcomes(outcomes: Iterable[SubtaskOutcome]) -> list[PreviousTaskResult]:
    """Fold replayed chain outcomes into the digest list for the next subtask.

    Only succeeded outcomes contribute. Summaries were truncated when the
    outcome was recorded, so this fold is pure and safe to repeat on resume.
    """

    results: list[PreviousTaskResult] = []
    for outcome in outcomes:
        match outcome:
            case SubtaskSucceeded(identifier=identifier, title=title, summary=summary):
                results.append(
                    PreviousTaskResult(identifier=identifier, title=title, summary=summary),
                )
            case _:
                continue
    return results
