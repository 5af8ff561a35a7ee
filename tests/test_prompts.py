from __future__ import annotations

import allure

from auto_kanban.orchestrator.models import (
    PreviousTaskResult,
    SubtaskFailed,
    SubtaskSucceeded,
    WorkspaceSoul,
)
from auto_kanban.orchestrator.prompts import (
    NO_PARENT_CONTEXT,
    TRUNCATION_MARKER,
    ParentContext,
    build_static_prompt,
    build_system_prompt,
    previous_results_from_outcomes,
    truncate_summary,
)

pytestmark = [
    allure.epic("AI Task Execution"),
    allure.feature("Prompt Builder"),
]

_PARENT = ParentContext(identifier="ACME-1", title="Launch campaign", description="Spring launch.")


def test_static_segment_renders_soul_and_brand() -> None:
    soul = WorkspaceSoul(
        name="Rocket",
        personality="Curious and precise.",
        tone="Friendly",
        response_length="Short",
    )

    static = build_static_prompt(soul=soul, brand_summary="  Acme sells rockets.  ")

    assert static.startswith("You are Rocket. Curious and precise.")
    assert "Tone: Friendly" in static
    assert "Response Length: Short" in static
    assert "## Brand\nAcme sells rockets." in static
    assert "## Tools Available" in static


def test_static_segment_is_identical_across_subtasks() -> None:
    first = build_system_prompt(_PARENT, "Research", None, None, brand_summary="Acme")
    second = build_system_prompt(_PARENT, "Draft", "Write copy", "Be bold", brand_summary="Acme")

    assert first.static_part == second.static_part
    assert first.dynamic_part != second.dynamic_part


def test_dynamic_segment_without_parent_uses_fallback() -> None:
    prompt = build_system_prompt(None, "Research", None, None)

    assert f"## Parent Issue Context\n{NO_PARENT_CONTEXT}" in prompt.dynamic_part
    assert "**Description:**" not in prompt.dynamic_part
    assert "**Special Instructions:**" not in prompt.dynamic_part


def test_dynamic_segment_lists_subtask_details() -> None:
    prompt = build_system_prompt(_PARENT, "Draft", "Write the copy", "Use British spelling")

    assert "**ACME-1: Launch campaign**\nSpring launch." in prompt.dynamic_part
    assert "**Title:** Draft" in prompt.dynamic_part
    assert "**Description:** Write the copy" in prompt.dynamic_part
    assert "**Special Instructions:** Use British spelling" in prompt.dynamic_part


def test_prior_subtasks_render_in_order_before_own_subtask() -> None:
    previous = [
        PreviousTaskResult(identifier="ACME-2", title="Research", summary="Found three angles."),
        PreviousTaskResult(identifier="ACME-3", title="Outline", summary="Five sections."),
    ]

    prompt = build_system_prompt(_PARENT, "Draft", None, None, previous_results=previous)
    dynamic = prompt.dynamic_part

    prior_index = dynamic.index("## Completed Prior Subtasks")
    assert dynamic.index("## Parent Issue Context") < prior_index
    assert prior_index < dynamic.index("## Your Subtask")
    assert dynamic.index("### ACME-2: Research") < dynamic.index("### ACME-3: Outline")
    assert "Found three angles." in dynamic


def test_prior_subtasks_section_absent_without_results() -> None:
    prompt = build_system_prompt(_PARENT, "Draft", None, None, previous_results=[])

    assert "Completed Prior Subtasks" not in prompt.dynamic_part


def test_truncate_summary_keeps_short_text() -> None:
    assert truncate_summary("  short output \n", 100) == "short output"


def test_truncate_summary_respects_budget_including_marker() -> None:
    text = "x" * 500

    truncated = truncate_summary(text, 120)

    assert len(truncated) <= 120
    assert truncated.endswith(TRUNCATION_MARKER)


def test_previous_results_only_include_succeeded_outcomes() -> None:
    outcomes = [
        SubtaskSucceeded(issue_id="a", identifier="ACME-2", title="Research", summary="R"),
        SubtaskFailed(issue_id="b", reason="Execution failed: boom"),
        SubtaskSucceeded(issue_id="c", identifier="ACME-4", title="Review", summary="V"),
    ]

    results = previous_results_from_outcomes(outcomes)

    assert results == [
        PreviousTaskResult(identifier="ACME-2", title="Research", summary="R"),
        PreviousTaskResult(identifier="ACME-4", title="Review", summary="V"),
    ]
