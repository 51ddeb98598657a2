"""Prompt generation for agent invocations.

Builds the Markdown task handed to the agent CLI for each stage. Every
prompt carries the issue description; later stages also carry the
upstream artifacts they depend on, and reruns carry the reviewer's
feedback.
"""

from typing import Optional

from src.rpi.runner.models import AgentInputs
from src.rpi.state.models import Stage

STAGE_INSTRUCTIONS = {
    Stage.RESEARCH: (
        "Research the codebase for the issue below. Identify the modules, "
        "data flow and constraints involved. Do not modify any files. "
        "Write the research document to standard output as Markdown."
    ),
    Stage.PLAN: (
        "Using the research below, write a step-by-step implementation plan "
        "for the issue. Name the files to change and the tests to add. Do "
        "not modify any files. Write the plan to standard output as Markdown."
    ),
    Stage.IMPLEMENT: (
        "Implement the plan below in the working tree. Follow the plan and "
        "the research; add or update tests. When done, write a short "
        "summary of the change to standard output."
    ),
}

QUERY_INSTRUCTIONS = (
    "Answer the question below about this feature's pipeline run. You are in "
    "read-only mode: do not modify any files. Write the answer to standard "
    "output as Markdown."
)


def build_stage_prompt(stage: Stage, inputs: AgentInputs) -> str:
    """Build the task for a pipeline stage.

    Raises:
        ValueError: If the stage is not executable.
    """
    if stage not in STAGE_INSTRUCTIONS:
        raise ValueError(f"Stage {stage.value} is not executed by the agent")

    sections = [
        f"# {stage.value.capitalize()}: {inputs.title}",
        "",
        STAGE_INSTRUCTIONS[stage],
        "",
        _issue_section(inputs),
    ]

    for upstream in (Stage.RESEARCH, Stage.PLAN):
        content = inputs.upstream.get(upstream)
        if content is not None:
            sections.extend(["", f"## {upstream.value.capitalize()}", "", content])

    feedback = _feedback_section(inputs.feedback)
    if feedback:
        sections.extend(["", feedback])

    return "\n".join(sections) + "\n"


def build_query_prompt(inputs: AgentInputs) -> str:
    """Build the task for a read-only ad-hoc question."""
    sections = [
        f"# Question: {inputs.title}",
        "",
        QUERY_INSTRUCTIONS,
        "",
        "## Question",
        "",
        inputs.question or "",
        "",
        _issue_section(inputs),
    ]
    for stage, content in inputs.upstream.items():
        sections.extend(["", f"## {stage.value.capitalize()}", "", content])
    return "\n".join(sections) + "\n"


def _issue_section(inputs: AgentInputs) -> str:
    lines = [
        "## Issue",
        "",
        f"**Feature:** {inputs.feature_id}",
        f"**Title:** {inputs.title}",
        "",
    ]
    lines.append(inputs.body.strip() if inputs.body.strip() else "_No description provided._")
    return "\n".join(lines)


def _feedback_section(feedback: Optional[str]) -> str:
    if not feedback or not feedback.strip():
        return ""
    return "\n".join([
        "## Reviewer feedback",
        "",
        "This stage is being rerun. Address the following feedback:",
        "",
        feedback.strip(),
    ])
