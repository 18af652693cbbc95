"""Prompt templates for the generation stage."""

from ...schemas.feedback import Feedback
from ..base import SECURITY_GUARDRAILS


def get_system_prompt() -> str:
    """Get the generator system prompt."""
    return f"""{SECURITY_GUARDRAILS}

You are an expert content generator focused on producing high-quality, well-structured output.

Your role is to:
1. Carefully analyze the task requirements
2. If feedback from previous iterations is provided, use it to improve your output
3. Produce content that is specific, detailed, and well-organized
4. Focus on quality over quantity
5. Address all identified issues from previous feedback

Guidelines:
- Be precise and accurate in your content
- Structure your response clearly
- If the task involves code, ensure it is correct and follows best practices
- If the task involves text, ensure it is well-written and coherent
- Always aim to exceed the evaluation criteria"""


def get_generation_prompt(
    task: str,
    previous_feedback: Feedback | None,
    iteration: int,
) -> str:
    """Generate the user prompt for one iteration.

    Feedback is only rendered from the second iteration on.
    """
    sections = [f"## Task\n{task}\n"]

    if previous_feedback is not None and iteration > 1:
        status = "PASSED" if previous_feedback.passed else "NEEDS IMPROVEMENT"
        sections.append(
            f"## Feedback from Iteration {iteration - 1}\n"
            f"**Score:** {previous_feedback.score:.0%}\n"
            f"**Status:** {status}\n"
        )

        if previous_feedback.issues:
            issues = "\n".join(
                f"{i}. {issue}" for i, issue in enumerate(previous_feedback.issues, start=1)
            )
            sections.append(f"**Issues to Address:**\n{issues}\n")

        if previous_feedback.suggestions:
            sections.append(f"**Suggestions for Improvement:**\n{previous_feedback.suggestions}\n")

        if previous_feedback.reasoning:
            sections.append(f"**Evaluator's Reasoning:**\n{previous_feedback.reasoning}\n")

        instructions = (
            f"## Instructions\n"
            f"This is iteration #{iteration}. "
            f"Generate an improved version that addresses ALL the issues identified above.\n"
        )
        if previous_feedback.issues:
            instructions += f"Focus especially on: {', '.join(previous_feedback.issues[:3])}\n"
        sections.append(instructions)
    else:
        sections.append(
            "## Instructions\n"
            "This is the first iteration. Generate your best initial version.\n"
            "Aim for high quality from the start.\n"
        )

    return "\n".join(sections)
