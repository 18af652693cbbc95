"""Evaluator feedback schema."""

from pydantic import BaseModel, ConfigDict, Field


class Feedback(BaseModel):
    """Structured verdict produced by the evaluation stage.

    `passed` and `score` are independent signals; nothing here
    cross-validates them.
    """

    model_config = ConfigDict(frozen=True)

    passed: bool = Field(..., strict=True, description="Whether the content passed evaluation")
    score: float = Field(..., ge=0.0, le=1.0, strict=True, description="Quality score from 0 to 1")
    issues: list[str] = Field(..., description="Identified issues, most important first")
    suggestions: str = Field(..., description="Concrete suggestions for improvement")
    reasoning: str | None = Field(None, description="Explanation of the evaluation")


PARSE_FAILURE_SCORE = 0.3


def fallback_feedback() -> Feedback:
    """Feedback used when the evaluator reply cannot be interpreted."""
    return Feedback(
        passed=False,
        score=PARSE_FAILURE_SCORE,
        issues=[
            "Evaluation response could not be parsed",
            "The evaluator did not return valid JSON feedback",
        ],
        suggestions=(
            "The system will retry the evaluation. "
            "If this persists, the execution may need manual review."
        ),
        reasoning=(
            "Parse error occurred while processing the evaluator response. "
            "This is a system issue, not a reflection of the content quality."
        ),
    )
