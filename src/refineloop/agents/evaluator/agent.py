"""Evaluation stage.

Scores a candidate against the criteria. The reply goes through the
response interpreter, so parse problems never escape this stage.
"""

from dataclasses import dataclass

import structlog

from ...schemas.execution import TokenUsage
from ...schemas.feedback import Feedback
from ..base import StageRunner
from .parser import parse_feedback
from .prompts import get_evaluation_prompt, get_system_prompt

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Evaluation:
    """Verdict produced by one evaluation call."""

    feedback: Feedback
    model: str
    usage: TokenUsage | None = None


class Evaluator(StageRunner):
    """Evaluation stage bound to one provider and model."""

    stage_name = "evaluator"

    async def evaluate(self, candidate: str, criteria: list[str], task: str) -> Evaluation:
        """Evaluate a candidate against the criteria.

        Args:
            candidate: Generated content
            criteria: Evaluation criteria, in order
            task: Original task description

        Returns:
            Parsed feedback with token usage
        """
        response = await self._complete(
            get_system_prompt(),
            get_evaluation_prompt(task, criteria, candidate),
        )
        feedback = parse_feedback(response.content)

        logger.debug(
            "Candidate evaluated",
            score=feedback.score,
            passed=feedback.passed,
            issues=len(feedback.issues),
        )
        return Evaluation(feedback=feedback, model=response.model, usage=response.usage)
