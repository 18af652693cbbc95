"""Generation stage.

Produces a candidate artifact for the task, folding in the previous
iteration's feedback from the second iteration on.
"""

from dataclasses import dataclass

import structlog

from ...schemas.execution import TokenUsage
from ...schemas.feedback import Feedback
from ..base import StageRunner
from .prompts import get_generation_prompt, get_system_prompt

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Generation:
    """Candidate produced by one generation call."""

    content: str
    model: str
    usage: TokenUsage | None = None


class Generator(StageRunner):
    """Generation stage bound to one provider and model."""

    stage_name = "generator"

    async def generate(
        self,
        task: str,
        previous_feedback: Feedback | None,
        iteration: int,
    ) -> Generation:
        """Generate a candidate.

        Args:
            task: The task to perform
            previous_feedback: Feedback on the previous candidate, if any
            iteration: 1-based iteration number

        Returns:
            Generated candidate with token usage
        """
        logger.debug("Generating candidate", iteration=iteration, model=self.config.model)

        response = await self._complete(
            get_system_prompt(),
            get_generation_prompt(task, previous_feedback, iteration),
        )
        return Generation(content=response.content, model=response.model, usage=response.usage)
