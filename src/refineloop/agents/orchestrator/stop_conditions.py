"""Composable stop conditions for the refinement loop.

Default evaluation order (first stop wins):
1. threshold - passed AND score >= threshold (success case)
2. max_iterations - hard ceiling
3. stagnation - no progress over a trailing window
4. early_termination - score below a critical floor
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from ...config import StopSettings
from ...schemas.execution import IterationRecord, StopReason

# Score deltas are compared after rounding so that 0.51 - 0.50 counts as
# exactly 0.01 rather than 0.010000000000000009.
SCORE_PRECISION = 9


@dataclass(frozen=True)
class StopContext:
    """Everything a stop condition may look at."""

    current_iteration: int
    max_iterations: int
    score_threshold: float
    iterations: list[IterationRecord]
    current_score: float
    current_passed: bool


@dataclass(frozen=True)
class StopDecision:
    """Outcome of evaluating stop conditions."""

    should_stop: bool
    reason: StopReason | None = None
    message: str | None = None


CONTINUE = StopDecision(should_stop=False)


class StopCondition(ABC):
    """A predicate that can end the loop."""

    name: str = "condition"

    @abstractmethod
    def evaluate(self, context: StopContext) -> StopDecision:
        ...


class ThresholdStopCondition(StopCondition):
    """Stop when the evaluator passed the candidate AND the score is high enough."""

    name = "threshold"

    def evaluate(self, context: StopContext) -> StopDecision:
        if context.current_passed and context.current_score >= context.score_threshold:
            return StopDecision(
                should_stop=True,
                reason=StopReason.THRESHOLD_REACHED,
                message=(
                    f"Score {context.current_score:.1%} reached threshold "
                    f"{context.score_threshold:.1%}"
                ),
            )
        return CONTINUE


class MaxIterationsStopCondition(StopCondition):
    name = "max_iterations"

    def evaluate(self, context: StopContext) -> StopDecision:
        if context.current_iteration >= context.max_iterations:
            return StopDecision(
                should_stop=True,
                reason=StopReason.MAX_ITERATIONS,
                message=f"Reached maximum of {context.max_iterations} iterations",
            )
        return CONTINUE


class StagnationStopCondition(StopCondition):
    """Stop when the trailing window shows no significant improvement.

    Looks at the last `window + 1` scores and compares each later score
    against the oldest one only, not against a running best.
    """

    name = "stagnation"

    def __init__(self, window: int = 3, improvement_threshold: float = 0.01):
        if window < 1:
            raise ValueError("window must be >= 1")
        self.window = window
        self.improvement_threshold = improvement_threshold

    def evaluate(self, context: StopContext) -> StopDecision:
        if len(context.iterations) < self.window + 1:
            return CONTINUE

        scores = [record.feedback.score for record in context.iterations[-(self.window + 1):]]
        baseline = scores[0]

        improved = any(
            round(score - baseline, SCORE_PRECISION) > self.improvement_threshold
            for score in scores[1:]
        )
        if improved:
            return CONTINUE

        rendered = ", ".join(f"{score:.1%}" for score in scores)
        return StopDecision(
            should_stop=True,
            reason=StopReason.STAGNATION,
            message=(
                f"No significant improvement in last {self.window} iterations. "
                f"Scores: [{rendered}]"
            ),
        )


class EarlyTerminationStopCondition(StopCondition):
    """Give up on hopeless executions after a minimum number of iterations."""

    name = "early_termination"

    def __init__(self, min_iterations: int = 2, score_floor: float = 0.1):
        self.min_iterations = min_iterations
        self.score_floor = score_floor

    def evaluate(self, context: StopContext) -> StopDecision:
        if context.current_iteration < self.min_iterations:
            return CONTINUE

        if context.current_score < self.score_floor:
            return StopDecision(
                should_stop=True,
                reason=StopReason.EARLY_TERMINATION,
                message=(
                    f"Score {context.current_score:.1%} is below minimum threshold "
                    f"{self.score_floor:.1%} after {context.current_iteration} iterations"
                ),
            )
        return CONTINUE


@dataclass
class CompositeStopCondition(StopCondition):
    """Ordered set of conditions; the first one that fires wins."""

    conditions: list[StopCondition] = field(default_factory=list)
    name: str = "composite"

    def evaluate(self, context: StopContext) -> StopDecision:
        for condition in self.conditions:
            decision = condition.evaluate(context)
            if decision.should_stop:
                return StopDecision(
                    should_stop=True,
                    reason=decision.reason,
                    message=f"[{condition.name}] {decision.message or ''}",
                )
        return CONTINUE

    def add_condition(self, condition: StopCondition) -> None:
        self.conditions.append(condition)

    def remove_condition(self, name: str) -> None:
        self.conditions = [c for c in self.conditions if c.name != name]

    @property
    def names(self) -> list[str]:
        return [c.name for c in self.conditions]


def create_default_stop_conditions(
    include_stagnation: bool = True,
    include_early_termination: bool = True,
    stagnation_window: int = 3,
    stagnation_improvement: float = 0.01,
    early_min_iterations: int = 2,
    early_score_floor: float = 0.1,
) -> CompositeStopCondition:
    """Create the default ordered stop conditions.

    Returns:
        Composite of threshold, max_iterations and (optionally) stagnation
        and early_termination
    """
    conditions: list[StopCondition] = [
        ThresholdStopCondition(),
        MaxIterationsStopCondition(),
    ]
    if include_stagnation:
        conditions.append(StagnationStopCondition(stagnation_window, stagnation_improvement))
    if include_early_termination:
        conditions.append(EarlyTerminationStopCondition(early_min_iterations, early_score_floor))
    return CompositeStopCondition(conditions)


def stop_conditions_from_settings(settings: StopSettings) -> CompositeStopCondition:
    return create_default_stop_conditions(
        include_stagnation=settings.stagnation_enabled,
        include_early_termination=settings.early_termination_enabled,
        stagnation_window=settings.stagnation_window,
        stagnation_improvement=settings.stagnation_improvement,
        early_min_iterations=settings.early_termination_min_iterations,
        early_score_floor=settings.early_termination_floor,
    )
