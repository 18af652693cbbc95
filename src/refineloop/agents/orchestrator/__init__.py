"""Orchestrator - drives the generate/evaluate refinement loop.

Each iteration:
1. Generator produces a candidate (previous feedback folded in)
2. Evaluator scores it and the reply is interpreted into Feedback
3. Stop conditions run over the full history
   - threshold reached -> success
   - max iterations, stagnation or early termination -> stop
   - otherwise the next iteration starts, unless cancellation was requested
"""

from .runner import RefinementOrchestrator
from .stop_conditions import (
    CompositeStopCondition,
    EarlyTerminationStopCondition,
    MaxIterationsStopCondition,
    StagnationStopCondition,
    StopCondition,
    StopContext,
    StopDecision,
    ThresholdStopCondition,
    create_default_stop_conditions,
    stop_conditions_from_settings,
)

__all__ = [
    "RefinementOrchestrator",
    "CompositeStopCondition",
    "EarlyTerminationStopCondition",
    "MaxIterationsStopCondition",
    "StagnationStopCondition",
    "StopCondition",
    "StopContext",
    "StopDecision",
    "ThresholdStopCondition",
    "create_default_stop_conditions",
    "stop_conditions_from_settings",
]
