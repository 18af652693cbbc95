"""Refinement loop stages and orchestrator."""

from .evaluator import Evaluation, Evaluator, parse_feedback
from .generator import Generation, Generator
from .orchestrator import RefinementOrchestrator, create_default_stop_conditions

__all__ = [
    "Evaluation",
    "Evaluator",
    "parse_feedback",
    "Generation",
    "Generator",
    "RefinementOrchestrator",
    "create_default_stop_conditions",
]
