"""Evaluator - scores candidates and interprets free-text verdicts."""

from .agent import Evaluation, Evaluator
from .parser import parse_feedback

__all__ = ["Evaluation", "Evaluator", "parse_feedback"]
