"""Approximate model pricing for cost ceilings and reporting."""

from ..schemas.execution import IterationRecord, TokenUsage

# USD per 1K tokens (input, output)
MODEL_COSTS_PER_1K_TOKENS: dict[str, tuple[float, float]] = {
    # Anthropic
    "claude-opus-4-20250514": (0.015, 0.075),
    "claude-sonnet-4-20250514": (0.003, 0.015),
    "claude-haiku-3-5-20241022": (0.0008, 0.004),
    # OpenAI
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4o": (0.005, 0.015),
    "gpt-4o-mini": (0.00015, 0.0006),
}

# Used for models missing from the table
DEFAULT_COST_PER_1K_TOKENS = MODEL_COSTS_PER_1K_TOKENS["claude-sonnet-4-20250514"]

ESTIMATED_GENERATOR_TOKENS = 2000
ESTIMATED_EVALUATOR_TOKENS = 1000


def model_cost(model: str, usage: TokenUsage) -> float:
    """Cost of the given usage on `model`."""
    input_rate, output_rate = MODEL_COSTS_PER_1K_TOKENS.get(model, DEFAULT_COST_PER_1K_TOKENS)
    return usage.input_tokens / 1000 * input_rate + usage.output_tokens / 1000 * output_rate


def estimate_cost(max_iterations: int, generator_model: str, evaluator_model: str) -> float:
    """Worst-case cost estimate for an execution running every iteration.

    Token estimates are split evenly between input and output.
    """
    generator = TokenUsage(
        input_tokens=ESTIMATED_GENERATOR_TOKENS // 2,
        output_tokens=ESTIMATED_GENERATOR_TOKENS // 2,
    )
    evaluator = TokenUsage(
        input_tokens=ESTIMATED_EVALUATOR_TOKENS // 2,
        output_tokens=ESTIMATED_EVALUATOR_TOKENS // 2,
    )
    per_iteration = model_cost(generator_model, generator) + model_cost(evaluator_model, evaluator)
    return round(per_iteration * max_iterations, 6)


def actual_cost(
    iterations: list[IterationRecord],
    generator_model: str,
    evaluator_model: str,
) -> float:
    """Cost computed from recorded token usage."""
    total = 0.0
    for record in iterations:
        if record.generator_usage is not None:
            total += model_cost(generator_model, record.generator_usage)
        if record.evaluator_usage is not None:
            total += model_cost(evaluator_model, record.evaluator_usage)
    return round(total, 6)
