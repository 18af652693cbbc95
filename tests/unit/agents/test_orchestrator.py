"""Unit tests for the refinement orchestrator."""

import pytest

from refineloop.core.errors import (
    ExecutionFailedError,
    InputValidationError,
    ProviderAuthenticationError,
    ProviderRateLimitError,
)
from refineloop.schemas.execution import StopReason
from refineloop.schemas.feedback import PARSE_FAILURE_SCORE

TASK = "Write a product description for a steel water bottle"
CRITERIA = ["Mentions insulation", "Under 80 words"]


class TestRefinementOrchestrator:
    """End-to-end loop behaviour with a scripted provider."""

    @pytest.mark.asyncio
    async def test_stops_when_threshold_reached(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.5), reply(0.9, passed=True)])
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=5, score_threshold=0.85)

        assert result.success is True
        assert result.reason == StopReason.THRESHOLD_REACHED
        assert result.iterations == 2
        assert result.output == "draft 2"
        assert result.final_score == 0.9
        assert [r.number for r in result.iteration_history] == [1, 2]

    @pytest.mark.asyncio
    async def test_never_exceeds_max_iterations(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.3), reply(0.4), reply(0.5), reply(0.6)])
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=3, score_threshold=0.85)

        assert result.success is False
        assert result.reason == StopReason.MAX_ITERATIONS
        assert result.iterations == 3
        assert [r.number for r in result.iteration_history] == [1, 2, 3]
        assert len(provider.generation_requests) == 3

    @pytest.mark.asyncio
    async def test_high_score_without_pass_does_not_stop(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.9, passed=False)] * 3)
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=3, score_threshold=0.7)

        assert result.reason == StopReason.MAX_ITERATIONS
        assert result.iterations == 3
        assert result.success is False

    @pytest.mark.asyncio
    async def test_stagnation_stops_loop(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(s) for s in (0.50, 0.51, 0.505, 0.509)])
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=10, score_threshold=0.85)

        assert result.reason == StopReason.STAGNATION
        assert result.iterations == 4

    @pytest.mark.asyncio
    async def test_early_termination(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.05), reply(0.05)])
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=10, score_threshold=0.85)

        assert result.reason == StopReason.EARLY_TERMINATION
        assert result.iterations == 2

    @pytest.mark.asyncio
    async def test_cancellation_between_iterations(self, provider_cls, build_orchestrator, reply):
        """Cancelled after iteration k records exactly k iterations."""
        provider = provider_cls([reply(0.3)] * 5)
        orchestrator = build_orchestrator(provider, include_stagnation=False)
        seen = []

        async def on_iteration(record):
            seen.append(record.number)

        async def should_cancel():
            return len(seen) >= 2

        result = await orchestrator.execute(
            TASK,
            CRITERIA,
            max_iterations=5,
            score_threshold=0.85,
            on_iteration=on_iteration,
            should_cancel=should_cancel,
        )

        assert result.reason == StopReason.CANCELLED
        assert result.success is False
        assert result.iterations == 2
        assert seen == [1, 2]
        assert len(provider.generation_requests) == 2

    @pytest.mark.asyncio
    async def test_cancellation_before_first_iteration(self, provider_cls, build_orchestrator):
        provider = provider_cls([])
        orchestrator = build_orchestrator(provider)

        async def should_cancel():
            return True

        result = await orchestrator.execute(
            TASK, CRITERIA, max_iterations=3, score_threshold=0.85, should_cancel=should_cancel
        )

        assert result.reason == StopReason.CANCELLED
        assert result.iterations == 0
        assert result.output == ""
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_cancellation_check_error_is_wrapped(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.3)] * 3)
        orchestrator = build_orchestrator(provider)
        lookup_error = RuntimeError("state store unavailable")
        checks = []

        async def should_cancel():
            checks.append(True)
            if len(checks) == 2:
                raise lookup_error
            return False

        with pytest.raises(ExecutionFailedError) as exc_info:
            await orchestrator.execute(
                TASK, CRITERIA, max_iterations=3, score_threshold=0.85,
                execution_id="exec-4", should_cancel=should_cancel,
            )

        assert exc_info.value.cause is lookup_error
        assert exc_info.value.iterations_completed == 1
        assert exc_info.value.execution_id == "exec-4"

    @pytest.mark.asyncio
    async def test_callback_error_does_not_abort_loop(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.4), reply(0.5), reply(0.9, passed=True)])
        orchestrator = build_orchestrator(provider)
        seen = []

        async def on_iteration(record):
            seen.append(record.number)
            if record.number == 2:
                raise ValueError("store rejected the record")

        result = await orchestrator.execute(
            TASK, CRITERIA, max_iterations=5, score_threshold=0.85, on_iteration=on_iteration
        )

        assert result.success is True
        assert result.iterations == 3
        assert seen == [1, 2, 3]
        assert [r.number for r in result.iteration_history] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_stage_failure_is_wrapped(self, provider_cls, build_orchestrator, reply):
        auth_error = ProviderAuthenticationError("bad key", provider="scripted")
        provider = provider_cls([reply(0.5), auth_error])
        orchestrator = build_orchestrator(provider)

        with pytest.raises(ExecutionFailedError) as exc_info:
            await orchestrator.execute(
                TASK, CRITERIA, max_iterations=5, score_threshold=0.85, execution_id="exec-9"
            )

        error = exc_info.value
        assert error.cause is auth_error
        assert error.iterations_completed == 1
        assert error.execution_id == "exec-9"
        assert error.code == "EXECUTION_FAILED"

    @pytest.mark.asyncio
    async def test_retryable_errors_are_retried_per_call(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls(
            [ProviderRateLimitError("429", provider="scripted"), reply(0.9, passed=True)]
        )
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=3, score_threshold=0.85)

        assert result.success is True
        assert result.iterations == 1
        assert len(provider.requests) == 3

    @pytest.mark.asyncio
    async def test_unparseable_evaluation_uses_fallback(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls(["I think it is fine", reply(0.9, passed=True)])
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=3, score_threshold=0.85)

        first = result.iteration_history[0].feedback
        assert first.passed is False
        assert first.score == PARSE_FAILURE_SCORE
        assert result.iterations == 2

    @pytest.mark.asyncio
    async def test_previous_feedback_reaches_generator(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls(
            [reply(0.4, issues=["No mention of insulation"]), reply(0.9, passed=True)]
        )
        orchestrator = build_orchestrator(provider)

        await orchestrator.execute(TASK, CRITERIA, max_iterations=3, score_threshold=0.85)

        first, second = provider.generation_requests
        assert "first iteration" in first.user_prompt
        assert "## Feedback from Iteration 1" in second.user_prompt
        assert "No mention of insulation" in second.user_prompt

    @pytest.mark.asyncio
    async def test_usage_is_summed(self, provider_cls, build_orchestrator, reply):
        provider = provider_cls([reply(0.5), reply(0.9, passed=True)])
        orchestrator = build_orchestrator(provider)

        result = await orchestrator.execute(TASK, CRITERIA, max_iterations=3, score_threshold=0.85)

        # two iterations, two calls each, 100 in / 50 out per call
        assert result.usage.input_tokens == 400
        assert result.usage.output_tokens == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "max_iterations, threshold, criteria",
        [(0, 0.8, CRITERIA), (3, 1.5, CRITERIA), (3, 0.8, [])],
    )
    async def test_invalid_limits(self, provider_cls, build_orchestrator, max_iterations, threshold, criteria):
        orchestrator = build_orchestrator(provider_cls([]))

        with pytest.raises(InputValidationError):
            await orchestrator.execute(TASK, criteria, max_iterations, threshold)
