"""Pytest configuration and fixtures."""

import json
from typing import Callable

import pytest

from refineloop.agents.base import StageConfig
from refineloop.agents.evaluator import Evaluator
from refineloop.agents.generator import Generator
from refineloop.agents.orchestrator import RefinementOrchestrator, create_default_stop_conditions
from refineloop.config import Settings
from refineloop.core.llm import CompletionProvider, CompletionRequest, CompletionResponse
from refineloop.core.messaging import EventPublisher, LocalJobQueue
from refineloop.core.rate_limit import SlidingWindowRateLimiter
from refineloop.core.retry import RetryPolicy
from refineloop.persistence.backends import InMemoryBackend
from refineloop.persistence.state_store import ExecutionStateStore
from refineloop.schemas.execution import IterationRecord, TokenUsage
from refineloop.schemas.feedback import Feedback
from refineloop.service import ExecutionService
from refineloop.worker import ExecutionRunner

MODEL = "claude-sonnet-4-20250514"


def feedback_json(
    score: float,
    passed: bool = False,
    issues: list[str] | None = None,
    suggestions: str = "Tighten the wording",
) -> str:
    """Evaluator reply in the expected JSON shape."""
    return json.dumps(
        {
            "passed": passed,
            "score": score,
            "issues": issues if issues is not None else ["Too vague"],
            "suggestions": suggestions,
            "reasoning": "Checked every criterion",
        }
    )


def make_record(number: int, score: float, passed: bool = False) -> IterationRecord:
    return IterationRecord(
        number=number,
        output=f"candidate {number}",
        feedback=Feedback(passed=passed, score=score, issues=[], suggestions=""),
        duration_ms=5,
    )


class ScriptedProvider(CompletionProvider):
    """Completion provider replaying canned replies.

    Generation and evaluation requests are told apart by the evaluation
    prompt layout. An Exception in a script is raised instead of returned.
    """

    def __init__(
        self,
        evaluations: list[str | Exception],
        generations: list[str | Exception] | None = None,
    ):
        self.evaluations = list(evaluations)
        self.generations = list(generations) if generations is not None else None
        self.requests: list[CompletionRequest] = []
        self._generated = 0

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def generation_requests(self) -> list[CompletionRequest]:
        return [r for r in self.requests if "## Content to Evaluate" not in r.user_prompt]

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if "## Content to Evaluate" in request.user_prompt:
            reply = self.evaluations.pop(0)
        else:
            self._generated += 1
            if self.generations is None:
                reply = f"draft {self._generated}"
            else:
                reply = self.generations.pop(0)

        if isinstance(reply, Exception):
            raise reply
        return CompletionResponse(
            content=reply,
            model=request.model,
            usage=TokenUsage(input_tokens=100, output_tokens=50),
            stop_reason="end_turn",
        )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without real waiting."""
    return RetryPolicy(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, jitter=False)


@pytest.fixture
def build_orchestrator(fast_retry) -> Callable[..., RefinementOrchestrator]:
    """Factory for orchestrators bound to a ScriptedProvider."""

    def _build(provider: CompletionProvider, **stop_options) -> RefinementOrchestrator:
        generator = Generator(provider, StageConfig(model=MODEL, max_tokens=1024), fast_retry)
        evaluator = Evaluator(provider, StageConfig(model=MODEL, max_tokens=512), fast_retry)
        return RefinementOrchestrator(
            generator, evaluator, create_default_stop_conditions(**stop_options)
        )

    return _build


@pytest.fixture
def reply() -> Callable[..., str]:
    """Builds evaluator JSON replies."""
    return feedback_json


@pytest.fixture
def record() -> Callable[..., IterationRecord]:
    """Builds iteration records with a given score."""
    return make_record


@pytest.fixture
def provider_cls() -> type[ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture
def make_service(build_orchestrator):
    """Factory wiring an ExecutionService over in-memory components."""

    def _make(
        provider: CompletionProvider,
        repository=None,
        settings: Settings | None = None,
        rate_limit: int = 100,
        events: EventPublisher | None = None,
        **stop_options,
    ) -> ExecutionService:
        settings = settings or Settings()
        store = ExecutionStateStore(InMemoryBackend())
        runner = ExecutionRunner(
            store,
            lambda generator_model, evaluator_model: build_orchestrator(provider, **stop_options),
            repository,
            events,
        )
        return ExecutionService(
            settings,
            store,
            runner,
            LocalJobQueue(),
            SlidingWindowRateLimiter(max_requests=rate_limit, window_seconds=60),
            repository,
            events,
        )

    return _make
