"""Process-wide dependency wiring.

Every long-lived handle is built once in `open_container` and passed
explicitly to whatever needs it.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import structlog

from .agents.base import StageConfig
from .agents.evaluator import Evaluator
from .agents.generator import Generator
from .agents.orchestrator import (
    CompositeStopCondition,
    RefinementOrchestrator,
    stop_conditions_from_settings,
)
from .config import Settings
from .core.llm import CompletionProvider, build_provider
from .core.messaging import (
    EventPublisher,
    JobQueue,
    LocalJobQueue,
    MessageBroker,
    RabbitMQJobQueue,
)
from .core.rate_limit import SlidingWindowRateLimiter
from .core.retry import RetryPolicy
from .persistence.backends import RedisBackend, ResilientBackend
from .persistence.repository import ExecutionRepository
from .persistence.state_store import ExecutionStateStore
from .service import ExecutionService
from .worker import ExecutionRunner, WorkerPool

logger = structlog.get_logger(__name__)


@dataclass
class Container:
    """Handles shared by the service, the runner and the worker pool."""

    settings: Settings
    provider: CompletionProvider
    retry_policy: RetryPolicy
    stop_conditions: Callable[[], CompositeStopCondition]
    backend: ResilientBackend
    store: ExecutionStateStore
    repository: ExecutionRepository | None
    broker: MessageBroker | None
    queue: JobQueue
    events: EventPublisher
    rate_limiter: SlidingWindowRateLimiter
    runner: ExecutionRunner = field(init=False)
    service: ExecutionService = field(init=False)
    worker_pool: WorkerPool = field(init=False)

    def build_orchestrator(self, generator_model: str, evaluator_model: str) -> RefinementOrchestrator:
        """Fresh orchestrator with stages bound to the requested models."""
        llm = self.settings.llm
        generator = Generator(
            self.provider,
            StageConfig(
                model=generator_model,
                max_tokens=llm.generator_max_tokens,
                temperature=llm.generator_temperature,
            ),
            self.retry_policy,
        )
        evaluator = Evaluator(
            self.provider,
            StageConfig(
                model=evaluator_model,
                max_tokens=llm.evaluator_max_tokens,
                temperature=llm.evaluator_temperature,
            ),
            self.retry_policy,
        )
        return RefinementOrchestrator(generator, evaluator, self.stop_conditions())


async def build_container(
    settings: Settings,
    provider: CompletionProvider | None = None,
) -> Container:
    """Construct and connect every handle.

    Args:
        settings: Application settings
        provider: Completion provider override; built from settings when omitted
    """
    provider = provider or build_provider(settings.llm)
    retry_policy = RetryPolicy.from_settings(settings.retry)

    primary = RedisBackend.from_url(settings.redis.url) if settings.redis.url else None
    backend = ResilientBackend(
        primary,
        max_reconnect_attempts=settings.redis.max_reconnect_attempts,
    )
    await backend.connect()
    store = ExecutionStateStore(
        backend,
        ttl_seconds=settings.redis.state_ttl_seconds,
        key_prefix=settings.redis.key_prefix,
    )

    repository = None
    if settings.database.url:
        repository = ExecutionRepository.from_settings(settings.database)

    broker = None
    queue: JobQueue
    if settings.rabbitmq.url:
        broker = MessageBroker(settings.rabbitmq.url, settings.rabbitmq.exchange_name)
        await broker.connect()
        queue = RabbitMQJobQueue(broker, settings.rabbitmq.queue_name)
    else:
        queue = LocalJobQueue()
    events = EventPublisher(broker)

    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.worker.rate_limit_requests,
        window_seconds=settings.worker.rate_limit_window_seconds,
    )

    # runner, service and pool are attached once the orchestrator factory exists
    container = Container(
        settings=settings,
        provider=provider,
        retry_policy=retry_policy,
        stop_conditions=lambda: stop_conditions_from_settings(settings.stop),
        backend=backend,
        store=store,
        repository=repository,
        broker=broker,
        queue=queue,
        events=events,
        rate_limiter=rate_limiter,
    )
    container.runner = ExecutionRunner(store, container.build_orchestrator, repository, events)
    container.service = ExecutionService(
        settings, store, container.runner, queue, rate_limiter, repository, events
    )
    container.worker_pool = WorkerPool(queue, container.runner, settings.worker.concurrency)

    logger.info(
        "Container ready",
        provider=provider.name,
        state_backend=backend.name,
        database=repository is not None,
        queue=queue.name,
    )
    return container


async def close_container(container: Container) -> None:
    await container.worker_pool.stop()
    await container.queue.close()
    if container.broker is not None:
        await container.broker.disconnect()
    if container.repository is not None:
        await container.repository.close()
    await container.backend.close()


@asynccontextmanager
async def open_container(
    settings: Settings,
    provider: CompletionProvider | None = None,
) -> AsyncIterator[Container]:
    """Build a container and close its handles on exit."""
    container = await build_container(settings, provider)
    try:
        yield container
    finally:
        await close_container(container)
