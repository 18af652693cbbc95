"""Job queue and lifecycle events.

Deferred (async mode) executions travel as ExecutionJob messages through a
job queue. Two interchangeable queues exist:
- LocalJobQueue: asyncio.Queue, for a single process
- RabbitMQJobQueue: durable RabbitMQ queue, for separate worker processes

Lifecycle events are published to a RabbitMQ topic exchange when a
MessageBroker is configured.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError
import structlog
from pydantic import BaseModel, Field

from ..config import DEFAULT_MODEL

logger = structlog.get_logger(__name__)


# Event routing keys
class Events:
    """Lifecycle event routing keys."""

    EXECUTION_SUBMITTED = "execution.submitted"
    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_CANCELLED = "execution.cancelled"
    ITERATION_COMPLETED = "iteration.completed"


class ExecutionJob(BaseModel):
    """Queue payload for one deferred execution."""

    execution_id: str
    task: str
    criteria: list[str]
    max_iterations: int
    score_threshold: float
    generator_model: str = DEFAULT_MODEL
    evaluator_model: str = DEFAULT_MODEL
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


JobHandler = Callable[[ExecutionJob], Awaitable[Any]]


class JobQueue(ABC):
    """Submission side and consumption side of the execution queue."""

    name = "queue"

    @abstractmethod
    async def enqueue(self, job: ExecutionJob) -> None:
        ...

    @abstractmethod
    async def consume(self, handler: JobHandler, concurrency: int) -> None:
        """Process jobs with at most `concurrency` in flight. Runs until cancelled."""
        ...

    async def close(self) -> None:
        return None

    async def stats(self) -> dict[str, Any]:
        return {"queue": self.name}


async def _run_handler(handler: JobHandler, job: ExecutionJob) -> None:
    try:
        await handler(job)
    except Exception as e:
        # Jobs are never re-queued; failures are recorded by the handler
        logger.exception("Job handler failed", execution_id=job.execution_id, error=str(e))


class LocalJobQueue(JobQueue):
    """In-process queue backed by asyncio.Queue."""

    name = "local"

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[ExecutionJob] = asyncio.Queue(maxsize=maxsize)
        self._active = 0
        self._processed = 0

    async def enqueue(self, job: ExecutionJob) -> None:
        await self._queue.put(job)
        logger.debug("Job enqueued", execution_id=job.execution_id, depth=self._queue.qsize())

    async def _consumer(self, handler: JobHandler) -> None:
        while True:
            job = await self._queue.get()
            self._active += 1
            try:
                await _run_handler(handler, job)
            finally:
                self._active -= 1
                self._processed += 1
                self._queue.task_done()

    async def consume(self, handler: JobHandler, concurrency: int) -> None:
        consumers = [asyncio.create_task(self._consumer(handler)) for _ in range(concurrency)]
        try:
            await asyncio.gather(*consumers)
        finally:
            for consumer in consumers:
                consumer.cancel()
            await asyncio.gather(*consumers, return_exceptions=True)

    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""
        await self._queue.join()

    async def stats(self) -> dict[str, Any]:
        return {
            "queue": self.name,
            "waiting": self._queue.qsize(),
            "active": self._active,
            "processed": self._processed,
        }


class MessageBroker:
    """RabbitMQ connection shared by the job queue and event publishing."""

    def __init__(self, url: str, exchange_name: str = "refineloop.events") -> None:
        self.url = url
        self.exchange_name = exchange_name
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None

    async def connect(self) -> None:
        """Establish connection to RabbitMQ."""
        if self._connection is not None:
            return

        self._connection = await aio_pika.connect_robust(self.url)
        self._channel = await self._connection.channel()

        self._exchange = await self._channel.declare_exchange(
            self.exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

        logger.info("Connected to RabbitMQ", exchange=self.exchange_name)

    async def disconnect(self) -> None:
        """Close connection to RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            logger.info("Disconnected from RabbitMQ")

    async def channel(self) -> AbstractChannel:
        if self._channel is None:
            await self.connect()
        return self._channel

    async def publish(
        self,
        routing_key: str,
        body: dict[str, Any],
        correlation_id: str | None = None,
    ) -> None:
        """Publish a message to the events exchange.

        Args:
            routing_key: Routing key for the message (e.g., "execution.completed")
            body: Message body as dictionary
            correlation_id: Optional correlation ID for tracking
        """
        if self._exchange is None:
            await self.connect()

        message = Message(
            body=json.dumps(body, default=str).encode(),
            content_type="application/json",
            correlation_id=correlation_id,
        )

        await self._exchange.publish(message, routing_key=routing_key)
        logger.debug("Published message", routing_key=routing_key, correlation_id=correlation_id)


class EventPublisher:
    """Publishes lifecycle events; a no-op when no broker is configured."""

    def __init__(self, broker: MessageBroker | None = None, source: str = "refineloop"):
        self.broker = broker
        self.source = source

    async def publish(self, routing_key: str, body: dict[str, Any]) -> None:
        """Publish an event.

        Automatically adds event_id (UUID), timestamp and source if not present.
        Publishing failures are logged and never reach the caller.
        """
        if self.broker is None:
            return

        if not body.get("event_id"):
            body["event_id"] = str(uuid.uuid4())
        if "timestamp" not in body:
            body["timestamp"] = datetime.now(timezone.utc).isoformat()
        if "source" not in body:
            body["source"] = self.source

        try:
            await self.broker.publish(routing_key, body, correlation_id=body.get("execution_id"))
        except (AMQPError, OSError) as e:
            logger.warning("Failed to publish event", routing_key=routing_key, error=str(e))


class RabbitMQJobQueue(JobQueue):
    """Durable RabbitMQ queue. Prefetch bounds in-flight jobs per consumer."""

    name = "rabbitmq"

    def __init__(self, broker: MessageBroker, queue_name: str = "refineloop.executions"):
        self.broker = broker
        self.queue_name = queue_name
        self._queue: AbstractQueue | None = None

    async def _declare(self) -> AbstractQueue:
        if self._queue is None:
            channel = await self.broker.channel()
            self._queue = await channel.declare_queue(self.queue_name, durable=True)
        return self._queue

    async def enqueue(self, job: ExecutionJob) -> None:
        await self._declare()
        channel = await self.broker.channel()
        message = Message(
            body=job.model_dump_json().encode(),
            content_type="application/json",
            correlation_id=job.execution_id,
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await channel.default_exchange.publish(message, routing_key=self.queue_name)
        logger.info("Job enqueued", execution_id=job.execution_id, queue=self.queue_name)

    async def consume(self, handler: JobHandler, concurrency: int) -> None:
        channel = await self.broker.channel()
        await channel.set_qos(prefetch_count=concurrency)
        queue = await self._declare()

        async def on_message(message: AbstractIncomingMessage) -> None:
            # Never requeue: a failed execution is terminal
            async with message.process(requeue=False):
                job = ExecutionJob.model_validate_json(message.body)
                logger.info("Received job", execution_id=job.execution_id)
                await _run_handler(handler, job)

        consumer_tag = await queue.consume(on_message)
        logger.info("Starting job consumer", queue=self.queue_name, concurrency=concurrency)
        try:
            await asyncio.Future()
        finally:
            await queue.cancel(consumer_tag)

    async def stats(self) -> dict[str, Any]:
        await self._declare()
        channel = await self.broker.channel()
        declared = await channel.declare_queue(self.queue_name, durable=True, passive=True)
        return {
            "queue": self.name,
            "name": self.queue_name,
            "waiting": declared.declaration_result.message_count,
            "consumers": declared.declaration_result.consumer_count,
        }
