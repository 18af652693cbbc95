"""RefineLoop CLI and entry points."""

import asyncio
import json
import logging
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table
import structlog

from .config import Settings, get_settings
from .container import open_container
from .core.errors import RefineLoopError
from .core.messaging import LocalJobQueue
from .persistence.repository import ExecutionRepository
from .schemas.execution import ExecutionResult

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="refineloop",
    help="Iterative generate/evaluate refinement with LLM completion providers",
)
console = Console()

_SECRET_FIELDS = {"anthropic_api_key", "openai_api_key", "url"}


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog from settings."""
    level = getattr(logging, settings.logging.level)
    logging.basicConfig(format="%(message)s", level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.logging.format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@app.callback()
def main() -> None:
    configure_logging(get_settings())


def _fail(error: RefineLoopError) -> None:
    console.print(f"[red]{error.code}[/red]: {error.message}")
    if error.details:
        console.print_json(json.dumps(error.details, default=str))
    raise typer.Exit(1)


def _request(
    task: str,
    criteria: list[str],
    max_iterations: Optional[int],
    threshold: Optional[float],
    mode: str,
    generator_model: Optional[str],
    evaluator_model: Optional[str],
) -> dict[str, Any]:
    settings = get_settings()
    return {
        "task": task,
        "criteria": criteria,
        "max_iterations": max_iterations or settings.limits.default_max_iterations,
        "score_threshold": (
            threshold if threshold is not None else settings.limits.default_score_threshold
        ),
        "mode": mode,
        "generator_model": generator_model or settings.llm.generator_model,
        "evaluator_model": evaluator_model or settings.llm.evaluator_model,
    }


def _result_table(result: ExecutionResult, show_history: bool) -> Table:
    table = Table(title="Execution Result")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Execution ID", result.execution_id)
    table.add_row("Success", "yes" if result.success else "no")
    table.add_row("Stop Reason", result.reason.value)
    table.add_row("Message", result.message or "")
    table.add_row("Iterations", str(result.iterations))
    table.add_row("Final Score", f"{result.final_score:.2f}")
    table.add_row("Duration", f"{result.total_duration_ms} ms")
    table.add_row("Tokens", str(result.usage.total_tokens))

    if show_history:
        for record in result.iteration_history:
            table.add_row(
                f"Iteration {record.number}",
                f"score={record.feedback.score:.2f} passed={record.feedback.passed} "
                f"issues={len(record.feedback.issues)}",
            )
    return table


@app.command()
def run(
    task: str = typer.Argument(..., help="Task to perform"),
    criterion: list[str] = typer.Option(..., "--criterion", "-c", help="Evaluation criterion (repeatable)"),
    max_iterations: Optional[int] = typer.Option(None, help="Iteration ceiling"),
    threshold: Optional[float] = typer.Option(None, help="Score threshold in [0, 1]"),
    generator_model: Optional[str] = typer.Option(None, help="Generator model"),
    evaluator_model: Optional[str] = typer.Option(None, help="Evaluator model"),
    history: bool = typer.Option(False, help="Show per-iteration scores"),
):
    """Run a refinement loop synchronously and print the result."""
    console.print("[bold blue]Starting execution[/bold blue]")
    request = _request(
        task, criterion, max_iterations, threshold, "sync", generator_model, evaluator_model
    )

    async def _run() -> ExecutionResult:
        async with open_container(get_settings()) as container:
            return await container.service.submit(request)

    try:
        result = asyncio.run(_run())
    except RefineLoopError as e:
        _fail(e)

    console.print(_result_table(result, history))
    console.print("\n[bold]Output:[/bold]")
    console.print(result.output)


@app.command()
def submit(
    task: str = typer.Argument(..., help="Task to perform"),
    criterion: list[str] = typer.Option(..., "--criterion", "-c", help="Evaluation criterion (repeatable)"),
    max_iterations: Optional[int] = typer.Option(None, help="Iteration ceiling"),
    threshold: Optional[float] = typer.Option(None, help="Score threshold in [0, 1]"),
    generator_model: Optional[str] = typer.Option(None, help="Generator model"),
    evaluator_model: Optional[str] = typer.Option(None, help="Evaluator model"),
):
    """Submit an execution for a worker to run."""
    request = _request(
        task, criterion, max_iterations, threshold, "async", generator_model, evaluator_model
    )

    async def _submit() -> dict[str, Any]:
        async with open_container(get_settings()) as container:
            accepted = await container.service.submit(request)
            console.print(f"[green]Submitted[/green] {accepted['execution_id']}")

            if isinstance(container.queue, LocalJobQueue):
                # No external workers can see an in-process queue
                console.print("[yellow]No RABBITMQ_URL set, running in this process[/yellow]")
                container.worker_pool.start()
                await container.queue.join()
                return await container.service.get_status(accepted["execution_id"])
            return accepted

    try:
        outcome = asyncio.run(_submit())
    except RefineLoopError as e:
        _fail(e)

    console.print_json(json.dumps(outcome, default=str))


@app.command()
def status(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    history: bool = typer.Option(False, help="Include iteration history"),
):
    """Show the status of an execution."""

    async def _status() -> dict[str, Any]:
        async with open_container(get_settings()) as container:
            return await container.service.get_status(execution_id, include_history=history)

    try:
        data = asyncio.run(_status())
    except RefineLoopError as e:
        _fail(e)

    table = Table(title=f"Execution {execution_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key in (
        "status",
        "current_iteration",
        "max_iterations",
        "current_score",
        "final_score",
        "stop_reason",
        "error_message",
        "source",
    ):
        value = data.get(key)
        table.add_row(key, "" if value is None else str(value))
    console.print(table)

    if history:
        console.print_json(json.dumps(data.get("iterations", []), default=str))


@app.command()
def cancel(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    reason: Optional[str] = typer.Option(None, help="Cancellation reason"),
):
    """Cancel a pending or running execution."""

    async def _cancel() -> dict[str, Any]:
        async with open_container(get_settings()) as container:
            return await container.service.cancel(execution_id, reason)

    try:
        outcome = asyncio.run(_cancel())
    except RefineLoopError as e:
        _fail(e)

    console.print(f"[green]{outcome['message']}[/green] (status: {outcome['status']})")


@app.command(name="list")
def list_executions(
    status: str = typer.Option("all", help="Status filter"),
    limit: int = typer.Option(20, help="Page size (1-100)"),
    offset: int = typer.Option(0, help="Page offset"),
    sort_by: str = typer.Option("created_at", help="created_at, updated_at or score"),
    sort_order: str = typer.Option("desc", help="asc or desc"),
):
    """List executions."""

    async def _list() -> dict[str, Any]:
        async with open_container(get_settings()) as container:
            return await container.service.list(status, limit, offset, sort_by, sort_order)

    try:
        page = asyncio.run(_list())
    except RefineLoopError as e:
        _fail(e)

    table = Table(title=f"Executions ({page['total']} total, from {page['source']})")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Task")

    for item in page["items"]:
        score = item.get("final_score")
        if score is None:
            score = item.get("current_score")
        table.add_row(
            item["id"],
            item["status"],
            str(item.get("current_iteration", 0)),
            "" if score is None else f"{score:.2f}",
            item["task"][:60],
        )
    console.print(table)
    if page["has_more"]:
        console.print(f"More results: --offset {offset + len(page['items'])}")


@app.command()
def stats():
    """Show execution statistics."""

    async def _stats() -> dict[str, Any]:
        async with open_container(get_settings()) as container:
            return await container.service.statistics()

    console.print_json(json.dumps(asyncio.run(_stats()), default=str))


@app.command()
def worker(
    concurrency: Optional[int] = typer.Option(None, help="Concurrent executions"),
):
    """Consume the execution queue until interrupted."""
    settings = get_settings()
    if not settings.rabbitmq.url:
        console.print("[red]RABBITMQ_URL is required for a standalone worker[/red]")
        raise typer.Exit(1)
    if concurrency is not None:
        settings.worker.concurrency = concurrency

    console.print("[bold blue]Starting worker[/bold blue]")
    console.print(f"Concurrency: {settings.worker.concurrency}")

    async def _work() -> None:
        async with open_container(settings) as container:
            await container.worker_pool.run_forever()

    try:
        asyncio.run(_work())
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")


@app.command(name="init-db")
def init_db():
    """Create the durable history tables."""
    settings = get_settings()
    if not settings.database.url:
        console.print("[red]DATABASE_URL is not set[/red]")
        raise typer.Exit(1)

    async def _init() -> None:
        repository = ExecutionRepository.from_settings(settings.database)
        try:
            await repository.create_schema()
        finally:
            await repository.close()

    asyncio.run(_init())
    console.print("[green]Database schema created[/green]")


def _mask(value: Any) -> str:
    text = "" if value is None else str(value)
    if not text:
        return "(not set)"
    return text[:4] + "****" if len(text) > 8 else "****"


@app.command()
def config():
    """Show current configuration."""
    settings = get_settings()

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for section, values in settings.model_dump().items():
        for name, value in values.items():
            shown = _mask(value) if name in _SECRET_FIELDS else str(value)
            table.add_row(f"{section}.{name}", shown)

    console.print(table)


if __name__ == "__main__":
    app()
