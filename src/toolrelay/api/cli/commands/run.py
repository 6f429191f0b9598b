"""Run command - Start and resume conversations."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from toolrelay.api.cli.commands._common import factory_from_context
from toolrelay.application.progress import ProgressUpdate
from toolrelay.core.domain.errors import (
    AgentLoopError,
    ConversationBusyError,
    ConversationClosedError,
    ConversationExistsError,
    ConversationNotFoundError,
    InvalidConversationIdError,
    StateConflictError,
)
from toolrelay.core.domain.models import ExecutionStatus, ToolResultSubmission

app = typer.Typer(help="Start and resume conversations")
console = Console()


def parse_result_option(value: str) -> ToolResultSubmission:
    """Parse ``CORRELATION_ID=JSON`` into a successful submission."""
    correlation_id, sep, payload = value.partition("=")
    if not sep or not correlation_id:
        raise typer.BadParameter(f"Expected CORRELATION_ID=JSON, got '{value}'")
    try:
        result_data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON for {correlation_id}: {e}") from e
    return ToolResultSubmission(correlation_id=correlation_id, result_data=result_data)


def parse_error_option(value: str) -> ToolResultSubmission:
    """Parse ``CORRELATION_ID=MESSAGE`` into a failed submission."""
    correlation_id, sep, message = value.partition("=")
    if not sep or not correlation_id:
        raise typer.BadParameter(f"Expected CORRELATION_ID=MESSAGE, got '{value}'")
    return ToolResultSubmission(
        correlation_id=correlation_id, is_error=True, error_message=message or None
    )


@app.command("start")
def start(
    ctx: typer.Context,
    message: str = typer.Argument(..., help="First user message"),
    conversation_id: Optional[str] = typer.Option(
        None, "--conversation", "-c", help="Conversation id (generated when omitted)"
    ),
):
    """Start a conversation.

    Examples:
        toolrelay run start "What is 17 * 23?"

        toolrelay --profile prod run start "Book a meeting" -c meeting-42
    """
    factory, profile = factory_from_context(ctx)
    executor = factory.create_executor(profile)
    console.print(f"[dim]Profile: {profile}[/dim]")

    print_summary(
        _execute(lambda: executor.stream_start_conversation(message, conversation_id))
    )


@app.command("resume")
def resume(
    ctx: typer.Context,
    conversation_id: str = typer.Argument(..., help="Conversation id"),
    results: list[str] = typer.Option(
        [], "--result", "-r", help="Tool result as CORRELATION_ID=JSON (repeatable)"
    ),
    errors: list[str] = typer.Option(
        [], "--error", "-e", help="Failed tool call as CORRELATION_ID=MESSAGE (repeatable)"
    ),
):
    """Deliver service tool results and continue a suspended conversation.

    Examples:
        toolrelay run resume abc-123 --result call_1='{"temperature": 21}'
    """
    submissions = [parse_result_option(v) for v in results]
    submissions.extend(parse_error_option(v) for v in errors)
    if not submissions:
        raise typer.BadParameter("Provide at least one --result or --error")

    factory, profile = factory_from_context(ctx)
    executor = factory.create_executor(profile)

    print_summary(
        _execute(lambda: executor.stream_submit_tool_results(conversation_id, submissions))
    )


def _execute(stream: Callable[[], AsyncIterator[ProgressUpdate]]) -> dict[str, Any]:
    """Consume a progress stream under a spinner and return the closing result summary."""

    async def consume() -> dict[str, Any]:
        summary: dict[str, Any] = {}
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("[>] Working...", total=None)
            async for update in stream():
                progress.update(task, description=f"[>] {update.message}")
                if update.event_type == "result":
                    summary = update.details
        return summary

    try:
        return asyncio.run(consume())
    except (
        ConversationBusyError,
        ConversationClosedError,
        ConversationExistsError,
        StateConflictError,
    ) as e:
        console.print(f"[red]Conflict:[/red] {e}")
        raise typer.Exit(2)
    except InvalidConversationIdError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)
    except ConversationNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except AgentLoopError as e:
        phase = e.state.phase.value if e.state else "unknown"
        console.print(f"[red]Execution failed ({type(e).__name__}, phase {phase}):[/red] {e}")
        raise typer.Exit(1)


def print_summary(summary: dict[str, Any]) -> None:
    """Render the result summary of a start or resume call."""
    interactions = summary["tool_interactions"]
    console.print(
        f"[bold]Conversation:[/bold] {summary['conversation_id']}  "
        f"[bold]Status:[/bold] {summary['status']}  "
        f"[dim](model calls {interactions['current']}/{interactions['max']}, "
        f"usage {summary['usage_units']})[/dim]"
    )

    status = ExecutionStatus(summary["status"])
    if status is ExecutionStatus.COMPLETED:
        output = summary["final_output"]
        if not isinstance(output, str):
            output = json.dumps(output, indent=2, ensure_ascii=False)
        console.print(Panel(output, title="Final output", border_style="green"))
    elif status is ExecutionStatus.SUSPENDED:
        table = Table(title="Pending tool requests")
        table.add_column("Correlation ID", style="cyan")
        table.add_column("Tool", style="magenta")
        table.add_column("Input", style="white")
        for request in summary["pending_tool_requests"]:
            table.add_row(
                request["correlation_id"],
                request["tool_name"],
                json.dumps(request["input_data"], ensure_ascii=False),
            )
        console.print(table)
        console.print(
            f"[dim]Resume with: toolrelay run resume {summary['conversation_id']} "
            f"--result CORRELATION_ID=JSON[/dim]"
        )
    else:
        console.print("[yellow]Waiting for results:[/yellow] " + ", ".join(summary["awaiting"]))
