"""Sessions command - Inspect persisted conversation state."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from toolrelay.api.cli.commands._common import factory_from_context
from toolrelay.core.domain.errors import InvalidConversationIdError
from toolrelay.core.domain.identifiers import validate_conversation_id

app = typer.Typer(help="Conversation state inspection")
console = Console()


@app.command("list")
def list_sessions(ctx: typer.Context):
    """List persisted conversations."""
    factory, profile = factory_from_context(ctx)
    store = factory.create_state_store(factory.load_profile(profile))

    async def load():
        return [(cid, await store.read(cid)) for cid in await store.list_conversations()]

    table = Table(title="Conversations")
    table.add_column("Conversation ID", style="cyan")
    table.add_column("Phase", style="white")
    table.add_column("Model calls", justify="right")
    table.add_column("Awaiting", style="yellow")

    for conversation_id, state in asyncio.run(load()):
        if state is None:
            continue
        interactions = state.tool_interactions
        table.add_row(
            conversation_id,
            state.phase.value,
            f"{interactions.current}/{interactions.max}",
            ", ".join(state.pending_correlation_ids),
        )

    console.print(table)


@app.command("show")
def show_session(
    ctx: typer.Context,
    conversation_id: str = typer.Argument(..., help="Conversation ID"),
):
    """Show the full persisted state of a conversation."""
    factory, profile = factory_from_context(ctx)
    store = factory.create_state_store(factory.load_profile(profile))

    try:
        validate_conversation_id(conversation_id)
    except InvalidConversationIdError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    state = asyncio.run(store.read(conversation_id))

    if not state:
        console.print(f"[red]Conversation '{conversation_id}' not found[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold]Conversation:[/bold] {conversation_id}")
    console.print(f"[bold]Phase:[/bold] {state.phase.value}  [bold]Version:[/bold] {state.version}")
    console.print_json(data=state.to_dict())
