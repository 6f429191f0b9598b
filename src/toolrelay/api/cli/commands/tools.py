"""Tools command - List and inspect available tools."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from toolrelay.api.cli.commands._common import factory_from_context

app = typer.Typer(help="Tool management")
console = Console()


def _load_tools(ctx: typer.Context) -> list[dict]:
    factory, profile = factory_from_context(ctx)
    agent = factory.create_agent(profile=profile)
    return asyncio.run(agent.list_tools())


@app.command("list")
def list_tools(ctx: typer.Context):
    """List the tools the model can see, with approval applied."""
    tools = _load_tools(ctx)

    table = Table(title="Available Tools")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Priority", justify="right")
    table.add_column("Approval", style="yellow")
    table.add_column("Description", style="white")

    for tool in tools:
        table.add_row(
            tool["name"],
            tool["kind"],
            str(tool["priority"]),
            "required" if tool["requires_approval"] else "",
            tool["description"],
        )

    console.print(table)


@app.command("inspect")
def inspect_tool(
    ctx: typer.Context,
    tool_name: str = typer.Argument(..., help="Tool name to inspect"),
):
    """Inspect tool details and parameters."""
    tool = next((t for t in _load_tools(ctx) if t["name"] == tool_name), None)

    if not tool:
        console.print(f"[red]Tool '{tool_name}' not found[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold cyan]{tool['name']}[/bold cyan] ({tool['kind']})")
    console.print(f"{tool['description']}\n")

    console.print("[bold]Parameters:[/bold]")
    console.print_json(data=tool["input_schema"])
