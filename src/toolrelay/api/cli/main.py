"""toolrelay CLI entry point."""

import typer
from rich.console import Console

from toolrelay.api.cli.commands import run, sessions, tools

app = typer.Typer(
    name="toolrelay",
    help="toolrelay - resumable tool-calling agent",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

# Register command groups
app.add_typer(run.app, name="run", help="Start and resume conversations")
app.add_typer(tools.app, name="tools", help="Tool management")
app.add_typer(sessions.app, name="sessions", help="Conversation state inspection")


@app.callback()
def main(
    ctx: typer.Context,
    profile: str = typer.Option("dev", "--profile", "-p", help="Configuration profile"),
    config_dir: str = typer.Option("configs", "--config-dir", help="Directory of profile YAML files"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """toolrelay agent CLI."""
    # Store global options in context for subcommands
    ctx.obj = {"profile": profile, "config_dir": config_dir, "debug": debug}


@app.command()
def version():
    """Show toolrelay version."""
    from toolrelay import __version__

    console.print(f"[bold blue]toolrelay[/bold blue] version [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
