"""Chronoline CLI — Typer + Rich terminal interface.

Commands: serve, ask, models, config.
"""

from __future__ import annotations

import asyncio
import logging

import typer
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from chronoline import __version__
from chronoline.client import DEFAULT_BASE_URL, StreamState, TimelineStreamConsumer
from chronoline.cli_display import render_timeline
from chronoline.exceptions import ConfigError
from chronoline.keys import load_keys_env, missing_keys
from chronoline.prompts import prompt_names
from chronoline.providers.registry import config_dir, load_app_config, load_models
from chronoline.schemas.timeline import DocumentKind, TimelineDocument

console = Console()

app = typer.Typer(
    name="chronoline",
    help="Stream historical timelines from language models.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"chronoline {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logging.",
    ),
) -> None:
    """Chronoline — historical timelines, streamed as they are written."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )
    if not verbose:
        logging.getLogger("LiteLLM").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)


# ── Helpers ──────────────────────────────────────────────────────


def _load_registry():
    """Load the model registry, exit on error."""
    try:
        return load_models()
    except ConfigError as e:
        console.print(f"[red]Error loading models:[/red] {e}")
        raise typer.Exit(1) from None


def _load_config():
    """Load application defaults, exit on error."""
    try:
        return load_app_config()
    except ConfigError as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None


# ── Commands ─────────────────────────────────────────────────────


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (default from config)."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port (default from config)."),
) -> None:
    """Run the timeline HTTP server."""
    import uvicorn

    from chronoline.server import create_app

    load_keys_env()
    config = _load_config()
    registry = _load_registry()

    needed = [
        registry[key].api_key_env
        for key in (config.classifier_model, config.generator_model)
        if key in registry
    ]
    for name in missing_keys(needed):
        console.print(f"[yellow]Warning:[/yellow] {name} is not set")

    try:
        app_instance = create_app(config=config)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    bind_host = host or config.host
    bind_port = port or config.port
    console.print(Panel(
        f"[bold]URL:[/bold] http://{bind_host}:{bind_port}/timeline\n"
        f"[bold]Classifier:[/bold] {config.classifier_model}\n"
        f"[bold]Generator:[/bold] {config.generator_model}",
        title="[bold blue]Chronoline[/bold blue]",
        border_style="blue",
    ))
    uvicorn.run(app_instance, host=bind_host, port=bind_port, log_level="warning")


@app.command()
def ask(
    event: str = typer.Argument(..., help="Event to build a timeline for."),
    url: str = typer.Option(DEFAULT_BASE_URL, "--url", help="Chronoline server URL."),
) -> None:
    """Stream a timeline from a running server and render it live."""
    if not event.strip():
        console.print("[red]Event must not be empty.[/red]")
        raise typer.Exit(1)

    document, state, error = asyncio.run(_ask(event, url))
    if error:
        raise typer.Exit(1)
    if state is StreamState.IDLE or document.kind is DocumentKind.PENDING:
        raise typer.Exit(2)


async def _ask(event: str, url: str) -> tuple[TimelineDocument, StreamState, str | None]:
    with Live(console=console, refresh_per_second=12) as live:
        consumer: TimelineStreamConsumer

        def on_update(document: TimelineDocument, state: StreamState) -> None:
            live.update(render_timeline(document, state, title=event, error=consumer.error))

        consumer = TimelineStreamConsumer(url, on_update=on_update)
        task = asyncio.ensure_future(consumer.run(event))
        try:
            await asyncio.shield(task)
        except (KeyboardInterrupt, asyncio.CancelledError):
            consumer.cancel()
            await task
        live.update(
            render_timeline(consumer.document, consumer.state, title=event, error=consumer.error)
        )
    return consumer.document, consumer.state, consumer.error


@app.command()
def models() -> None:
    """Show all registered models as a table."""
    load_keys_env()
    registry = _load_registry()
    config = _load_config()

    table = Table(title="Registered Models", show_lines=True)
    table.add_column("Key", style="bold cyan")
    table.add_column("Display Name")
    table.add_column("Provider", style="dim")
    table.add_column("Model ID")
    table.add_column("Role")
    table.add_column("API Key", justify="center")

    missing = set(missing_keys([cfg.api_key_env for cfg in registry.values()]))
    for key, cfg in sorted(registry.items()):
        roles = []
        if key == config.classifier_model:
            roles.append("classifier")
        if key == config.generator_model:
            roles.append("generator")
        table.add_row(
            key,
            cfg.display_name,
            cfg.provider,
            cfg.model,
            ", ".join(roles),
            "[red]✗[/red]" if cfg.api_key_env in missing else "[green]✓[/green]",
        )

    console.print(table)
    console.print(f"\n[dim]{len(registry)} models registered[/dim]")


@app.command("config")
def show_config() -> None:
    """Show the active application defaults."""
    config = _load_config()

    table = Table(title=f"Config ({config_dir()})", show_header=False, show_lines=True)
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    for name, value in config.model_dump().items():
        table.add_row(name, repr(value) if name == "system_prompt" else str(value))
    table.add_row("prompts", ", ".join(prompt_names()))
    console.print(table)


# ── Entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    app()
