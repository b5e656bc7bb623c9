"""Command line interface for Inspectra."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from inspectra.config import AppConfig
from inspectra.context import EngineContext
from inspectra.core.logging import configure_logging
from inspectra.db.connection import Database
from inspectra.notifications.webhooks import sign_payload

app = typer.Typer(
    name="inspectra",
    help="Inspectra - inspection scheduling, lifecycle and notification engine",
    no_args_is_help=True,
)
console = Console()


def _load_config() -> AppConfig:
    try:
        config = AppConfig.from_env()
    except KeyError as exc:
        console.print(f"[bold red]✗[/bold red] {exc.args[0]}")
        raise typer.Exit(code=1) from exc
    configure_logging(config.log_level, config.json_logs)
    return config


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables first (DANGEROUS)"),
):
    """Create database tables."""
    config = _load_config()

    async def _init():
        db = Database.from_config(config.db)
        try:
            await db.create_all(drop=drop)
        finally:
            await db.dispose()

    if drop:
        typer.confirm("Drop all Inspectra tables?", abort=True)
    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def generate():
    """Create the next pending instance for every active template."""
    config = _load_config()

    async def _generate():
        ctx = EngineContext.build(config)
        try:
            return await ctx.generator.generate_due_instances()
        finally:
            await ctx.aclose()

    result = asyncio.run(_generate())

    table = Table(title="Instance Generation")
    table.add_column("Generated", justify="right", style="green")
    table.add_column("Skipped", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_row(str(result.generated), str(result.skipped), str(result.errors))
    console.print(table)

    if result.errors:
        raise typer.Exit(code=1)


@app.command()
def reminders():
    """Run the reminder sweep, escalation and outbox drain once."""
    config = _load_config()

    async def _reminders():
        ctx = EngineContext.build(config)
        try:
            return await ctx.reminders.run()
        finally:
            await ctx.aclose()

    result = asyncio.run(_reminders())

    table = Table(title="Reminder Sweep")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Processed", str(result.processed))
    table.add_row("Queued", str(result.queued))
    table.add_row("Email sent / failed", f"{result.email_sent} / {result.email_failed}")
    table.add_row("Push sent / failed", f"{result.push_sent} / {result.push_failed}")
    table.add_row("Escalations", str(result.escalation_sent))
    for reminder_type, count in sorted(result.by_type.items()):
        table.add_row(f"  {reminder_type}", str(count))
    console.print(table)


@app.command("sign-webhook")
def sign_webhook(
    payload_file: Path = typer.Argument(..., exists=True, readable=True, help="JSON payload file"),
    secret: str | None = typer.Option(None, "--secret", envvar="WEBHOOK_SECRET", help="Shared secret"),
):
    """Print the signature header value for a webhook body."""
    if not secret:
        console.print("[bold red]✗[/bold red] WEBHOOK_SECRET is not set")
        raise typer.Exit(code=1)

    body = payload_file.read_bytes()
    typer.echo(sign_payload(body, secret))


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the HTTP API."""
    import uvicorn

    typer.echo(f"Starting Inspectra API on http://{host}:{port}")
    uvicorn.run(
        "inspectra.web.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        workers=1,
    )


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
