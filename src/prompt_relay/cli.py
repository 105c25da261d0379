"""Command-line interface: run the server and seed accounts, tokens and prompts."""

from __future__ import annotations

import asyncio
import atexit
import json
import sys
from datetime import timedelta
from typing import Any, List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .db import ensure_schema, reset_database_state
from .http import build_http_app
from .repository import AccountRepository, PromptRepository

# aiosqlite uses background threads that can block interpreter shutdown.
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and dispose the engine before returning."""
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


app = typer.Typer(help="Developer utilities for the prompt relay service.", invoke_without_command=True)


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-http`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_http(host=None, port=None)


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Run the push stream and tool-call endpoints over HTTP."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port

    from . import rich_logger

    rich_logger.display_startup_banner(settings, resolved_host, resolved_port)

    app_instance = build_http_app(settings)
    # Single process: the connection registry lives in this process's memory.
    uvicorn.run(app_instance, host=resolved_host, port=resolved_port, log_level="info")


@app.command("migrate")
def migrate() -> None:
    """Create database schema from SQLModel definitions."""
    settings = get_settings()
    with console.status("Creating database schema from models..."):
        _run_async(ensure_schema(settings))
    console.print("[green]✓ Database schema created from model definitions![/]")


@app.command("create-user")
def create_user(
    email: str = typer.Argument(..., help="Login email, stored lower-cased."),
    name: Optional[str] = typer.Option(None, help="Display name."),
    admin: bool = typer.Option(False, "--admin", help="Grant the ADMIN role (connection stats access)."),
) -> None:
    """Create a user together with their personal space."""
    settings = get_settings()

    async def _create() -> tuple[Any, Any]:
        await ensure_schema(settings)
        return await AccountRepository().create_user(email, name=name, role="ADMIN" if admin else "USER")

    user, space = _run_async(_create())
    console.print(f"[green]Created user[/] {user.email} [dim]({user.role})[/]")
    console.print(f"  user id:  [bold]{user.id}[/]")
    console.print(f"  space id: [bold]{space.id}[/]")


@app.command("issue-token")
def issue_token(
    user_id: str = typer.Argument(..., help="User id printed by create-user."),
    ttl_days: Optional[int] = typer.Option(None, "--ttl-days", min=1, help="Expire after N days; never by default."),
) -> None:
    """Issue a bearer access token for a user."""
    settings = get_settings()

    async def _issue() -> Any:
        await ensure_schema(settings)
        accounts = AccountRepository()
        if await accounts.get_user(user_id) is None:
            return None
        ttl = timedelta(days=ttl_days) if ttl_days else None
        return await accounts.issue_access_token(user_id, ttl=ttl)

    token = _run_async(_issue())
    if token is None:
        console.print(f"[red]Unknown user:[/] {user_id}")
        raise typer.Exit(code=1)
    expires = token.access_token_expires_at.isoformat() if token.access_token_expires_at else "never"
    console.print(f"[green]Token issued[/] [dim](expires: {expires})[/]")
    typer.echo(token.access_token)


@app.command("add-prompt")
def add_prompt(
    user_id: str = typer.Argument(..., help="Owner of the prompt."),
    title: str = typer.Argument(...),
    content: str = typer.Argument(...),
    description: str = typer.Option("", help="Short description shown in listings."),
    tag: Optional[List[str]] = typer.Option(None, "--tag", help="Tag; repeat for several."),
) -> None:
    """Add a prompt to a user's personal space."""
    settings = get_settings()

    async def _add() -> Any:
        await ensure_schema(settings)
        space = await AccountRepository().get_personal_space(user_id)
        if space is None:
            return None
        return await PromptRepository().create_prompt(
            space_id=space.id,
            created_by=user_id,
            title=title,
            content=content,
            description=description,
            tags=tag or (),
        )

    prompt = _run_async(_add())
    if prompt is None:
        console.print(f"[red]No personal space for user:[/] {user_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Prompt created[/] {prompt.id}")


@app.command("list-prompts")
def list_prompts(
    user_id: str = typer.Argument(..., help="Owner whose personal space is listed."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """List the prompts in a user's personal space."""
    settings = get_settings()

    async def _collect() -> Optional[list[dict[str, Any]]]:
        await ensure_schema(settings)
        space = await AccountRepository().get_personal_space(user_id)
        if space is None:
            return None
        return await PromptRepository().list_prompt_briefs(space.id)

    rows = _run_async(_collect())
    if rows is None:
        console.print(f"[red]No personal space for user:[/] {user_id}")
        raise typer.Exit(code=1)

    if json_output:
        json.dump(rows, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return

    table = Table(title="Prompts", show_lines=False)
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Description")
    table.add_column("Tags")
    for row in rows:
        table.add_row(row["id"], row["title"], row["description"] or "", ", ".join(row["tags"]))
    console.print(table)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    app()
