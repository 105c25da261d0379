"""Rich console panels for tool-call requests and the server startup banner.

Structured logs go through structlog; these panels are an optional, human
friendly view of the same traffic (``RPC_LOG_ENABLED``).
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from rich import box
from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

console = Console(stderr=True, soft_wrap=True)


@dataclass
class RpcCallContext:
    """One tool-call request as seen by the dispatcher."""

    method: str
    params: dict[str, Any]
    request_id: Any = None
    user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    outcome: str = "ok"  # ok | protocol_error | failed
    frames: int = 0
    error: Optional[str] = None
    _created_at: datetime = field(default_factory=datetime.now)

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def timestamp(self) -> str:
        return self._created_at.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

    def finish(self, outcome: str, *, error: Optional[str] = None) -> None:
        self.end_time = time.perf_counter()
        self.outcome = outcome
        self.error = error


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    """Format data as JSON with truncation."""
    json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n... (truncated)"
    return json_str


def _create_info_table(ctx: RpcCallContext) -> Table:
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Key", style="bold bright_yellow", width=12)
    table.add_column("Value", style="white", overflow="fold")

    table.add_row("Method", f"[bold bright_green]{escape(ctx.method)}[/bold bright_green]")
    table.add_row("Request id", escape(repr(ctx.request_id)))
    table.add_row("Timestamp", f"[dim]{ctx.timestamp}[/dim]")
    if ctx.user_id:
        table.add_row("User", f"[bright_magenta]{escape(ctx.user_id)}[/bright_magenta]")
    if ctx.tenant_id:
        table.add_row("Space", f"[bright_cyan]{escape(ctx.tenant_id)}[/bright_cyan]")

    if ctx.duration_ms < 100:
        duration_style = "bold green"
    elif ctx.duration_ms < 1000:
        duration_style = "bold yellow"
    else:
        duration_style = "bold red"
    table.add_row("Duration", f"[{duration_style}]{ctx.duration_ms:.2f}ms[/{duration_style}]")
    table.add_row("Frames", str(ctx.frames))

    if ctx.outcome == "ok":
        table.add_row("Status", "[bold bright_green]OK[/bold bright_green]")
    elif ctx.outcome == "protocol_error":
        table.add_row("Status", "[bold yellow]PROTOCOL ERROR[/bold yellow]")
    else:
        table.add_row("Status", "[bold bright_red]FAILED[/bold bright_red]")
    if ctx.error:
        table.add_row("Error", f"[red]{escape(ctx.error)}[/red]")
    return table


def build_rpc_call_panel(ctx: RpcCallContext) -> Panel:
    parts: list[Any] = [_create_info_table(ctx)]
    if ctx.params:
        parts.append(
            Syntax(_safe_json_format(ctx.params), "json", theme="monokai", word_wrap=True, background_color="default")
        )
    border = {"ok": "green", "protocol_error": "yellow"}.get(ctx.outcome, "red")
    return Panel(
        Group(*parts),
        title=f"[bold]mcp[/bold] {escape(ctx.method)}",
        border_style=border,
        box=box.ROUNDED,
        padding=(0, 1),
    )


def log_rpc_call(ctx: RpcCallContext) -> None:
    console.print(build_rpc_call_panel(ctx))


def display_startup_banner(settings: Any, host: str, port: int) -> None:
    """Print endpoints and the effective push/tool-call configuration."""
    console.print()
    console.print(Text("prompt-relay", style="bold bright_cyan"))

    table = Table(
        box=box.ROUNDED,
        border_style="bright_blue",
        show_header=True,
        header_style="bold bright_white on bright_blue",
        title="[bold bright_yellow]Server Configuration[/bold bright_yellow]",
        padding=(0, 1),
    )
    table.add_column("Setting", style="bold bright_cyan", width=18)
    table.add_column("Value", style="white", overflow="fold")

    base = f"http://{host}:{port}"
    table.add_row("Environment", f"[bold bright_green]{settings.environment}[/bold bright_green]")
    table.add_row("Push stream", f"[bold bright_magenta]{base}{settings.http.sse_path}[/bold bright_magenta]")
    table.add_row("Tool calls", f"[bold bright_magenta]{base}{settings.http.mcp_path}[/bold bright_magenta]")
    table.add_row("Database", f"[dim]{settings.database.url}[/dim]")
    table.add_row("Heartbeat", f"{settings.sse.heartbeat_interval_seconds:g}s")
    table.add_row("Max pending", str(settings.sse.max_pending_frames or "unbounded"))
    table.add_row("Protocol", f"{settings.mcp.protocol_version} ({settings.mcp.server_name} {settings.mcp.server_version})")
    table.add_row(
        "RPC panels",
        "[bold bright_green]ENABLED[/bold bright_green]" if settings.rpc_log_enabled else "[dim]disabled[/dim]",
    )
    console.print(table)
    console.print()


def log_http_request(method: str, path: str, status_code: int, duration_ms: int, client: str) -> None:
    title = Text.assemble(
        (method, "bold blue"),
        "  ",
        (path, "bold white"),
        "  ",
        (f"{status_code}", "bold green" if 200 <= status_code < 400 else "bold red"),
        "  ",
        (f"{duration_ms}ms", "bold yellow"),
    )
    console.print(Panel(Text.assemble(("client: ", "cyan"), (client, "white")), title=title, border_style="dim"))
