"""latex-service CLI.

Commands:
    latex-service serve     — Run the HTTP service under uvicorn
    latex-service health    — Check latexmk / git / pdftoppm and host resources
    latex-service sweep     — Remove orphaned workspaces from the work root
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from latex_service.config import settings
from latex_service.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="latex-service",
    help="LaTeX compilation sandbox service",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


# ── latex-service serve ───────────────────────────────────────


@app.command()
def serve(
    host: str = typer.Option(settings.host, "--host", help="Bind address"),
    port: int = typer.Option(settings.port, "--port", "-p", help="Listen port"),
    log_level: str = typer.Option(settings.log_level, "--log-level", help="debug | info | warning | error"),
):
    """🚀 Run the HTTP service."""
    import uvicorn

    setup_logging(level=log_level)
    console.print(f"[bold green]latex-service[/] listening on [cyan]{host}:{port}[/]")
    uvicorn.run(
        "latex_service.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=log_level.lower(),
        timeout_graceful_shutdown=int(settings.shutdown_drain_timeout) + 5,
    )


# ── latex-service health ──────────────────────────────────────


@app.command()
def health():
    """🩺 Tool availability, pending workspaces, disk and memory."""
    healthy = asyncio.run(_health())
    if not healthy:
        raise typer.Exit(code=1)


async def _health() -> bool:
    from latex_service.orchestrator import Orchestrator
    from latex_service.sandbox.workspace import WorkspaceRegistry

    report = await Orchestrator(WorkspaceRegistry()).health()

    tools = Table(show_header=True, box=None, padding=(0, 2))
    tools.add_column("Tool", style="cyan")
    tools.add_column("Status")
    tools.add_column("Version", style="dim")
    for name, check in report["checks"].items():
        status = "[green]ok[/]" if check["ok"] else "[red]missing[/]"
        tools.add_row(name, status, check["version"] or "—")
    console.print(Panel(tools, title="[bold cyan]Tools[/]", border_style="cyan"))

    system = report["system"]
    sys_table = Table(show_header=False, box=None, padding=(0, 2))
    sys_table.add_column("Metric", style="cyan")
    sys_table.add_column("Value", style="white")
    sys_table.add_row("RAM", f"{system['ram_percent']}% used, {system['ram_available_mb']} MB free")
    sys_table.add_row("Disk (work root)", f"{system['disk_percent']}% used, {system['disk_free_mb']} MB free")
    sys_table.add_row("Work root", settings.work_root)
    console.print(Panel(sys_table, title="[bold magenta]System[/]", border_style="magenta"))

    colour = "green" if report["status"] == "ok" else "yellow"
    console.print(f"[bold {colour}]{report['status']}[/]")
    return report["status"] == "ok"


# ── latex-service sweep ───────────────────────────────────────


@app.command()
def sweep():
    """🧹 Remove workspaces left behind by a crashed server. Do not run while one is serving."""
    asyncio.run(_sweep())


async def _sweep() -> None:
    from latex_service.sandbox.workspace import WorkspaceRegistry

    registry = WorkspaceRegistry()
    result = await registry.purge_orphans()
    console.print(
        f"Removed [green]{result['cleaned']}[/] workspace(s) from [cyan]{registry.root}[/]"
        + (f", [red]{result['failed']} failed[/]" if result["failed"] else "")
    )
    if result["failed"]:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
