"""CLI commands for saved dashboards: list, show, rename, delete."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import typer
from rich.console import Console
from rich.table import Table

from graphive.utils import run_async

console = Console()


def register(dashboard_app: typer.Typer, get_config) -> None:
    """Register dashboard commands on the dashboards sub-app."""
    from graphive.runtime import Session, session_scope

    def _with_session(work: Callable[[Session], Awaitable[Any]]) -> Any:
        async def _go() -> Any:
            async with session_scope(get_config()) as session:
                connected = await session.connect()
                if not connected.ok:
                    console.print(f"[red]Error:[/red] {connected.failure.message}")
                    raise typer.Exit(1)
                return await work(session)

        return run_async(_go())

    def _print_notes(session: Session) -> None:
        for note in session.store.notifications.history:
            style = "red" if note.level.value == "error" else "green"
            console.print(f"[{style}]{note.message}[/{style}]")

    @dashboard_app.command("list")
    def list_dashboards():
        """List saved dashboards in display order."""

        async def work(session: Session):
            return await session.dashboards.refresh()

        dashboards = _with_session(work)
        if not dashboards:
            console.print("[yellow]No dashboards saved.[/yellow]")
            return
        table = Table(title="Dashboards")
        table.add_column("#", justify="right")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Query")
        table.add_column("Updated")
        for d in dashboards:
            table.add_row(str(d.order), d.id, d.name, d.query, d.updated_at)
        console.print(table)

    @dashboard_app.command("show")
    def show(dashboard_id: str = typer.Argument(...)):
        """Load a dashboard and show its graph."""
        from graphive.cli.graph_cmd import render_graph

        async def work(session: Session):
            ok = await session.dashboards.load(dashboard_id)
            if not ok:
                _print_notes(session)
                raise typer.Exit(1)
            return session.dashboards.name, session.store.snapshot

        name, snapshot = _with_session(work)
        visible_nodes = [n for n in snapshot.nodes if not n.hidden]
        visible_edges = [e for e in snapshot.edges if not e.hidden]
        render_graph(visible_nodes, visible_edges, title=name)

    @dashboard_app.command("rename")
    def rename(dashboard_id: str = typer.Argument(...), name: str = typer.Argument(...)):
        """Rename a dashboard."""

        async def work(session: Session):
            ok = await session.dashboards.rename(dashboard_id, name)
            _print_notes(session)
            return ok

        if not _with_session(work):
            raise typer.Exit(1)
        console.print(f"[green]Renamed[/green] {dashboard_id} to {name}")

    @dashboard_app.command("delete")
    def delete(
        dashboard_id: str = typer.Argument(...),
        yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    ):
        """Delete a dashboard."""
        if not yes and not typer.confirm(f"Delete dashboard {dashboard_id}?"):
            raise typer.Abort()

        async def work(session: Session):
            ok = await session.dashboards.delete(dashboard_id)
            _print_notes(session)
            return ok

        if not _with_session(work):
            raise typer.Exit(1)
        console.print(f"[green]Deleted[/green] {dashboard_id}")
