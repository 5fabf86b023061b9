"""CLI commands that read the graph: query, neighbors."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from graphive.graph.state import GraphSnapshot
from graphive.models import GraphProjection
from graphive.utils import run_async

console = Console()


def render_graph(nodes, edges, title: str = "Graph") -> None:
    """Print nodes and edges as two rich tables."""
    node_table = Table(title=f"{title}: {len(nodes)} nodes")
    node_table.add_column("ID", style="cyan")
    node_table.add_column("Label", style="green")
    node_table.add_column("Labels")
    for node in nodes:
        node_table.add_row(node.id, node.label, ", ".join(node.backend_labels))
    console.print(node_table)

    if not edges:
        return
    edge_table = Table(title=f"{len(edges)} relationships")
    edge_table.add_column("ID", style="cyan")
    edge_table.add_column("Source")
    edge_table.add_column("Type", style="magenta")
    edge_table.add_column("Target")
    for edge in edges:
        edge_table.add_row(edge.id, edge.source, edge.data.get("_type", edge.label), edge.target)
    console.print(edge_table)


def register(app: typer.Typer, get_config) -> None:
    """Register graph read commands on the main Typer app."""
    from graphive.runtime import session_scope

    @app.command()
    def query(cypher: str = typer.Argument(..., help="Cypher query returning nodes, relationships or paths")):
        """Run a query and show the resulting projection."""

        async def _go() -> GraphSnapshot | None:
            async with session_scope(get_config()) as session:
                connected = await session.connect()
                if not connected.ok:
                    console.print(f"[red]Error:[/red] {connected.failure.message}")
                    return None
                task = session.store.execute_query(cypher)
                if task is not None:
                    await task
                return session.store.snapshot

        snapshot = run_async(_go())
        if snapshot is None:
            raise typer.Exit(1)
        if snapshot.query_error:
            console.print(f"[red]Query failed:[/red] {snapshot.query_error}")
            raise typer.Exit(1)
        render_graph(snapshot.nodes, snapshot.edges, title="Result")

    @app.command()
    def neighbors(node_id: str = typer.Argument(..., help="Node id (id property or backend id)")):
        """Show a node's immediate neighborhood."""

        async def _go() -> GraphProjection | None:
            async with session_scope(get_config()) as session:
                connected = await session.connect()
                if not connected.ok:
                    console.print(f"[red]Error:[/red] {connected.failure.message}")
                    return None
                result = await session.registry.call(lambda a: a.fetch_neighbors(node_id), name="fetch_neighbors")
                if not result.ok:
                    console.print(f"[red]Error:[/red] {result.failure.message}")
                    return None
                return result.value

        projection = run_async(_go())
        if projection is None:
            raise typer.Exit(1)
        if not projection.nodes:
            console.print("[yellow]No neighbors found.[/yellow]")
            return
        render_graph(projection.nodes, projection.edges, title=f"Neighbors of {node_id}")
