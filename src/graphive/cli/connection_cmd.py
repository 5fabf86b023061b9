"""CLI commands for connection checks."""

from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console

from graphive.utils import run_async

console = Console()


def register(app: typer.Typer, get_config) -> None:
    """Register connection commands on the main Typer app."""

    @app.command("test-connection")
    def test_connection(
        provider: Optional[str] = typer.Option(None, "--provider", help="neo4j or falkordb"),
        host: Optional[str] = typer.Option(None, "--host"),
        port: Optional[int] = typer.Option(None, "--port"),
        protocol: Optional[str] = typer.Option(None, "--protocol", help="bolt, neo4j+s, http, https ..."),
    ):
        """Test the configured database without keeping the connection."""
        from graphive.registry import AdapterRegistry

        cfg = get_config()
        overrides = {k: v for k, v in {"provider": provider, "host": host, "port": port, "protocol": protocol}.items() if v is not None}
        connection = cfg.connection.model_copy(update=overrides)
        registry = AdapterRegistry(cfg)

        result = run_async(registry.test_connection(connection))
        target = f"{connection.provider} at {connection.host}:{connection.resolved_port}"
        if result.ok:
            console.print(f"[green]Connected[/green] to {target}")
            return
        console.print(f"[red]Connection failed[/red] ({target}): {result.failure.message}")
        raise typer.Exit(1)
