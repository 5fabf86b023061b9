"""CLI commands for config management."""

from __future__ import annotations

import typer
from rich.console import Console

console = Console()


def register(config_app: typer.Typer, get_config, get_config_value, set_config_value) -> None:
    """Register config commands on the config sub-app."""

    @config_app.command("show")
    def config_show():
        """Show current configuration (password masked)."""
        cfg = get_config()
        console.print_json(cfg.model_dump_json(indent=2, exclude={"connection": {"password"}}))

    @config_app.command("set")
    def config_set(key: str = typer.Argument(...), value: str = typer.Argument(...)):
        """Set a config value (dot notation: connection.host)."""
        try:
            set_config_value(key, value)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)
        console.print(f"[green]Set[/green] {key} = {value}")

    @config_app.command("get")
    def config_get(key: str = typer.Argument(...)):
        """Get a config value."""
        cfg = get_config()
        val = get_config_value(cfg, key)
        console.print(f"{key} = {val}")
