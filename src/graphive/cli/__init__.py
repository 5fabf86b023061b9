"""graphive CLI - inspect and query a graph database from the terminal."""

from __future__ import annotations

from typing import Optional

import typer

from graphive.config import (
    Config,
    get_config_value,
    load_config,
    set_config_value,
)
from graphive.logging_setup import setup_logging

# Bootstrap logging from config (respects GRAPHIVE_LOG_FORMAT / GRAPHIVE_LOG_LEVEL)
setup_logging(load_config())

app = typer.Typer(name="graphive", help="Graph canvas sync core for Neo4j and FalkorDB")
config_app = typer.Typer(help="Manage configuration")
dashboard_app = typer.Typer(help="Manage saved dashboards")

app.add_typer(config_app, name="config")
app.add_typer(dashboard_app, name="dashboards")

_config: Config | None = None
_password: Optional[str] = None


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = load_config()
        if _password is not None:
            _config.connection.password = _password
    return _config


@app.callback()
def main(
    password: Optional[str] = typer.Option(
        None, "--password", "-p",
        help="Database password (never written to the config file).",
        envvar="GRAPHIVE_PASSWORD",
    ),
):
    """graphive - graph canvas sync core."""
    global _password
    _password = password


# Register commands from sub-modules
from graphive.cli import config_cmd as _config_cmd_mod  # noqa: E402
from graphive.cli import connection_cmd as _connection_mod  # noqa: E402
from graphive.cli import dashboard_cmd as _dashboard_mod  # noqa: E402
from graphive.cli import graph_cmd as _graph_mod  # noqa: E402

_config_cmd_mod.register(config_app, _get_config, get_config_value, set_config_value)
_connection_mod.register(app, _get_config)
_graph_mod.register(app, _get_config)
_dashboard_mod.register(dashboard_app, _get_config)
