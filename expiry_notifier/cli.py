"""Command line interface for the password expiry notifier."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from .config import AppConfig, ConfigurationError, load_config
from .expiry import MissingTimestampError, evaluate, filter_statuses
from .graph_client import GraphClient, GraphClientError, effective_credentials
from .models import DirectoryPrincipal
from .storage import EnvironmentStore, HistoryStore

app = typer.Typer(help="Monitor Entra ID password expiry and send reminder emails.")


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    port: Optional[int] = typer.Option(None, "--port", help="Port to listen on (defaults to $PORT or 3000)."),
) -> None:
    """Start the HTTP API."""

    from .web import create_app

    config = _load_configuration(config_path)
    if port is not None:
        config.server.port = port
    web_app = create_app(app_config=config)
    web_app.run(
        host=config.server.host,
        port=config.server.port,
        debug=config.server.debug,
        threaded=True,
    )


@app.command("users")
def show_users(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    quick_filter: str = typer.Option("all", "--filter", help="all, critical, expired or safe."),
    search: Optional[str] = typer.Option(None, "--search", help="Match display name or UPN."),
) -> None:
    """Print password expiry status for the active environment's directory."""

    config = _load_configuration(config_path)
    environment = EnvironmentStore(config.storage.environments_file).active()
    credentials = effective_credentials(environment.graph)
    if not credentials.has_credentials:
        typer.echo("No directory credentials configured for the active environment.")
        raise typer.Exit(code=1)

    try:
        raw_users = GraphClient(credentials, config.graph).list_users()
    except GraphClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    statuses = []
    for entry in raw_users:
        try:
            statuses.append(
                evaluate(
                    DirectoryPrincipal.from_graph(entry),
                    credentials.default_expiry_days,
                    critical_threshold=config.delivery.critical_threshold_days,
                )
            )
        except MissingTimestampError as exc:
            typer.echo(f"Skipping: {exc}", err=True)

    try:
        statuses = filter_statuses(statuses, search=search, quick_filter=quick_filter)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    typer.echo(json.dumps([status.to_dict() for status in statuses], indent=2))


@app.command("history")
def show_history(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    limit: int = typer.Option(50, "--limit", help="Number of most recent entries to show."),
) -> None:
    """Display the delivery audit log, newest first."""

    config = _load_configuration(config_path)
    entries = HistoryStore(config.storage.history_file, config.delivery.history_limit).newest_first()
    if not entries:
        typer.echo("No deliveries recorded yet.")
        raise typer.Exit(code=0)
    typer.echo(json.dumps([entry.to_dict() for entry in entries[:limit]], indent=2))


def run():
    app()


if __name__ == "__main__":
    run()
