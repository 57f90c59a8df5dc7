from __future__ import annotations

import logging
import os
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from dealflow.config import get_settings
from dealflow.db import init_db, session_scope
from dealflow import services

app = typer.Typer(help="Dealflow: investment assessments, committee voting and document Q&A")
console = Console()


def _configure_logging(*, verbose: int, json_logs: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_logs:
        handlers = [logging.StreamHandler()]
        fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    project_root: str | None = typer.Option(
        None, "--project-root", help="Directory holding data/ and the default SQLite database.",
    ),
    config: str | None = typer.Option(None, "--config", help="YAML file with settings overrides."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Plain log lines instead of rich output."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["DEALFLOW_HOME"] = str(Path(project_root).expanduser().resolve())
    if config:
        os.environ["DEALFLOW_CONFIG"] = str(Path(config).expanduser().resolve())
    if project_root or config:
        get_settings.cache_clear()
    _configure_logging(verbose=verbose, json_logs=json_logs)


@app.command("init-db")
def init_db_command(
    db_url: str | None = typer.Option(None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Create missing tables."""
    init_db(db_url)
    console.print(f"[green]Database ready:[/green] {db_url or get_settings().database_url}")


@app.command("reset-usage")
def reset_usage(
    db_url: str | None = typer.Option(None, help="Optional SQLAlchemy DB URL"),
) -> None:
    """Zero every organization's monthly assessment counter."""
    init_db(db_url)
    with session_scope() as session:
        count = services.reset_monthly_usage(session)
        session.commit()
    console.print(f"Reset monthly usage for {count} organization(s)")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8001, help="Port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn
    uvicorn.run("dealflow.app:app", host=host, port=port, reload=reload, log_config=None)


@app.command()
def mcp() -> None:
    """Run the MCP server over stdio."""
    from dealflow.mcp_server import main
    main()


if __name__ == "__main__":
    app()
