from __future__ import annotations

from datetime import date
import json
from pathlib import Path

from dotenv import load_dotenv
import typer

from vatpilot.adapters.clients.shopify import ShopifyClient
from vatpilot.adapters.db.facade import DB, ConnectionNotFoundError
from vatpilot.core.config import AppConfig, ConfigurationError, load_app_config_from_env
from vatpilot.jobs.report.runner import ReportRunner
from vatpilot.tools.sync.sync_tool import SyncTool
from vatpilot.ui.http.app import configure_logging

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="VATpilot: Shopify order sync and IOSS VAT returns.",
    no_args_is_help=True,
)


def _load_config() -> AppConfig:
    try:
        config = load_app_config_from_env()
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None
    configure_logging(config.log_level)
    return config


def _open_db(config: AppConfig, url: str | None = None) -> DB:
    db = DB(url or config.database_url)
    db.create_schema()
    return db


def _parse_day(value: str | None, name: str) -> date | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        typer.echo(f"{name} must be an ISO date (YYYY-MM-DD)", err=True)
        raise typer.Exit(2) from None


@app.command("init-db")
def init_db(url: str | None = None) -> None:
    """Create the database tables."""
    config = _load_config()
    _open_db(config, url)
    typer.echo(f"Schema ready at {url or config.database_url}")


@app.command("sync")
def sync(
    connection_id: str = typer.Argument(..., help="Connection to sync"),
    full: bool = typer.Option(False, "--full", help="Ignore the watermark"),
) -> None:
    """Pull orders for a connected store and print the sync result."""
    config = _load_config()
    db = _open_db(config)
    tool = SyncTool.from_config(config, ShopifyClient.from_config(config), db)
    result = tool.sync(connection_id, full=full)
    typer.echo(json.dumps(result.to_dict(), indent=2))
    if not result.success:
        raise typer.Exit(1)


@app.command("report")
def report(
    connection_id: str = typer.Argument(..., help="Connection to report on"),
    date_from: str | None = typer.Option(None, "--from", help="YYYY-MM-DD"),
    date_to: str | None = typer.Option(None, "--to", help="YYYY-MM-DD"),
    output_dir: Path = typer.Option(  # noqa: B008
        Path("."), "--output-dir", help="Where to write the CSV"
    ),
) -> None:
    """Write the IOSS return CSV for a connection."""
    config = _load_config()
    runner = ReportRunner.from_config(config, _open_db(config))
    try:
        artifact = runner.generate(
            connection_id,
            _parse_day(date_from, "--from"),
            _parse_day(date_to, "--to"),
        )
    except ConnectionNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(2) from None

    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / artifact.filename
    path.write_text(artifact.content, encoding="utf-8")
    typer.echo(f"Wrote {artifact.report_type} report to {path}")


@app.command("summary")
def summary(connection_id: str) -> None:
    """Print the compliance summary for a connection."""
    config = _load_config()
    runner = ReportRunner.from_config(config, _open_db(config))
    try:
        result = runner.summary(connection_id)
    except ConnectionNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.command("serve")
def serve(
    host: str = typer.Option(
        "0.0.0.0",  # noqa: S104
        help="Host to bind",
    ),
    port: int = typer.Option(5000, help="Port to bind"),
) -> None:
    """Run the HTTP server."""
    from vatpilot.ui.http.app import main

    main(host=host, port=port)


if __name__ == "__main__":
    app()
