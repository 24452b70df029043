"""Command-line interface for the job application tracker.

Provides commands for configuration validation, one-off mailbox scans and
the web server.

Usage:
    python -m jobtracker validate-config
    python -m jobtracker scan --start 2024-01-01 --end 2024-02-01
    python -m jobtracker serve
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import UTC, datetime
from pathlib import Path

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from jobtracker.config import validate_config_file
from jobtracker.core.logging import configure_logging

console = Console()


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Job Application Tracker - find job application emails in Gmail."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="Port to bind to",
)
def serve(host: str, port: int) -> None:
    """Start the API server.

    Serves POST /api/process-emails, which streams scan events as NDJSON.
    """
    import uvicorn

    from jobtracker.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "Session cookies carry Gmail tokens. Use 127.0.0.1 for local-only access."
        )

    from jobtracker.config import get_config
    from jobtracker.core.errors import ConfigLoadError, ConfigValidationError

    try:
        logging_config = get_config().logging
        configure_logging(log_level=logging_config.level, json_output=logging_config.json_output)
    except (ConfigLoadError, ConfigValidationError):
        # The app still starts and reports the config problem per request
        configure_logging(log_level="INFO", json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


@cli.command("scan")
@click.option(
    "--start",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="First day to scan (YYYY-MM-DD, inclusive)",
)
@click.option(
    "--end",
    required=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Day to stop at (YYYY-MM-DD, exclusive)",
)
@click.option(
    "--access-token",
    envvar="GMAIL_ACCESS_TOKEN",
    default=None,
    help="Gmail OAuth access token (or set GMAIL_ACCESS_TOKEN)",
)
@click.option(
    "--refresh-token",
    envvar="GMAIL_REFRESH_TOKEN",
    default=None,
    help="Gmail OAuth refresh token (or set GMAIL_REFRESH_TOKEN)",
)
@click.option(
    "--refresh",
    is_flag=True,
    help="Exchange the refresh token for a fresh access token before scanning",
)
@click.option(
    "--exclude",
    "-x",
    multiple=True,
    help="Sender to exclude: address, @domain or substring (repeatable)",
)
@click.option(
    "--threshold",
    type=click.FloatRange(0.0, 1.0),
    default=None,
    help="Minimum classifier confidence (default from config)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the application records to this JSON file",
)
def scan(
    start: datetime,
    end: datetime,
    access_token: str | None,
    refresh_token: str | None,
    refresh: bool,
    exclude: tuple[str, ...],
    threshold: float | None,
    output: Path | None,
) -> None:
    """Scan Gmail for job application emails in a date range.

    Runs the same pipeline as the web endpoint and renders its progress.
    """
    from jobtracker.config import get_config
    from jobtracker.core.errors import AuthenticationError, ConfigLoadError, ConfigValidationError
    from jobtracker.engine.pipeline import PipelineOrchestrator, PipelineRequest
    from jobtracker.gmail.client import refresh_access_token
    from jobtracker.gmail.models import GmailCredentials

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml from config/config.yaml.example and set the "
            "[cyan]inference[/cyan] endpoint URLs."
        )
        sys.exit(1)

    credentials = None
    if access_token or refresh_token:
        credentials = GmailCredentials(access_token=access_token or "", refresh_token=refresh_token)

    if refresh:
        if credentials is None:
            console.print("[red]Error:[/red] --refresh needs a refresh token.")
            sys.exit(1)
        try:
            credentials = refresh_access_token(credentials, config.oauth)
        except AuthenticationError as e:
            console.print(f"[red]Token refresh failed:[/red] {e}")
            sys.exit(1)
        console.print("[green]✓[/green] Access token refreshed")

    request = PipelineRequest(
        credentials=credentials,
        start=start.replace(tzinfo=UTC),
        end=end.replace(tzinfo=UTC),
        excluded_senders=list(exclude),
        confidence_threshold=threshold,
    )

    result = asyncio.run(_run_scan(PipelineOrchestrator(config), request))
    if result is None:
        sys.exit(1)

    _print_applications(result["applications"])
    console.print(
        f"\nScanned [cyan]{result['totalEmails']}[/cyan] emails, "
        f"excluded [cyan]{result['excludedCount']}[/cyan], "
        f"found [green]{result['processed']}[/green] application emails."
    )

    if output:
        output.write_text(json.dumps(result["applications"], indent=2), encoding="utf-8")
        console.print(f"Records written to [cyan]{output}[/cyan]")


async def _run_scan(orchestrator, request) -> dict | None:
    """Drive one pipeline run with a progress bar; returns the completion dict."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task("Starting...", total=100)

        async for event in orchestrator.run(request):
            data = event.to_dict()
            if data["type"] == "progress":
                progress.update(
                    task,
                    completed=data["current"],
                    description=data["stage"].capitalize() + "...",
                )
            elif data["type"] == "complete":
                progress.update(task, completed=100, description="Done")
                return data
            else:
                progress.stop()
                console.print(f"[red]Scan failed:[/red] {data['message']}")
                return None

    return None


def _print_applications(applications: list[dict]) -> None:
    if not applications:
        console.print("\nNo job application emails found.")
        return

    table = Table(title="Job application emails")
    table.add_column("Date", style="dim")
    table.add_column("Company")
    table.add_column("Role")
    table.add_column("Status", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Subject", overflow="ellipsis", max_width=50)

    for record in applications:
        table.add_row(
            record["date"][:10],
            record["company"],
            record["role"],
            record["status"],
            f"{record['classification']['confidence']:.2f}",
            record["subject"],
        )

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
