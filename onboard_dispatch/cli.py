"""Command line interface for the provisioning dispatcher."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer

from .config import AppConfig, ConfigurationError, load_config
from .dispatcher import STATUS_FAILED, Dispatcher
from .models import migrate_legacy_fields
from .sanitizer import sanitize_payload
from .validation import validate

app = typer.Typer(help="Run Microsoft 365 onboarding requests outside the HTTP endpoint.")

_CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _configure_logging(config: AppConfig) -> logging.Logger:
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return logging.getLogger("onboard_dispatch")


def _read_request(path: Path) -> Any:
    try:
        with path.open("r", encoding="utf-8-sig") as handle:
            return json.load(handle)
    except OSError as exc:
        typer.echo(f"Error: unable to read {path}: {exc}")
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"Error: {path} is not valid JSON: {exc}")
        raise typer.Exit(code=1)


@app.command("sanitize")
def sanitize_command(
    request_file: Path = typer.Argument(..., help="JSON request body to clean."),
) -> None:
    """Print the request with unresolved @placeholders removed."""

    payload = sanitize_payload(_read_request(request_file))
    typer.echo(json.dumps(payload, indent=2))


@app.command("validate")
def validate_command(
    request_file: Path = typer.Argument(..., help="JSON request body to check."),
) -> None:
    """Check a request against the provisioning schema."""

    payload, warnings = migrate_legacy_fields(sanitize_payload(_read_request(request_file)))
    for warning in warnings:
        typer.echo(f"Warning: {warning}")
    errors = validate(payload)
    if not errors:
        typer.echo("Request is valid.")
        return
    for error in errors:
        typer.echo(f"- {error}")
    raise typer.Exit(code=1)


@app.command("dispatch")
def dispatch_command(
    request_file: Path = typer.Argument(..., help="JSON request body to provision."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Run the full provisioning pipeline for one request and print the response."""

    if not request_file.exists():
        typer.echo(f"Error: {request_file} does not exist.")
        raise typer.Exit(code=1)
    config = _load_configuration(config_path)
    logger = _configure_logging(config)

    response = Dispatcher(config, logger=logger).dispatch_raw(request_file.read_bytes())
    typer.echo(json.dumps(response.to_dict(), indent=2))
    if response.status == STATUS_FAILED:
        raise typer.Exit(code=1)


@app.command("serve")
def serve_command(
    host: str = typer.Option("0.0.0.0", help="Interface to bind."),
    port: int = typer.Option(5000, help="Port to listen on."),
    debug: bool = typer.Option(False, help="Enable the Flask debugger."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
) -> None:
    """Serve the HTTP endpoint with the Flask development server."""

    from .web import create_app

    config = _load_configuration(config_path)
    _configure_logging(config)
    create_app(config_path, config=config).run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
