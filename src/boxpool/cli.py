"""Command-line interface for boxpool.

Usage:
    boxpool config --environment production   # Effective pool sizing as JSON
    boxpool golden-name setup.sh              # Content-hash snapshot name
    boxpool qmp 10.0.0.4 query-status         # One QMP command over SSH
    boxpool migration-status 10.0.0.4         # Parsed query-migrate
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from boxpool import __version__
from boxpool._logging import configure_logging
from boxpool.config import PoolConfig
from boxpool.exceptions import BoxPoolError, QmpError, TransientError
from boxpool.golden import golden_snapshot_name
from boxpool.migration_client import MigrationController
from boxpool.qmp_client import QmpClient
from boxpool.remote import SshExecutor
from boxpool.settings import Settings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_PROTOCOL_ERROR = 3
EXIT_TRANSIENT_ERROR = 75  # EX_TEMPFAIL


def make_qmp_client(settings: Settings) -> QmpClient:
    executor = SshExecutor(
        key_path=settings.ssh_key_path,
        connect_timeout_seconds=settings.ssh_connect_timeout_seconds,
    )
    return QmpClient(executor, user=settings.admin_user, socket_path=settings.qmp_socket)


def _exit_code_for(error: BoxPoolError) -> int:
    if isinstance(error, TransientError):
        return EXIT_TRANSIENT_ERROR
    if isinstance(error, QmpError):
        return EXIT_PROTOCOL_ERROR
    return EXIT_CLI_ERROR


def _fail(error: BoxPoolError) -> None:
    click.echo(click.style(f"Error: {error.message}", fg="red"), err=True)
    sys.exit(_exit_code_for(error))


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Errors only")
@click.version_option(__version__, "-V", "--version", prog_name="boxpool")
def main(verbose: bool, quiet: bool) -> None:
    """Manage a pool of sandbox instances and volumes."""
    configure_logging(level="DEBUG" if verbose else None, quiet=quiet)


@main.command("config")
@click.option(
    "--environment",
    type=click.Choice(["development", "staging", "production"]),
    default=None,
    help="Sizing preset (default: BOXPOOL_ENVIRONMENT)",
)
def show_config(environment: str | None) -> None:
    """Print the effective pool configuration as JSON."""
    env = environment or Settings().environment
    config = PoolConfig.for_environment(env)  # type: ignore[arg-type]
    click.echo(json.dumps({"environment": env, **config.model_dump(mode="json")}, indent=2))


@main.command("golden-name")
@click.argument("script", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def golden_name(script: Path) -> None:
    """Print the golden snapshot name for a setup SCRIPT."""
    click.echo(golden_snapshot_name(script.read_bytes()))


@main.command("qmp")
@click.argument("host")
@click.argument("command")
@click.option("-a", "--arguments", "arguments_json", default=None, help="Command arguments as a JSON object")
def qmp(host: str, command: str, arguments_json: str | None) -> None:
    """Run one QMP COMMAND on the guest of HOST and print the response frames."""
    arguments: dict[str, Any] | None = None
    if arguments_json:
        try:
            arguments = json.loads(arguments_json)
        except json.JSONDecodeError as exc:
            raise click.UsageError(f"--arguments is not valid JSON: {exc}") from exc
        if not isinstance(arguments, dict):
            raise click.UsageError("--arguments must be a JSON object")

    client = make_qmp_client(Settings())
    try:
        frames = asyncio.run(client.execute(host, command, arguments))
    except BoxPoolError as e:
        _fail(e)
        return
    for frame in frames:
        click.echo(json.dumps(frame.model_dump(by_alias=True, exclude_unset=True)))


@main.command("migration-status")
@click.argument("host")
def migration_status(host: str) -> None:
    """Print the current migration state of the guest on HOST."""
    controller = MigrationController(make_qmp_client(Settings()))
    try:
        info = asyncio.run(controller.query(host))
    except BoxPoolError as e:
        _fail(e)
        return
    payload = info.model_dump(by_alias=True, exclude_none=True)
    payload["progress_percent"] = round(info.progress_percent, 1)
    click.echo(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
