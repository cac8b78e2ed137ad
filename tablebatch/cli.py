"""
tablebatch Command-Line Interface

Runs the table emulator and applies batch documents against a table service.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import click
import uvicorn
import yaml

from tablebatch import __version__
from tablebatch.core.config_manager import ConfigManager, TableBatchConfig
from tablebatch.core.logging_config import setup_logging
from tablebatch.table.batch import Batch
from tablebatch.table.errors import InvalidArgument, TableError
from tablebatch.table.models import OperationKind
from tablebatch.table.service import TableService
from tablebatch.table.transport import Transport


def _load_config(config: Optional[Path], overrides: Optional[Dict[str, Any]] = None) -> TableBatchConfig:
    manager = ConfigManager()
    return manager.load(
        config_file=str(config) if config else None,
        cli_overrides=overrides,
    )


def _configure_logging(
    config: TableBatchConfig,
    log_level: Optional[str],
    stream: Optional[TextIO] = None,
) -> None:
    setup_logging(
        level=(log_level or config.logging.level).upper(),
        format_type=config.logging.format,
        log_file=config.logging.file,
        rotation_size=config.logging.rotation_size,
        rotation_count=config.logging.rotation_count,
        module_levels=config.logging.module_levels,
        stream=stream,
    )


def load_batch_document(path: Path) -> Dict[str, Any]:
    """Read a batch document from a YAML or JSON file."""
    with open(path, "r") as f:
        if path.suffix in (".yaml", ".yml"):
            document = yaml.safe_load(f) or {}
        elif path.suffix == ".json":
            document = json.load(f)
        else:
            raise InvalidArgument(f"Unsupported batch file format: {path.suffix}")
    if not isinstance(document, dict):
        raise InvalidArgument("Batch document must be a mapping")
    return document


def build_batch(document: Dict[str, Any]) -> Batch:
    """
    Build a Batch from a document of the form::

        table: customers
        partition_key: smith
        operations:
          - op: update
            row_key: john
            properties: {Email: john@example.com}
            if_match: "*"
          - op: delete
            row_key: jane
    """
    batch = Batch(document.get("table", ""), document.get("partition_key", ""))
    for position, entry in enumerate(document.get("operations") or []):
        if not isinstance(entry, dict):
            raise InvalidArgument(f"Operation {position} must be a mapping")
        try:
            kind = OperationKind(str(entry.get("op", "")).lower())
        except ValueError:
            raise InvalidArgument(
                f"Operation {position} has unknown op '{entry.get('op')}'"
            ) from None
        row_key = entry.get("row_key", "")
        properties = entry.get("properties") or {}
        if_match = entry.get("if_match")

        if kind is OperationKind.DELETE:
            batch.delete(row_key, if_match or "*")
        elif kind is OperationKind.UPDATE:
            batch.update(row_key, properties, if_match)
        elif kind is OperationKind.MERGE:
            batch.merge(row_key, properties, if_match)
        elif kind is OperationKind.INSERT:
            batch.insert(row_key, properties)
        elif kind is OperationKind.INSERT_OR_REPLACE:
            batch.insert_or_replace(row_key, properties)
        else:
            batch.insert_or_merge(row_key, properties)
    return batch


@click.group()
@click.version_option(version=__version__, prog_name="tablebatch")
@click.pass_context
def cli(ctx):
    """
    tablebatch - atomic entity batches for table storage

    Apply partition-scoped entity batches and run a local emulator.
    """
    ctx.ensure_object(dict)


@cli.command()
@click.option("--host", default=None, help="Host to bind to (default from config: 127.0.0.1)")
@click.option("--port", default=None, type=int, help="Port to bind to (default from config: 7071)")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
)
def serve(host: Optional[str], port: Optional[int], config: Optional[Path], log_level: Optional[str]):
    """
    Run the in-memory table emulator.

    Examples:
        tablebatch serve
        tablebatch serve --port 8080 --log-level DEBUG
    """
    from tablebatch.emulator.api import create_app

    overrides: Dict[str, Any] = {}
    if host:
        overrides.setdefault("emulator", {})["host"] = host
    if port:
        overrides.setdefault("emulator", {})["port"] = port
    settings = _load_config(config, overrides)
    _configure_logging(settings, log_level)

    click.echo(f"Starting tablebatch emulator v{__version__}")
    click.echo(f"Host: {settings.emulator.host}:{settings.emulator.port}")
    click.echo(
        f"Endpoint: http://{settings.emulator.host}:{settings.emulator.port}"
        f"/table/{settings.emulator.account_name}"
    )

    try:
        uvicorn.run(
            create_app(),
            host=settings.emulator.host,
            port=settings.emulator.port,
            log_level=(log_level or settings.logging.level).lower(),
            access_log=True,
        )
    except KeyboardInterrupt:
        click.echo("\nShutting down tablebatch emulator...")


@cli.command()
@click.argument("batch_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--endpoint", default=None, help="Table service endpoint URL")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
)
@click.pass_context
def apply(
    ctx,
    batch_file: Path,
    endpoint: Optional[str],
    config: Optional[Path],
    log_level: Optional[str],
):
    """
    Execute a batch document (YAML or JSON) as one transaction.

    Prints one line per operation to stdout: the new ETag, or '-' for
    deletes. Log output goes to stderr.

    Example:
        tablebatch apply batch.yaml --endpoint http://127.0.0.1:7071/table/devstoreaccount1
    """
    overrides = {"service": {"endpoint": endpoint}} if endpoint else None
    settings = _load_config(config, overrides)
    _configure_logging(settings, log_level, stream=sys.stderr)
    logger = logging.getLogger("tablebatch.cli")

    # Tests inject a transport through the click context
    transport: Optional[Transport] = ctx.obj.get("transport") if ctx.obj else None

    try:
        batch = build_batch(load_batch_document(batch_file))
        with TableService(config=settings.service, transport=transport) as service:
            etags = service.execute_batch(batch)
    except TableError as e:
        logger.error(f"Batch from {batch_file} failed: {e}")
        click.echo(f"[ERROR] {e}", err=True)
        sys.exit(1)

    for etag in etags:
        click.echo(etag if etag is not None else "-")


@cli.command()
def version():
    """Show tablebatch version."""
    click.echo(f"tablebatch version {__version__}")


@cli.command(name="config")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
def show_config(config_file: Optional[Path]):
    """Show the active configuration as YAML."""
    settings = _load_config(config_file)
    click.echo(yaml.safe_dump(settings.model_dump(mode="json"), sort_keys=False))


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
