# src/tidewater/cli.py
"""Command-line interface for the tidewater tool."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click
from dotenv import load_dotenv
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TaskID, TextColumn

from tidewater.config import AppConfig, Config
from tidewater.exceptions import TidewaterError
from tidewater.records import ObjectDescriptor
from tidewater.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in ["botocore", "aiobotocore", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def load_config(data_dir: str) -> Config:
    """
    Builds the job configuration from the environment and CLI options.

    Args:
        data_dir (str): Directory for the checkpoint database.

    Returns:
        Config: The replication job.
    """
    return Config(app=AppConfig(data_dir=Path(data_dir)))


async def scan_async(config: Config) -> int:
    """
    Publish the source bucket onto the stream, showing a live counter.

    Args:
        config (Config): The application configuration.

    Returns:
        int: The number of objects enumerated.
    """
    from tidewater.pipeline import ReplicationPipeline

    pipeline: ReplicationPipeline = ReplicationPipeline(config, asyncio.Event())
    progress: Progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TextColumn("[bold cyan]{task.completed} objects"),
        transient=True,
    )
    with progress:
        task_id: TaskID = progress.add_task("Scanning...", total=None)

        def on_object(_: ObjectDescriptor) -> None:
            progress.update(task_id, advance=1)

        return await pipeline.scan(on_object)


async def replicate_async(config: Config) -> None:
    """
    Run the replication worker until the scan's end marker is processed.

    Args:
        config (Config): The application configuration.
    """
    # Lazily import to keep CLI fast
    from tidewater.pipeline import ReplicationPipeline

    shutdown_manager: GracefulShutdown = GracefulShutdown()
    async with shutdown_manager as shutdown_event:
        pipeline: ReplicationPipeline = ReplicationPipeline(config, shutdown_event)
        await pipeline.replicate()


def _run(func: Callable[[Config], Awaitable[T]], data_dir: str) -> T:
    """Loads the configuration and runs `func`, exiting 1 on failure."""
    try:
        config: Config = load_config(data_dir)
        return asyncio.run(func(config))
    except TidewaterError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except asyncio.CancelledError:
        logger.warning("Shutdown signal received. Exiting.")
        sys.exit(1)
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def cli(log_level: str) -> None:
    """
    Stream-driven replication of an S3 bucket into another bucket.

    `scan` publishes one record per source object onto a Kinesis stream,
    followed by an end marker. `replicate` consumes the stream, copying
    every object, and stops once the end marker was processed.

    Buckets, regions and the stream are set via environment variables.
    See the .env.example file for required variables.
    """
    load_dotenv()
    setup_logging(log_level)


@cli.command()
def scan() -> None:
    """Enumerate the source bucket onto the stream."""
    count: int = _run(scan_async, "data")
    logger.info(f"✅ Scan completed: {count} objects queued.")


@cli.command()
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, dir_okay=True, writable=True, resolve_path=True),
    default="data",
    help="Directory to store shard leases and checkpoints.",
    show_default=True,
)
def replicate(data_dir: str) -> None:
    """Copy every object described on the stream into the target bucket."""
    _run(replicate_async, data_dir)
    logger.info("✅ Replication completed successfully.")


if __name__ == "__main__":
    cli()
