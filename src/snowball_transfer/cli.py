# src/snowball_transfer/cli.py
"""Command-line interface for the snowball-transfer tool."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from snowball_transfer.config import DEFAULT_BATCH_SIZE, AppConfig, Config
from snowball_transfer.exceptions import SnowballTransferError
from snowball_transfer.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure rich-based logging on standard error."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_path=False
            )
        ],
    )
    # Silence noisy loggers
    for logger_name in ["aiobotocore", "botocore", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


async def main_async(config: Config) -> None:
    """
    Asynchronously execute the transfer pipeline.

    Args:
        config (Config): The application configuration.
    """
    # Lazily import to keep CLI start-up fast
    from snowball_transfer.pipeline import SnowballPipeline

    shutdown_manager: GracefulShutdown = GracefulShutdown()
    async with shutdown_manager as shutdown_event:
        pipeline: SnowballPipeline = SnowballPipeline(config, shutdown_event)
        await pipeline.run()


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--concurrency",
    type=int,
    default=None,
    help="Maximum number of concurrent object fetches. [default: CPU count]",
)
@click.option(
    "--batch-size",
    type=int,
    default=DEFAULT_BATCH_SIZE,
    help="Number of objects packed into each archive.",
    show_default=True,
)
@click.option(
    "--compress/--no-compress",
    default=False,
    envvar="SNOWBALL_COMPRESS",
    help="Gzip each archive before upload.",
    show_default=True,
)
@click.option(
    "--in-memory/--on-disk",
    default=True,
    envvar="SNOWBALL_IN_MEMORY",
    help="Build archives in memory, or in temporary files on local disk.",
    show_default=True,
)
@click.option(
    "--skip-errors",
    is_flag=True,
    default=False,
    envvar="SNOWBALL_SKIP_ERRORS",
    help="Skip objects whose content cannot be read instead of aborting.",
)
@click.option(
    "--prefix",
    default="",
    envvar="SNOWBALL_SOURCE_PREFIX",
    help="Only transfer source keys under this prefix.",
)
@click.option(
    "--archive-prefix",
    default="",
    help="Key prefix for archives written to the destination bucket.",
)
@click.option(
    "--source-dir",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, resolve_path=True),
    default=None,
    help="Upload this local directory instead of a source bucket.",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def cli(**kwargs: Any) -> None:
    """
    Copy many small objects between S3-compatible buckets in batches.

    Objects are listed from the source, fetched concurrently and packed,
    a batch at a time, into tar archives that are uploaded to the destination
    bucket with the snowball auto-extract flag set.

    Credentials and bucket information must be set via environment variables
    (SNOWBALL_SOURCE_* and SNOWBALL_DESTINATION_*). See the .env.example file
    for required variables.
    """
    load_dotenv()
    setup_logging(kwargs["log_level"])

    try:
        source_dir: Optional[Path] = (
            Path(kwargs["source_dir"]) if kwargs["source_dir"] else None
        )
        app_kwargs: Dict[str, Any] = {
            "batch_size": kwargs["batch_size"],
            "compress": kwargs["compress"],
            "in_memory": kwargs["in_memory"],
            "skip_errors": kwargs["skip_errors"],
            "source_prefix": kwargs["prefix"],
            "archive_prefix": kwargs["archive_prefix"],
            "source_dir": source_dir,
        }
        if kwargs["concurrency"] is not None:
            app_kwargs["concurrency"] = kwargs["concurrency"]
        app_config: AppConfig = AppConfig(**app_kwargs)
        config: Config = (
            Config(app=app_config, source=None)
            if source_dir is not None
            else Config(app=app_config)
        )

        asyncio.run(main_async(config))
        logger.info("✅ Run completed successfully.")
    except SnowballTransferError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except asyncio.CancelledError:
        logger.warning("Shutdown signal received. Exiting.")
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)


if __name__ == "__main__":
    cli()
