"""Command line entry point.

Usage::

    reposerver --config reposerver.toml            # poll forever
    reposerver --config reposerver.toml --once     # one sweep, then exit
    reposerver --config reposerver.toml --validate-config

Startup failures (configuration load, configuration validation, runtime
validation) exit with status 1. Failures of individual units never change the
exit status.
"""

import asyncio
import sys
import time
from pathlib import Path

import click
import structlog

from reposerver import __version__
from reposerver.config import ConfigError, get_settings, load_config, validate_config
from reposerver.logs import configure_logging
from reposerver.scheduler import RuntimeValidationError, Scheduler
from reposerver.state import StateError

logger = structlog.get_logger(__name__)


async def run(config_path: Path, once: bool = False, validate_only: bool = False) -> int:
    """Load configuration, validate the runtime and run the scheduler.

    Args:
        config_path: Path to the TOML configuration file.
        once: Run a single sweep instead of polling forever.
        validate_only: Stop after configuration and runtime validation.

    Returns:
        Process exit status.
    """
    log = logger.bind(stage="startup", config_path=str(config_path))
    log.info("startup.begin")

    start = time.perf_counter()
    log.info("config.load.begin")
    try:
        config = load_config(config_path)
    except ConfigError as e:
        log.error(
            "config.load.end",
            result="fail",
            duration_ms=int((time.perf_counter() - start) * 1000),
            error=str(e),
        )
        return 1
    log.info(
        "config.load.end",
        result="ok",
        repo_count=len(config.repos),
        duration_ms=int((time.perf_counter() - start) * 1000),
    )

    start = time.perf_counter()
    try:
        validate_config(config)
    except ConfigError as e:
        log.error(
            "config.validate.end",
            result="fail",
            duration_ms=int((time.perf_counter() - start) * 1000),
            error=str(e),
        )
        return 1
    log.info(
        "config.validate.end",
        result="ok",
        duration_ms=int((time.perf_counter() - start) * 1000),
    )

    scheduler = Scheduler(config)
    try:
        await scheduler.open()
    except StateError as e:
        log.error("state.open.end", result="fail", error=str(e))
        return 1

    try:
        try:
            await scheduler.validate_runtime()
        except RuntimeValidationError as e:
            log.error("startup.runtime_validation.end", result="fail", error=str(e))
            return 1

        if validate_only:
            log.info("startup.validate_only.exit", result="ok")
            return 0

        if once:
            log.info("startup.mode", mode="once")
            await scheduler.run_once()
        else:
            log.info("startup.mode", mode="forever")
            await scheduler.run_forever()
    finally:
        await scheduler.close()

    return 0


@click.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to the TOML configuration file.",
)
@click.option("--once", is_flag=True, default=False, help="Run a single sweep and exit.")
@click.option(
    "--validate-config",
    "validate_only",
    is_flag=True,
    default=False,
    help="Validate configuration and runtime, then exit.",
)
@click.option("--log-level", default=None, help="Log level, overrides REPOSERVER_LOG_LEVEL.")
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"]),
    default=None,
    help="Log format, overrides REPOSERVER_LOG_FORMAT.",
)
@click.version_option(__version__, prog_name="reposerver")
def main(
    config_path: Path,
    once: bool,
    validate_only: bool,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Poll git repositories and drive the indexing pipeline."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, log_format or settings.log_format)

    sys.exit(asyncio.run(run(config_path, once=once, validate_only=validate_only)))
