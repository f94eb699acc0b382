"""
Process entrypoint for the API server.

Usage:
    python -m apiserver

    # Custom port and database
    PORT=8080 DATABASE_PATH=/var/lib/apiserver/data.db python -m apiserver

    # Bind immediately, without waiting for the database
    WAIT_FOR_DATABASE=false python -m apiserver
"""

import asyncio
import logging
import sys
from typing import Mapping, Optional

from apiserver.bootstrap import READY_LOGGER, run
from apiserver.config import ServerConfig
from apiserver.errors import EXIT_OK, StartupError


logger = logging.getLogger("apiserver")


def configure_logging(level: str = "INFO"):
    """
    Configure root logging on stdout.

    The readiness line is always logged, whatever the level.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )
    logging.getLogger(READY_LOGGER).setLevel(logging.INFO)


def main(environ: Optional[Mapping[str, str]] = None) -> int:
    """
    Run the server until it exits.

    Args:
        environ: Environment to read configuration from (default: os.environ)

    Returns:
        Process exit code
    """
    try:
        config = ServerConfig.from_env(environ)
    except StartupError as e:
        configure_logging()
        logger.error(f"Startup failed ({e.stage}): {e}")
        return e.exit_code

    configure_logging(config.log_level)

    try:
        asyncio.run(run(config))
    except StartupError as e:
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")

    return EXIT_OK


def cli():
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
