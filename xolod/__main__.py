"""Entry point for running the xolo daemon.

This module provides the CLI entry point for starting the daemon.
"""

import logging
import os
import sys

import uvicorn

from xolo_library.config.loader import load_config

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the xolo daemon.

    Loads configuration and starts the uvicorn server. If the server was
    stopped with a restart request, the process replaces itself with a new one.
    """
    try:
        config = load_config()

        uvicorn.run(
            "xolod.main:app",
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            workers=1,
        )

    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to start daemon: {e}")
        sys.exit(1)

    from .main import app

    if getattr(app.state, "restart_requested", False):
        logger.info("Restarting xolod")
        os.execv(sys.executable, [sys.executable, "-m", "xolod"])


if __name__ == "__main__":
    main()
