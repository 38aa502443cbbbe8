#!/usr/bin/env python3
"""
SFD Lending Engine Entry Point

Starts the FastAPI server with the lending engine, using the host, port and
logging settings from the SFD_LENDING_* environment.
"""

import sys

from sfd_lending.config import get_config
from sfd_lending.logging_config import setup_logging
from sfd_lending.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    logger.info(f"Starting SFD lending engine on {config.api_host}:{config.api_port}")
    logger.info(f"Storage: {config.database_url} | currency: {config.currency}")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down SFD lending engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
