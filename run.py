#!/usr/bin/env python3
"""
Retail Ledger Entry Point

Starts the FastAPI server with host, port, storage and logging taken from
LEDGER_* environment settings.
"""

import sys

import uvicorn

from retail_ledger.api import create_app
from retail_ledger.config import get_config
from retail_ledger.logging_config import setup_logging


def main() -> None:
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)

    app = create_app()
    logger.info(f"Retail ledger listening on {config.api_host}:{config.api_port} "
                f"(storage {config.database_url})")

    try:
        uvicorn.run(app, host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down retail ledger")
    finally:
        app.state.banking_system.close()


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        sys.exit(1)
