#!/usr/bin/env python3
"""
Accounting Engine Entry Point

Starts the FastAPI server with the accounting system built from
configuration (ACCOUNTING_* environment variables or .env).
"""

import sys

import uvicorn

from core_accounting.api import create_app
from core_accounting.config import get_config
from core_accounting.logging_config import setup_logging


def main() -> None:
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Accounting Engine...")
    print(f"Storage: {config.database_url}")
    print(f"Tax authority validator: {config.validator_mode}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(create_app(), host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        print("\nShutting down Accounting Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
